"""
Synthetic driving routes between two [longitude, latitude] points
"""
import math
import time
from typing import Dict, Any, List, Sequence

from schemas import RouteOptions

BASE_SPEEDS_KMH = {"eco": 25, "shortest": 35}
DEFAULT_SPEED_KMH = 30
MIN_DURATION_SECONDS = 300
TRAFFIC_MULTIPLIER = 1.2


def calculate_distance(origin: Sequence[float], destination: Sequence[float]) -> float:
    """Calculate distance in meters using Haversine formula"""
    R = 6371000  # Earth radius in meters
    lon1, lat1, lon2, lat2 = map(math.radians, [origin[0], origin[1], destination[0], destination[1]])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return R * c


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


def _point_at(origin: Sequence[float], destination: Sequence[float], fraction: float) -> List[float]:
    return [
        origin[0] + (destination[0] - origin[0]) * fraction,
        origin[1] + (destination[1] - origin[1]) * fraction,
    ]


def _route_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}"


def route_geometry(origin: Sequence[float], destination: Sequence[float]) -> List[List[float]]:
    """Start, three gently curved waypoints, end"""
    waypoints = [list(origin)]
    for i in range(1, 4):
        progress = i / 4
        lng, lat = _point_at(origin, destination, progress)
        variation = 0.0001 * math.sin(progress * math.pi * 2)
        waypoints.append([lng + variation, lat + variation])
    waypoints.append(list(destination))
    return waypoints


def calculate_route(origin: Sequence[float], destination: Sequence[float], options: RouteOptions) -> Dict[str, Any]:
    distance = calculate_distance(origin, destination)
    speed = BASE_SPEEDS_KMH.get(options.route_type, DEFAULT_SPEED_KMH)
    duration = max(MIN_DURATION_SECONDS, distance / 1000 / speed * 3600)
    multiplier = 1.0 if options.avoid_traffic else TRAFFIC_MULTIPLIER
    total_duration = duration * multiplier

    steps = [
        {
            "id": "step_1",
            "instruction": "Head toward your destination",
            "distance": _js_round(distance * 0.3),
            "duration": _js_round(total_duration * 0.3),
            "maneuver": {"type": "straight"},
            "street_name": "Current Street",
            "coordinates": _point_at(origin, destination, 0.3),
            "speed_limit": 35,
        },
        {
            "id": "step_2",
            "instruction": "Continue straight on main route",
            "distance": _js_round(distance * 0.4),
            "duration": _js_round(total_duration * 0.4),
            "maneuver": {"type": "straight"},
            "street_name": "Main Route",
            "coordinates": _point_at(origin, destination, 0.7),
            "speed_limit": 30,
            "lane_guidance": {
                "lanes": [
                    {"valid": True, "indications": ["straight"]},
                    {"valid": True, "indications": ["straight"]},
                    {"valid": False, "indications": ["right"]},
                ]
            },
        },
        {
            "id": "step_3",
            "instruction": "Arrive at your destination",
            "distance": _js_round(distance * 0.3),
            "duration": _js_round(total_duration * 0.3),
            "maneuver": {"type": "arrive"},
            "street_name": "Destination Street",
            "coordinates": list(destination),
        },
    ]

    return {
        "id": _route_id("route"),
        "distance": _js_round(distance),
        "duration": _js_round(total_duration),
        "traffic_delays": _js_round(duration * (multiplier - 1)),
        "geometry": route_geometry(origin, destination),
        "steps": steps,
    }


def recalculate_route(origin: Sequence[float], destination: Sequence[float]) -> Dict[str, Any]:
    """Quick reroute after the driver leaves the planned path"""
    distance = calculate_distance(origin, destination)
    duration = max(MIN_DURATION_SECONDS, distance / 10)

    return {
        "id": _route_id("recalc_route"),
        "distance": _js_round(distance),
        "duration": _js_round(duration),
        "traffic_delays": _js_round(duration * 0.15),
        "geometry": [
            list(origin),
            _point_at(origin, destination, 0.33),
            _point_at(origin, destination, 0.66),
            list(destination),
        ],
        "steps": [
            {
                "id": "recalc_step_1",
                "instruction": "Head toward your destination",
                "distance": _js_round(distance * 0.6),
                "duration": _js_round(duration * 0.6),
                "maneuver": {"type": "straight"},
                "street_name": "Recalculated Route",
                "coordinates": _point_at(origin, destination, 0.3),
                "speed_limit": 30,
            },
            {
                "id": "recalc_step_2",
                "instruction": "Continue to destination",
                "distance": _js_round(distance * 0.4),
                "duration": _js_round(duration * 0.4),
                "maneuver": {"type": "straight"},
                "street_name": "Destination Street",
                "coordinates": _point_at(origin, destination, 0.7),
                "speed_limit": 25,
            },
            {
                "id": "recalc_step_3",
                "instruction": "Arrive at destination",
                "distance": 0,
                "duration": 30,
                "maneuver": {"type": "arrive"},
                "street_name": "Destination",
                "coordinates": list(destination),
            },
        ],
    }
