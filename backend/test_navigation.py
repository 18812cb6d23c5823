"""
Tests for synthetic route calculation
"""
import pytest

from navigation import calculate_distance, calculate_route, recalculate_route, route_geometry
from schemas import RouteOptions

TIMES_SQUARE = [-73.9855, 40.7580]
ONE_KM_NORTH = [-73.9855, 40.7670]
TEN_KM_NORTH = [-73.9855, 40.8479]


class TestDistance:
    """Test haversine distance"""

    def test_zero(self):
        assert calculate_distance(TIMES_SQUARE, TIMES_SQUARE) == 0

    def test_latitude_degree(self):
        # 0.009 degrees of latitude is about one kilometre
        assert calculate_distance(TIMES_SQUARE, ONE_KM_NORTH) == pytest.approx(1000.8, abs=1)

    def test_symmetric(self):
        assert calculate_distance(TIMES_SQUARE, TEN_KM_NORTH) == pytest.approx(
            calculate_distance(TEN_KM_NORTH, TIMES_SQUARE)
        )


class TestCalculateRoute:
    """Test full route calculation"""

    def test_short_route_uses_minimum_duration(self):
        route = calculate_route(TIMES_SQUARE, ONE_KM_NORTH, RouteOptions())

        assert route["distance"] == 1001
        assert route["duration"] == 360
        assert route["traffic_delays"] == 60
        assert route["id"].startswith("route_")

    def test_avoid_traffic(self):
        route = calculate_route(TIMES_SQUARE, ONE_KM_NORTH, RouteOptions(avoid_traffic=True))

        assert route["duration"] == 300
        assert route["traffic_delays"] == 0

    @pytest.mark.parametrize("route_type,speed", [("fastest", 30), ("eco", 25), ("shortest", 35)])
    def test_speed_by_route_type(self, route_type, speed):
        route = calculate_route(TIMES_SQUARE, TEN_KM_NORTH, RouteOptions(route_type=route_type, avoid_traffic=True))
        distance = calculate_distance(TIMES_SQUARE, TEN_KM_NORTH)

        assert route["duration"] == pytest.approx(distance / 1000 / speed * 3600, abs=1)

    def test_steps_split_distance(self):
        route = calculate_route(TIMES_SQUARE, TEN_KM_NORTH, RouteOptions())
        steps = route["steps"]

        assert len(steps) == 3
        assert [s["maneuver"]["type"] for s in steps][-1] == "arrive"
        assert steps[1]["distance"] == pytest.approx(route["distance"] * 0.4, abs=1)
        assert steps[1]["lane_guidance"]["lanes"]
        assert steps[2]["coordinates"] == TEN_KM_NORTH

    def test_geometry(self):
        geometry = route_geometry(TIMES_SQUARE, TEN_KM_NORTH)

        assert len(geometry) == 5
        assert geometry[0] == TIMES_SQUARE
        assert geometry[-1] == TEN_KM_NORTH
        # sin(pi) puts the midpoint back on the straight line
        assert geometry[2][1] == pytest.approx((TIMES_SQUARE[1] + TEN_KM_NORTH[1]) / 2)
        assert geometry[1][0] == pytest.approx(TIMES_SQUARE[0] + 0.0001)


class TestRecalculateRoute:
    """Test rerouting"""

    def test_recalculate(self):
        route = recalculate_route(TIMES_SQUARE, ONE_KM_NORTH)

        assert route["id"].startswith("recalc_route_")
        assert route["duration"] == 300
        assert route["traffic_delays"] == 45
        assert len(route["geometry"]) == 4
        assert route["geometry"][1][1] == pytest.approx(TIMES_SQUARE[1] + (ONE_KM_NORTH[1] - TIMES_SQUARE[1]) * 0.33)
        assert route["steps"][-1]["distance"] == 0
        assert route["steps"][-1]["duration"] == 30

    def test_long_reroute(self):
        route = recalculate_route(TIMES_SQUARE, TEN_KM_NORTH)
        assert route["duration"] == pytest.approx(calculate_distance(TIMES_SQUARE, TEN_KM_NORTH) / 10, abs=1)


class TestNavigationEndpoints:
    """Test navigation routes"""

    def test_calculate(self, client):
        response = client.post("/api/v1/navigation/calculate-route", json={
            "from": TIMES_SQUARE,
            "to": ONE_KM_NORTH,
            "options": {"route_type": "eco", "avoid_traffic": True},
        })
        assert response.status_code == 200
        assert response.json()["distance"] == 1001

    def test_recalculate(self, client):
        response = client.post("/api/v1/navigation/recalculate-route", json={
            "from": TIMES_SQUARE, "to": ONE_KM_NORTH
        })
        assert response.status_code == 200
        assert len(response.json()["steps"]) == 3

    @pytest.mark.parametrize("origin", [[-73.98], [-200, 40.75], [-73.98, 95], "nowhere"])
    def test_malformed_coordinates(self, client, origin):
        response = client.post("/api/v1/navigation/calculate-route", json={
            "from": origin, "to": ONE_KM_NORTH
        })
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_request"
