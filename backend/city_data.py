"""
City open-data, TfL and Google Places parking lookups normalised to a common spot shape
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from cache import cached
from config import get_settings
from exceptions import ExternalAPIException
from logging_config import get_logger
from services import (
    NYCOpenDataClient, SFOpenDataClient, ParisOpenDataClient, TfLClient, GooglePlacesClient
)

logger = get_logger(__name__)

CITY_BOUNDS = {
    "SF": {"name": "San Francisco", "north": 37.8324, "south": 37.7049, "east": -122.3482, "west": -122.5584},
    "NYC": {"name": "New York City", "north": 40.9176, "south": 40.4774, "east": -73.7004, "west": -74.2591},
    "LONDON": {"name": "London", "north": 51.6723, "south": 51.2867, "east": 0.334, "west": -0.5103},
    "PARIS": {"name": "Paris", "north": 48.9021, "south": 48.8155, "east": 2.4699, "west": 2.2241},
}

GOOGLE_SEARCH_TYPES = ["parking", "gas_station", "shopping_mall", "airport"]


def detect_city(lat: float, lng: float) -> Optional[str]:
    for key, bounds in CITY_BOUNDS.items():
        if bounds["south"] <= lat <= bounds["north"] and bounds["west"] <= lng <= bounds["east"]:
            return key
    return None


def _spot(spot_id: str, name: str, lat: float, lng: float, address: str, spot_type: str,
          provider: str, provider_id: Any, **extra) -> Dict[str, Any]:
    spot = {
        "id": spot_id,
        "name": name,
        "latitude": lat,
        "longitude": lng,
        "address": address,
        "spot_type": spot_type,
        "is_available": True,
        "provider": provider,
        "provider_id": provider_id,
        "real_time_data": False,
        "last_updated": datetime.utcnow().isoformat(),
    }
    spot.update({k: v for k, v in extra.items() if v is not None})
    return spot


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# City portals

def normalize_sf_meter(meter: Dict[str, Any], lat: float, lng: float) -> Dict[str, Any]:
    location = meter.get("location") or {}
    post_id = meter.get("post_id")
    return _spot(
        f"sf_{post_id}", f"Parking Meter {post_id}",
        _to_float(location.get("latitude"), lat), _to_float(location.get("longitude"), lng),
        f"{meter.get('street_name') or 'Street'}, San Francisco, CA",
        "meter", "city_api", post_id,
        price_per_hour=4.0, max_duration_hours=2,
    )


def normalize_nyc_regulation(regulation: Dict[str, Any], index: int, lat: float, lng: float) -> Dict[str, Any]:
    geom = regulation.get("the_geom") or {}
    coords = geom.get("coordinates") if isinstance(geom, dict) else None
    spot_lat, spot_lng = (coords[1], coords[0]) if coords and len(coords) == 2 else (lat, lng)
    description = regulation.get("regulation_description")
    return _spot(
        f"nyc_{index}", "NYC Parking Zone", spot_lat, spot_lng,
        f"{regulation.get('street_name') or 'Street'}, New York, NY",
        "street", "city_api", f"nyc_{index}",
        price_per_hour=3.0, restrictions=[description] if description else [],
    )


def normalize_paris_record(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    coords = (record.get("geometry") or {}).get("coordinates")
    if not coords:
        return None
    fields = record.get("fields") or {}
    return _spot(
        f"paris_{record.get('recordid')}", "Paris Street Parking", coords[1], coords[0],
        f"{fields.get('adresse') or 'Paris'}, France",
        "street", "city_api", record.get("recordid"),
        price_per_hour=2.4,
    )


# TfL

def _properties(place: Dict[str, Any]) -> Dict[str, Any]:
    return {p.get("key"): p.get("value") for p in place.get("additionalProperties") or []}


def _first(props: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        if props.get(key):
            return props[key]
    return None


def _flag(props: Dict[str, Any], *keys: str) -> bool:
    return any(str(props.get(key)).lower() == "true" for key in keys)


def tfl_spot_type(name: str, props: Dict[str, Any]) -> str:
    name = (name or "").lower()
    kind = str(_first(props, "Type", "ParkingType") or "").lower()

    if "multi-storey" in name or "underground" in name or "garage" in kind:
        return "garage"
    if "surface" in name or "surface" in kind or "lot" in kind:
        return "lot"
    if "street" in name or "street" in kind:
        return "street"
    if "private" in name or "private" in kind:
        return "private"
    return "garage"


def tfl_address(name: str, props: Dict[str, Any]) -> str:
    parts = [p for p in (
        _first(props, "Address", "Location", "Street"),
        _first(props, "Postcode", "PostCode"),
    ) if p]
    if not parts:
        return f"{name}, London, UK"
    return f"{', '.join(parts)}, London, UK"


def tfl_restrictions(props: Dict[str, Any]) -> List[str]:
    restrictions = []

    max_stay = _first(props, "MaxStay", "TimeLimit")
    if max_stay:
        restrictions.append(f"Max stay: {max_stay}")

    height = _first(props, "HeightRestriction", "MaxHeight")
    if height:
        restrictions.append(f"Height limit: {height}")

    access = _first(props, "Access", "AccessRestrictions")
    if access and str(access).lower() != "public":
        restrictions.append(f"Access: {access}")

    permit = _first(props, "PermitRequired", "Permit")
    if str(permit).lower() in ("true", "yes"):
        restrictions.append("Permit required")

    return restrictions


def tfl_payment_methods(props: Dict[str, Any]) -> List[str]:
    payment = str(_first(props, "PaymentMethods", "Payment") or "").lower()
    methods = []
    if "card" in payment or "credit" in payment:
        methods.append("Credit Card")
    if "cash" in payment:
        methods.append("Cash")
    if "contactless" in payment:
        methods.append("Contactless")
    if "oyster" in payment:
        methods.append("Oyster Card")
    if "app" in payment or "mobile" in payment:
        methods.append("Mobile App")
    return methods or ["Card", "Cash"]


def tfl_contact_info(props: Dict[str, Any]) -> Optional[Dict[str, str]]:
    contact = {
        "phone": _first(props, "Phone", "Telephone", "Contact"),
        "website": _first(props, "Website", "URL", "Web"),
        "email": _first(props, "Email", "EmailAddress"),
    }
    contact = {k: v for k, v in contact.items() if v}
    return contact or None


def normalize_tfl_place(place: Dict[str, Any]) -> Dict[str, Any]:
    props = _properties(place)
    name = place.get("commonName") or "TfL Car Park"
    lowered = name.lower()

    spaces = _first(props, "Spaces", "TotalSpaces", "Capacity")
    price = _first(props, "PricePerHour", "HourlyRate", "Cost")
    hours = _first(props, "OpeningHours", "Hours")

    try:
        total_spaces = int(spaces) if spaces else None
    except ValueError:
        total_spaces = None

    return _spot(
        f"tfl_{place.get('id')}", name, place.get("lat"), place.get("lon"),
        tfl_address(name, props), tfl_spot_type(name, props), "tfl", place.get("id"),
        total_spaces=total_spaces,
        price_per_hour=_to_float(price),
        restrictions=tfl_restrictions(props),
        payment_methods=tfl_payment_methods(props),
        accessibility=_flag(props, "DisabledAccess", "WheelchairAccess", "Accessible"),
        covered=(
            _flag(props, "Covered", "Indoor")
            or "multi-storey" in lowered
            or "underground" in lowered
        ),
        security=_flag(props, "Security", "CCTV", "Staffed"),
        ev_charging=_flag(props, "EVCharging", "ElectricCharging"),
        opening_hours={"note": hours} if hours else None,
        contact_info=tfl_contact_info(props),
        distance=place.get("distance") or 0,
    )


# Google Places

def google_spot_type(name: str) -> str:
    name = name.lower()
    if "garage" in name or "structure" in name:
        return "garage"
    if "lot" in name or "surface" in name:
        return "lot"
    if "meter" in name or "street" in name:
        return "meter"
    return "lot"


def normalize_google_place(place: Dict[str, Any]) -> Dict[str, Any]:
    location = place["geometry"]["location"]
    price_level = place.get("price_level")
    return _spot(
        f"google_{place['place_id']}", place["name"], location["lat"], location["lng"],
        place.get("vicinity") or place.get("formatted_address"),
        google_spot_type(place["name"]), "google_places", place["place_id"],
        price_per_hour=price_level * 5 if price_level else None,
    )


MALFORMED_RECORD_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError)


def normalize_records(records: List[Any], normalizer: Callable[..., Optional[Dict[str, Any]]],
                      source: str, *args: Any) -> List[Dict[str, Any]]:
    """Normalise upstream records, skipping the ones that do not parse"""
    spots = []
    for record in records:
        try:
            spot = normalizer(record, *args)
        except MALFORMED_RECORD_ERRORS as e:
            logger.warning(f"Skipping malformed {source} record: {e!r}")
            continue
        if spot:
            spots.append(spot)
    return spots


class CityDataService:
    """Fetch third-party parking data; failures degrade to an empty list"""

    @cached("city_data")
    async def city_spots(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        city = detect_city(lat, lng)
        if city is None:
            return []

        try:
            if city == "SF":
                async with SFOpenDataClient() as client:
                    meters = await client.get_parking_meters(lat, lng, radius)
                return normalize_records(meters, normalize_sf_meter, "SF meter", lat, lng)

            if city == "NYC":
                async with NYCOpenDataClient() as client:
                    regulations = await client.get_parking_regulations(lat, lng, radius)
                return normalize_records(
                    list(enumerate(regulations[:50])),
                    lambda item, *origin: normalize_nyc_regulation(item[1], item[0], *origin),
                    "NYC regulation", lat, lng
                )

            if city == "LONDON":
                return (await self.tfl_spots(lat, lng, radius))[:20]

            if city == "PARIS":
                async with ParisOpenDataClient() as client:
                    records = await client.get_street_parking(lat, lng, radius)
                return normalize_records(records[:30], normalize_paris_record, "Paris")

        except ExternalAPIException as e:
            logger.error(f"Error fetching {CITY_BOUNDS[city]['name']} parking data: {e.message}")
        return []

    async def tfl_spots(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        api_key = get_settings().tfl_api_key
        if not api_key:
            logger.info("TfL API key not configured")
            return []

        try:
            async with TfLClient(api_key) as client:
                places = await client.search_car_parks(lat, lng, radius)
        except ExternalAPIException as e:
            logger.error(f"TfL lookup failed: {e.message}")
            return []

        car_parks = [p for p in places if isinstance(p, dict) and p.get("placeType") == "CarPark"]
        return normalize_records(car_parks, normalize_tfl_place, "TfL")

    async def tfl_status(self) -> Dict[str, Any]:
        """Connectivity check against the full TfL car park list"""
        api_key = get_settings().tfl_api_key
        if not api_key:
            raise ExternalAPIException("tfl", "TfL API key not configured", 500)

        try:
            async with TfLClient(api_key) as client:
                car_parks = await client.list_car_parks()
        except ExternalAPIException as e:
            logger.error(f"TfL connectivity check failed: {e.message}")
            raise ExternalAPIException("tfl", "Failed to connect to TfL API", 500)
        return {
            "total": len(car_parks),
            "car_parks": car_parks[:10],
            "message": "TfL API connection successful",
        }

    @cached("google_places")
    async def google_places_spots(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        api_key = get_settings().google_places_api_key
        if not api_key:
            return []

        spots: Dict[str, Dict[str, Any]] = {}
        async with GooglePlacesClient(api_key) as client:
            for place_type in GOOGLE_SEARCH_TYPES:
                try:
                    results = await client.nearby_search(lat, lng, radius, place_type)
                except ExternalAPIException as e:
                    logger.warning(f"Google Places search for {place_type} failed: {e.message}")
                    continue
                for spot in normalize_records(results, normalize_google_place, "Google Places"):
                    if "parking" in spot["name"].lower() and spot["provider_id"] not in spots:
                        spots[spot["provider_id"]] = spot
        return list(spots.values())


city_data_service = CityDataService()
