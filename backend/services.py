"""
External API service layer with resilience patterns
"""
import httpx
from typing import List, Dict, Any, Optional
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from circuitbreaker import CircuitBreaker, CircuitBreakerError
from logging_config import get_logger
from exceptions import ExternalAPIException
from config import get_settings
from monitoring import track_external_api

logger = get_logger(__name__)
settings = get_settings()


class BaseAPIClient:
    """Base class for API clients with common patterns"""

    _breakers: Dict[str, CircuitBreaker] = {}

    def __init__(self, base_url: str, timeout: int = 30, headers: Optional[Dict[str, str]] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.headers = headers or {"Accept": "application/json"}
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.headers,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10)
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
            self.client = None

    @property
    def service_name(self) -> str:
        return self.__class__.__name__

    def _breaker(self) -> CircuitBreaker:
        """One breaker per client class so a failing upstream does not trip the others"""
        name = self.service_name
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(failure_threshold=5, recovery_timeout=60, name=name)
        return self._breakers[name]

    async def _request_once(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        return await self.client.request(method, endpoint, **kwargs)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True
    )
    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        return await self._breaker()(self._request_once)(method, endpoint, **kwargs)

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Make HTTP request with retry and circuit breaker"""
        if not self.client:
            raise RuntimeError("Client not initialized. Use async context manager.")

        try:
            response = await self._send(method, endpoint, **kwargs)
            response.raise_for_status()
            return response

        except httpx.HTTPStatusError as e:
            logger.error(f"{self.service_name} HTTP error {e.response.status_code}: {e.response.text[:200]}")
            raise ExternalAPIException(
                self.service_name,
                f"HTTP {e.response.status_code}",
                502
            )
        except httpx.RequestError as e:
            logger.error(f"{self.service_name} request error: {e}")
            raise ExternalAPIException(self.service_name, str(e), 503)
        except CircuitBreakerError as e:
            logger.warning(f"{self.service_name} circuit open: {e}")
            raise ExternalAPIException(self.service_name, "circuit open", 503)

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            logger.error(f"{self.service_name} returned a non-JSON body: {response.text[:200]}")
            raise ExternalAPIException(self.service_name, "invalid JSON response", 502)


class NYCOpenDataClient(BaseAPIClient):
    """NYC Open Data parking regulations"""

    def __init__(self):
        super().__init__(
            base_url="https://data.cityofnewyork.us",
            timeout=settings.city_data_timeout
        )

    @track_external_api("nyc_opendata")
    async def get_parking_regulations(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET",
            "/resource/pvqr-7yc4.json",
            params={"$where": f"within_circle(the_geom,{lat},{lng},{radius})"}
        )
        data = self._json(response)
        return data if isinstance(data, list) else []


class SFOpenDataClient(BaseAPIClient):
    """San Francisco parking meter inventory"""

    def __init__(self):
        super().__init__(
            base_url="https://data.sfgov.org",
            timeout=settings.city_data_timeout
        )

    @track_external_api("sf_opendata")
    async def get_parking_meters(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET",
            "/resource/imvp-dq3v.json",
            params={"$where": f"within_circle(location,{lat},{lng},{radius})"}
        )
        data = self._json(response)
        return data if isinstance(data, list) else []


class ParisOpenDataClient(BaseAPIClient):
    """Paris on-street parking places"""

    def __init__(self):
        super().__init__(
            base_url="https://opendata.paris.fr",
            timeout=settings.city_data_timeout
        )

    @track_external_api("paris_opendata")
    async def get_street_parking(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET",
            "/api/records/1.0/search/",
            params={
                "dataset": "stationnement-voie-publique-emplacements",
                "geofilter.distance": f"{lat},{lng},{radius}"
            }
        )
        data = self._json(response)
        return (data.get("records") or []) if isinstance(data, dict) else []


class TfLClient(BaseAPIClient):
    """Transport for London car park places"""

    def __init__(self, api_key: str):
        super().__init__(
            base_url="https://api.tfl.gov.uk",
            timeout=settings.city_data_timeout
        )
        self.api_key = api_key

    @track_external_api("tfl")
    async def search_car_parks(self, lat: float, lng: float, radius: int) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET",
            "/Place",
            params={
                "lat": lat,
                "lon": lng,
                "radius": radius,
                "type": "CarPark",
                "app_key": self.api_key
            }
        )
        data = self._json(response)
        # The geographic endpoint wraps results in {"places": [...]}
        if isinstance(data, dict):
            data = data.get("places") or []
        logger.info(f"TfL returned {len(data)} places")
        return data

    @track_external_api("tfl")
    async def list_car_parks(self) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET",
            "/Place/Type/CarPark",
            params={"app_key": self.api_key}
        )
        return self._json(response)


class GooglePlacesClient(BaseAPIClient):
    """Google Places nearby search"""

    def __init__(self, api_key: str):
        super().__init__(
            base_url="https://maps.googleapis.com",
            timeout=settings.city_data_timeout
        )
        self.api_key = api_key

    @track_external_api("google_places")
    async def nearby_search(self, lat: float, lng: float, radius: int, place_type: str) -> List[Dict[str, Any]]:
        response = await self._make_request(
            "GET",
            "/maps/api/place/nearbysearch/json",
            params={
                "location": f"{lat},{lng}",
                "radius": radius,
                "type": place_type,
                "keyword": "parking",
                "key": self.api_key
            }
        )
        data = self._json(response)
        return (data.get("results") or []) if isinstance(data, dict) else []


class GrokClient(BaseAPIClient):
    """xAI chat completions"""

    def __init__(self, api_key: str):
        super().__init__(
            base_url=settings.xai_base_url,
            timeout=settings.xai_timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json"
            }
        )

    @track_external_api("xai")
    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int = 200,
        temperature: float = 0.7
    ) -> Dict[str, Any]:
        response = await self._make_request(
            "POST",
            "/chat/completions",
            json={
                "model": model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature
            }
        )
        return self._json(response)


class MapboxClient(BaseAPIClient):
    """Mapbox token verification"""

    def __init__(self, access_token: str):
        super().__init__(base_url="https://api.mapbox.com", timeout=10)
        self.access_token = access_token

    @track_external_api("mapbox")
    async def check_token(self) -> bool:
        try:
            await self._make_request(
                "GET",
                "/geocoding/v5/mapbox.places/test.json",
                params={"access_token": self.access_token}
            )
            return True
        except ExternalAPIException as e:
            if e.status_code == 502:
                return False
            raise


class FCMClient(BaseAPIClient):
    """Firebase Cloud Messaging push delivery"""

    def __init__(self, server_key: str):
        super().__init__(
            base_url="https://fcm.googleapis.com",
            timeout=10,
            headers={
                "Authorization": f"key={server_key}",
                "Content-Type": "application/json"
            }
        )

    @track_external_api("fcm")
    async def send(self, token: str, title: str, body: str) -> Dict[str, Any]:
        response = await self._make_request(
            "POST",
            "/fcm/send",
            json={"to": token, "notification": {"title": title, "body": body}}
        )
        return self._json(response)
