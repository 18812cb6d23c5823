"""
Application monitoring and metrics
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from functools import wraps
import time
from fastapi import Request, Response
from logging_config import get_logger

logger = get_logger(__name__)

request_count = Counter(
    'park_algo_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'park_algo_http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

active_requests = Gauge(
    'park_algo_http_requests_active',
    'Active HTTP requests'
)

spot_holds = Counter(
    'park_algo_spot_holds_total',
    'Spot hold transitions',
    ['status']
)

prediction_cache = Counter(
    'park_algo_prediction_cache_total',
    'Predictor cache lookups',
    ['result']
)

external_api_calls = Counter(
    'park_algo_external_api_calls_total',
    'External API calls',
    ['api', 'status']
)

external_api_duration = Histogram(
    'park_algo_external_api_duration_seconds',
    'External API call duration',
    ['api']
)

webhook_events = Counter(
    'park_algo_stripe_webhook_events_total',
    'Stripe webhook events received',
    ['event_type']
)


def _route_template(request: Request) -> str:
    """Use the matched route path so path parameters don't explode label cardinality"""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


async def metrics_middleware(request: Request, call_next):
    """Collect request count, latency and concurrency"""
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    active_requests.inc()

    try:
        response = await call_next(request)

        endpoint = _route_template(request)
        request_count.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()
        request_duration.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(time.time() - start_time)

        return response
    finally:
        active_requests.dec()


def track_external_api(api_name: str):
    """Decorator to track external API calls"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()

            try:
                result = await func(*args, **kwargs)
                external_api_calls.labels(api=api_name, status='success').inc()
                return result
            except Exception:
                external_api_calls.labels(api=api_name, status='error').inc()
                raise
            finally:
                external_api_duration.labels(api=api_name).observe(time.time() - start_time)

        return wrapper
    return decorator


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
