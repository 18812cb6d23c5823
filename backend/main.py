# Park Algo Backend Service

import asyncio
import uuid
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import admin
import notifications
import payments
from analytics import AnalyticsDashboard, DEFAULT_RANGE, track_client_event
from assistant import chat
from auth import get_current_user, get_optional_user, require_admin, require_cron_or_admin
from cache import cache
from city_data import city_data_service
from config import get_settings, Settings
from database import check_database, get_db, init_db
from exceptions import (
    ParkAlgoException, ExternalAPIException,
    exception_handler, generic_exception_handler,
    http_exception_handler, validation_exception_handler
)
from holds import HoldService, run_hold_reaper, serialize_hold
from logging_config import setup_logging, get_logger
from marketing import MarketingAutomationManager, query_automation, run_automation_action
from models import Profile
from monitoring import metrics_endpoint, metrics_middleware
from navigation import calculate_route, recalculate_route
from predictor import predictor
from schemas import (
    AnalyticsTrackRequest, ArrivalConfirmation, BatchPredictionRequest,
    CancelSubscriptionRequest, ChatRequest, ChatResponse, CheckoutRequest, CityDataQuery,
    HealthResponse, MarketingActionRequest, NotificationSubscribe, NotificationUnsubscribe,
    PaymentIntentRequest, Route, RouteRequest, SpotHoldCreate, SpotPrediction,
    SpotReportCreate, SpotUpdate, SuspendRequest, TrialRequest
)
from services import MapboxClient
from spots import SpotService, list_reports, serialize_spot
from subscriptions import PLANS, SubscriptionService
from webhooks import StripeWebhookHandler

# Initialize
settings = get_settings()
setup_logging(settings.log_level, settings.log_format)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    logger.info(f"Starting {settings.api_title} v{settings.api_version}")
    logger.info(f"Environment: {settings.environment}, cache backend: {cache.backend}")

    missing = settings.missing_integrations()
    if missing:
        logger.warning(f"Missing configuration: {', '.join(missing)}")

    init_db()
    reaper = None
    if settings.hold_reaper_interval > 0:
        reaper = asyncio.create_task(run_hold_reaper(settings.hold_reaper_interval))

    yield

    if reaper is not None:
        reaper.cancel()
        with suppress(asyncio.CancelledError):
            await reaper
    logger.info("Shutting down Park Algo API")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    openapi_url=f"{settings.api_prefix}/openapi.json"
)

app.add_exception_handler(ParkAlgoException, exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_credentials,
    allow_methods=settings.cors_methods,
    allow_headers=settings.cors_headers,
)

if settings.enable_compression:
    app.add_middleware(GZipMiddleware, minimum_size=1000)

app.middleware("http")(metrics_middleware)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add unique request ID for tracing"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={"request_id": request_id}
    )

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id

    logger.info(
        f"Request completed: {response.status_code}",
        extra={"request_id": request_id}
    )

    return response


app.add_route("/metrics", metrics_endpoint, include_in_schema=False)


async def get_settings_dep() -> Settings:
    return get_settings()


# General

@app.get("/", tags=["General"])
async def root():
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "docs": f"{settings.api_prefix}/docs",
    }


@app.get(
    f"{settings.api_prefix}/health",
    response_model=HealthResponse,
    tags=["General"]
)
def health_check(db: Session = Depends(get_db)):
    """Service health including cache and database connectivity"""
    cache_status = "healthy" if cache.ping() else "degraded"
    database_status = "healthy" if check_database(db) else "unavailable"

    return HealthResponse(
        status="healthy" if database_status == "healthy" else "degraded",
        timestamp=datetime.utcnow(),
        version=settings.api_version,
        cache_status=cache_status,
        database_status=database_status,
        missing_config=settings.missing_integrations(),
    )


# Profile

@app.post(f"{settings.api_prefix}/profile/sync", tags=["Profile"])
def sync_profile(user: Profile = Depends(get_current_user)) -> Dict[str, Any]:
    """Create or refresh the caller's profile"""
    return {"success": True, "profile": admin.serialize_profile(user)}


# Spots

@app.get(f"{settings.api_prefix}/spots/nearby", tags=["Spots"])
def nearby_spots(
    lat: float = Query(..., description="Latitude"),
    lng: float = Query(..., description="Longitude"),
    radius: int = Query(default=500, description="Search radius in meters"),
    user: Optional[Profile] = Depends(get_optional_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SpotService(db).nearby(lat, lng, radius, user)


@app.post(f"{settings.api_prefix}/spots/report", tags=["Spots"], status_code=201)
def report_spot(
    payload: SpotReportCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Report a spot that just became free"""
    spot = SpotService(db).report(user, payload)
    return {"success": True, "spot": serialize_spot(spot, datetime.utcnow())}


@app.post(f"{settings.api_prefix}/spots/hold", tags=["Spot Holds"], status_code=201)
def create_hold(
    payload: SpotHoldCreate,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Lock a spot and start payment for the hold"""
    return HoldService(db).create_hold(user, payload.spot_id, payload.duration)


@app.get(f"{settings.api_prefix}/spots/hold", tags=["Spot Holds"])
def get_holds(
    spot_id: Optional[str] = Query(default=None),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    service = HoldService(db)
    if spot_id:
        hold = service.live_hold_for_spot(spot_id)
        return {"hold": serialize_hold(hold) if hold else None}
    return {"holds": [serialize_hold(h) for h in service.user_holds(user)]}


@app.get(f"{settings.api_prefix}/spots/hold/{{hold_id}}", tags=["Spot Holds"])
def get_hold(
    hold_id: str = Path(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return {"hold": serialize_hold(HoldService(db).get_hold(user, hold_id))}


@app.delete(f"{settings.api_prefix}/spots/hold/{{hold_id}}", tags=["Spot Holds"])
def release_hold(
    hold_id: str = Path(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    hold = HoldService(db).release_hold(user, hold_id)
    return {"success": True, "hold": serialize_hold(hold)}


@app.get(f"{settings.api_prefix}/spots/{{spot_id}}", tags=["Spots"])
def get_spot(spot_id: str = Path(...), db: Session = Depends(get_db)) -> Dict[str, Any]:
    spot = SpotService(db).get(spot_id)
    return {
        "spot": serialize_spot(spot, datetime.utcnow()),
        "reports": [
            {
                "id": r.id,
                "report_type": r.report_type,
                "notes": r.notes,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in list_reports(db, spot_id)
        ],
    }


@app.patch(f"{settings.api_prefix}/spots/{{spot_id}}", tags=["Spots"])
def update_spot(
    payload: SpotUpdate,
    spot_id: str = Path(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    spot = SpotService(db).update(user, spot_id, payload)
    return {"success": True, "spot": serialize_spot(spot, datetime.utcnow())}


@app.delete(f"{settings.api_prefix}/spots/{{spot_id}}", tags=["Spots"])
def delete_spot(
    spot_id: str = Path(...),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    SpotService(db).delete(user, spot_id)
    return {"success": True}


# Parking data

@app.post(f"{settings.api_prefix}/parking/confirm-arrival", tags=["Parking"])
def confirm_arrival(
    payload: ArrivalConfirmation,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SpotService(db).confirm_arrival(user, payload)


@app.post(f"{settings.api_prefix}/parking/city-data", tags=["Parking"])
async def city_data(query: CityDataQuery) -> Dict[str, Any]:
    """Open-data parking for supported cities"""
    spots = await city_data_service.city_spots(query.lat, query.lng, query.radius)
    return {"spots": spots}


@app.post(f"{settings.api_prefix}/parking/tfl", tags=["Parking"])
async def tfl_parking(query: CityDataQuery) -> Dict[str, Any]:
    spots = await city_data_service.tfl_spots(query.lat, query.lng, query.radius)
    return {"spots": spots}


@app.get(f"{settings.api_prefix}/parking/tfl", tags=["Parking"])
async def tfl_status() -> Dict[str, Any]:
    return await city_data_service.tfl_status()


@app.post(f"{settings.api_prefix}/parking/google-places", tags=["Parking"])
async def google_places(query: CityDataQuery) -> Dict[str, Any]:
    spots = await city_data_service.google_places_spots(query.lat, query.lng, query.radius)
    return {"spots": spots}


# Maps

@app.get(f"{settings.api_prefix}/mapbox/token", tags=["Maps"])
async def mapbox_token(config: Settings = Depends(get_settings_dep)) -> Dict[str, Any]:
    if not config.mapbox_access_token:
        logger.error("Mapbox token not found in environment variables")
        raise ParkAlgoException(
            "Mapbox token not configured",
            500,
            {"hint": "Set the MAPBOX_ACCESS_TOKEN environment variable"},
            "mapbox_not_configured"
        )
    return {"token": config.mapbox_access_token}


@app.get(f"{settings.api_prefix}/mapbox/status", tags=["Maps"])
async def mapbox_status(config: Settings = Depends(get_settings_dep)) -> Dict[str, Any]:
    if not config.mapbox_access_token:
        return {"configured": False, "error": "Token not configured"}

    try:
        async with MapboxClient(config.mapbox_access_token) as client:
            valid = await client.check_token()
    except ExternalAPIException:
        return {"configured": True, "connected": False, "error": "Connection failed"}

    if valid:
        return {"configured": True, "connected": True}
    return {"configured": True, "connected": False, "error": "Invalid token"}


@app.get(f"{settings.api_prefix}/maps/config", tags=["Maps"])
async def maps_config(config: Settings = Depends(get_settings_dep)) -> Dict[str, Any]:
    # 200 either way so the client can switch to its fallback map
    if not config.google_maps_api_key:
        logger.error("Missing Google Maps API key in server environment")
        return {"error": "Maps configuration not available", "use_fallback": True}
    return {
        "api_key": config.google_maps_api_key,
        "libraries": ["places", "geometry"],
        "region": "US",
        "language": "en",
    }


# Predictions

@app.get(
    f"{settings.api_prefix}/predictions/spots/{{spot_id}}",
    response_model=SpotPrediction,
    tags=["Predictions"]
)
def predict_spot(
    spot_id: str = Path(..., min_length=1),
    target_time: Optional[datetime] = Query(default=None),
    time_window: str = Query(default="30min", max_length=20)
):
    return predictor.predict(spot_id, target_time, time_window)


@app.post(
    f"{settings.api_prefix}/predictions/batch",
    response_model=List[SpotPrediction],
    tags=["Predictions"]
)
def predict_batch(request: BatchPredictionRequest):
    return predictor.batch_predict(request.spot_ids, request.target_time, request.time_window)


@app.delete(f"{settings.api_prefix}/predictions/cache", tags=["Predictions"])
def clear_prediction_cache(user: Profile = Depends(require_admin)) -> Dict[str, Any]:
    deleted = predictor.clear_cache()
    logger.info(f"Cleared {deleted} cached predictions", extra={"user_id": user.id})
    return {"status": "success", "deleted": deleted}


# Navigation

@app.post(
    f"{settings.api_prefix}/navigation/calculate-route",
    response_model=Route,
    tags=["Navigation"]
)
async def calculate(request: RouteRequest):
    return calculate_route(request.origin, request.destination, request.options)


@app.post(
    f"{settings.api_prefix}/navigation/recalculate-route",
    response_model=Route,
    tags=["Navigation"]
)
async def recalculate(request: RouteRequest):
    return recalculate_route(request.origin, request.destination)


# AI assistant

@app.post(f"{settings.api_prefix}/ai/chat", response_model=ChatResponse, tags=["AI"])
async def ai_chat(request: ChatRequest):
    return await chat(request.message, request.context, request.location)


# Stripe

@app.post(f"{settings.api_prefix}/stripe/create-checkout-session", tags=["Payments"])
def create_checkout_session(
    payload: CheckoutRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, str]:
    return payments.create_checkout_session(db, user, payload.plan_id, payload.return_url)


@app.get(f"{settings.api_prefix}/stripe/verify-session", tags=["Payments"])
def verify_session(
    session_id: Optional[str] = Query(default=None),
    retry: int = Query(default=0, ge=0),
    db: Session = Depends(get_db)
):
    status_code, body = payments.verify_checkout_session(db, session_id, retry)
    return JSONResponse(status_code=status_code, content=body)


@app.post(f"{settings.api_prefix}/stripe/payment-intent", tags=["Payments"])
def create_payment_intent(
    payload: PaymentIntentRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return payments.create_user_payment_intent(db, user, payload.amount, payload.currency, payload.metadata)


@app.post(f"{settings.api_prefix}/stripe/webhook", tags=["Payments"], include_in_schema=False)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    payload = await request.body()
    event = payments.construct_webhook_event(payload, request.headers.get("stripe-signature"))
    # Handlers make blocking database and Stripe calls
    return await asyncio.to_thread(StripeWebhookHandler(db).handle, event)


# Subscriptions

@app.get(f"{settings.api_prefix}/subscription/plans", tags=["Subscriptions"])
async def subscription_plans() -> Dict[str, Any]:
    return {"plans": [plan.to_dict() for plan in PLANS]}


@app.get(f"{settings.api_prefix}/subscription/status", tags=["Subscriptions"])
def subscription_status(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SubscriptionService(db).status(user)


@app.get(f"{settings.api_prefix}/subscription/features", tags=["Subscriptions"])
def subscription_features(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SubscriptionService(db).features(user)


@app.get(f"{settings.api_prefix}/subscription/usage", tags=["Subscriptions"])
def subscription_usage(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SubscriptionService(db).usage(user)


@app.post(f"{settings.api_prefix}/subscription/create-checkout", tags=["Subscriptions"])
def subscription_checkout(
    payload: CheckoutRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, str]:
    return payments.create_checkout_session(db, user, payload.plan_id, payload.return_url)


@app.post(f"{settings.api_prefix}/subscription/cancel", tags=["Subscriptions"])
def cancel_subscription(
    payload: CancelSubscriptionRequest = CancelSubscriptionRequest(),
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SubscriptionService(db).cancel(user, payload.immediate)


@app.post(f"{settings.api_prefix}/subscription/trial", tags=["Subscriptions"])
def start_trial(
    payload: TrialRequest,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return SubscriptionService(db).start_trial(user, payload.plan_id)


# Analytics

@app.post(f"{settings.api_prefix}/analytics/track", tags=["Analytics"])
def analytics_track(
    payload: AnalyticsTrackRequest,
    user: Optional[Profile] = Depends(get_optional_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    record = track_client_event(db, payload.event, payload.data, user)
    return {"success": True, "id": record.id}


@app.get(f"{settings.api_prefix}/analytics/dashboard", tags=["Analytics"])
def analytics_dashboard(
    range_key: str = Query(default=DEFAULT_RANGE, alias="range"),
    user: Profile = Depends(require_admin),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return AnalyticsDashboard(db, range_key).build()


# Marketing

@app.get(f"{settings.api_prefix}/marketing/automation", tags=["Marketing"])
def marketing_overview(
    kind: str = Query(default="campaigns", alias="type"),
    campaign_id: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    user: Profile = Depends(require_admin),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return query_automation(MarketingAutomationManager(db), kind, campaign_id, start, end)


@app.post(f"{settings.api_prefix}/marketing/automation", tags=["Marketing"])
def marketing_action(
    payload: MarketingActionRequest,
    user: Profile = Depends(require_admin),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return run_automation_action(MarketingAutomationManager(db), payload.action, payload.type, payload.data)


# Admin

@app.get(f"{settings.api_prefix}/admin/profiles", tags=["Admin"])
def admin_profiles(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=50, ge=1, le=200),
    user: Profile = Depends(require_admin),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return admin.list_profiles(db, page, per_page)


@app.post(f"{settings.api_prefix}/admin/profiles/{{user_id}}/suspend", tags=["Admin"])
def admin_suspend(
    payload: SuspendRequest,
    user_id: str = Path(...),
    user: Profile = Depends(require_admin),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return admin.set_suspension(db, user, user_id, payload.action)


@app.post(f"{settings.api_prefix}/cleanup", tags=["Admin"])
def cleanup(
    caller: Optional[Profile] = Depends(require_cron_or_admin),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Housekeeping for the scheduler: holds, expired spots and dead push tokens"""
    return admin.run_cleanup(db)


# Notifications

@app.post(f"{settings.api_prefix}/notifications/subscribe", tags=["Notifications"])
def notifications_subscribe(
    payload: NotificationSubscribe,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return notifications.subscribe(db, user, payload.fcm_token)


@app.delete(f"{settings.api_prefix}/notifications/subscribe", tags=["Notifications"])
def notifications_unsubscribe(
    payload: Optional[NotificationUnsubscribe] = None,
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return notifications.unsubscribe(db, user, payload.fcm_token if payload else None)


@app.post(f"{settings.api_prefix}/notifications/send-test", tags=["Notifications"])
async def notifications_send_test(
    user: Profile = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return await notifications.send_test(db, user)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
        log_level=settings.log_level.lower()
    )
