"""
Request and response models for the API
"""
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, validator


class Location(BaseModel):
    """Geographic location with validation"""
    latitude: float = Field(..., ge=-90, le=90, description="Latitude in decimal degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in decimal degrees")


# Spots
class SpotReportCreate(BaseModel):
    """Report a newly freed spot"""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    spot_type: str = Field(default="street", pattern="^(street|garage|lot|meter|private)$")
    address: Optional[str] = Field(None, max_length=300)
    notes: Optional[str] = Field(None, max_length=500)


class SpotUpdate(BaseModel):
    """Availability change with an optional community report"""
    is_available: Optional[bool] = None
    report_type: Optional[str] = Field(None, pattern="^(available|taken|invalid|occupied|closed)$")
    notes: Optional[str] = Field(None, max_length=500)


class ArrivalConfirmation(BaseModel):
    spot_id: str = Field(..., min_length=1)
    arrival_time: datetime
    planned_duration_minutes: int = Field(default=120, ge=5, le=1440)


# Holds
class SpotHoldCreate(BaseModel):
    """Request a paid hold on a spot"""
    spot_id: str = Field(..., min_length=1)
    duration: int = Field(..., description="Hold length in minutes (15, 30 or 60)")


# City data
class CityDataQuery(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius: int = Field(default=500, ge=50, le=5000)


# Predictions
class PredictionFactors(BaseModel):
    historical: int
    time_of_day: int
    day_of_week: int
    weather: Optional[int] = None
    events: Optional[int] = None


class SpotPrediction(BaseModel):
    spot_id: str
    predicted_availability: int = Field(..., ge=0, le=100)
    confidence: int = Field(..., ge=0, le=100)
    time_window: str
    factors: PredictionFactors
    last_updated: datetime


class BatchPredictionRequest(BaseModel):
    spot_ids: List[str] = Field(..., min_length=1, max_length=100)
    target_time: Optional[datetime] = None
    time_window: str = Field(default="30min", max_length=20)


# Navigation
class RouteOptions(BaseModel):
    route_type: Literal["fastest", "eco", "shortest"] = "fastest"
    avoid_traffic: bool = False


class RouteRequest(BaseModel):
    """Coordinates are [longitude, latitude]"""
    origin: List[float] = Field(..., alias="from", min_length=2, max_length=2)
    destination: List[float] = Field(..., alias="to", min_length=2, max_length=2)
    options: RouteOptions = Field(default_factory=RouteOptions)

    class Config:
        populate_by_name = True

    @validator('origin', 'destination')
    def validate_lon_lat(cls, v):
        lon, lat = v
        if not -180 <= lon <= 180 or not -90 <= lat <= 90:
            raise ValueError("coordinates must be [longitude, latitude]")
        return v


class Maneuver(BaseModel):
    type: str


class Lane(BaseModel):
    valid: bool
    indications: List[str]


class LaneGuidance(BaseModel):
    lanes: List[Lane]


class RouteStep(BaseModel):
    id: str
    instruction: str
    distance: int
    duration: int
    maneuver: Maneuver
    street_name: str
    coordinates: List[float]
    speed_limit: Optional[int] = None
    lane_guidance: Optional[LaneGuidance] = None


class Route(BaseModel):
    id: str
    distance: int = Field(..., description="Meters")
    duration: int = Field(..., description="Seconds including traffic")
    traffic_delays: int
    geometry: List[List[float]]
    steps: List[RouteStep]


# AI assistant
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    context: Optional[str] = Field(None, max_length=200)
    location: Optional[str] = Field(None, max_length=200)


class ChatResponse(BaseModel):
    response: str
    model: str
    timestamp: datetime
    success: bool = True
    fallback: bool = False


# Payments and subscriptions
class CheckoutRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)
    return_url: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    amount: int = Field(..., description="Amount in the smallest currency unit")
    currency: str = "usd"
    metadata: Dict[str, str] = Field(default_factory=dict)


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False


class TrialRequest(BaseModel):
    plan_id: str


# Analytics and marketing
class AnalyticsTrackRequest(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    data: Dict[str, Any] = Field(default_factory=dict)


class MarketingActionRequest(BaseModel):
    action: str
    type: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# Admin and notifications
class SuspendRequest(BaseModel):
    action: str


class NotificationSubscribe(BaseModel):
    fcm_token: str = Field(..., min_length=1, alias="fcmToken")

    class Config:
        populate_by_name = True


class NotificationUnsubscribe(BaseModel):
    fcm_token: Optional[str] = Field(None, alias="fcmToken")

    class Config:
        populate_by_name = True


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    timestamp: datetime
    version: str
    cache_status: str
    database_status: str
    missing_config: List[str] = Field(default_factory=list)
