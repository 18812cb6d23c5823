"""
Community parking spots: nearby search, reports, availability and arrival
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from geopy.distance import geodesic
from sqlalchemy import or_
from sqlalchemy.orm import Session

from exceptions import AuthorizationException, DataNotFoundException, ValidationException
from holds import HoldService
from logging_config import get_logger
from models import ParkingSession, ParkingSpot, Profile, SpotReport, UserRole
from schemas import ArrivalConfirmation, SpotReportCreate, SpotUpdate
from subscriptions import SubscriptionService

logger = get_logger(__name__)

REPORTED_SPOT_TTL = timedelta(minutes=15)
METERS_PER_DEGREE_LAT = 111320.0

REPUTATION_POINTS = {
    "report": 5,
    "taken": 2,
    "invalid": -1,
}
DEFAULT_REPUTATION_POINTS = 1


def validate_coordinates(lat: float, lng: float) -> None:
    if not -90 <= lat <= 90:
        raise ValidationException("lat", "Latitude must be between -90 and 90")
    if not -180 <= lng <= 180:
        raise ValidationException("lng", "Longitude must be between -180 and 180")


def serialize_spot(spot: ParkingSpot, now: datetime, distance: Optional[float] = None) -> Dict[str, Any]:
    data = {
        "id": spot.id,
        "name": spot.name,
        "latitude": spot.latitude,
        "longitude": spot.longitude,
        "address": spot.address,
        "spot_type": spot.spot_type,
        "price_per_hour": spot.price_per_hour,
        "is_available": spot.is_available,
        "status": spot.status,
        "confidence_score": spot.confidence_score,
        "reported_by": spot.reported_by,
        "expires_at": spot.expires_at.isoformat() if spot.expires_at else None,
        "is_held": spot.is_held(now),
        "held_until": spot.held_until.isoformat() if spot.is_held(now) else None,
        "created_at": spot.created_at.isoformat() if spot.created_at else None,
    }
    if distance is not None:
        data["distance"] = round(distance, 1)
    return data


class SpotService:
    """Queries and community updates on parking spots"""

    def __init__(self, db: Session):
        self.db = db

    def nearby(self, lat: float, lng: float, radius: int, user: Optional[Profile] = None) -> Dict[str, Any]:
        validate_coordinates(lat, lng)
        if radius <= 0:
            raise ValidationException("radius", "Radius must be positive")

        if user is not None:
            SubscriptionService(self.db).record_search(user, {"lat": lat, "lng": lng, "radius": radius})

        now = datetime.utcnow()
        lat_delta = radius / METERS_PER_DEGREE_LAT
        lng_delta = radius / (METERS_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 0.01))

        candidates = self.db.query(ParkingSpot).filter(
            ParkingSpot.status == "active",
            ParkingSpot.latitude.between(lat - lat_delta, lat + lat_delta),
            ParkingSpot.longitude.between(lng - lng_delta, lng + lng_delta),
            or_(ParkingSpot.expires_at.is_(None), ParkingSpot.expires_at > now)
        ).all()

        results = []
        for spot in candidates:
            distance = geodesic((lat, lng), (spot.latitude, spot.longitude)).meters
            if distance <= radius:
                results.append((distance, spot))
        results.sort(key=lambda item: item[0])

        return {
            "spots": [serialize_spot(spot, now, distance) for distance, spot in results],
            "center": {"lat": lat, "lng": lng},
            "radius": radius,
        }

    def report(self, user: Profile, payload: SpotReportCreate) -> ParkingSpot:
        now = datetime.utcnow()
        spot = ParkingSpot(
            name=payload.address or "Reported spot",
            latitude=payload.latitude,
            longitude=payload.longitude,
            address=payload.address,
            spot_type=payload.spot_type,
            is_available=True,
            status="active",
            reported_by=user.id,
            expires_at=now + REPORTED_SPOT_TTL,
        )
        self.db.add(spot)
        self.db.flush()

        if payload.notes:
            self.db.add(SpotReport(
                spot_id=spot.id, reporter_id=user.id, report_type="available", notes=payload.notes
            ))

        self._award(user, "report")
        user.total_reports = (user.total_reports or 0) + 1
        self.db.commit()
        logger.info(f"Spot {spot.id} reported", extra={"user_id": user.id})
        return spot

    def get(self, spot_id: str) -> ParkingSpot:
        spot = self.db.get(ParkingSpot, spot_id)
        if spot is None or spot.status == "deleted":
            raise DataNotFoundException("Parking spot", spot_id)
        return spot

    def update(self, user: Profile, spot_id: str, payload: SpotUpdate) -> ParkingSpot:
        spot = self.get(spot_id)

        if payload.is_available is not None:
            spot.is_available = payload.is_available
        if payload.report_type:
            self.db.add(SpotReport(
                spot_id=spot.id, reporter_id=user.id,
                report_type=payload.report_type, notes=payload.notes
            ))
            if payload.report_type in ("taken", "occupied"):
                spot.is_available = False
            elif payload.report_type == "invalid":
                spot.status = "reported"
            self._award(user, payload.report_type)

        self.db.commit()
        return spot

    def delete(self, user: Profile, spot_id: str) -> None:
        spot = self.get(spot_id)
        if spot.reported_by != user.id and user.role != UserRole.ADMIN:
            raise AuthorizationException("Only the reporter or an admin can delete this spot")
        spot.status = "deleted"
        self.db.commit()
        logger.info(f"Spot {spot_id} deleted", extra={"user_id": user.id})

    def confirm_arrival(self, user: Profile, payload: ArrivalConfirmation) -> Dict[str, Any]:
        spot = self.get(payload.spot_id)
        hold = HoldService(self.db).complete_hold(user.id, spot.id)

        session = ParkingSession(
            user_id=user.id,
            spot_id=spot.id,
            hold_id=hold.id if hold else None,
            arrived_at=_naive_utc(payload.arrival_time),
            planned_duration_minutes=payload.planned_duration_minutes,
        )
        spot.is_available = False
        self.db.add(session)
        self.db.commit()

        return {
            "success": True,
            "session_id": session.id,
            "spot_id": spot.id,
            "hold_completed": hold is not None,
            "arrived_at": session.arrived_at.isoformat(),
        }

    def delete_expired(self) -> int:
        """Remove community spots whose report window has passed"""
        now = datetime.utcnow()
        expired = self.db.query(ParkingSpot).filter(
            ParkingSpot.reported_by.isnot(None),
            ParkingSpot.expires_at.isnot(None),
            ParkingSpot.expires_at <= now,
            ParkingSpot.status != "deleted",
            or_(ParkingSpot.held_until.is_(None), ParkingSpot.held_until <= now)
        ).update({ParkingSpot.status: "deleted"}, synchronize_session=False)
        self.db.commit()
        return expired

    def _award(self, user: Profile, action: str) -> None:
        points = REPUTATION_POINTS.get(action, DEFAULT_REPUTATION_POINTS)
        user.reputation_score = (user.reputation_score or 0) + points


def list_reports(db: Session, spot_id: str) -> List[SpotReport]:
    return db.query(SpotReport).filter(SpotReport.spot_id == spot_id).order_by(SpotReport.created_at.desc()).all()


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
