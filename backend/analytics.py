"""
Event tracking and the admin analytics dashboard
"""
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, distinct
from sqlalchemy.orm import Session

from city_data import detect_city, CITY_BOUNDS
from exceptions import ValidationException
from logging_config import get_logger
from marketing import MarketingAutomationManager
from models import (
    AnalyticsEvent, ParkingSession, ParkingSpot, Profile, SpotHold,
    SubscriptionEvent, SubscriptionStatus, SubscriptionTier
)
from subscriptions import get_plan

logger = get_logger(__name__)

RANGES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_RANGE = "30d"

# Recorded by the server itself; clients may not post these
SERVER_EVENTS = frozenset({
    "search", "search_limit_reached", "subscription_canceled", "trial_ended", "user_signup",
})


def track_event(db: Session, event: str, data: Dict[str, Any], user: Optional[Profile] = None) -> AnalyticsEvent:
    record = AnalyticsEvent(user_id=user.id if user else None, event=event, data=data or {})
    db.add(record)
    db.commit()

    logger.info(f"Analytics event {event}", extra={"user_id": user.id if user else None, "event_type": event})

    if user is not None:
        MarketingAutomationManager(db).process_user_event(user, event, data or {})
    return record


def track_client_event(db: Session, event: str, data: Dict[str, Any], user: Optional[Profile] = None) -> AnalyticsEvent:
    if event in SERVER_EVENTS:
        raise ValidationException("event", f"Event '{event}' is reserved", "reserved_event")
    return track_event(db, event, data, user)


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


class AnalyticsDashboard:
    """Aggregates dashboard metrics over a trailing date range"""

    def __init__(self, db: Session, range_key: str = DEFAULT_RANGE, now: Optional[datetime] = None):
        self.db = db
        self.range_key = range_key if range_key in RANGES else DEFAULT_RANGE
        self.days = RANGES[self.range_key]
        self.end = now or datetime.utcnow()
        self.start = self.end - timedelta(days=self.days)

    def build(self) -> Dict[str, Any]:
        subscription_data = self.subscription_data()
        user_metrics = self.user_metrics()
        return {
            "range": self.range_key,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "user_metrics": user_metrics,
            "revenue_metrics": self.revenue_metrics(user_metrics["total_users"], subscription_data),
            "usage_metrics": self.usage_metrics(),
            "time_series_data": self.time_series(),
            "location_data": self.location_data(),
            "subscription_data": subscription_data,
        }

    def user_metrics(self) -> Dict[str, Any]:
        total = self.db.query(func.count(Profile.id)).scalar() or 0
        new = self.db.query(func.count(Profile.id)).filter(Profile.created_at >= self.start).scalar() or 0
        active = self.db.query(func.count(Profile.id)).filter(Profile.last_seen_at >= self.start).scalar() or 0

        cancellations = self.db.query(func.count(SubscriptionEvent.id)).filter(
            SubscriptionEvent.event_type == "cancel",
            SubscriptionEvent.created_at >= self.start
        ).scalar() or 0
        paying = self._paying_query().count()

        return {
            "total_users": total,
            "active_users": active,
            "new_users": new,
            "churn_rate": _pct(cancellations, paying + cancellations),
        }

    def revenue_metrics(self, total_users: int, subscription_data) -> Dict[str, Any]:
        hold_revenue = self.db.query(func.coalesce(func.sum(SpotHold.amount), 0.0)).filter(
            SpotHold.activated_at.isnot(None),
            SpotHold.activated_at >= self.start
        ).scalar() or 0.0
        mrr = sum(row["revenue"] for row in subscription_data)
        subscription_revenue = mrr * self.days / 30
        total = hold_revenue + subscription_revenue
        paying = sum(row["count"] for row in subscription_data if row["tier"] != SubscriptionTier.FREE)

        return {
            "total_revenue": round(total, 2),
            "hold_revenue": round(hold_revenue, 2),
            "monthly_recurring": round(mrr, 2),
            "average_revenue_per_user": round(total / total_users, 2) if total_users else 0.0,
            "conversion_rate": _pct(paying, total_users),
        }

    def usage_metrics(self) -> Dict[str, Any]:
        searches = self.db.query(func.count(AnalyticsEvent.id)).filter(
            AnalyticsEvent.event == "search",
            AnalyticsEvent.created_at >= self.start
        ).scalar() or 0
        reported = self.db.query(func.count(ParkingSpot.id)).filter(
            ParkingSpot.reported_by.isnot(None),
            ParkingSpot.created_at >= self.start
        ).scalar() or 0
        holds = self.db.query(func.count(SpotHold.id)).filter(SpotHold.created_at >= self.start).scalar() or 0

        sessions = self.db.query(ParkingSession).filter(ParkingSession.arrived_at >= self.start).all()
        minutes = [
            (s.departed_at - s.arrived_at).total_seconds() / 60 if s.departed_at else s.planned_duration_minutes
            for s in sessions
        ]

        active_days = func.count(distinct(func.date(AnalyticsEvent.created_at)))
        day_counts = self.db.query(AnalyticsEvent.user_id, active_days).filter(
            AnalyticsEvent.user_id.isnot(None),
            AnalyticsEvent.created_at >= self.start
        ).group_by(AnalyticsEvent.user_id).all()
        returning = sum(1 for _, days in day_counts if days >= 2)

        return {
            "total_searches": searches,
            "spots_reported": reported,
            "holds_created": holds,
            "average_session_time": round(sum(minutes) / len(minutes), 1) if minutes else 0.0,
            "return_user_rate": _pct(returning, len(day_counts)),
        }

    def _daily_counts(self, column, *criteria) -> Dict[str, int]:
        day = func.date(column)
        rows = self.db.query(day, func.count()).filter(column >= self.start, *criteria).group_by(day).all()
        return {str(d): count for d, count in rows}

    def time_series(self) -> list:
        users = self._daily_counts(Profile.created_at)
        searches = self._daily_counts(AnalyticsEvent.created_at, AnalyticsEvent.event == "search")
        spots = self._daily_counts(ParkingSpot.created_at)

        series = []
        for offset in range(self.days - 1, -1, -1):
            date = (self.end - timedelta(days=offset)).date().isoformat()
            series.append({
                "date": date,
                "users": users.get(date, 0),
                "searches": searches.get(date, 0),
                "spots": spots.get(date, 0),
            })
        return series

    def location_data(self) -> list:
        counts = defaultdict(lambda: {"searches": 0, "spots": 0})

        spot_coords = self.db.query(ParkingSpot.latitude, ParkingSpot.longitude).filter(
            ParkingSpot.created_at >= self.start
        ).all()
        for lat, lng in spot_coords:
            city = detect_city(lat, lng)
            if city:
                counts[city]["spots"] += 1

        search_events = self.db.query(AnalyticsEvent.data).filter(
            AnalyticsEvent.event == "search",
            AnalyticsEvent.created_at >= self.start
        ).all()
        for (data,) in search_events:
            data = data or {}
            if "lat" in data and "lng" in data:
                city = detect_city(data["lat"], data["lng"])
                if city:
                    counts[city]["searches"] += 1

        rows = [{"city": CITY_BOUNDS[key]["name"], **values} for key, values in counts.items()]
        return sorted(rows, key=lambda r: (r["searches"], r["spots"]), reverse=True)

    def _paying_query(self):
        return self.db.query(Profile).filter(
            Profile.subscription_status == SubscriptionStatus.ACTIVE,
            Profile.subscription_tier != SubscriptionTier.FREE
        )

    def subscription_data(self) -> list:
        live = dict(self.db.query(Profile.subscription_tier, func.count(Profile.id)).filter(
            Profile.subscription_status == SubscriptionStatus.ACTIVE
        ).group_by(Profile.subscription_tier).all())
        total = self.db.query(func.count(Profile.id)).scalar() or 0
        paying = sum(count for tier, count in live.items() if tier != SubscriptionTier.FREE)

        rows = []
        for tier in SubscriptionTier.ALL:
            count = total - paying if tier == SubscriptionTier.FREE else live.get(tier, 0)
            plan = get_plan(tier)
            rows.append({"tier": tier, "count": count, "revenue": round(count * plan.price, 2)})
        return rows
