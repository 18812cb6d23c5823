"""
Subscription plans, feature gating and plan changes
"""
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import List, Dict, Optional, Any

from sqlalchemy.orm import Session

from config import Settings
from exceptions import ConflictException, DataNotFoundException, ValidationException, RateLimitException
from logging_config import get_logger
from marketing import MarketingAutomationManager
from models import (
    Profile, SubscriptionEvent, SubscriptionTier, SubscriptionStatus,
    AnalyticsEvent, SpotHold, HoldStatus
)

logger = get_logger(__name__)

TRIAL_DAYS = 14
UNLIMITED = -1


@dataclass
class PlanLimits:
    max_saved_spots: int
    max_alerts: int
    advanced_predictions: bool
    priority_support: bool
    api_access: bool
    daily_searches: int
    spot_holds: bool
    ev_charging: bool
    fleet_management: bool


@dataclass
class Plan:
    id: str
    name: str
    price: float
    description: str
    features: List[str]
    limits: PlanLimits
    interval: str = "monthly"
    recommended: bool = False
    price_setting: Optional[str] = field(default=None, repr=False)

    def stripe_price_id(self, settings: Settings) -> Optional[str]:
        if not self.price_setting:
            return None
        return getattr(settings, self.price_setting)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("price_setting")
        return data


PLANS: List[Plan] = [
    Plan(
        id=SubscriptionTier.FREE,
        name="Starter",
        price=0,
        description="Perfect for getting started",
        features=[
            "5 searches per day",
            "Basic parking map",
            "Community reports",
            "Email support",
        ],
        limits=PlanLimits(
            max_saved_spots=3, max_alerts=2, advanced_predictions=False,
            priority_support=False, api_access=False, daily_searches=5,
            spot_holds=False, ev_charging=False, fleet_management=False,
        ),
    ),
    Plan(
        id=SubscriptionTier.PREMIUM,
        name="Navigator",
        price=8.99,
        description="Best for regular drivers",
        recommended=True,
        price_setting="stripe_price_premium",
        features=[
            "Unlimited searches",
            "Route planning integration",
            "Real-time spot updates",
            "10 saved favorites",
            "Spot hold service",
            "EV charging integration",
        ],
        limits=PlanLimits(
            max_saved_spots=10, max_alerts=10, advanced_predictions=False,
            priority_support=False, api_access=False, daily_searches=UNLIMITED,
            spot_holds=True, ev_charging=True, fleet_management=False,
        ),
    ),
    Plan(
        id=SubscriptionTier.PRO,
        name="Pro Parker",
        price=19.99,
        description="For power users",
        price_setting="stripe_price_pro",
        features=[
            "Everything in Navigator",
            "AI-powered predictions",
            "Unlimited saved spots",
            "Smart notifications",
            "Advanced analytics dashboard",
            "Priority support",
        ],
        limits=PlanLimits(
            max_saved_spots=UNLIMITED, max_alerts=25, advanced_predictions=True,
            priority_support=True, api_access=False, daily_searches=UNLIMITED,
            spot_holds=True, ev_charging=True, fleet_management=False,
        ),
    ),
    Plan(
        id=SubscriptionTier.ENTERPRISE,
        name="Fleet Manager",
        price=49.99,
        description="For fleets and businesses",
        price_setting="stripe_price_enterprise",
        features=[
            "Everything in Pro Parker",
            "Multi-vehicle management",
            "Team dashboard",
            "API access & integrations",
            "Dedicated account manager",
        ],
        limits=PlanLimits(
            max_saved_spots=UNLIMITED, max_alerts=UNLIMITED, advanced_predictions=True,
            priority_support=True, api_access=True, daily_searches=UNLIMITED,
            spot_holds=True, ev_charging=True, fleet_management=True,
        ),
    ),
]

# Older checkout sessions carry marketing names instead of tiers
PLAN_ALIASES = {
    "starter": SubscriptionTier.FREE,
    "basic": SubscriptionTier.FREE,
    "navigator": SubscriptionTier.PREMIUM,
    "pro_parker": SubscriptionTier.PRO,
    "fleet_manager": SubscriptionTier.ENTERPRISE,
}

_PLANS_BY_ID = {plan.id: plan for plan in PLANS}


def resolve_plan_id(plan_id: Optional[str]) -> Optional[str]:
    if not plan_id:
        return None
    plan_id = plan_id.lower()
    return PLAN_ALIASES.get(plan_id, plan_id if plan_id in _PLANS_BY_ID else None)


def get_plan(plan_id: Optional[str]) -> Optional[Plan]:
    resolved = resolve_plan_id(plan_id)
    return _PLANS_BY_ID.get(resolved) if resolved else None


def plan_for_price(price_id: Optional[str], settings: Settings) -> Optional[Plan]:
    if not price_id:
        return None
    for plan in PLANS:
        if plan.stripe_price_id(settings) == price_id:
            return plan
    return None


class SubscriptionService:
    """Plan lookups and state changes on a user's profile"""

    def __init__(self, db: Session):
        self.db = db

    def has_live_status(self, profile: Profile, now: Optional[datetime] = None) -> bool:
        """Active, or trialing with the trial still running"""
        if profile.subscription_status not in SubscriptionStatus.LIVE:
            return False
        if profile.subscription_status == SubscriptionStatus.TRIALING and profile.trial_end is not None:
            return profile.trial_end > (now or datetime.utcnow())
        return True

    def effective_plan(self, profile: Profile) -> Plan:
        if not self.has_live_status(profile):
            return _PLANS_BY_ID[SubscriptionTier.FREE]
        return get_plan(profile.subscription_tier) or _PLANS_BY_ID[SubscriptionTier.FREE]

    def can_use_feature(self, profile: Profile, feature: str) -> bool:
        value = getattr(self.effective_plan(profile).limits, feature)
        return value is True or value == UNLIMITED

    def check_usage_limit(self, profile: Profile, feature: str, current_usage: int) -> bool:
        limit = getattr(self.effective_plan(profile).limits, feature)
        if isinstance(limit, bool):
            return limit
        if limit == UNLIMITED:
            return True
        return current_usage < limit

    def is_subscribed(self, profile: Profile) -> bool:
        return (
            self.has_live_status(profile)
            and profile.subscription_tier != SubscriptionTier.FREE
        )

    def count_searches_today(self, profile: Profile, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return self.db.query(AnalyticsEvent).filter(
            AnalyticsEvent.user_id == profile.id,
            AnalyticsEvent.event == "search",
            AnalyticsEvent.created_at >= day_start
        ).count()

    def _limit_reached_today(self, profile: Profile) -> bool:
        day_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        return self.db.query(AnalyticsEvent).filter(
            AnalyticsEvent.user_id == profile.id,
            AnalyticsEvent.event == "search_limit_reached",
            AnalyticsEvent.created_at >= day_start
        ).first() is not None

    def record_search(self, profile: Profile, data: Dict[str, Any]) -> None:
        """Count a spot search against the daily allowance"""
        used = self.count_searches_today(profile)
        if not self.check_usage_limit(profile, "daily_searches", used):
            limit = self.effective_plan(profile).limits.daily_searches
            if not self._limit_reached_today(profile):
                self.db.add(AnalyticsEvent(user_id=profile.id, event="search_limit_reached", data=data))
                self.db.commit()
                MarketingAutomationManager(self.db).process_user_event(profile, "search_limit_reached", {"limit": limit})
            raise RateLimitException(limit, 86400)

        self.db.add(AnalyticsEvent(user_id=profile.id, event="search", data=data))
        self.db.commit()

    def status(self, profile: Profile) -> Dict[str, Any]:
        plan = self.effective_plan(profile)
        return {
            "is_subscribed": self.is_subscribed(profile),
            "plan_id": plan.id,
            "tier": profile.subscription_tier,
            "status": profile.subscription_status,
            "current_period_end": profile.current_period_end.isoformat() if profile.current_period_end else None,
            "cancel_at_period_end": bool(profile.cancel_at_period_end),
            "trial_end": profile.trial_end.isoformat() if profile.trial_end else None,
        }

    def features(self, profile: Profile) -> Dict[str, Any]:
        plan = self.effective_plan(profile)
        return {"plan_id": plan.id, "features": plan.features, "limits": asdict(plan.limits)}

    def usage(self, profile: Profile) -> Dict[str, Any]:
        plan = self.effective_plan(profile)
        active_holds = self.db.query(SpotHold).filter(
            SpotHold.user_id == profile.id,
            SpotHold.status.in_(HoldStatus.LIVE)
        ).count()
        return {
            "searches_today": self.count_searches_today(profile),
            "active_holds": active_holds,
            "plan_limits": asdict(plan.limits),
        }

    def apply_plan(
        self,
        profile: Profile,
        plan_id: str,
        status: str = SubscriptionStatus.ACTIVE,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
    ) -> Profile:
        plan = get_plan(plan_id)
        if plan is None:
            raise ValidationException("plan_id", f"Unknown plan '{plan_id}'", "invalid_plan")

        previous = profile.subscription_tier
        profile.subscription_tier = plan.id
        profile.subscription_status = status
        if stripe_customer_id:
            profile.stripe_customer_id = stripe_customer_id
        if stripe_subscription_id:
            profile.stripe_subscription_id = stripe_subscription_id
        if current_period_end:
            profile.current_period_end = current_period_end
        if cancel_at_period_end is not None:
            profile.cancel_at_period_end = cancel_at_period_end

        if previous != plan.id:
            self.db.add(SubscriptionEvent(
                user_id=profile.id,
                event_type=_change_type(previous, plan.id),
                from_plan=previous,
                to_plan=plan.id,
            ))
        self.db.commit()

        logger.info(
            f"Plan for {profile.id} set to {plan.id} ({status})",
            extra={"user_id": profile.id}
        )
        return profile

    def start_trial(self, profile: Profile, plan_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        plan = get_plan(plan_id)
        if plan is None or plan.id == SubscriptionTier.FREE:
            raise ValidationException("plan_id", "Trials are only available for paid plans", "invalid_plan")
        if profile.trial_end is not None:
            raise ConflictException("Free trial already used")

        now = now or datetime.utcnow()
        trial_end = now + timedelta(days=TRIAL_DAYS)
        profile.trial_end = trial_end
        profile.current_period_end = trial_end
        self.db.add(SubscriptionEvent(
            user_id=profile.id, event_type="trial",
            from_plan=profile.subscription_tier, to_plan=plan.id,
        ))
        profile.subscription_tier = plan.id
        profile.subscription_status = SubscriptionStatus.TRIALING
        self.db.commit()
        return {"success": True, "plan_id": plan.id, "trial_end": trial_end.isoformat()}

    def end_lapsed_trials(self, now: Optional[datetime] = None) -> int:
        """Move in-app trials past their end date back to the free plan"""
        now = now or datetime.utcnow()
        lapsed = self.db.query(Profile).filter(
            Profile.subscription_status == SubscriptionStatus.TRIALING,
            Profile.trial_end.isnot(None),
            Profile.trial_end <= now
        ).all()

        for profile in lapsed:
            self.db.add(SubscriptionEvent(
                user_id=profile.id, event_type="trial_ended",
                from_plan=profile.subscription_tier, to_plan=SubscriptionTier.FREE,
            ))
            trial_plan = profile.subscription_tier
            profile.subscription_tier = SubscriptionTier.FREE
            profile.subscription_status = SubscriptionStatus.INACTIVE
            profile.current_period_end = None
            self.db.commit()
            MarketingAutomationManager(self.db).process_user_event(profile, "trial_ended", {"plan_id": trial_plan})

        if lapsed:
            logger.info(f"Ended {len(lapsed)} lapsed trials")
        return len(lapsed)

    def cancel(self, profile: Profile, immediate: bool = False) -> Dict[str, Any]:
        """Cancel the user's subscription at period end, or right away"""
        if not self.is_subscribed(profile):
            raise DataNotFoundException("Subscription", profile.id)

        if profile.stripe_subscription_id:
            import payments
            payments.cancel_subscription(profile.stripe_subscription_id, at_period_end=not immediate)

        if immediate:
            self.db.add(SubscriptionEvent(
                user_id=profile.id, event_type="cancel",
                from_plan=profile.subscription_tier, to_plan=SubscriptionTier.FREE,
            ))
            profile.subscription_tier = SubscriptionTier.FREE
            profile.subscription_status = SubscriptionStatus.CANCELED
            profile.cancel_at_period_end = False
        else:
            profile.cancel_at_period_end = True
        self.db.commit()
        MarketingAutomationManager(self.db).process_user_event(profile, "subscription_canceled", {"immediate": immediate})

        return {"success": True, "immediate": immediate, "status": self.status(profile)}


def _change_type(previous: Optional[str], new: str) -> str:
    order = list(SubscriptionTier.ALL)
    if previous not in order:
        return "upgrade"
    return "upgrade" if order.index(new) > order.index(previous) else "downgrade"
