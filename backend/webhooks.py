"""
Stripe webhook event dispatch
"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from config import get_settings
from holds import HoldService
from logging_config import get_logger
from marketing import MarketingAutomationManager
from models import Profile, SubscriptionTier, SubscriptionStatus, SubscriptionEvent
from monitoring import webhook_events
from payments import field, object_id
from subscriptions import SubscriptionService, resolve_plan_id, plan_for_price

logger = get_logger(__name__)

# Stripe subscription status -> profile subscription_status
STATUS_MAPPING = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INACTIVE,
    "incomplete_expired": SubscriptionStatus.INACTIVE,
    "paused": SubscriptionStatus.INACTIVE,
}


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.utcfromtimestamp(value) if value else None


class StripeWebhookHandler:
    """Apply verified Stripe events to profiles and holds"""

    def __init__(self, db: Session):
        self.db = db
        self.subscriptions = SubscriptionService(db)
        self.handlers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_failed": self._invoice_payment_failed,
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "payment_intent.payment_failed": self._payment_intent_failed,
            "payment_intent.canceled": self._payment_intent_failed,
        }

    def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type", "")
        webhook_events.labels(event_type=event_type).inc()

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring Stripe event {event_type}", extra={"event_type": event_type})
            return {"received": True}

        handled = handler(event["data"]["object"])
        logger.info(f"Processed Stripe event {event.get('id')}",
                    extra={"event_type": event_type, "handled": handled})
        return {"received": True, "handled": handled}

    def _find_profile(self, obj: Dict[str, Any]) -> Optional[Profile]:
        metadata = field(obj, "metadata") or {}
        user_id = field(metadata, "user_id") or field(metadata, "userId")
        if user_id:
            profile = self.db.get(Profile, user_id)
            if profile is not None:
                return profile

        customer_id = object_id(field(obj, "customer"))
        if customer_id:
            return self.db.query(Profile).filter(Profile.stripe_customer_id == customer_id).first()
        return None

    def _checkout_completed(self, session: Dict[str, Any]) -> bool:
        if field(session, "mode") != "subscription":
            return False

        metadata = field(session, "metadata") or {}
        plan_id = resolve_plan_id(field(metadata, "plan_id") or field(metadata, "tier"))
        profile = self._find_profile(session)
        if profile is None or plan_id is None:
            logger.error(f"Checkout session {field(session, 'id')} missing user or plan metadata")
            return False

        self.subscriptions.apply_plan(
            profile,
            plan_id,
            SubscriptionStatus.ACTIVE,
            stripe_customer_id=object_id(field(session, "customer")),
            stripe_subscription_id=object_id(field(session, "subscription")),
            cancel_at_period_end=False,
        )
        return True

    def _subscription_updated(self, subscription: Dict[str, Any]) -> bool:
        profile = self._find_profile(subscription)
        if profile is None:
            logger.warning(f"No profile for subscription {field(subscription, 'id')}")
            return False

        metadata = field(subscription, "metadata") or {}
        plan_id = resolve_plan_id(field(metadata, "plan_id") or field(metadata, "tier"))
        items = field(field(subscription, "items"), "data") or []
        first_item = items[0] if items else None
        if plan_id is None:
            price_id = object_id(field(first_item, "price"))
            plan = plan_for_price(price_id, get_settings())
            plan_id = plan.id if plan else profile.subscription_tier

        # Newer API versions report the billing period on the subscription item
        period_end = field(subscription, "current_period_end") or field(first_item, "current_period_end")

        self.subscriptions.apply_plan(
            profile,
            plan_id,
            STATUS_MAPPING.get(field(subscription, "status"), SubscriptionStatus.INACTIVE),
            stripe_customer_id=object_id(field(subscription, "customer")),
            stripe_subscription_id=field(subscription, "id"),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(field(subscription, "cancel_at_period_end")),
        )
        return True

    def _subscription_deleted(self, subscription: Dict[str, Any]) -> bool:
        profile = self._find_profile(subscription)
        if profile is None:
            return False
        already_cancelled = (
            profile.subscription_status == SubscriptionStatus.CANCELED
            and profile.subscription_tier == SubscriptionTier.FREE
        )
        initiated_here = already_cancelled or profile.cancel_at_period_end

        if not already_cancelled:
            self.db.add(SubscriptionEvent(
                user_id=profile.id, event_type="cancel",
                from_plan=profile.subscription_tier, to_plan=SubscriptionTier.FREE,
            ))
        profile.subscription_tier = SubscriptionTier.FREE
        profile.subscription_status = SubscriptionStatus.CANCELED
        profile.stripe_subscription_id = None
        profile.cancel_at_period_end = False
        self.db.commit()
        logger.info("Subscription ended, profile back on free plan", extra={"user_id": profile.id})
        if not initiated_here:
            MarketingAutomationManager(self.db).process_user_event(profile, "subscription_canceled", {"source": "stripe"})
        return True

    def _invoice_payment_failed(self, invoice: Dict[str, Any]) -> bool:
        profile = self._find_profile(invoice)
        if profile is None:
            return False

        profile.subscription_status = SubscriptionStatus.PAST_DUE
        self.db.add(SubscriptionEvent(
            user_id=profile.id, event_type="past_due",
            from_plan=profile.subscription_tier, to_plan=profile.subscription_tier,
        ))
        self.db.commit()
        logger.warning("Invoice payment failed", extra={"user_id": profile.id})
        return True

    def _is_spot_hold(self, intent: Dict[str, Any]) -> bool:
        return field(field(intent, "metadata"), "type") == "spot_hold"

    def _payment_intent_succeeded(self, intent: Dict[str, Any]) -> bool:
        if not self._is_spot_hold(intent):
            return False
        return HoldService(self.db).activate_hold(field(intent, "id")) is not None

    def _payment_intent_failed(self, intent: Dict[str, Any]) -> bool:
        if not self._is_spot_hold(intent):
            return False
        return HoldService(self.db).cancel_for_payment(field(intent, "id")) is not None
