"""
Stripe billing: customers, checkout, payment intents and webhook verification
"""
import json
from functools import wraps
from typing import Any, Dict, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from config import get_settings
from exceptions import PaymentException, ExternalAPIException, ValidationException
from logging_config import get_logger
from models import Profile, SubscriptionTier, SubscriptionStatus
from subscriptions import SubscriptionService, get_plan, resolve_plan_id

logger = get_logger(__name__)

MIN_PAYMENT_AMOUNT = 50  # cents
SUPPORTED_CURRENCIES = ("usd", "eur", "gbp")


def _stripe():
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise PaymentException("Payment processor not configured", 503, "payment/not_configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 2
    return stripe


def stripe_errors(func):
    """Convert Stripe SDK errors to application exceptions"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.CardError as e:
            raise PaymentException(e.user_message or str(e), 402, "payment/card_declined")
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripe rejected request: {e}")
            raise PaymentException(e.user_message or str(e), 400, "payment/invalid_request")
        except stripe.StripeError as e:
            logger.error(f"Stripe error in {func.__name__}: {e}")
            raise ExternalAPIException("stripe", e.user_message or str(e), 503)
    return wrapper


def field(obj: Any, key: str) -> Any:
    """Read a key from a Stripe object or dict, None when absent"""
    if obj is None or isinstance(obj, str):
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def object_id(value: Any) -> Optional[str]:
    """Id of a possibly-expanded Stripe reference"""
    if value is None or isinstance(value, str):
        return value
    return field(value, "id")


@stripe_errors
def get_or_create_customer(db: Session, profile: Profile) -> str:
    if profile.stripe_customer_id:
        return profile.stripe_customer_id

    customer = _stripe().Customer.create(
        email=profile.email,
        name=profile.full_name,
        metadata={"user_id": profile.id},
    )
    profile.stripe_customer_id = customer["id"]
    db.commit()
    logger.info(f"Created Stripe customer {customer['id']}", extra={"user_id": profile.id})
    return customer["id"]


@stripe_errors
def create_checkout_session(db: Session, profile: Profile, plan_id: str, return_url: Optional[str] = None) -> Dict[str, str]:
    settings = get_settings()
    plan = get_plan(plan_id)
    if plan is None or plan.id == SubscriptionTier.FREE:
        raise ValidationException("plan_id", f"'{plan_id}' is not a paid plan", "invalid_plan")

    price_id = plan.stripe_price_id(settings)
    if not price_id:
        raise ValidationException("plan_id", f"No price configured for '{plan.id}'", "invalid_plan")

    customer_id = get_or_create_customer(db, profile)
    base_url = (return_url or settings.app_url).rstrip("/")

    session = _stripe().checkout.Session.create(
        customer=customer_id,
        mode="subscription",
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=f"{base_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/pricing",
        allow_promotion_codes=True,
        billing_address_collection="required",
        client_reference_id=profile.id,
        metadata={"user_id": profile.id, "plan_id": plan.id},
        subscription_data={"metadata": {"user_id": profile.id, "plan_id": plan.id}},
    )
    logger.info(f"Checkout session {session['id']} for plan {plan.id}", extra={"user_id": profile.id})
    return {"url": session["url"], "session_id": session["id"]}


@stripe_errors
def verify_checkout_session(db: Session, session_id: str, retry: int = 0) -> Tuple[int, Dict[str, Any]]:
    """
    Confirm a finished checkout and apply the plan if the webhook is late.

    Returns the HTTP status with the response body; 202 means the client should poll again.
    """
    if not session_id:
        raise ValidationException("session_id", "No session ID provided")

    session = _stripe().checkout.Session.retrieve(
        session_id,
        expand=["subscription", "customer", "payment_intent"]
    )

    payment_status = field(session, "payment_status")
    intent_status = field(field(session, "payment_intent"), "status")
    subscription_status = field(field(session, "subscription"), "status")
    metadata = field(session, "metadata") or {}
    user_id = field(metadata, "user_id") or field(metadata, "userId")
    plan_id = resolve_plan_id(field(metadata, "plan_id") or field(metadata, "tier"))

    confirmed = (
        payment_status in ("paid", "no_payment_required")
        or intent_status == "succeeded"
        or subscription_status == "active"
    )

    if confirmed:
        updated = False
        profile = db.get(Profile, user_id) if user_id else None
        if profile is not None and plan_id and (
            profile.subscription_tier != plan_id
            or profile.subscription_status != SubscriptionStatus.ACTIVE
        ):
            logger.info(f"Webhook has not applied plan yet, applying from session {session_id}",
                        extra={"user_id": user_id})
            SubscriptionService(db).apply_plan(
                profile,
                plan_id,
                SubscriptionStatus.ACTIVE,
                stripe_customer_id=object_id(field(session, "customer")),
                stripe_subscription_id=object_id(field(session, "subscription")),
            )
            updated = True
        return 200, {"success": True, "updated": updated, "tier": plan_id}

    if payment_status == "unpaid" and retry > 2:
        return 202, {"success": False, "error": "Payment is still processing. Please wait a few more moments."}

    logger.info(f"Session {session_id} not confirmed yet (status {payment_status})")
    return 202, {"success": False, "error": "Payment not confirmed yet."}


@stripe_errors
def create_payment_intent(
    amount: int,
    currency: str,
    metadata: Dict[str, str],
    description: Optional[str] = None,
    customer: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "amount": amount,
        "currency": currency,
        "metadata": metadata,
        "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
    }
    if description:
        params["description"] = description
    if customer:
        params["customer"] = customer

    intent = _stripe().PaymentIntent.create(**params)
    return {
        "id": intent["id"],
        "client_secret": intent["client_secret"],
        "amount": amount,
        "currency": currency,
    }


@stripe_errors
def cancel_payment_intent(payment_intent_id: str) -> None:
    _stripe().PaymentIntent.cancel(payment_intent_id)


@stripe_errors
def refund_payment_intent(payment_intent_id: str) -> None:
    _stripe().Refund.create(payment_intent=payment_intent_id)


@stripe_errors
def create_billing_portal_session(customer_id: str) -> str:
    settings = get_settings()
    portal = _stripe().billing_portal.Session.create(
        customer=customer_id,
        return_url=f"{settings.app_url.rstrip('/')}/dashboard",
    )
    return portal["url"]


def create_user_payment_intent(db: Session, profile: Profile, amount: int, currency: str,
                               metadata: Dict[str, str]) -> Dict[str, Any]:
    """One-off payment for a signed-in user; subscribers are sent to the billing portal"""
    if SubscriptionService(db).is_subscribed(profile) and profile.stripe_customer_id:
        return {"url": create_billing_portal_session(profile.stripe_customer_id)}

    if not amount or amount < MIN_PAYMENT_AMOUNT:
        raise PaymentException("Invalid amount", 400, "payment/invalid_amount")
    currency = (currency or "usd").lower()
    if currency not in SUPPORTED_CURRENCIES:
        raise PaymentException("Invalid currency", 400, "payment/invalid_currency")

    intent = create_payment_intent(
        amount,
        currency,
        {**metadata, "user_id": profile.id, "email": profile.email or ""},
    )
    return {"client_secret": intent["client_secret"], "id": intent["id"]}


@stripe_errors
def cancel_subscription(subscription_id: str, at_period_end: bool = True) -> None:
    client = _stripe()
    if at_period_end:
        client.Subscription.modify(subscription_id, cancel_at_period_end=True)
    else:
        client.Subscription.cancel(subscription_id)
    logger.info(f"Cancelled subscription {subscription_id} (at_period_end={at_period_end})")


def construct_webhook_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe-Signature header and decode the event"""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise PaymentException("Webhook secret not configured", 500, "payment/not_configured")
    if not sig_header:
        raise PaymentException("Missing Stripe-Signature header", 400, "payment/invalid_signature")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), sig_header, settings.stripe_webhook_secret,
            stripe.Webhook.DEFAULT_TOLERANCE
        )
        return json.loads(payload)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Stripe webhook verification failed: {e}")
        raise PaymentException("Invalid webhook signature", 400, "payment/invalid_signature")
