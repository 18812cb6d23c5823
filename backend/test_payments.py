"""
Tests for Stripe checkout, payment intents and webhooks
"""
import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime
from unittest.mock import patch

import pytest
import stripe

from exceptions import ExternalAPIException, PaymentException, ValidationException
from holds import HoldService
from models import HoldStatus, SpotHold, SubscriptionEvent, SubscriptionStatus, SubscriptionTier
from payments import create_checkout_session, create_user_payment_intent, verify_checkout_session

WEBHOOK_SECRET = "whsec_test"


def signed(payload: dict, secret: str = WEBHOOK_SECRET):
    """Body and Stripe-Signature header the way Stripe sends them"""
    body = json.dumps(payload)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return body, f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict) -> dict:
    return {"id": "evt_test", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def post_event(client):
    def _post(event_type, obj):
        body, header = signed(stripe_event(event_type, obj))
        return client.post(
            "/api/v1/stripe/webhook",
            content=body,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )
    return _post


@pytest.fixture
def stripe_checkout():
    with patch("stripe.Customer.create", return_value={"id": "cus_new"}) as customer, \
            patch("stripe.checkout.Session.create",
                  return_value={"id": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"}) as session:
        yield {"customer": customer, "session": session}


class TestCheckout:
    """Test subscription checkout sessions"""

    def test_creates_customer_and_session(self, db, make_profile, stripe_checkout):
        user = make_profile()

        result = create_checkout_session(db, user, "premium", "https://app.example.com/")

        assert result == {"url": "https://checkout.stripe.com/c/cs_test_1", "session_id": "cs_test_1"}
        assert user.stripe_customer_id == "cus_new"

        params = stripe_checkout["session"].call_args.kwargs
        assert params["customer"] == "cus_new"
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_premium", "quantity": 1}]
        assert params["success_url"].startswith("https://app.example.com/payment-success")
        assert params["metadata"] == {"user_id": user.id, "plan_id": "premium"}

    def test_existing_customer_reused(self, db, make_profile, stripe_checkout):
        user = make_profile(stripe_customer_id="cus_existing")

        create_checkout_session(db, user, "navigator")

        stripe_checkout["customer"].assert_not_called()
        assert stripe_checkout["session"].call_args.kwargs["line_items"][0]["price"] == "price_premium"

    @pytest.mark.parametrize("plan_id", ["free", "platinum"])
    def test_rejects_unpaid_plans(self, db, make_profile, plan_id, stripe_checkout):
        with pytest.raises(ValidationException):
            create_checkout_session(db, make_profile(), plan_id)
        stripe_checkout["session"].assert_not_called()

    def test_stripe_outage(self, db, make_profile):
        with patch("stripe.Customer.create", side_effect=stripe.APIConnectionError("down")):
            with pytest.raises(ExternalAPIException) as exc:
                create_checkout_session(db, make_profile(), "pro")
        assert exc.value.status_code == 503

    def test_endpoint(self, client, login, make_profile, stripe_checkout):
        login(make_profile())
        response = client.post("/api/v1/stripe/create-checkout-session", json={"plan_id": "pro"})

        assert response.status_code == 200
        assert response.json()["session_id"] == "cs_test_1"


class TestVerifySession:
    """Test checkout confirmation after redirect"""

    def session(self, **overrides):
        data = {
            "id": "cs_test_1",
            "payment_status": "paid",
            "metadata": {"user_id": "user-1", "plan_id": "pro"},
            "customer": {"id": "cus_9"},
            "subscription": {"id": "sub_9", "status": "active"},
            "payment_intent": None,
        }
        data.update(overrides)
        return data

    def test_applies_plan_when_webhook_is_late(self, db, make_profile):
        user = make_profile()
        with patch("stripe.checkout.Session.retrieve", return_value=self.session()):
            status, body = verify_checkout_session(db, "cs_test_1")

        assert status == 200
        assert body == {"success": True, "updated": True, "tier": "pro"}
        assert user.subscription_tier == SubscriptionTier.PRO
        assert user.subscription_status == SubscriptionStatus.ACTIVE
        assert user.stripe_customer_id == "cus_9"
        assert user.stripe_subscription_id == "sub_9"

    def test_already_applied(self, db, make_profile):
        make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.ACTIVE)
        with patch("stripe.checkout.Session.retrieve", return_value=self.session()):
            status, body = verify_checkout_session(db, "cs_test_1")

        assert status == 200
        assert body["updated"] is False

    def test_unpaid_session_asks_client_to_poll(self, db, make_profile):
        make_profile()
        unpaid = self.session(payment_status="unpaid", subscription={"id": "sub_9", "status": "incomplete"})
        with patch("stripe.checkout.Session.retrieve", return_value=unpaid):
            status, body = verify_checkout_session(db, "cs_test_1")

        assert status == 202
        assert body["success"] is False

    def test_endpoint_status_codes(self, client, make_profile):
        make_profile()
        with patch("stripe.checkout.Session.retrieve", return_value=self.session(payment_status="unpaid",
                                                                               subscription=None)):
            response = client.get("/api/v1/stripe/verify-session", params={"session_id": "cs_test_1", "retry": 3})
        assert response.status_code == 202
        assert "still processing" in response.json()["error"]

        with patch("stripe.checkout.Session.retrieve", return_value=self.session()):
            response = client.get("/api/v1/stripe/verify-session", params={"session_id": "cs_test_1"})
        assert response.status_code == 200

        response = client.get("/api/v1/stripe/verify-session")
        assert response.status_code == 400


class TestPaymentIntent:
    """Test one-off payments"""

    def test_creates_intent(self, db, make_profile, stripe_intents):
        user = make_profile()

        result = create_user_payment_intent(db, user, 500, "EUR", {"purpose": "tip"})

        assert result == {"client_secret": "pi_test_1_secret", "id": "pi_test_1"}
        params = stripe_intents["create"].call_args.kwargs
        assert params["currency"] == "eur"
        assert params["metadata"]["purpose"] == "tip"
        assert params["metadata"]["user_id"] == user.id

    @pytest.mark.parametrize("amount,currency,code", [
        (0, "usd", "payment/invalid_amount"),
        (49, "usd", "payment/invalid_amount"),
        (500, "jpy", "payment/invalid_currency"),
    ])
    def test_invalid_requests(self, db, make_profile, amount, currency, code, stripe_intents):
        with pytest.raises(PaymentException) as exc:
            create_user_payment_intent(db, make_profile(), amount, currency, {})

        assert exc.value.status_code == 400
        assert exc.value.error_code == code
        stripe_intents["create"].assert_not_called()

    def test_subscriber_sent_to_billing_portal(self, db, make_profile):
        user = make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.ACTIVE,
                            stripe_customer_id="cus_1")
        with patch("stripe.billing_portal.Session.create", return_value={"url": "https://billing.stripe.com/p"}):
            result = create_user_payment_intent(db, user, 500, "usd", {})

        assert result == {"url": "https://billing.stripe.com/p"}

    def test_card_declined(self, db, make_profile):
        error = stripe.CardError("Your card was declined.", "card", "card_declined")
        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(PaymentException) as exc:
                create_user_payment_intent(db, make_profile(), 500, "usd", {})
        assert exc.value.status_code == 402

    def test_endpoint(self, client, login, make_profile, stripe_intents):
        login(make_profile())
        response = client.post("/api/v1/stripe/payment-intent", json={"amount": 1000})

        assert response.status_code == 200
        assert response.json()["client_secret"] == "pi_test_1_secret"


class TestWebhook:
    """Test signed webhook delivery"""

    def test_rejects_bad_signature(self, client):
        body, header = signed(stripe_event("checkout.session.completed", {}), "whsec_wrong")
        response = client.post("/api/v1/stripe/webhook", content=body, headers={"stripe-signature": header})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "payment/invalid_signature"

    def test_rejects_missing_signature(self, client):
        response = client.post("/api/v1/stripe/webhook", content="{}")
        assert response.status_code == 400

    def test_ignores_unknown_events(self, post_event):
        response = post_event("customer.created", {"id": "cus_1"})
        assert response.json() == {"received": True}

    def test_handler_runs_off_the_event_loop(self, post_event):
        on_loop = []

        def handle(self, event):
            try:
                asyncio.get_running_loop()
                on_loop.append(True)
            except RuntimeError:
                on_loop.append(False)
            return {"received": True}

        with patch("main.StripeWebhookHandler.handle", new=handle):
            assert post_event("customer.created", {"id": "cus_1"}).status_code == 200

        assert on_loop == [False]

    def test_checkout_completed(self, db, post_event, make_profile):
        user = make_profile()

        response = post_event("checkout.session.completed", {
            "id": "cs_1",
            "mode": "subscription",
            "metadata": {"user_id": user.id, "plan_id": "premium"},
            "customer": "cus_1",
            "subscription": "sub_1",
        })

        assert response.json() == {"received": True, "handled": True}
        db.refresh(user)
        assert user.subscription_tier == SubscriptionTier.PREMIUM
        assert user.subscription_status == SubscriptionStatus.ACTIVE
        assert user.stripe_subscription_id == "sub_1"
        assert db.query(SubscriptionEvent).filter_by(user_id=user.id, event_type="upgrade").count() == 1

    def test_payment_mode_checkout_not_handled(self, post_event):
        response = post_event("checkout.session.completed", {"id": "cs_2", "mode": "payment"})
        assert response.json()["handled"] is False

    def test_subscription_updated_by_price(self, db, post_event, make_profile):
        user = make_profile(tier=SubscriptionTier.PREMIUM, status=SubscriptionStatus.ACTIVE,
                            stripe_customer_id="cus_1")

        post_event("customer.subscription.updated", {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "past_due",
            "cancel_at_period_end": True,
            "items": {"data": [{"price": {"id": "price_pro"}, "current_period_end": 1717416000}]},
        })

        db.refresh(user)
        assert user.subscription_tier == SubscriptionTier.PRO
        assert user.subscription_status == SubscriptionStatus.PAST_DUE
        assert user.current_period_end == datetime(2024, 6, 3, 12, 0)
        assert user.cancel_at_period_end is True

    def test_subscription_deleted(self, db, post_event, make_profile):
        user = make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.ACTIVE,
                            stripe_customer_id="cus_1", stripe_subscription_id="sub_1")

        response = post_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})

        assert response.json()["handled"] is True
        db.refresh(user)
        assert user.subscription_tier == SubscriptionTier.FREE
        assert user.subscription_status == SubscriptionStatus.CANCELED
        assert user.stripe_subscription_id is None
        assert db.query(SubscriptionEvent).filter_by(event_type="cancel").count() == 1

    def test_invoice_payment_failed(self, db, post_event, make_profile):
        user = make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.ACTIVE,
                            stripe_customer_id="cus_1")

        post_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})

        db.refresh(user)
        assert user.subscription_status == SubscriptionStatus.PAST_DUE

    def test_unknown_customer(self, post_event):
        response = post_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_nobody"})
        assert response.json()["handled"] is False

    def test_hold_payment_succeeded(self, db, post_event, premium_user, make_spot, stripe_intents):
        result = HoldService(db).create_hold(premium_user, make_spot().id, 15)

        response = post_event("payment_intent.succeeded", {
            "id": result["payment_intent"]["id"],
            "metadata": {"type": "spot_hold", "hold_id": result["hold_id"]},
        })

        assert response.json()["handled"] is True
        hold = db.get(SpotHold, result["hold_id"])
        db.refresh(hold)
        assert hold.status == HoldStatus.ACTIVE

    def test_hold_payment_failed(self, db, post_event, premium_user, make_spot, stripe_intents):
        result = HoldService(db).create_hold(premium_user, make_spot().id, 15)

        post_event("payment_intent.payment_failed", {
            "id": result["payment_intent"]["id"],
            "metadata": {"type": "spot_hold"},
        })

        hold = db.get(SpotHold, result["hold_id"])
        db.refresh(hold)
        assert hold.status == HoldStatus.CANCELLED

    def test_other_payment_intents_ignored(self, post_event):
        response = post_event("payment_intent.succeeded", {"id": "pi_other", "metadata": {}})
        assert response.json()["handled"] is False
