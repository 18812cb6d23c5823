"""
Tests for plans, gating and subscription changes
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

from config import get_settings
from exceptions import ConflictException, DataNotFoundException, ValidationException
from models import (
    AnalyticsEvent, SubscriptionEvent, SubscriptionStatus, SubscriptionTier
)
from subscriptions import (
    PLANS, TRIAL_DAYS, SubscriptionService, get_plan, plan_for_price, resolve_plan_id
)


class TestPlans:
    """Test the plan catalogue"""

    def test_plan_order_and_prices(self):
        assert [p.id for p in PLANS] == ["free", "premium", "pro", "enterprise"]
        assert [p.price for p in PLANS] == [0, 8.99, 19.99, 49.99]

    def test_only_one_recommended(self):
        assert [p.id for p in PLANS if p.recommended] == ["premium"]

    @pytest.mark.parametrize("plan_id,expected", [
        ("premium", "premium"),
        ("PRO", "pro"),
        ("navigator", "premium"),
        ("pro_parker", "pro"),
        ("fleet_manager", "enterprise"),
        ("basic", "free"),
        ("gold", None),
        (None, None),
    ])
    def test_resolve_plan_id(self, plan_id, expected):
        assert resolve_plan_id(plan_id) == expected

    def test_plan_for_price(self):
        settings = get_settings()
        assert plan_for_price("price_enterprise", settings).id == "enterprise"
        assert plan_for_price("price_unknown", settings) is None
        assert plan_for_price(None, settings) is None

    def test_to_dict_hides_price_setting(self):
        data = get_plan("pro").to_dict()
        assert "price_setting" not in data
        assert data["limits"]["advanced_predictions"] is True


class TestGating:
    """Test feature checks against the effective plan"""

    def test_free_plan(self, db, make_profile):
        service = SubscriptionService(db)
        user = make_profile()

        assert service.can_use_feature(user, "spot_holds") is False
        assert service.check_usage_limit(user, "daily_searches", 4) is True
        assert service.check_usage_limit(user, "daily_searches", 5) is False

    def test_paid_plan_unlimited_searches(self, db, premium_user):
        service = SubscriptionService(db)
        assert service.can_use_feature(premium_user, "daily_searches") is True
        assert service.check_usage_limit(premium_user, "daily_searches", 10_000) is True

    def test_lapsed_subscription_falls_back_to_free(self, db, make_profile):
        user = make_profile(tier=SubscriptionTier.ENTERPRISE, status=SubscriptionStatus.PAST_DUE)
        service = SubscriptionService(db)

        assert service.effective_plan(user).id == SubscriptionTier.FREE
        assert service.is_subscribed(user) is False

    def test_enterprise_features(self, db, make_profile):
        user = make_profile(tier=SubscriptionTier.ENTERPRISE, status=SubscriptionStatus.ACTIVE)
        service = SubscriptionService(db)

        assert service.can_use_feature(user, "fleet_management") is True
        assert service.can_use_feature(user, "max_alerts") is True

    def test_usage(self, db, make_profile):
        user = make_profile()
        db.add(AnalyticsEvent(user_id=user.id, event="search"))
        db.add(AnalyticsEvent(user_id=user.id, event="search", created_at=datetime.utcnow() - timedelta(days=2)))
        db.commit()

        usage = SubscriptionService(db).usage(user)

        assert usage["searches_today"] == 1
        assert usage["active_holds"] == 0
        assert usage["plan_limits"]["daily_searches"] == 5


class TestPlanChanges:
    """Test applying plans, trials and cancellation"""

    def test_apply_plan_records_upgrade(self, db, make_profile):
        user = make_profile()

        SubscriptionService(db).apply_plan(user, "pro", stripe_customer_id="cus_1")

        assert user.subscription_tier == SubscriptionTier.PRO
        assert user.subscription_status == SubscriptionStatus.ACTIVE
        event = db.query(SubscriptionEvent).one()
        assert (event.event_type, event.from_plan, event.to_plan) == ("upgrade", "free", "pro")

    def test_apply_plan_records_downgrade(self, db, make_profile):
        user = make_profile(tier=SubscriptionTier.ENTERPRISE, status=SubscriptionStatus.ACTIVE)
        SubscriptionService(db).apply_plan(user, "premium")
        assert db.query(SubscriptionEvent).one().event_type == "downgrade"

    def test_same_plan_records_nothing(self, db, premium_user):
        SubscriptionService(db).apply_plan(premium_user, "navigator", SubscriptionStatus.PAST_DUE)

        assert premium_user.subscription_status == SubscriptionStatus.PAST_DUE
        assert db.query(SubscriptionEvent).count() == 0

    def test_apply_unknown_plan(self, db, make_profile):
        with pytest.raises(ValidationException):
            SubscriptionService(db).apply_plan(make_profile(), "gold")

    def test_trial_once(self, db, make_profile):
        user = make_profile()
        service = SubscriptionService(db)
        now = datetime.utcnow()

        result = service.start_trial(user, "pro", now)

        assert result["trial_end"] == (now + timedelta(days=TRIAL_DAYS)).isoformat()
        assert user.subscription_status == SubscriptionStatus.TRIALING
        assert service.is_subscribed(user) is True

        with pytest.raises(ConflictException):
            service.start_trial(user, "enterprise", now)

    def test_lapsed_trial_falls_back_to_free(self, db, make_profile):
        user = make_profile()
        service = SubscriptionService(db)
        service.start_trial(user, "pro", datetime.utcnow() - timedelta(days=30))

        assert service.effective_plan(user).id == SubscriptionTier.FREE
        assert service.can_use_feature(user, "spot_holds") is False
        assert service.is_subscribed(user) is False

    def test_end_lapsed_trials(self, db, make_profile):
        lapsed = make_profile("lapsed")
        running = make_profile("running")
        service = SubscriptionService(db)
        now = datetime(2024, 6, 3, 12, 0)
        service.start_trial(lapsed, "pro", now - timedelta(days=TRIAL_DAYS + 1))
        service.start_trial(running, "premium", now - timedelta(days=2))

        with patch("subscriptions.MarketingAutomationManager.process_user_event") as process:
            assert service.end_lapsed_trials(now) == 1

        assert lapsed.subscription_tier == SubscriptionTier.FREE
        assert lapsed.subscription_status == SubscriptionStatus.INACTIVE
        assert running.subscription_status == SubscriptionStatus.TRIALING
        event = db.query(SubscriptionEvent).filter_by(user_id="lapsed", event_type="trial_ended").one()
        assert event.from_plan == "pro"
        process.assert_called_once_with(lapsed, "trial_ended", {"plan_id": "pro"})

    def test_no_trial_of_free_plan(self, db, make_profile):
        with pytest.raises(ValidationException):
            SubscriptionService(db).start_trial(make_profile(), "free")

    def test_cancel_at_period_end(self, db, make_profile):
        user = make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.ACTIVE,
                            stripe_subscription_id="sub_1")
        with patch("stripe.Subscription.modify") as modify:
            result = SubscriptionService(db).cancel(user)

        modify.assert_called_once_with("sub_1", cancel_at_period_end=True)
        assert result["immediate"] is False
        assert result["status"]["cancel_at_period_end"] is True
        assert user.subscription_tier == SubscriptionTier.PRO

    def test_cancel_immediately(self, db, make_profile):
        user = make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.ACTIVE,
                            stripe_subscription_id="sub_1")
        with patch("stripe.Subscription.cancel") as cancel:
            SubscriptionService(db).cancel(user, immediate=True)

        cancel.assert_called_once_with("sub_1")
        assert user.subscription_tier == SubscriptionTier.FREE
        assert user.subscription_status == SubscriptionStatus.CANCELED
        assert db.query(SubscriptionEvent).filter_by(event_type="cancel").count() == 1

    def test_cancel_without_subscription(self, db, make_profile):
        with pytest.raises(DataNotFoundException):
            SubscriptionService(db).cancel(make_profile())


class TestSubscriptionEndpoints:
    """Test subscription routes"""

    def test_plans_are_public(self, client):
        response = client.get("/api/v1/subscription/plans")

        assert response.status_code == 200
        plans = response.json()["plans"]
        assert plans[1]["name"] == "Navigator"
        assert "price_setting" not in plans[1]

    def test_status(self, client, login, premium_user):
        login(premium_user)
        data = client.get("/api/v1/subscription/status").json()

        assert data["is_subscribed"] is True
        assert data["plan_id"] == "premium"

    def test_features(self, client, login, make_profile):
        login(make_profile())
        data = client.get("/api/v1/subscription/features").json()

        assert data["plan_id"] == "free"
        assert data["limits"]["spot_holds"] is False

    def test_status_requires_login(self, client):
        assert client.get("/api/v1/subscription/status").status_code == 401

    def test_cancel_without_body(self, client, login, make_profile):
        login(make_profile(tier=SubscriptionTier.PRO, status=SubscriptionStatus.TRIALING))
        response = client.post("/api/v1/subscription/cancel")

        assert response.status_code == 200
        assert response.json()["immediate"] is False

    def test_trial_conflict(self, client, login, make_profile):
        login(make_profile(trial_end=datetime(2024, 1, 1)))
        response = client.post("/api/v1/subscription/trial", json={"plan_id": "pro"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
