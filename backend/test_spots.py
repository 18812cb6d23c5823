"""
Tests for community spots, nearby search and arrival
"""
import pytest
from datetime import datetime, timedelta

from exceptions import AuthorizationException, RateLimitException, ValidationException
from models import AnalyticsEvent, ParkingSession, ParkingSpot, SpotHold, SpotReport, HoldStatus
from schemas import ArrivalConfirmation, SpotReportCreate, SpotUpdate
from spots import SpotService, validate_coordinates


class TestNearbySearch:
    """Test radius search"""

    def test_sorted_by_distance_within_radius(self, db, make_spot):
        near = make_spot(40.7581, -73.9855, name="Near")
        farther = make_spot(40.7600, -73.9855, name="Farther")
        make_spot(40.7800, -73.9855, name="Outside")

        result = SpotService(db).nearby(40.7580, -73.9855, 500)

        assert [s["id"] for s in result["spots"]] == [near.id, farther.id]
        assert result["spots"][0]["distance"] < result["spots"][1]["distance"]
        assert result["center"] == {"lat": 40.7580, "lng": -73.9855}
        assert result["radius"] == 500

    def test_skips_deleted_and_expired_spots(self, db, make_spot):
        make_spot(status="deleted")
        make_spot(expires_at=datetime.utcnow() - timedelta(minutes=1))
        live = make_spot(expires_at=datetime.utcnow() + timedelta(minutes=10))

        result = SpotService(db).nearby(40.7580, -73.9855, 500)

        assert [s["id"] for s in result["spots"]] == [live.id]

    def test_reports_held_spots(self, db, make_spot, make_profile):
        holder = make_profile()
        make_spot(held_by=holder.id, held_until=datetime.utcnow() + timedelta(minutes=5))

        spot = SpotService(db).nearby(40.7580, -73.9855, 500)["spots"][0]

        assert spot["is_held"] is True
        assert spot["held_until"] is not None

    @pytest.mark.parametrize("lat,lng", [(91, 0), (-91, 0), (0, 181), (0, -181)])
    def test_invalid_coordinates(self, lat, lng):
        with pytest.raises(ValidationException):
            validate_coordinates(lat, lng)

    def test_free_plan_daily_limit(self, db, make_profile):
        user = make_profile()
        service = SpotService(db)
        for _ in range(5):
            service.nearby(40.7580, -73.9855, 500, user)

        with pytest.raises(RateLimitException) as exc:
            service.nearby(40.7580, -73.9855, 500, user)

        assert exc.value.status_code == 429
        assert db.query(AnalyticsEvent).filter_by(event="search").count() == 5
        assert db.query(AnalyticsEvent).filter_by(event="search_limit_reached").count() == 1

    def test_limit_event_recorded_once_per_day(self, db, make_profile):
        user = make_profile()
        service = SpotService(db)
        for _ in range(5):
            service.nearby(40.7580, -73.9855, 500, user)
        for _ in range(3):
            with pytest.raises(RateLimitException):
                service.nearby(40.7580, -73.9855, 500, user)

        assert db.query(AnalyticsEvent).filter_by(event="search_limit_reached").count() == 1

    def test_paid_plan_is_unlimited(self, db, premium_user):
        service = SpotService(db)
        for _ in range(8):
            service.nearby(40.7580, -73.9855, 500, premium_user)
        assert db.query(AnalyticsEvent).filter_by(event="search").count() == 8


class TestSpotReports:
    """Test reporting and updating spots"""

    def test_report_creates_short_lived_spot(self, db, make_profile):
        user = make_profile()
        spot = SpotService(db).report(user, SpotReportCreate(
            latitude=40.75, longitude=-73.98, address="W 42nd St", notes="Just left"
        ))

        assert spot.reported_by == user.id
        assert spot.spot_type == "street"
        assert timedelta(minutes=14) < spot.expires_at - datetime.utcnow() <= timedelta(minutes=15)
        assert user.reputation_score == 5
        assert user.total_reports == 1
        assert db.query(SpotReport).filter_by(spot_id=spot.id).one().notes == "Just left"

    def test_taken_report_marks_unavailable(self, db, make_profile, make_spot):
        user = make_profile()
        spot = make_spot()

        SpotService(db).update(user, spot.id, SpotUpdate(report_type="taken"))

        assert spot.is_available is False
        assert user.reputation_score == 2

    def test_invalid_report_flags_spot(self, db, make_profile, make_spot):
        user = make_profile()
        spot = make_spot()

        SpotService(db).update(user, spot.id, SpotUpdate(report_type="invalid"))

        assert spot.status == "reported"
        assert user.reputation_score == -1

    def test_delete_requires_reporter_or_admin(self, db, make_profile, make_spot, admin_user):
        reporter = make_profile("reporter")
        stranger = make_profile("stranger")
        spot = make_spot(reported_by=reporter.id)

        with pytest.raises(AuthorizationException):
            SpotService(db).delete(stranger, spot.id)

        SpotService(db).delete(admin_user, spot.id)
        assert spot.status == "deleted"

    def test_delete_expired_reports(self, db, make_profile, make_spot):
        reporter = make_profile()
        old = make_spot(reported_by=reporter.id, expires_at=datetime.utcnow() - timedelta(minutes=1))
        fresh = make_spot(reported_by=reporter.id, expires_at=datetime.utcnow() + timedelta(minutes=5))
        imported = make_spot()

        assert SpotService(db).delete_expired() == 1

        for spot in (old, fresh, imported):
            db.refresh(spot)
        assert old.status == "deleted"
        assert fresh.status == "active"
        assert imported.status == "active"


class TestArrival:
    """Test confirm-arrival"""

    def test_arrival_completes_hold(self, db, premium_user, make_spot):
        spot = make_spot()
        now = datetime.utcnow()
        hold = SpotHold(
            spot_id=spot.id, user_id=premium_user.id, duration_minutes=15, amount=0.99,
            status=HoldStatus.ACTIVE, created_at=now, expires_at=now + timedelta(minutes=15),
        )
        db.add(hold)
        spot.held_by = premium_user.id
        spot.held_until = hold.expires_at
        db.commit()

        result = SpotService(db).confirm_arrival(premium_user, ArrivalConfirmation(
            spot_id=spot.id, arrival_time="2024-06-03T12:00:00Z"
        ))

        assert result["hold_completed"] is True
        assert result["arrived_at"] == "2024-06-03T12:00:00"
        db.refresh(hold)
        assert hold.status == HoldStatus.COMPLETED
        db.refresh(spot)
        assert spot.held_by is None
        assert spot.is_available is False
        assert db.query(ParkingSession).one().hold_id == hold.id

    def test_arrival_without_hold(self, db, make_profile, make_spot):
        result = SpotService(db).confirm_arrival(make_profile(), ArrivalConfirmation(
            spot_id=make_spot().id, arrival_time=datetime(2024, 6, 3, 9, 30)
        ))
        assert result["hold_completed"] is False


class TestSpotEndpoints:
    """Test spot routes"""

    def test_nearby_anonymous(self, client, make_spot):
        spot = make_spot()
        response = client.get("/api/v1/spots/nearby", params={"lat": 40.7580, "lng": -73.9855})

        assert response.status_code == 200
        assert response.json()["spots"][0]["id"] == spot.id

    def test_nearby_bad_latitude(self, client):
        response = client.get("/api/v1/spots/nearby", params={"lat": 95, "lng": -73.9855})
        assert response.status_code == 400

    def test_report_and_get(self, client, login, make_profile):
        login(make_profile())
        response = client.post("/api/v1/spots/report", json={
            "latitude": 40.75, "longitude": -73.98, "notes": "Free now"
        })
        assert response.status_code == 201
        spot_id = response.json()["spot"]["id"]

        response = client.get(f"/api/v1/spots/{spot_id}")
        assert response.status_code == 200
        assert response.json()["reports"][0]["notes"] == "Free now"

    def test_patch_spot(self, client, login, make_profile, make_spot):
        login(make_profile())
        spot = make_spot()

        response = client.patch(f"/api/v1/spots/{spot.id}", json={"is_available": False})

        assert response.status_code == 200
        assert response.json()["spot"]["is_available"] is False

    def test_delete_forbidden(self, client, login, make_profile, make_spot):
        login(make_profile("stranger"))
        spot = make_spot()

        response = client.delete(f"/api/v1/spots/{spot.id}")
        assert response.status_code == 403

    def test_missing_spot(self, client):
        response = client.get("/api/v1/spots/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "parking_spot_not_found"

    def test_confirm_arrival(self, client, login, make_profile, make_spot):
        login(make_profile())
        response = client.post("/api/v1/parking/confirm-arrival", json={
            "spot_id": make_spot().id, "arrival_time": "2024-06-03T12:00:00"
        })
        assert response.status_code == 200
        assert response.json()["success"] is True
