"""
Paid spot holds

A hold owns its spot through the lock columns on parking_spots (held_by, held_until).
The lock is only ever taken by a conditional UPDATE, so two users racing for the
same spot cannot both get it. The lock's held_until always equals the hold's expires_at.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

import payments
from cache import cache
from config import get_settings
from database import get_session_factory
from exceptions import (
    AuthorizationException, ConflictException, DataNotFoundException,
    ExternalAPIException, PaymentException, ValidationException
)
from logging_config import get_logger
from models import HoldStatus, ParkingSpot, Profile, SpotHold
from monitoring import spot_holds
from subscriptions import SubscriptionService

logger = get_logger(__name__)

HOLD_PRICING = {15: 0.99, 30: 1.99, 60: 3.99}


def hold_price(duration: int) -> float:
    if duration not in HOLD_PRICING:
        raise ValidationException(
            "duration",
            f"Hold duration must be one of {sorted(HOLD_PRICING)} minutes",
            "invalid_duration"
        )
    return HOLD_PRICING[duration]


def serialize_hold(hold: SpotHold) -> Dict[str, Any]:
    return {
        "id": hold.id,
        "spot_id": hold.spot_id,
        "user_id": hold.user_id,
        "status": hold.status,
        "duration": hold.duration_minutes,
        "amount": hold.amount,
        "currency": hold.currency,
        "payment_intent_id": hold.payment_intent_id,
        "created_at": hold.created_at.isoformat() if hold.created_at else None,
        "activated_at": hold.activated_at.isoformat() if hold.activated_at else None,
        "expires_at": hold.expires_at.isoformat(),
        "released_at": hold.released_at.isoformat() if hold.released_at else None,
        "spot_name": hold.spot.name if hold.spot else None,
    }


class HoldService:
    """Create, activate, release and expire spot holds"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    # Lock primitives

    def _acquire_lock(self, spot_id: str, user_id: str, until: datetime, now: datetime) -> bool:
        updated = self.db.query(ParkingSpot).filter(
            ParkingSpot.id == spot_id,
            ParkingSpot.is_available.is_(True),
            ParkingSpot.status == "active",
            or_(ParkingSpot.held_until.is_(None), ParkingSpot.held_until <= now)
        ).update(
            {ParkingSpot.held_by: user_id, ParkingSpot.held_until: until},
            synchronize_session=False
        )
        self.db.commit()
        return updated == 1

    def _release_lock(self, hold: SpotHold) -> None:
        self.db.query(ParkingSpot).filter(
            ParkingSpot.id == hold.spot_id,
            ParkingSpot.held_by == hold.user_id,
            ParkingSpot.held_until == hold.expires_at
        ).update(
            {ParkingSpot.held_by: None, ParkingSpot.held_until: None},
            synchronize_session=False
        )

    def _transition(self, hold: SpotHold, from_statuses, values: Dict[str, Any]) -> bool:
        """Move a hold between states only if it is still in one of from_statuses"""
        updated = self.db.query(SpotHold).filter(
            SpotHold.id == hold.id,
            SpotHold.status.in_(from_statuses)
        ).update(values, synchronize_session=False)
        return updated == 1

    # Operations

    def create_hold(self, user: Profile, spot_id: str, duration: int) -> Dict[str, Any]:
        amount = hold_price(duration)

        now = self.clock()
        spot = self.db.get(ParkingSpot, spot_id)
        if spot is None or spot.status == "deleted" or (spot.expires_at and spot.expires_at <= now):
            raise DataNotFoundException("Parking spot", spot_id)

        if not SubscriptionService(self.db).can_use_feature(user, "spot_holds"):
            raise AuthorizationException("Spot holds require a paid plan", "upgrade_required")

        expires_at = now + timedelta(minutes=duration)

        if not self._acquire_lock(spot_id, user.id, expires_at, now):
            self.db.refresh(spot)
            spot_holds.labels(status="conflict").inc()
            raise ConflictException(
                "Spot is currently held by another user",
                {"expires_at": spot.held_until.isoformat() if spot.held_until else None}
            )

        hold = SpotHold(
            spot_id=spot_id,
            user_id=user.id,
            duration_minutes=duration,
            amount=amount,
            currency="usd",
            status=HoldStatus.PENDING,
            created_at=now,
            expires_at=expires_at,
        )
        self.db.add(hold)
        self.db.commit()

        try:
            intent = payments.create_payment_intent(
                int(round(amount * 100)),
                "usd",
                {
                    "type": "spot_hold",
                    "hold_id": hold.id,
                    "spot_id": spot_id,
                    "user_id": user.id,
                    "duration": str(duration),
                },
                description=f"Parking spot hold - {duration} minutes",
                customer=user.stripe_customer_id,
            )
        except (PaymentException, ExternalAPIException) as e:
            logger.error(f"Payment setup failed for hold {hold.id}: {e.message}",
                         extra={"hold_id": hold.id, "user_id": user.id})
            self._transition(hold, (HoldStatus.PENDING,), {
                SpotHold.status: HoldStatus.CANCELLED, SpotHold.released_at: now
            })
            self._release_lock(hold)
            self.db.commit()
            raise ExternalAPIException("stripe", "Payment setup failed", 503)

        hold.payment_intent_id = intent["id"]
        self.db.commit()
        spot_holds.labels(status=HoldStatus.PENDING).inc()
        logger.info(f"Hold {hold.id} created on spot {spot_id} for {duration} minutes",
                    extra={"hold_id": hold.id, "user_id": user.id})

        return {
            "success": True,
            "hold_id": hold.id,
            "expires_at": expires_at.isoformat(),
            "payment_intent": {"id": intent["id"], "client_secret": intent["client_secret"]},
            "amount": amount,
            "duration": duration,
            "spot_name": spot.name,
        }

    def activate_hold(self, payment_intent_id: str) -> Optional[SpotHold]:
        """Payment succeeded: start the paid window from now and extend the lock"""
        hold = self.db.query(SpotHold).filter(SpotHold.payment_intent_id == payment_intent_id).first()
        if hold is None:
            logger.warning(f"No hold for payment intent {payment_intent_id}")
            return None

        if hold.status == HoldStatus.ACTIVE:
            return hold

        if hold.status != HoldStatus.PENDING:
            # Hold lapsed before the payment landed
            logger.warning(f"Payment for {hold.status} hold {hold.id}, refunding",
                           extra={"hold_id": hold.id})
            self._refund_quietly(hold)
            return hold

        now = self.clock()
        new_expiry = now + timedelta(minutes=hold.duration_minutes)

        # The lock must still be ours; once it lapses another user may have taken the spot
        extended = self.db.query(ParkingSpot).filter(
            ParkingSpot.id == hold.spot_id,
            ParkingSpot.held_by == hold.user_id,
            ParkingSpot.held_until == hold.expires_at
        ).update({ParkingSpot.held_until: new_expiry}, synchronize_session=False)

        if extended != 1:
            if self._transition(hold, (HoldStatus.PENDING,), {
                SpotHold.status: HoldStatus.CANCELLED, SpotHold.released_at: now
            }):
                spot_holds.labels(status=HoldStatus.CANCELLED).inc()
            self.db.commit()
            self.db.refresh(hold)
            logger.warning(f"Hold {hold.id} lost its spot before payment, refunding",
                           extra={"hold_id": hold.id, "user_id": hold.user_id})
            self._refund_quietly(hold)
            return hold

        if not self._transition(hold, (HoldStatus.PENDING,), {
            SpotHold.status: HoldStatus.ACTIVE,
            SpotHold.activated_at: now,
            SpotHold.expires_at: new_expiry,
        }):
            self.db.rollback()
            self.db.refresh(hold)
            return hold

        self.db.commit()
        self.db.refresh(hold)

        spot_holds.labels(status=HoldStatus.ACTIVE).inc()
        logger.info(f"Hold {hold.id} active until {new_expiry.isoformat()}",
                    extra={"hold_id": hold.id, "user_id": hold.user_id})
        return hold

    def cancel_for_payment(self, payment_intent_id: str) -> Optional[SpotHold]:
        """Payment failed or was cancelled: drop the pending hold"""
        hold = self.db.query(SpotHold).filter(SpotHold.payment_intent_id == payment_intent_id).first()
        if hold is None:
            return None

        if self._transition(hold, (HoldStatus.PENDING,), {
            SpotHold.status: HoldStatus.CANCELLED, SpotHold.released_at: self.clock()
        }):
            self._release_lock(hold)
            spot_holds.labels(status=HoldStatus.CANCELLED).inc()
            logger.info(f"Hold {hold.id} cancelled after payment failure", extra={"hold_id": hold.id})
        self.db.commit()
        self.db.refresh(hold)
        return hold

    def release_hold(self, user: Profile, hold_id: str) -> SpotHold:
        hold = self.db.query(SpotHold).filter(
            SpotHold.id == hold_id,
            SpotHold.user_id == user.id,
            SpotHold.status.in_(HoldStatus.LIVE)
        ).first()
        if hold is None:
            raise DataNotFoundException("Hold", hold_id)

        was_pending = hold.status == HoldStatus.PENDING
        if not self._transition(hold, HoldStatus.LIVE, {
            SpotHold.status: HoldStatus.RELEASED, SpotHold.released_at: self.clock()
        }):
            self.db.rollback()
            raise DataNotFoundException("Hold", hold_id)
        self._release_lock(hold)
        self.db.commit()
        self.db.refresh(hold)

        if was_pending and hold.payment_intent_id:
            self._cancel_intent_quietly(hold.payment_intent_id)

        spot_holds.labels(status=HoldStatus.RELEASED).inc()
        logger.info(f"Hold {hold.id} released", extra={"hold_id": hold.id, "user_id": user.id})
        return hold

    def complete_hold(self, user_id: str, spot_id: str) -> Optional[SpotHold]:
        """The holder arrived at the spot"""
        hold = self.db.query(SpotHold).filter(
            SpotHold.spot_id == spot_id,
            SpotHold.user_id == user_id,
            SpotHold.status.in_(HoldStatus.LIVE)
        ).order_by(SpotHold.created_at.desc()).first()
        if hold is None:
            return None

        if self._transition(hold, HoldStatus.LIVE, {
            SpotHold.status: HoldStatus.COMPLETED, SpotHold.released_at: self.clock()
        }):
            self._release_lock(hold)
            spot_holds.labels(status=HoldStatus.COMPLETED).inc()
        self.db.commit()
        self.db.refresh(hold)
        return hold

    def get_hold(self, user: Profile, hold_id: str) -> SpotHold:
        hold = self.db.query(SpotHold).filter(
            SpotHold.id == hold_id, SpotHold.user_id == user.id
        ).first()
        if hold is None:
            raise DataNotFoundException("Hold", hold_id)
        return hold

    def live_hold_for_spot(self, spot_id: str) -> Optional[SpotHold]:
        return self.db.query(SpotHold).filter(
            SpotHold.spot_id == spot_id,
            SpotHold.status.in_(HoldStatus.LIVE),
            SpotHold.expires_at > self.clock()
        ).order_by(SpotHold.created_at.desc()).first()

    def user_holds(self, user: Profile) -> List[SpotHold]:
        return self.db.query(SpotHold).filter(
            SpotHold.user_id == user.id,
            SpotHold.status.in_(HoldStatus.LIVE)
        ).order_by(SpotHold.created_at.desc()).all()

    def expire_holds(self) -> Dict[str, int]:
        """Expire lapsed holds, cancel unpaid ones and clear stale locks"""
        settings = get_settings()
        now = self.clock()
        payment_cutoff = now - timedelta(minutes=settings.hold_payment_window_minutes)
        expired = cancelled = 0
        abandoned_intents = []

        lapsed = self.db.query(SpotHold).filter(
            SpotHold.status.in_(HoldStatus.LIVE),
            or_(
                SpotHold.expires_at <= now,
                (SpotHold.status == HoldStatus.PENDING) & (SpotHold.created_at <= payment_cutoff)
            )
        ).all()

        for hold in lapsed:
            if hold.status == HoldStatus.PENDING:
                if self._transition(hold, (HoldStatus.PENDING,), {
                    SpotHold.status: HoldStatus.CANCELLED, SpotHold.released_at: now
                }):
                    cancelled += 1
                    if hold.payment_intent_id:
                        abandoned_intents.append(hold.payment_intent_id)
                    self._release_lock(hold)
            elif self._transition(hold, (HoldStatus.ACTIVE,), {
                SpotHold.status: HoldStatus.EXPIRED, SpotHold.released_at: now
            }):
                expired += 1
                self._release_lock(hold)

        stale_locks = self.db.query(ParkingSpot).filter(
            ParkingSpot.held_until.isnot(None),
            ParkingSpot.held_until <= now
        ).update(
            {ParkingSpot.held_by: None, ParkingSpot.held_until: None},
            synchronize_session=False
        )
        self.db.commit()

        for intent_id in abandoned_intents:
            self._cancel_intent_quietly(intent_id)

        if expired:
            spot_holds.labels(status=HoldStatus.EXPIRED).inc(expired)
        if cancelled:
            spot_holds.labels(status=HoldStatus.CANCELLED).inc(cancelled)
        if expired or cancelled or stale_locks:
            logger.info(f"Hold reaper: {expired} expired, {cancelled} cancelled, {stale_locks} locks cleared")

        return {"expired": expired, "cancelled": cancelled, "locks_cleared": stale_locks}

    def _refund_quietly(self, hold: SpotHold) -> None:
        try:
            payments.refund_payment_intent(hold.payment_intent_id)
        except (PaymentException, ExternalAPIException) as e:
            logger.error(f"Refund failed for {hold.payment_intent_id}: {e.message}", extra={"hold_id": hold.id})

    def _cancel_intent_quietly(self, payment_intent_id: str) -> None:
        try:
            payments.cancel_payment_intent(payment_intent_id)
        except (PaymentException, ExternalAPIException) as e:
            logger.warning(f"Could not cancel payment intent {payment_intent_id}: {e.message}")


def reap_once() -> Dict[str, int]:
    db = get_session_factory()()
    try:
        result = HoldService(db).expire_holds()
    finally:
        db.close()
    cache.clear_expired()
    return result


async def run_hold_reaper(interval: int) -> None:
    """Background loop started by the app lifespan"""
    logger.info(f"Hold reaper running every {interval}s")
    while True:
        try:
            await asyncio.to_thread(reap_once)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Hold reaper pass failed")
        await asyncio.sleep(interval)
