"""
Admin moderation and scheduled housekeeping
"""
from datetime import datetime, timedelta
from typing import Any, Dict

from sqlalchemy.orm import Session

from exceptions import AuthorizationException, DataNotFoundException, ValidationException
from cache import cache
from holds import HoldService
from logging_config import get_logger
from models import AdminLog, NotificationToken, Profile, UserRole
from spots import SpotService
from subscriptions import SubscriptionService

logger = get_logger(__name__)

SUSPENSION_PERIOD = timedelta(days=30)
STALE_TOKEN_AGE = timedelta(days=30)


def serialize_profile(profile: Profile) -> Dict[str, Any]:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name,
        "avatar_url": profile.avatar_url,
        "role": profile.role,
        "suspended_until": profile.suspended_until.isoformat() if profile.suspended_until else None,
        "reputation_score": profile.reputation_score or 0,
        "total_reports": profile.total_reports or 0,
        "subscription_tier": profile.subscription_tier,
        "subscription_status": profile.subscription_status,
        "created_at": profile.created_at.isoformat() if profile.created_at else None,
        "last_seen_at": profile.last_seen_at.isoformat() if profile.last_seen_at else None,
    }


def list_profiles(db: Session, page: int = 1, per_page: int = 50) -> Dict[str, Any]:
    query = db.query(Profile).order_by(Profile.created_at.desc())
    total = query.count()
    profiles = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        "profiles": [serialize_profile(p) for p in profiles],
        "page": page,
        "per_page": per_page,
        "total": total,
    }


def set_suspension(db: Session, admin: Profile, user_id: str, action: str) -> Dict[str, Any]:
    if action not in ("suspend", "unsuspend"):
        raise ValidationException("action", "Action must be 'suspend' or 'unsuspend'", "invalid_action")

    target = db.get(Profile, user_id)
    if target is None:
        raise DataNotFoundException("User", user_id)
    if target.role == UserRole.ADMIN:
        raise AuthorizationException("Cannot suspend admin users", "cannot_suspend_admin")

    previous_role = target.role
    if action == "suspend":
        target.role = UserRole.SUSPENDED
        target.suspended_until = datetime.utcnow() + SUSPENSION_PERIOD
    else:
        target.role = UserRole.USER
        target.suspended_until = None

    db.add(AdminLog(
        admin_id=admin.id,
        action=f"user_{action}ed",
        target_id=target.id,
        details={"email": target.email, "previous_role": previous_role, "new_role": target.role},
    ))
    db.commit()

    logger.info(f"User {target.id} {action}ed", extra={"user_id": admin.id})
    return {"success": True, "message": f"User {action}ed successfully", "profile": serialize_profile(target)}


def delete_stale_tokens(db: Session, now: datetime) -> int:
    deleted = db.query(NotificationToken).filter(
        NotificationToken.is_active.is_(False),
        NotificationToken.updated_at < now - STALE_TOKEN_AGE
    ).delete(synchronize_session=False)
    db.commit()
    return deleted


def run_cleanup(db: Session) -> Dict[str, Any]:
    """Expire holds and trials, retire lapsed community spots and drop dead push tokens"""
    now = datetime.utcnow()
    holds = HoldService(db).expire_holds()
    spots_deleted = SpotService(db).delete_expired()
    tokens_deleted = delete_stale_tokens(db, now)
    trials_ended = SubscriptionService(db).end_lapsed_trials(now)
    cache_entries = cache.clear_expired()

    logger.info(
        f"Cleanup: {spots_deleted} spots, {tokens_deleted} tokens removed, {trials_ended} trials ended",
        extra={"holds": holds}
    )
    return {
        "success": True,
        "spots_deleted": spots_deleted,
        "tokens_deleted": tokens_deleted,
        "trials_ended": trials_ended,
        "cache_entries_cleared": cache_entries,
        "holds": holds,
        "timestamp": now.isoformat(),
    }
