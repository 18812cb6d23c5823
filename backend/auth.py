"""
Supabase session verification and role checks
"""
from datetime import datetime
from functools import lru_cache
from typing import Optional, Dict, Any
import secrets
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from supabase import create_client, Client

from config import get_settings
from database import get_db
from exceptions import AuthenticationException, AuthorizationException
from logging_config import get_logger
from marketing import MarketingAutomationManager
from models import Profile, UserRole

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@lru_cache()
def get_supabase() -> Client:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise AuthenticationException("Authentication service not configured")
    return create_client(settings.supabase_url, settings.supabase_anon_key)


def verify_access_token(token: str) -> Dict[str, Any]:
    """Exchange a Supabase access token for the user it belongs to"""
    try:
        response = get_supabase().auth.get_user(token)
    except AuthenticationException:
        raise
    except Exception as e:
        logger.info(f"Rejected access token: {e}")
        raise AuthenticationException("Invalid or expired session")

    user = response.user if response else None
    if user is None:
        raise AuthenticationException("Invalid or expired session")

    metadata = user.user_metadata or {}
    return {
        "id": user.id,
        "email": user.email,
        "full_name": metadata.get("full_name") or metadata.get("name"),
        "avatar_url": metadata.get("avatar_url"),
    }


def sync_profile(db: Session, auth_user: Dict[str, Any]) -> Profile:
    """Load the user's profile, creating it on first sight"""
    profile = db.get(Profile, auth_user["id"])
    now = datetime.utcnow()

    if profile is None:
        profile = Profile(
            id=auth_user["id"],
            email=auth_user.get("email"),
            full_name=auth_user.get("full_name"),
            avatar_url=auth_user.get("avatar_url"),
            role=UserRole.USER,
            tags=[],
        )
        db.add(profile)
        logger.info("Created profile for new user", extra={"user_id": profile.id})
        db.flush()
        MarketingAutomationManager(db).process_user_event(profile, "user_signup")
    elif auth_user.get("email") and profile.email != auth_user["email"]:
        profile.email = auth_user["email"]

    # Suspensions lapse on their own
    if profile.role == UserRole.SUSPENDED and profile.suspended_until and profile.suspended_until <= now:
        profile.role = UserRole.USER
        profile.suspended_until = None

    profile.last_seen_at = now
    db.commit()
    return profile


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> Profile:
    if credentials is None:
        raise AuthenticationException()

    profile = sync_profile(db, verify_access_token(credentials.credentials))

    if profile.role == UserRole.SUSPENDED:
        raise AuthorizationException("Account suspended", "account_suspended")
    return profile


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> Optional[Profile]:
    """Current user when a valid session is presented, otherwise anonymous"""
    if credentials is None:
        return None
    try:
        return get_current_user(credentials, db)
    except (AuthenticationException, AuthorizationException):
        return None


def require_admin(user: Profile = Depends(get_current_user)) -> Profile:
    if user.role != UserRole.ADMIN:
        raise AuthorizationException("Admin access required")
    return user


def require_cron_or_admin(
    x_cron_secret: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> Optional[Profile]:
    """Scheduled jobs authenticate with the shared cron secret, people must be admins"""
    cron_secret = get_settings().cron_secret
    if cron_secret and x_cron_secret and secrets.compare_digest(x_cron_secret, cron_secret):
        return None
    if credentials is None:
        raise AuthenticationException()
    return require_admin(get_current_user(credentials, db))
