"""
Push notification registration and test delivery through FCM
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from config import get_settings
from exceptions import DataNotFoundException, ExternalAPIException
from logging_config import get_logger
from models import NotificationToken, Profile
from services import FCMClient

logger = get_logger(__name__)

TEST_TITLE = "Park Algo"
TEST_BODY = "Notifications are working! You'll hear from us when spots open up nearby."


def subscribe(db: Session, user: Profile, token: str) -> Dict[str, Any]:
    """Register a device token, re-activating it if it was seen before"""
    record = db.query(NotificationToken).filter(NotificationToken.token == token).first()
    if record is None:
        record = NotificationToken(user_id=user.id, token=token, is_active=True)
        db.add(record)
    else:
        # Devices can change hands between accounts
        if record.user_id != user.id:
            logger.warning(
                f"Notification token moved from {record.user_id} to {user.id}",
                extra={"user_id": user.id, "previous_user_id": record.user_id, "was_active": record.is_active}
            )
        record.user_id = user.id
        record.is_active = True
        record.updated_at = datetime.utcnow()
    db.commit()

    logger.info("Notification token registered", extra={"user_id": user.id})
    return {"success": True, "message": "Successfully subscribed to notifications"}


def unsubscribe(db: Session, user: Profile, token: Optional[str] = None) -> Dict[str, Any]:
    query = db.query(NotificationToken).filter(
        NotificationToken.user_id == user.id,
        NotificationToken.is_active.is_(True)
    )
    if token:
        query = query.filter(NotificationToken.token == token)

    count = 0
    for record in query.all():
        record.is_active = False
        record.updated_at = datetime.utcnow()
        count += 1
    db.commit()

    return {"success": True, "deactivated": count}


async def send_test(db: Session, user: Profile) -> Dict[str, Any]:
    tokens = db.query(NotificationToken).filter(
        NotificationToken.user_id == user.id,
        NotificationToken.is_active.is_(True)
    ).all()
    if not tokens:
        raise DataNotFoundException("Notification token", user.id)

    settings = get_settings()
    if not settings.fcm_server_key:
        logger.warning("FCM_SERVER_KEY not configured, test notification not delivered")
        return {"success": True, "message": "Test notification sent successfully", "delivered": 0}

    delivered = 0
    async with FCMClient(settings.fcm_server_key) as client:
        for record in tokens:
            try:
                result = await client.send(record.token, TEST_TITLE, TEST_BODY)
            except ExternalAPIException as e:
                logger.error(f"FCM delivery failed: {e.message}", extra={"user_id": user.id})
                continue

            errors = [r.get("error") for r in result.get("results") or [] if r.get("error")]
            if "NotRegistered" in errors or "InvalidRegistration" in errors:
                record.is_active = False
            elif result.get("success"):
                delivered += 1
    db.commit()

    if not delivered:
        raise ExternalAPIException("fcm", "no device accepted the notification", 502)
    return {"success": True, "message": "Test notification sent successfully", "delivered": delivered}
