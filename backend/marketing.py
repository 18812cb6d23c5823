"""
Marketing automation: campaigns, segments, event triggers and email tracking
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from exceptions import DataNotFoundException, ValidationException
from logging_config import get_logger
from models import (
    AutomationTrigger, Campaign, CampaignEvent, Profile, ScheduledEmail,
    Segment, SegmentMembership
)

logger = get_logger(__name__)

CAMPAIGN_STATUSES = ("active", "paused", "draft")
CAMPAIGN_EDITABLE = ("name", "subject", "content", "type", "trigger_event", "trigger_delay",
                     "trigger_conditions", "status")
SEGMENT_CRITERIA = ("subscription_tier", "role", "min_reputation", "signed_up_within_days")
TRIGGER_ACTIONS = ("email", "tag", "segment_add", "segment_remove")
EMAIL_EVENTS = ("sent", "opened", "clicked", "converted")

WELCOME_TEMPLATE = {
    "name": "Welcome Series",
    "subject": "Welcome to Park Algo - find your first spot",
    "content": "Thanks for joining Park Algo! Search nearby spots, report free ones to earn "
               "reputation and hold a spot while you drive.",
    "type": "welcome",
    "trigger_event": "user_signup",
    "trigger_delay": 0,
}

UPSELL_TEMPLATE = {
    "name": "Search Limit Upsell",
    "subject": "Out of searches? Go unlimited with Navigator",
    "content": "You've used today's free searches. Navigator gives you unlimited searches, "
               "spot holds and EV charging info for $8.99/month.",
    "type": "upsell",
    "trigger_event": "search_limit_reached",
    "trigger_delay": 60,
}

CHURN_TEMPLATE = {
    "name": "Churn Prevention",
    "subject": "We'd love to keep helping you park",
    "content": "Your subscription was cancelled. Tell us what we could do better, or come back "
               "any time and pick up where you left off.",
    "type": "churn_prevention",
    "trigger_event": "subscription_canceled",
    "trigger_delay": 1440,
}


def _conditions_match(conditions: Optional[Dict[str, Any]], metadata: Dict[str, Any]) -> bool:
    return all(metadata.get(key) == value for key, value in (conditions or {}).items())


def serialize_campaign(campaign: Campaign) -> Dict[str, Any]:
    return {
        "id": campaign.id,
        "name": campaign.name,
        "subject": campaign.subject,
        "content": campaign.content,
        "type": campaign.type,
        "trigger_event": campaign.trigger_event,
        "trigger_delay": campaign.trigger_delay,
        "trigger_conditions": campaign.trigger_conditions or {},
        "status": campaign.status,
        "created_at": campaign.created_at.isoformat() if campaign.created_at else None,
    }


def serialize_segment(segment: Segment) -> Dict[str, Any]:
    return {
        "id": segment.id,
        "name": segment.name,
        "criteria": segment.criteria or {},
        "user_count": segment.user_count,
        "created_at": segment.created_at.isoformat() if segment.created_at else None,
    }


def serialize_trigger(trigger: AutomationTrigger) -> Dict[str, Any]:
    return {
        "id": trigger.id,
        "name": trigger.name,
        "event": trigger.event,
        "conditions": trigger.conditions or {},
        "actions": trigger.actions or [],
        "is_active": trigger.is_active,
    }


class MarketingAutomationManager:
    """Table-backed campaign automation"""

    def __init__(self, db: Session, clock=datetime.utcnow):
        self.db = db
        self.clock = clock

    # Campaigns

    def get_campaigns(self) -> List[Campaign]:
        return self.db.query(Campaign).order_by(Campaign.created_at.desc()).all()

    def create_campaign(self, data: Dict[str, Any]) -> str:
        for required in ("name", "subject", "content"):
            if not data.get(required):
                raise ValidationException(required, "is required")
        status = data.get("status", "draft")
        if status not in CAMPAIGN_STATUSES:
            raise ValidationException("status", f"must be one of {CAMPAIGN_STATUSES}")

        campaign = Campaign(
            name=data["name"],
            subject=data["subject"],
            content=data["content"],
            type=data.get("type"),
            trigger_event=data.get("trigger_event"),
            trigger_delay=int(data.get("trigger_delay") or 0),
            trigger_conditions=data.get("trigger_conditions") or {},
            status=status,
        )
        self.db.add(campaign)
        self.db.commit()
        logger.info(f"Campaign created: {campaign.name}")
        return campaign.id

    def _get_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.db.get(Campaign, campaign_id) if campaign_id else None
        if campaign is None:
            raise DataNotFoundException("Campaign", str(campaign_id))
        return campaign

    def update_campaign(self, campaign_id: str, updates: Dict[str, Any]) -> Campaign:
        campaign = self._get_campaign(campaign_id)
        unknown = set(updates or {}) - set(CAMPAIGN_EDITABLE)
        if unknown:
            raise ValidationException("updates", f"cannot update {sorted(unknown)}")
        if "status" in updates and updates["status"] not in CAMPAIGN_STATUSES:
            raise ValidationException("status", f"must be one of {CAMPAIGN_STATUSES}")

        for key, value in updates.items():
            setattr(campaign, key, value)
        self.db.commit()
        return campaign

    def delete_campaign(self, campaign_id: str) -> None:
        campaign = self._get_campaign(campaign_id)
        self.db.query(ScheduledEmail).filter(ScheduledEmail.campaign_id == campaign.id).delete()
        self.db.query(CampaignEvent).filter(CampaignEvent.campaign_id == campaign.id).delete()
        self.db.delete(campaign)
        self.db.commit()

    def create_welcome_campaign(self) -> str:
        return self.create_campaign({**WELCOME_TEMPLATE, "status": "active"})

    def create_upsell_campaign(self) -> str:
        return self.create_campaign({**UPSELL_TEMPLATE, "status": "active"})

    def create_churn_prevention_campaign(self) -> str:
        return self.create_campaign({**CHURN_TEMPLATE, "status": "active"})

    # Segments

    def get_segments(self) -> List[Segment]:
        return self.db.query(Segment).order_by(Segment.created_at.desc()).all()

    def create_segment(self, data: Dict[str, Any]) -> str:
        if not data.get("name"):
            raise ValidationException("name", "is required")
        criteria = data.get("criteria") or {}
        unknown = set(criteria) - set(SEGMENT_CRITERIA)
        if unknown:
            raise ValidationException("criteria", f"unsupported criteria {sorted(unknown)}")

        segment = Segment(name=data["name"], criteria=criteria)
        self.db.add(segment)
        self.db.flush()
        segment.user_count = self._count_segment(segment)
        self.db.commit()
        return segment.id

    def _segment_query(self, criteria: Dict[str, Any]):
        query = self.db.query(Profile.id)
        if "subscription_tier" in criteria:
            query = query.filter(Profile.subscription_tier == criteria["subscription_tier"])
        if "role" in criteria:
            query = query.filter(Profile.role == criteria["role"])
        if "min_reputation" in criteria:
            query = query.filter(Profile.reputation_score >= int(criteria["min_reputation"]))
        if "signed_up_within_days" in criteria:
            since = self.clock() - timedelta(days=int(criteria["signed_up_within_days"]))
            query = query.filter(Profile.created_at >= since)
        return query

    def _count_segment(self, segment: Segment) -> int:
        members = {row[0] for row in self.db.query(SegmentMembership.user_id).filter(
            SegmentMembership.segment_id == segment.id
        )}
        if segment.criteria:
            members |= {row[0] for row in self._segment_query(segment.criteria)}
        return len(members)

    def update_segment_user_count(self, segment_id: str) -> int:
        segment = self.db.get(Segment, segment_id) if segment_id else None
        if segment is None:
            raise DataNotFoundException("Segment", str(segment_id))
        segment.user_count = self._count_segment(segment)
        self.db.commit()
        return segment.user_count

    # Triggers

    def get_triggers(self) -> List[AutomationTrigger]:
        return self.db.query(AutomationTrigger).order_by(AutomationTrigger.created_at.desc()).all()

    def create_trigger(self, data: Dict[str, Any]) -> str:
        for required in ("name", "event"):
            if not data.get(required):
                raise ValidationException(required, "is required")
        actions = data.get("actions") or []
        for action in actions:
            if action.get("type") not in TRIGGER_ACTIONS:
                raise ValidationException("actions", f"unsupported action {action.get('type')!r}")

        trigger = AutomationTrigger(
            name=data["name"],
            event=data["event"],
            conditions=data.get("conditions") or {},
            actions=actions,
            is_active=data.get("is_active", True),
        )
        self.db.add(trigger)
        self.db.commit()
        return trigger.id

    # Event processing

    def process_user_event(self, user: Profile, event: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        """Schedule campaign emails and run trigger actions for a user event"""
        metadata = metadata or {}
        now = self.clock()
        scheduled = actions_run = 0

        campaigns = self.db.query(Campaign).filter(
            Campaign.status == "active",
            Campaign.trigger_event == event
        ).all()
        for campaign in campaigns:
            if _conditions_match(campaign.trigger_conditions, metadata):
                self._schedule_email(campaign.id, user.id, now + timedelta(minutes=campaign.trigger_delay or 0))
                scheduled += 1

        triggers = self.db.query(AutomationTrigger).filter(
            AutomationTrigger.is_active.is_(True),
            AutomationTrigger.event == event
        ).all()
        for trigger in triggers:
            if not _conditions_match(trigger.conditions, metadata):
                continue
            for action in trigger.actions or []:
                if self._run_action(user, action, now):
                    actions_run += 1

        self.db.commit()
        if scheduled or actions_run:
            logger.info(f"Marketing event {event}: {scheduled} emails scheduled, {actions_run} actions run",
                        extra={"user_id": user.id, "event_type": event})
        return {"scheduled_emails": scheduled, "actions_run": actions_run}

    def _schedule_email(self, campaign_id: str, user_id: str, when: datetime) -> None:
        self.db.add(ScheduledEmail(campaign_id=campaign_id, user_id=user_id, scheduled_at=when))

    def _run_action(self, user: Profile, action: Dict[str, Any], now: datetime) -> bool:
        kind = action.get("type")

        if kind == "email" and action.get("campaign_id"):
            if self.db.get(Campaign, action["campaign_id"]) is None:
                logger.warning(f"Trigger references missing campaign {action['campaign_id']}")
                return False
            delay = int(action.get("delay_minutes") or 0)
            self._schedule_email(action["campaign_id"], user.id, now + timedelta(minutes=delay))
            return True

        if kind == "tag" and action.get("tag"):
            tags = list(user.tags or [])
            if action["tag"] not in tags:
                tags.append(action["tag"])
                user.tags = tags
            return True

        if kind in ("segment_add", "segment_remove") and action.get("segment_id"):
            membership = self.db.get(SegmentMembership, (action["segment_id"], user.id))
            if kind == "segment_add" and membership is None:
                if self.db.get(Segment, action["segment_id"]) is None:
                    return False
                self.db.add(SegmentMembership(segment_id=action["segment_id"], user_id=user.id))
            elif kind == "segment_remove" and membership is not None:
                self.db.delete(membership)
            return True

        logger.warning(f"Skipping malformed trigger action {action}")
        return False

    # Email tracking

    def track_email_event(self, campaign_id: str, user_id: Optional[str], event: str) -> None:
        if event not in EMAIL_EVENTS:
            raise ValidationException("event", f"must be one of {EMAIL_EVENTS}")
        self._get_campaign(campaign_id)
        self.db.add(CampaignEvent(campaign_id=campaign_id, user_id=user_id, event=event))
        self.db.commit()

    def get_campaign_metrics(self, campaign_id: str, start: Optional[datetime] = None,
                             end: Optional[datetime] = None) -> Dict[str, Any]:
        campaign = self._get_campaign(campaign_id)
        end = end or self.clock()
        start = start or end - timedelta(days=30)

        events = self.db.query(CampaignEvent.event).filter(
            CampaignEvent.campaign_id == campaign.id,
            CampaignEvent.created_at >= start,
            CampaignEvent.created_at <= end
        ).all()
        counts = {name: 0 for name in EMAIL_EVENTS}
        for (name,) in events:
            counts[name] += 1

        sent = counts["sent"]
        return {
            "campaign_id": campaign.id,
            "start": start.isoformat(),
            "end": end.isoformat(),
            **counts,
            "open_rate": round(counts["opened"] / sent * 100, 1) if sent else 0.0,
            "click_rate": round(counts["clicked"] / sent * 100, 1) if sent else 0.0,
            "conversion_rate": round(counts["converted"] / sent * 100, 1) if sent else 0.0,
        }


def query_automation(manager: MarketingAutomationManager, kind: str, campaign_id: Optional[str] = None,
                     start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    """Read side of the admin automation endpoint"""
    if kind == "campaigns":
        return {"campaigns": [serialize_campaign(c) for c in manager.get_campaigns()]}
    if kind == "segments":
        return {"segments": [serialize_segment(s) for s in manager.get_segments()]}
    if kind == "triggers":
        return {"triggers": [serialize_trigger(t) for t in manager.get_triggers()]}
    if kind == "metrics":
        if not campaign_id:
            raise ValidationException("campaign_id", "Campaign ID required for metrics")
        return {"metrics": manager.get_campaign_metrics(campaign_id, start, end)}
    raise ValidationException("type", "Invalid type parameter", "invalid_type")


CREATE_ACTIONS = {
    "campaign": lambda m, data: m.create_campaign(data),
    "segment": lambda m, data: m.create_segment(data),
    "trigger": lambda m, data: m.create_trigger(data),
    "welcome_campaign": lambda m, data: m.create_welcome_campaign(),
    "upsell_campaign": lambda m, data: m.create_upsell_campaign(),
    "churn_prevention_campaign": lambda m, data: m.create_churn_prevention_campaign(),
}


def run_automation_action(manager: MarketingAutomationManager, action: str, kind: Optional[str],
                          data: Dict[str, Any]) -> Dict[str, Any]:
    """Write side of the admin automation endpoint"""
    if action == "create":
        create = CREATE_ACTIONS.get(kind)
        if create is None:
            raise ValidationException("type", "Invalid creation type", "invalid_type")
        return {"success": True, "id": create(manager, data), "type": kind}

    if action == "update":
        if kind == "campaign":
            manager.update_campaign(data.get("id"), data.get("updates") or {})
            return {"success": True, "type": kind}
        if kind == "segment_count":
            return {"success": True, "user_count": manager.update_segment_user_count(data.get("segment_id"))}
        raise ValidationException("type", "Invalid update type", "invalid_type")

    if action == "delete":
        if kind != "campaign":
            raise ValidationException("type", "Invalid deletion type", "invalid_type")
        manager.delete_campaign(data.get("id"))
        return {"success": True, "type": kind}

    if action == "process_event":
        user = manager.db.get(Profile, data["user_id"]) if data.get("user_id") else None
        if user is None:
            raise DataNotFoundException("User", str(data.get("user_id")))
        if not data.get("event"):
            raise ValidationException("event", "is required")
        result = manager.process_user_event(user, data["event"], data.get("metadata") or {})
        return {"success": True, "event": data["event"], **result}

    if action == "track_email_event":
        manager.track_email_event(data.get("campaign_id"), data.get("user_id"), data.get("event"))
        return {"success": True, "event": data.get("event")}

    raise ValidationException("action", "Invalid action", "invalid_action")
