"""
Database models for profiles, spots, holds, billing and marketing
"""
from datetime import datetime
from sqlalchemy import Column, String, Float, DateTime, Boolean, Integer, JSON, ForeignKey, Index
from sqlalchemy.orm import declarative_base, relationship
import uuid

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class UserRole:
    USER = "user"
    ADMIN = "admin"
    MODERATOR = "moderator"
    SUSPENDED = "suspended"


class SubscriptionTier:
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    ALL = (FREE, PREMIUM, PRO, ENTERPRISE)


class SubscriptionStatus:
    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

    LIVE = (ACTIVE, TRIALING)


class HoldStatus:
    PENDING = "pending"
    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    LIVE = (PENDING, ACTIVE)


class Profile(Base):
    """User profile keyed by the auth provider's user id"""
    __tablename__ = 'profiles'

    id = Column(String, primary_key=True)
    email = Column(String, index=True)
    full_name = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    role = Column(String, default=UserRole.USER, nullable=False)
    suspended_until = Column(DateTime, nullable=True)
    reputation_score = Column(Integer, default=0)
    total_reports = Column(Integer, default=0)
    tags = Column(JSON, default=list)

    subscription_tier = Column(String, default=SubscriptionTier.FREE, nullable=False)
    subscription_status = Column(String, default=SubscriptionStatus.INACTIVE, nullable=False)
    stripe_customer_id = Column(String, nullable=True, unique=True)
    stripe_subscription_id = Column(String, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False)
    trial_end = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_seen_at = Column(DateTime, nullable=True)

    holds = relationship("SpotHold", back_populates="user")
    parking_sessions = relationship("ParkingSession", back_populates="user")


class ParkingSpot(Base):
    """A parking spot, either imported or reported by the community"""
    __tablename__ = 'parking_spots'

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False, default="Reported spot")
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String, nullable=True)
    spot_type = Column(String, default="street")  # 'street', 'garage', 'lot', 'meter', 'private'
    price_per_hour = Column(Float, nullable=True)
    is_available = Column(Boolean, default=True)
    status = Column(String, default="active")  # 'active', 'pending', 'deleted', 'reported'
    confidence_score = Column(Float, nullable=True)
    reported_by = Column(String, ForeignKey('profiles.id'), nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Hold lock, only ever written through a conditional update
    held_by = Column(String, ForeignKey('profiles.id'), nullable=True)
    held_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    holds = relationship("SpotHold", back_populates="spot")

    __table_args__ = (
        Index('ix_parking_spots_lat_lng', 'latitude', 'longitude'),
    )

    def is_held(self, now: datetime) -> bool:
        return self.held_until is not None and self.held_until > now


class SpotReport(Base):
    """Community report about a spot"""
    __tablename__ = 'spot_reports'

    id = Column(String, primary_key=True, default=_uuid)
    spot_id = Column(String, ForeignKey('parking_spots.id', ondelete='CASCADE'))
    reporter_id = Column(String, ForeignKey('profiles.id'))
    report_type = Column(String)  # 'available', 'taken', 'invalid'
    notes = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SpotHold(Base):
    """Paid, time-limited reservation of a spot"""
    __tablename__ = 'spot_holds'

    id = Column(String, primary_key=True, default=_uuid)
    spot_id = Column(String, ForeignKey('parking_spots.id'), nullable=False, index=True)
    user_id = Column(String, ForeignKey('profiles.id'), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String, default="usd")
    status = Column(String, default=HoldStatus.PENDING, nullable=False, index=True)
    payment_intent_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    activated_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    released_at = Column(DateTime, nullable=True)

    spot = relationship("ParkingSpot", back_populates="holds")
    user = relationship("Profile", back_populates="holds")


class ParkingSession(Base):
    """Time a user spent parked at a spot"""
    __tablename__ = 'parking_sessions'

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey('profiles.id'))
    spot_id = Column(String, ForeignKey('parking_spots.id'))
    hold_id = Column(String, ForeignKey('spot_holds.id'), nullable=True)
    arrived_at = Column(DateTime, default=datetime.utcnow)
    departed_at = Column(DateTime, nullable=True)
    planned_duration_minutes = Column(Integer, default=120)
    cost = Column(Float, nullable=True)

    user = relationship("Profile", back_populates="parking_sessions")


class SubscriptionEvent(Base):
    """Audit trail of plan changes"""
    __tablename__ = 'subscription_events'

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey('profiles.id'))
    event_type = Column(String)  # 'upgrade', 'downgrade', 'trial', 'trial_ended', 'cancel', 'past_due'
    from_plan = Column(String)
    to_plan = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)


class AnalyticsEvent(Base):
    """Client or server side analytics event"""
    __tablename__ = 'analytics_events'

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey('profiles.id'), nullable=True, index=True)
    event = Column(String, nullable=False, index=True)
    data = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class NotificationToken(Base):
    """Push notification registration"""
    __tablename__ = 'notification_tokens'

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey('profiles.id'), index=True)
    token = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AdminLog(Base):
    """Actions taken by administrators"""
    __tablename__ = 'admin_logs'

    id = Column(String, primary_key=True, default=_uuid)
    admin_id = Column(String, ForeignKey('profiles.id'))
    action = Column(String)
    target_id = Column(String)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class Campaign(Base):
    """Automated email campaign"""
    __tablename__ = 'marketing_campaigns'

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    content = Column(String, nullable=False)
    type = Column(String)  # 'welcome', 'upsell', 'retention', 'churn_prevention', 'feature_announcement'
    trigger_event = Column(String, index=True)
    trigger_delay = Column(Integer, default=0)  # minutes
    trigger_conditions = Column(JSON, default=dict)
    status = Column(String, default="draft")  # 'active', 'paused', 'draft'
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Segment(Base):
    """User segment defined by profile criteria"""
    __tablename__ = 'marketing_segments'

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    criteria = Column(JSON, default=dict)
    user_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class SegmentMembership(Base):
    """Explicit segment membership added by automation actions"""
    __tablename__ = 'marketing_segment_members'

    segment_id = Column(String, ForeignKey('marketing_segments.id', ondelete='CASCADE'), primary_key=True)
    user_id = Column(String, ForeignKey('profiles.id'), primary_key=True)
    added_at = Column(DateTime, default=datetime.utcnow)


class AutomationTrigger(Base):
    """Event-driven automation rule"""
    __tablename__ = 'marketing_triggers'

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    event = Column(String, nullable=False, index=True)
    conditions = Column(JSON, default=dict)
    actions = Column(JSON, default=list)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ScheduledEmail(Base):
    """Campaign email queued for a user"""
    __tablename__ = 'marketing_scheduled_emails'

    id = Column(String, primary_key=True, default=_uuid)
    campaign_id = Column(String, ForeignKey('marketing_campaigns.id', ondelete='CASCADE'))
    user_id = Column(String, ForeignKey('profiles.id'))
    scheduled_at = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    status = Column(String, default="scheduled")  # 'scheduled', 'sent', 'failed'


class CampaignEvent(Base):
    """Delivery and engagement tracking for campaign emails"""
    __tablename__ = 'marketing_campaign_events'

    id = Column(String, primary_key=True, default=_uuid)
    campaign_id = Column(String, ForeignKey('marketing_campaigns.id', ondelete='CASCADE'), index=True)
    user_id = Column(String, ForeignKey('profiles.id'))
    event = Column(String, nullable=False)  # 'sent', 'opened', 'clicked', 'converted'
    created_at = Column(DateTime, default=datetime.utcnow)
