"""
Reminder engine models - tasks, scheduled occurrences, delivery endpoints and markers
"""
from datetime import datetime, timezone as dt_timezone
from sqlalchemy import Column, String, DateTime, Boolean, Index, UniqueConstraint
from sqlalchemy.types import TypeDecorator
import uuid

from agrinotify.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that is always UTC on the way in and out.

    SQLite drops tzinfo, PostgreSQL returns the session timezone; both are
    normalized here so callers only ever see UTC-aware values.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt_timezone.utc)
        return value.astimezone(dt_timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt_timezone.utc)
        return value.astimezone(dt_timezone.utc)


class ReminderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"

    TERMINAL = (SENT, FAILED)


class TaskStatus:
    ACTIVE = "Active"
    COMPLETE = "Complete"


class Task(Base):
    """User-owned task definition (written by the task CRUD surface)"""
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    time = Column(String, nullable=False)  # 12-hour wall clock, e.g. "7:00 AM"
    days = Column(String, nullable=False)  # "Once" | "Everyday" | "Mon,Wed,Fri"
    status = Column(String, nullable=False, default=TaskStatus.ACTIVE)
    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)


class ScheduledReminder(Base):
    """One concrete occurrence of a task reminder"""
    __tablename__ = "scheduled_reminders"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    task_id = Column(String(36), nullable=False, index=True)

    # Denormalized task fields at scheduling time
    task_name = Column(String, nullable=False)
    task_time = Column(String, nullable=False)
    task_days = Column(String, nullable=False)

    trigger_at = Column(UTCDateTime, nullable=False, index=True)
    event_at = Column(UTCDateTime, nullable=False)
    status = Column(String, nullable=False, default=ReminderStatus.PENDING)

    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)
    sent_at = Column(UTCDateTime, nullable=True)
    last_attempt_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(String, nullable=True)
    message_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_scheduled_reminders_status_trigger", "status", "trigger_at"),
        Index("ix_scheduled_reminders_task_status", "task_id", "status"),
    )


class DeviceEndpoint(Base):
    """Current multi-device registry shape: one row per (user, device)"""
    __tablename__ = "device_endpoints"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    device_id = Column(String, nullable=False)
    token = Column(String, nullable=False, index=True)
    platform = Column(String, nullable=False, default="android")  # android, ios, web
    active = Column(Boolean, nullable=False, default=True)
    last_seen_at = Column(UTCDateTime, default=_utcnow, nullable=False)
    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_device_endpoints_user_device"),
    )


class LegacyUserToken(Base):
    """Deprecated single-token shape (bare token per user, no device id). Read-only."""
    __tablename__ = "user_tokens"

    user_id = Column(String, primary_key=True)
    fcm_token = Column(String, nullable=False)
    platform = Column(String, nullable=True)
    updated_at = Column(UTCDateTime, default=_utcnow, nullable=False)


class UserProfile(Base):
    """Subset of the account profile read by the fan-out job"""
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    is_active = Column(Boolean, nullable=False, default=True)
    preferred_city = Column(String, nullable=True)
    last_login_at = Column(UTCDateTime, nullable=True)
    last_logout_at = Column(UTCDateTime, nullable=True)


class AlertCooldown(Base):
    """Last time a user was notified for an alert class"""
    __tablename__ = "alert_cooldowns"

    user_id = Column(String, primary_key=True)
    alert_class = Column(String, primary_key=True)
    last_notified_at = Column(UTCDateTime, nullable=False)


class SystemMarker(Base):
    """Store-wide timestamps used as throttle and overlap guards"""
    __tablename__ = "system_markers"

    name = Column(String, primary_key=True)
    marked_at = Column(UTCDateTime, nullable=False)


class Notification(Base):
    """In-app notification inbox entry written for each delivered task reminder"""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    type = Column(String, nullable=False, default="task_reminder")
    task_id = Column(String, nullable=True)
    task_name = Column(String, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)
