from datetime import datetime, timedelta, timezone as dt_timezone
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select, update, delete, insert
from sqlalchemy.exc import IntegrityError

from .models import (
    Task,
    TaskStatus,
    ScheduledReminder,
    ReminderStatus,
    SystemMarker,
    AlertCooldown,
    UserProfile,
    Notification,
)


# --- Tasks ---

def create_task(db: Session, user_id: str, name: str, time: str, days: str, status: str = TaskStatus.ACTIVE) -> Task:
    task = Task(user_id=user_id, name=name, time=time, days=days, status=status)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


def get_task(db: Session, task_id: str) -> Optional[Task]:
    return db.get(Task, task_id)


def list_tasks(db: Session, user_id: str) -> List[Task]:
    stmt = select(Task).where(Task.user_id == user_id).order_by(Task.created_at.asc())
    return list(db.execute(stmt).scalars())


def delete_task(db: Session, task_id: str) -> bool:
    result = db.execute(delete(Task).where(Task.id == task_id))
    db.commit()
    return result.rowcount > 0


def delete_tasks_for_user(db: Session, user_id: str) -> int:
    result = db.execute(delete(Task).where(Task.user_id == user_id))
    db.commit()
    return result.rowcount


# --- Scheduled reminders ---

def create_scheduled_reminder(
    db: Session,
    task: Task,
    trigger_at: datetime,
    event_at: datetime,
) -> ScheduledReminder:
    reminder = ScheduledReminder(
        user_id=task.user_id,
        task_id=task.id,
        task_name=task.name,
        task_time=task.time,
        task_days=task.days,
        trigger_at=trigger_at,
        event_at=event_at,
        status=ReminderStatus.PENDING,
    )
    db.add(reminder)
    db.commit()
    db.refresh(reminder)
    return reminder


def get_reminder(db: Session, reminder_id: str) -> Optional[ScheduledReminder]:
    return db.get(ScheduledReminder, reminder_id)


def list_reminders_for_task(db: Session, task_id: str, status: Optional[str] = None) -> List[ScheduledReminder]:
    stmt = select(ScheduledReminder).where(ScheduledReminder.task_id == task_id)
    if status:
        stmt = stmt.where(ScheduledReminder.status == status)
    return list(db.execute(stmt.order_by(ScheduledReminder.trigger_at.asc())).scalars())


def get_forward_pending_for_task(db: Session, task_id: str, after: datetime) -> Optional[ScheduledReminder]:
    stmt = (
        select(ScheduledReminder)
        .where(ScheduledReminder.task_id == task_id)
        .where(ScheduledReminder.status == ReminderStatus.PENDING)
        .where(ScheduledReminder.trigger_at > after)
        .order_by(ScheduledReminder.trigger_at.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def get_due_pending(db: Session, start: datetime, end: datetime, limit: int = 500) -> List[ScheduledReminder]:
    """Range scan over trigger_at for pending records inside [start, end]."""
    stmt = (
        select(ScheduledReminder)
        .where(ScheduledReminder.status == ReminderStatus.PENDING)
        .where(ScheduledReminder.trigger_at >= start)
        .where(ScheduledReminder.trigger_at <= end)
        .order_by(ScheduledReminder.trigger_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def get_missed_pending(db: Session, before: datetime, limit: int = 500) -> List[ScheduledReminder]:
    stmt = (
        select(ScheduledReminder)
        .where(ScheduledReminder.status == ReminderStatus.PENDING)
        .where(ScheduledReminder.trigger_at < before)
        .order_by(ScheduledReminder.trigger_at.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def transition_status(db: Session, reminder_id: str, from_status: str, to_status: str, **values) -> bool:
    """Compare-and-set the status of one reminder.

    Returns False when the record was not in ``from_status`` (another
    invocation already moved it).
    """
    now = values.pop("now", None) or datetime.now(dt_timezone.utc)
    result = db.execute(
        update(ScheduledReminder)
        .where(ScheduledReminder.id == reminder_id)
        .where(ScheduledReminder.status == from_status)
        .values(status=to_status, updated_at=now, **values)
    )
    db.commit()
    return result.rowcount == 1


def mark_processing(db: Session, reminder_id: str, now: datetime) -> bool:
    return transition_status(
        db, reminder_id, ReminderStatus.PENDING, ReminderStatus.PROCESSING,
        now=now, last_attempt_at=now,
    )


def mark_sent(db: Session, reminder_id: str, now: datetime, message_id: Optional[str] = None) -> bool:
    return transition_status(
        db, reminder_id, ReminderStatus.PROCESSING, ReminderStatus.SENT,
        now=now, sent_at=now, message_id=message_id,
    )


def mark_failed(db: Session, reminder_id: str, now: datetime, reason: str, from_status: str = ReminderStatus.PROCESSING) -> bool:
    return transition_status(
        db, reminder_id, from_status, ReminderStatus.FAILED,
        now=now, last_attempt_at=now, failure_reason=reason[:500],
    )


def delete_open_reminders_for_task(db: Session, task_id: str) -> int:
    """Delete pending records of a task; records mid-dispatch are left to finish."""
    result = db.execute(
        delete(ScheduledReminder)
        .where(ScheduledReminder.task_id == task_id)
        .where(ScheduledReminder.status == ReminderStatus.PENDING)
    )
    db.commit()
    return result.rowcount


def delete_open_reminders_for_user(db: Session, user_id: str) -> int:
    result = db.execute(
        delete(ScheduledReminder)
        .where(ScheduledReminder.user_id == user_id)
        .where(ScheduledReminder.status == ReminderStatus.PENDING)
    )
    db.commit()
    return result.rowcount


def rename_open_reminders(db: Session, task_id: str, name: str) -> int:
    result = db.execute(
        update(ScheduledReminder)
        .where(ScheduledReminder.task_id == task_id)
        .where(ScheduledReminder.status == ReminderStatus.PENDING)
        .values(task_name=name)
    )
    db.commit()
    return result.rowcount


def purge_terminal_reminders(db: Session, older_than: datetime) -> int:
    result = db.execute(
        delete(ScheduledReminder)
        .where(ScheduledReminder.status.in_(ReminderStatus.TERMINAL))
        .where(ScheduledReminder.updated_at < older_than)
    )
    db.commit()
    return result.rowcount


# --- Markers ---

def get_marker(db: Session, name: str) -> Optional[datetime]:
    marker = db.get(SystemMarker, name)
    return marker.marked_at if marker else None


def claim_marker(db: Session, name: str, now: datetime, min_interval: timedelta) -> bool:
    """Claim a throttle marker if at least ``min_interval`` passed since the last claim.

    Conditional update first, insert when the marker does not exist yet. Two
    racing callers can still both win on some stores; callers must not rely
    on this for mutual exclusion.
    """
    result = db.execute(
        update(SystemMarker)
        .where(SystemMarker.name == name)
        .where(SystemMarker.marked_at <= now - min_interval)
        .values(marked_at=now)
    )
    db.commit()
    if result.rowcount == 1:
        return True
    if get_marker(db, name) is not None:
        return False
    try:
        db.execute(insert(SystemMarker).values(name=name, marked_at=now))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False


# --- Users and cooldowns ---

def list_user_profiles(db: Session) -> List[UserProfile]:
    return list(db.execute(select(UserProfile).order_by(UserProfile.user_id)).scalars())


def get_cooldowns(db: Session, alert_class: str) -> dict:
    stmt = select(AlertCooldown).where(AlertCooldown.alert_class == alert_class)
    return {c.user_id: c.last_notified_at for c in db.execute(stmt).scalars()}


def touch_cooldown(db: Session, user_id: str, alert_class: str, now: datetime) -> None:
    result = db.execute(
        update(AlertCooldown)
        .where(AlertCooldown.user_id == user_id)
        .where(AlertCooldown.alert_class == alert_class)
        .values(last_notified_at=now)
    )
    if result.rowcount == 0:
        db.execute(insert(AlertCooldown).values(user_id=user_id, alert_class=alert_class, last_notified_at=now))
    db.commit()


# --- Notification inbox ---

def create_notification(
    db: Session,
    user_id: str,
    title: str,
    message: str,
    now: datetime,
    type: str = "task_reminder",
    task_id: Optional[str] = None,
    task_name: Optional[str] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type,
        task_id=task_id,
        task_name=task_name,
        read=False,
        created_at=now,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def list_notifications(db: Session, user_id: str, unread_only: bool = False) -> List[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    return list(db.execute(stmt.order_by(Notification.created_at.desc())).scalars())
