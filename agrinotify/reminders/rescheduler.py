"""
Persisting reminder occurrences computed by the recurrence calculator
"""
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo
import logging

from sqlalchemy.orm import Session

from . import repository
from .config import settings
from .metrics import reminders_scheduled_total
from .models import Task, TaskStatus, ScheduledReminder
from .recurrence import RecurrenceCalculator, RecurrencePattern
from agrinotify.utils.timezone import get_zoneinfo, format_local_time

logger = logging.getLogger(__name__)


class RecurrenceRescheduler:
    """Creates pending occurrences for tasks, including the next one after a send"""

    def __init__(self, db: Session, lead_minutes: Optional[int] = None, tz: Optional[ZoneInfo] = None):
        self.db = db
        self.lead_minutes = settings.LEAD_MINUTES if lead_minutes is None else lead_minutes
        self.tz = tz or get_zoneinfo()

    def schedule_for_task(self, task: Task, reference: datetime, source: str = "task") -> Optional[ScheduledReminder]:
        """Persist the first occurrence strictly after ``reference`` for an active task."""
        if task.status != TaskStatus.ACTIVE:
            logger.info(f"⏭️ [Schedule] Task {task.id} is {task.status}, not scheduling")
            return None

        existing = repository.get_forward_pending_for_task(self.db, task.id, reference)
        if existing is not None:
            logger.info(f"⏭️ [Schedule] Task {task.id} already has pending reminder {existing.id}")
            return existing

        trigger_at = RecurrenceCalculator.compute_next_trigger(
            task.time, task.days, self.lead_minutes, reference, self.tz
        )
        if trigger_at is None:
            logger.warning(
                f"⚠️ [Schedule] Could not compute trigger for task={task.id} time={task.time!r} days={task.days!r}"
            )
            return None

        event_at = trigger_at + timedelta(minutes=self.lead_minutes)
        reminder = repository.create_scheduled_reminder(self.db, task, trigger_at, event_at)
        reminders_scheduled_total.labels(source=source).inc()
        logger.info(
            f"⏰ [Schedule] Reminder {reminder.id} for '{task.name}' at {format_local_time(trigger_at)} "
            f"(task at {format_local_time(event_at)}, {self.lead_minutes} min before)"
        )
        return reminder

    def reschedule_next(self, sent_reminder: ScheduledReminder) -> Optional[ScheduledReminder]:
        """Create the occurrence following a successfully sent recurring reminder.

        Uses the task's current time and pattern so concurrent edits win; the
        reference is the sent occurrence's nominal event instant, which keeps
        the next trigger strictly after the one just sent.
        """
        task = repository.get_task(self.db, sent_reminder.task_id)
        if task is None:
            logger.info(f"⏭️ [Reschedule] Task {sent_reminder.task_id} no longer exists, skipping")
            return None

        try:
            pattern = RecurrencePattern.parse(task.days)
        except ValueError as e:
            logger.warning(f"⚠️ [Reschedule] Skipping task={task.id}: {e}")
            return None
        if not pattern.is_recurring:
            return None

        return self.schedule_for_task(task, sent_reminder.event_at, source="reschedule")
