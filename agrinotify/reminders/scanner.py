"""
Due-scan coordinator: throttled discovery and dispatch of due reminders.

Correctness rests on the per-record compare-and-set transition out of
``pending``; the scan marker only limits how often the store is queried.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import repository
from .config import settings
from .dispatcher import DispatchClient, DeliveryOutcome
from .metrics import (
    scheduler_scans_total,
    scheduler_throttled_total,
    reminders_dispatch_success_total,
    reminders_dispatch_failed_total,
)
from .models import ScheduledReminder, ReminderStatus
from .payloads import task_reminder_payload
from .recurrence import RecurrencePattern
from .registry import EndpointRegistry
from .rescheduler import RecurrenceRescheduler
from .schemas import ScanSummary
from agrinotify.utils.timezone import utc_now

logger = logging.getLogger(__name__)

SCAN_MARKER = "reminder_scan"


class DueScanCoordinator:
    def __init__(
        self,
        db: Session,
        client: DispatchClient,
        registry: Optional[EndpointRegistry] = None,
        rescheduler: Optional[RecurrenceRescheduler] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.client = client
        self.registry = registry or EndpointRegistry(db)
        self.rescheduler = rescheduler or RecurrenceRescheduler(db)
        self.clock = clock
        self.scan_interval = timedelta(seconds=settings.SCAN_INTERVAL_SECONDS)
        self.due_window = timedelta(seconds=settings.DUE_WINDOW_SECONDS)

    def scan_and_dispatch(self, force_scan: bool = False) -> ScanSummary:
        now = self.clock()
        if not force_scan and not repository.claim_marker(self.db, SCAN_MARKER, now, self.scan_interval):
            scheduler_throttled_total.inc()
            return ScanSummary(scanned=False, message="Checked recently")

        scheduler_scans_total.inc()
        expired = self._expire_missed(now)

        due = repository.get_due_pending(
            self.db, now - self.due_window, now + self.due_window, limit=settings.SCAN_BATCH_SIZE
        )
        if not due and not expired:
            logger.debug("📭 [Scan] No due reminders")
            return ScanSummary(scanned=True, message="No due reminders")

        claimed: List[ScheduledReminder] = []
        for reminder in due:
            # Last gate before dispatch: only the invocation that moves the record out of pending sends it
            if repository.mark_processing(self.db, reminder.id, now):
                claimed.append(reminder)
            else:
                logger.info(f"⏭️ [Scan] Reminder {reminder.id} already claimed by another scan")

        summary = ScanSummary(scanned=True, expired=expired, skipped=len(due) - len(claimed))
        if not claimed:
            return summary

        outcomes = self._deliver(claimed)
        for reminder in claimed:
            try:
                if self._finalize(reminder, outcomes.get(reminder.id, []), now):
                    summary.sent += 1
                else:
                    summary.failed += 1
            except Exception as e:
                logger.exception(f"❌ [Scan] Finalizing reminder {reminder.id} failed: {e}")
                self.db.rollback()
                repository.mark_failed(self.db, reminder.id, now, reason="internal_error")
                reminders_dispatch_failed_total.labels(reason="internal_error").inc()
                summary.failed += 1

        logger.info(
            f"✅ [Scan] Processed {len(claimed)} due reminders: sent={summary.sent} failed={summary.failed} "
            f"expired={summary.expired}"
        )
        return summary

    def _deliver(self, claimed: List[ScheduledReminder]) -> Dict[str, List[DeliveryOutcome]]:
        jobs = []
        for reminder in claimed:
            payload = task_reminder_payload(reminder)
            for endpoint in self.registry.active_endpoints(reminder.user_id):
                jobs.append(((reminder.id, endpoint), endpoint.token, payload))

        results: Dict[str, List[DeliveryOutcome]] = {}
        for outcome in self.client.send_many(jobs, max_workers=settings.DISPATCH_MAX_WORKERS):
            reminder_id, _ = outcome.key
            results.setdefault(reminder_id, []).append(outcome)
        return results

    def _finalize(self, reminder: ScheduledReminder, outcomes: List[DeliveryOutcome], now: datetime) -> bool:
        for outcome in outcomes:
            if outcome.error is not None and outcome.error.endpoint_invalid:
                _, endpoint = outcome.key
                self.registry.prune_invalid(endpoint.user_id, endpoint.device_id)

        delivered = [o for o in outcomes if o.ok]
        if delivered:
            repository.mark_sent(self.db, reminder.id, now, message_id=delivered[0].message_id)
            reminders_dispatch_success_total.inc()
            logger.info(f"✅ [Scan] Reminder sent for '{reminder.task_name}' (user={reminder.user_id})")
            self._record_notification(reminder, now)
            if self._is_recurring(reminder):
                self._continue_chain(reminder, now)
            return True

        if not outcomes:
            reason = "no_endpoint"
        else:
            reason = ",".join(sorted({o.error.kind.value for o in outcomes}))
        repository.mark_failed(self.db, reminder.id, now, reason=reason)
        reminders_dispatch_failed_total.labels(reason=reason).inc()
        logger.warning(f"❌ [Scan] Reminder {reminder.id} failed ({reason}) for user={reminder.user_id}")
        self._reseed_chain(reminder, now)
        return False

    def _record_notification(self, reminder: ScheduledReminder, now: datetime) -> None:
        payload = task_reminder_payload(reminder)
        try:
            repository.create_notification(
                self.db,
                reminder.user_id,
                title=payload.title,
                message=payload.body,
                now=now,
                task_id=reminder.task_id,
                task_name=reminder.task_name,
            )
        except SQLAlchemyError as e:
            # Inbox entries are best effort once the push has gone out
            self.db.rollback()
            logger.error(f"❌ [Scan] Could not save notification for reminder {reminder.id}: {e}")

    def _continue_chain(self, reminder: ScheduledReminder, now: datetime) -> None:
        """Create the next occurrence after a send; the sent record is already final."""
        try:
            self.rescheduler.reschedule_next(reminder)
            return
        except Exception as e:
            self.db.rollback()
            logger.exception(f"❌ [Scan] Rescheduling after reminder {reminder.id} failed, reseeding: {e}")
        try:
            self._reseed_chain(reminder, now)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"❌ [Scan] Could not reseed task {reminder.task_id}: {e}")

    def _expire_missed(self, now: datetime) -> int:
        """Fail pending records that fell behind the due window and keep recurring chains alive."""
        expired = 0
        for reminder in repository.get_missed_pending(self.db, now - self.due_window, limit=settings.SCAN_BATCH_SIZE):
            if not repository.mark_failed(self.db, reminder.id, now, reason="missed", from_status=ReminderStatus.PENDING):
                continue
            expired += 1
            reminders_dispatch_failed_total.labels(reason="missed").inc()
            logger.warning(
                f"⌛ [Scan] Reminder {reminder.id} missed its window (trigger={reminder.trigger_at.isoformat()})"
            )
            self._reseed_chain(reminder, now)
        return expired

    def _reseed_chain(self, reminder: ScheduledReminder, now: datetime) -> None:
        if not self._is_recurring(reminder):
            return
        task = repository.get_task(self.db, reminder.task_id)
        if task is not None:
            self.rescheduler.schedule_for_task(task, max(now, reminder.event_at), source="reseed")

    @staticmethod
    def _is_recurring(reminder: ScheduledReminder) -> bool:
        try:
            return RecurrencePattern.parse(reminder.task_days).is_recurring
        except ValueError:
            return False
