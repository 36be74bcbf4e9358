"""
Reminder engine service: task lifecycle hooks, scans, broadcasts and maintenance.

Every public method returns a result model; failures are logged and
reported through ``success=False`` instead of being raised.
"""
from dataclasses import asdict
from datetime import datetime, timedelta
from functools import wraps
from typing import Callable, Dict, Optional, Union
import logging

from sqlalchemy.orm import Session

from . import repository
from .broadcast import FanOutAlertJob
from .config import settings
from .dispatcher import DispatchClient, NotificationPayload
from .models import Task, TaskStatus, UserProfile
from .payloads import task_completed_payload, task_test_payload
from .registry import EndpointRegistry
from .rescheduler import RecurrenceRescheduler
from .scanner import DueScanCoordinator
from .schemas import (
    BroadcastRequest,
    BroadcastSummary,
    ClearTasksRequest,
    CompleteTaskRequest,
    CreateTaskRequest,
    DeleteTaskRequest,
    LogoutRequest,
    OperationResult,
    RegisterEndpointRequest,
    ScanRequest,
    ScanSummary,
    ScheduledReminderRead,
    SendTestAlertRequest,
    SendTestReminderRequest,
    TaskRead,
    UpdateTaskRequest,
)
from .weather import PayloadResolver, WeatherProvider, pest_alert_payload, pest_alerts, weather_update_payload
from agrinotify.utils.timezone import utc_now

logger = logging.getLogger(__name__)

EngineResult = Union[OperationResult, ScanSummary, BroadcastSummary]


def _reported(failure: Callable[..., EngineResult]):
    """Turn any exception escaping an operation into a failure result."""

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except Exception as e:
                logger.exception(f"❌ [Engine] {func.__name__} failed: {e}")
                self.db.rollback()
                return failure(*args, error=str(e), **kwargs)
        return wrapper

    return decorator


def _operation_failed(*args, error: str = "", **kwargs) -> OperationResult:
    return OperationResult(success=False, message=error)


def _scan_failed(*args, error: str = "", **kwargs) -> ScanSummary:
    return ScanSummary(success=False, message=error)


def _broadcast_failed(alert_class: str = "weather", *args, error: str = "", **kwargs) -> BroadcastSummary:
    return BroadcastSummary(success=False, alert_class=alert_class, message=error)


def task_snapshot(task: Task) -> Dict[str, str]:
    return {"name": task.name, "time": task.time, "days": task.days, "status": task.status}


class ReminderEngineService:
    def __init__(
        self,
        db: Session,
        client: Optional[DispatchClient] = None,
        weather_provider: Optional[WeatherProvider] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.client = client or DispatchClient()
        self.clock = clock
        self.registry = EndpointRegistry(db)
        self.rescheduler = RecurrenceRescheduler(db)
        self.scanner = DueScanCoordinator(db, self.client, self.registry, self.rescheduler, clock=clock)
        self.broadcaster = FanOutAlertJob(db, self.client, self.registry, weather_provider, clock=clock)

    # --- Task lifecycle hooks ---

    @_reported(_operation_failed)
    def on_task_created(self, task: Task) -> OperationResult:
        reminder = self.rescheduler.schedule_for_task(task, self.clock())
        if reminder is None:
            message = "Task saved; no reminder scheduled"
        else:
            message = "Task saved and reminder scheduled"
        return OperationResult(
            success=True,
            message=message,
            task=TaskRead.model_validate(task),
            scheduled=ScheduledReminderRead.model_validate(reminder) if reminder else None,
        )

    @_reported(_operation_failed)
    def on_task_updated(self, task: Task, old: Dict[str, str]) -> OperationResult:
        schedule_changed = (
            task.time != old.get("time")
            or task.days != old.get("days")
            or task.status != old.get("status")
        )
        if not schedule_changed:
            if task.name != old.get("name"):
                repository.rename_open_reminders(self.db, task.id, task.name)
            return OperationResult(success=True, message="Task updated", task=TaskRead.model_validate(task))

        cancelled = repository.delete_open_reminders_for_task(self.db, task.id)
        reminder = None
        if task.status == TaskStatus.ACTIVE:
            reminder = self.rescheduler.schedule_for_task(task, self.clock(), source="update")
        logger.info(f"🔄 [Engine] Task {task.id} rescheduled: cancelled={cancelled} new={reminder.id if reminder else None}")
        return OperationResult(
            success=True,
            message="Task updated and reminder rescheduled" if reminder else "Task updated",
            task=TaskRead.model_validate(task),
            scheduled=ScheduledReminderRead.model_validate(reminder) if reminder else None,
            cancelled=cancelled,
        )

    @_reported(_operation_failed)
    def on_task_deleted(self, task_id: str) -> OperationResult:
        cancelled = repository.delete_open_reminders_for_task(self.db, task_id)
        logger.info(f"🗑️ [Engine] Task {task_id} deleted, cancelled {cancelled} pending reminders")
        return OperationResult(success=True, message="Task deleted", cancelled=cancelled)

    @_reported(_operation_failed)
    def on_task_completed(self, task: Task) -> OperationResult:
        cancelled = repository.delete_open_reminders_for_task(self.db, task.id)
        notified = self._notify_completed(task)
        return OperationResult(
            success=True,
            message="Task completed",
            task=TaskRead.model_validate(task),
            cancelled=cancelled,
            data={"notified": notified},
        )

    @_reported(_operation_failed)
    def on_tasks_cleared(self, user_id: str) -> OperationResult:
        cancelled = repository.delete_open_reminders_for_user(self.db, user_id)
        logger.info(f"🗑️ [Engine] Cleared tasks for user={user_id}, cancelled {cancelled} pending reminders")
        return OperationResult(success=True, message="All tasks deleted", cancelled=cancelled)

    def _notify_completed(self, task: Task) -> int:
        """Best-effort completion push; failures never affect the completion itself."""
        return self._push_to_user(task.user_id, task_completed_payload(task))

    def _push_to_user(self, user_id: str, payload: NotificationPayload) -> int:
        """Send to every active endpoint of a user, pruning the ones proven dead."""
        jobs = [(endpoint, endpoint.token, payload) for endpoint in self.registry.active_endpoints(user_id)]
        sent = 0
        for outcome in self.client.send_many(jobs, max_workers=settings.DISPATCH_MAX_WORKERS):
            if outcome.ok:
                sent += 1
            elif outcome.error.endpoint_invalid:
                self.registry.prune_invalid(outcome.key.user_id, outcome.key.device_id)
        return sent

    # --- Endpoints ---

    @_reported(_operation_failed)
    def register_endpoint(self, user_id: str, device_id: str, token: str, platform: str = "android") -> OperationResult:
        endpoint = self.registry.register_endpoint(user_id, device_id, token, platform)
        return OperationResult(
            success=True,
            message="Endpoint registered",
            data={"user_id": endpoint.user_id, "device_id": endpoint.device_id, "platform": endpoint.platform},
        )

    @_reported(_operation_failed)
    def on_user_logged_out(self, user_id: str) -> OperationResult:
        deactivated = self.registry.deactivate_user_endpoints(user_id)
        profile = self.db.get(UserProfile, user_id)
        if profile is not None:
            profile.last_logout_at = self.clock()
            self.db.commit()
        logger.info(f"👋 [Engine] User {user_id} logged out, deactivated {deactivated} endpoints")
        return OperationResult(success=True, message="Logged out", data={"deactivated": deactivated})

    # --- On-demand test sends ---

    @_reported(_operation_failed)
    def send_test_reminder(self, user_id: str, task_id: str) -> OperationResult:
        task = self._owned_task(user_id, task_id)
        if task is None:
            return OperationResult(success=False, message="Task not found")
        payload = task_test_payload(task)
        sent = self._push_to_user(user_id, payload)
        if sent:
            repository.create_notification(
                self.db, user_id, title=payload.title, message=payload.body, now=self.clock(),
                task_id=task.id, task_name=task.name,
            )
        logger.info(f"🧪 [Engine] Test reminder for task {task.id}: sent={sent}")
        return OperationResult(
            success=sent > 0,
            message="✅ Test reminder sent" if sent else "❌ Failed to send test reminder",
            task=TaskRead.model_validate(task),
            data={"sent": sent},
        )

    @_reported(_operation_failed)
    def send_test_alert(
        self,
        city: str = "Manila",
        user_id: Optional[str] = None,
        alert_class: str = "weather",
        push: bool = True,
    ) -> OperationResult:
        """Fetch current weather for a city and optionally push it to one user.

        Skips eligibility and cooldowns; with ``push=False`` only the weather
        lookup runs.
        """
        report = self.broadcaster.weather_provider.fetch(city)
        data = asdict(report)
        data["pests"] = pest_alerts(report)
        if not push:
            return OperationResult(success=True, message="Weather data fetched", data=data)
        if not user_id:
            return OperationResult(success=False, message="user_id is required to send a test alert", data=data)

        if alert_class == "pest":
            payload = pest_alert_payload(report, test=True)
        else:
            payload = weather_update_payload(report, test=True)
        data["sent"] = self._push_to_user(user_id, payload)
        logger.info(f"🧪 [Engine] Test {alert_class} alert for {city} to user={user_id}: sent={data['sent']}")
        return OperationResult(
            success=data["sent"] > 0,
            message="Test alert sent" if data["sent"] else "Failed to send test alert",
            data=data,
        )

    # --- Scans and broadcasts ---

    @_reported(_scan_failed)
    def scan_and_dispatch(self, force_scan: bool = False) -> ScanSummary:
        return self.scanner.scan_and_dispatch(force_scan=force_scan)

    @_reported(_broadcast_failed)
    def run_broadcast(
        self,
        alert_class: str = "weather",
        payload_resolver: Optional[PayloadResolver] = None,
        force: bool = False,
    ) -> BroadcastSummary:
        return self.broadcaster.run_broadcast(alert_class, payload_resolver=payload_resolver, force=force)

    # --- Maintenance ---

    @_reported(_operation_failed)
    def purge_history(self, older_than_days: Optional[int] = None) -> OperationResult:
        days = settings.HISTORY_RETENTION_DAYS if older_than_days is None else older_than_days
        purged = repository.purge_terminal_reminders(self.db, self.clock() - timedelta(days=days))
        if purged:
            logger.info(f"🧹 [Engine] Purged {purged} sent/failed reminders older than {days} days")
        return OperationResult(success=True, message="History purged", data={"purged": purged})

    @_reported(_operation_failed)
    def run_maintenance(self) -> OperationResult:
        merged = self.registry.deduplicate()["merged"]
        stale = self.registry.prune_stale(self.clock())
        purged = self.purge_history().data.get("purged", 0)
        return OperationResult(
            success=True,
            message="Maintenance complete",
            data={"merged": merged, "stale_pruned": stale, "purged": purged},
        )

    # --- Request routing ---

    def handle(self, request) -> EngineResult:
        if isinstance(request, CreateTaskRequest):
            return self._create_task(request)
        if isinstance(request, UpdateTaskRequest):
            return self._update_task(request)
        if isinstance(request, DeleteTaskRequest):
            return self._delete_task(request)
        if isinstance(request, CompleteTaskRequest):
            return self._complete_task(request)
        if isinstance(request, ClearTasksRequest):
            return self._clear_tasks(request)
        if isinstance(request, ScanRequest):
            return self.scan_and_dispatch(force_scan=request.force)
        if isinstance(request, BroadcastRequest):
            return self.run_broadcast(request.alert_class, force=request.force)
        if isinstance(request, RegisterEndpointRequest):
            return self.register_endpoint(request.user_id, request.device_id, request.token, request.platform)
        if isinstance(request, LogoutRequest):
            return self.on_user_logged_out(request.user_id)
        if isinstance(request, SendTestReminderRequest):
            return self.send_test_reminder(request.user_id, request.task_id)
        if isinstance(request, SendTestAlertRequest):
            return self.send_test_alert(request.city, request.user_id, request.alert_class, request.push)
        return OperationResult(success=False, message=f"Unsupported action: {getattr(request, 'action', None)}")

    def _owned_task(self, user_id: str, task_id: str) -> Optional[Task]:
        task = repository.get_task(self.db, task_id)
        if task is None or task.user_id != user_id:
            return None
        return task

    @_reported(_operation_failed)
    def _create_task(self, request: CreateTaskRequest) -> OperationResult:
        data = request.task
        task = repository.create_task(self.db, request.user_id, data.name, data.time, data.days, data.status)
        logger.info(f"📝 [Engine] Task created: '{task.name}' at {task.time} ({task.days}) user={task.user_id}")
        return self.on_task_created(task)

    @_reported(_operation_failed)
    def _update_task(self, request: UpdateTaskRequest) -> OperationResult:
        task = self._owned_task(request.user_id, request.task_id)
        if task is None:
            return OperationResult(success=False, message="Task not found")
        old = task_snapshot(task)
        for field, value in request.task.model_dump(exclude_none=True).items():
            setattr(task, field, value)
        if task.status == TaskStatus.COMPLETE and old["status"] != TaskStatus.COMPLETE:
            task.completed_at = self.clock()
        self.db.commit()
        return self.on_task_updated(task, old)

    @_reported(_operation_failed)
    def _delete_task(self, request: DeleteTaskRequest) -> OperationResult:
        if self._owned_task(request.user_id, request.task_id) is None:
            return OperationResult(success=False, message="Task not found")
        repository.delete_task(self.db, request.task_id)
        return self.on_task_deleted(request.task_id)

    @_reported(_operation_failed)
    def _complete_task(self, request: CompleteTaskRequest) -> OperationResult:
        task = self._owned_task(request.user_id, request.task_id)
        if task is None:
            return OperationResult(success=False, message="Task not found")
        task.status = TaskStatus.COMPLETE
        task.completed_at = self.clock()
        self.db.commit()
        return self.on_task_completed(task)

    @_reported(_operation_failed)
    def _clear_tasks(self, request: ClearTasksRequest) -> OperationResult:
        deleted = repository.delete_tasks_for_user(self.db, request.user_id)
        result = self.on_tasks_cleared(request.user_id)
        result.data["deleted"] = deleted
        return result
