from celery import shared_task
from sqlalchemy.orm import Session

from agrinotify.db.session import SessionLocal
from .celery_app import celery_app  # noqa: F401
from .service import ReminderEngineService


@shared_task(name="reminders.scan_and_dispatch")
def scan_and_dispatch_task() -> dict:
    """Forced due scan. Per-record status transitions keep it safe next to request-driven scans."""
    db: Session = SessionLocal()
    try:
        return ReminderEngineService(db).scan_and_dispatch(force_scan=True).model_dump()
    finally:
        db.close()


@shared_task(name="reminders.run_broadcast")
def run_broadcast_task(alert_class: str = "weather") -> dict:
    db: Session = SessionLocal()
    try:
        return ReminderEngineService(db).run_broadcast(alert_class).model_dump()
    finally:
        db.close()


@shared_task(name="reminders.maintenance")
def maintenance_task() -> dict:
    db: Session = SessionLocal()
    try:
        return ReminderEngineService(db).run_maintenance().model_dump()
    finally:
        db.close()
