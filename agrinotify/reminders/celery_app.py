from celery import Celery
from .config import settings


broker_url = settings.CELERY_BROKER_URL or "memory://"
result_backend = settings.CELERY_RESULT_BACKEND or None

celery_app = Celery(
    "agrinotify",
    broker=broker_url,
    backend=result_backend,
)

celery_app.conf.update(
    task_acks_late=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    worker_prefetch_multiplier=1,
    include=["agrinotify.reminders.tasks"],
)

# Low-frequency external trigger; the inbound-request scan stays the primary path
celery_app.conf.beat_schedule = {
    "scan-and-dispatch": {
        "task": "reminders.scan_and_dispatch",
        "schedule": settings.BEAT_SCAN_INTERVAL_SECONDS,
    },
    "weather-broadcast": {
        "task": "reminders.run_broadcast",
        "schedule": settings.BEAT_BROADCAST_INTERVAL_SECONDS,
        "args": ["weather"],
    },
    "registry-maintenance": {
        "task": "reminders.maintenance",
        "schedule": settings.BEAT_MAINTENANCE_INTERVAL_SECONDS,
    },
}
