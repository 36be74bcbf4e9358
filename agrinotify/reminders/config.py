from pydantic_settings import BaseSettings
from typing import Optional


class ReminderSettings(BaseSettings):
    # Recurrence
    LEAD_MINUTES: int = 5

    # Due scanning
    SCAN_INTERVAL_SECONDS: int = 30
    DUE_WINDOW_SECONDS: int = 120
    SCAN_BATCH_SIZE: int = 500
    DISPATCH_MAX_WORKERS: int = 8

    # FCM
    FCM_PROJECT_ID: Optional[str] = None
    FCM_CREDENTIALS_JSON: Optional[str] = None  # path or inline JSON via env
    FCM_HTTP_TIMEOUT_SECONDS: int = 10

    # Weather provider (OpenWeatherMap)
    WEATHER_API_KEY: Optional[str] = None
    WEATHER_BASE_URL: str = "https://api.openweathermap.org/data/2.5/weather"
    WEATHER_COUNTRY_CODE: str = "PH"
    WEATHER_TIMEOUT_SECONDS: float = 10.0

    # Fan-out alerts
    WEATHER_COOLDOWN_MINUTES: int = 30
    PEST_COOLDOWN_MINUTES: int = 60
    BROADCAST_MIN_INTERVAL_SECONDS: int = 60

    # Registry maintenance
    ENDPOINT_STALE_DAYS: int = 7
    HISTORY_RETENTION_DAYS: int = 30

    # Celery (external low-frequency trigger)
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None
    BEAT_SCAN_INTERVAL_SECONDS: int = 60
    BEAT_BROADCAST_INTERVAL_SECONDS: int = 300
    BEAT_MAINTENANCE_INTERVAL_SECONDS: int = 3600

    # Metrics
    METRICS_ENABLED: bool = True

    class Config:
        env_prefix = "REMINDER_"


settings = ReminderSettings()
