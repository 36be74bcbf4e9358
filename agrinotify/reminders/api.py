from typing import Annotated, List
import logging

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from agrinotify.db.session import get_db
from . import repository
from .dispatcher import DispatchClient
from .schemas import EngineRequestUnion, ScanRequest, TaskRead
from .service import ReminderEngineService
from .weather import WeatherProvider

logger = logging.getLogger(__name__)

router = APIRouter()


def get_dispatch_client() -> DispatchClient:
    return DispatchClient()


def get_weather_provider() -> WeatherProvider:
    return WeatherProvider()


def get_engine_service(
    db: Session = Depends(get_db),
    client: DispatchClient = Depends(get_dispatch_client),
    weather_provider: WeatherProvider = Depends(get_weather_provider),
) -> ReminderEngineService:
    return ReminderEngineService(db, client=client, weather_provider=weather_provider)


@router.post("/")
def handle_request_endpoint(
    request: Annotated[EngineRequestUnion, Body(discriminator="action")],
    service: ReminderEngineService = Depends(get_engine_service),
):
    """Route a tagged engine request, then run the throttled due scan."""
    result = service.handle(request)
    if not isinstance(request, ScanRequest):
        scan = service.scan_and_dispatch()
        if scan.scanned:
            logger.info(f"🔍 [API] Opportunistic scan: sent={scan.sent} failed={scan.failed}")
    return result


@router.get("/tasks", response_model=List[TaskRead])
def list_tasks_endpoint(
    user_id: str,
    service: ReminderEngineService = Depends(get_engine_service),
):
    service.scan_and_dispatch()
    return repository.list_tasks(service.db, user_id)


@router.get("/health")
def health_endpoint():
    return {"status": "ok"}
