from contextlib import asynccontextmanager
import logging
import sys

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from agrinotify.core.config import settings
from agrinotify.db.session import init_db
from agrinotify.reminders.api import router as engine_router
from agrinotify.reminders.config import settings as reminder_settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info(f"Starting up {settings.PROJECT_NAME}...")
    try:
        init_db()
        logger.info("All required database tables exist")
    except Exception as e:
        logger.warning(f"Could not initialize database tables: {e}")
    yield
    logger.info(f"Shutting down {settings.PROJECT_NAME}...")


def create_app() -> FastAPI:
    app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)
    app.include_router(engine_router, prefix=f"{settings.API_V1_STR}/engine", tags=["engine"])
    if reminder_settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("agrinotify.main:app", host=settings.SERVER_HOST, port=settings.SERVER_PORT, reload=False)
