from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from cycleflow.api.imports import router as imports_router
from cycleflow.api.webhooks.garmin import router as garmin_webhook_router
from cycleflow.config.settings import settings
from cycleflow.core.logger import setup_logger
from cycleflow.db.session import init_db
from cycleflow.ingestion.dispatch import shutdown_executor
from cycleflow.utils.timezone import utcnow

setup_logger(level=settings.log_level, log_file=settings.log_file or None)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create missing tables on startup, drain the event executor on shutdown."""
    logger.info("Ensuring database tables exist")
    init_db()
    logger.info(
        f"Webhook dispatch backend={settings.event_dispatch_backend}, "
        f"rate limit backend={settings.rate_limit_backend}"
    )
    yield
    shutdown_executor(wait=True)
    logger.info("Shutdown complete")


app = FastAPI(title="cycleflow", lifespan=lifespan)

app.include_router(garmin_webhook_router)
app.include_router(imports_router)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}
