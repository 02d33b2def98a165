from __future__ import annotations

# File: apps/api/main.py
import logging

from fastapi import FastAPI

from .billing import init_billing_scheduler, router as billing_router
from .scheduler import SchedulerWrapper
from .settings import settings

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


# --- FastAPI App ---

app = FastAPI(title="Billing Lifecycle API")

# Scheduler is started/stopped via app events below.
scheduler = SchedulerWrapper(timezone=settings.BILLING_TIMEZONE)


@app.get("/health")
def health():
    return {"status": "ok", "scheduler": scheduler.started}


app.include_router(billing_router)


@app.on_event("startup")
def startup_events():
    if not settings.ENABLE_BILLING_SCHEDULER:
        logger.info("Billing scheduler disabled (ENABLE_BILLING_SCHEDULER=false)")
        return
    scheduler.start()
    init_billing_scheduler(scheduler)
    logger.info("Scheduled jobs: %s", ", ".join(scheduler.get_job_ids()))


@app.on_event("shutdown")
def shutdown_events():
    scheduler.shutdown()
