from __future__ import annotations

import logging

from apscheduler.triggers.cron import CronTrigger

from ..scheduler import SchedulerWrapper
from ..settings import settings
from .jobs import run_overdue_job, run_renewal_job
from .ledger import sweep_expired_events

logger = logging.getLogger(__name__)

RENEWAL_JOB_ID = "billing_renewal"
OVERDUE_JOB_ID = "billing_overdue_detection"
LEDGER_SWEEP_JOB_ID = "billing_idempotency_sweep"


def init_billing_scheduler(scheduler: SchedulerWrapper) -> None:
    """Register the daily lifecycle jobs and the ledger sweep."""
    tz = settings.BILLING_TIMEZONE

    scheduler.add_cron_job(
        run_renewal_job,
        CronTrigger(hour=settings.BILLING_RENEWAL_HOUR, minute=0, timezone=tz),
        RENEWAL_JOB_ID,
    )
    scheduler.add_cron_job(
        run_overdue_job,
        CronTrigger(hour=settings.BILLING_OVERDUE_HOUR, minute=0, timezone=tz),
        OVERDUE_JOB_ID,
    )
    scheduler.add_interval_job(
        sweep_expired_events,
        minutes=settings.IDEMPOTENCY_SWEEP_MINUTES,
        id=LEDGER_SWEEP_JOB_ID,
    )
    logger.info(
        "Billing scheduler initialized: renewal %02d:00, overdue %02d:00 (%s), ledger sweep every %d min",
        settings.BILLING_RENEWAL_HOUR,
        settings.BILLING_OVERDUE_HOUR,
        tz,
        settings.IDEMPOTENCY_SWEEP_MINUTES,
    )
