from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional

from ..notify import send_alert
from .clock import day_bounds, is_overdue, now_utc
from .lifecycle import EscalationOutcome, RenewalOutcome, escalate_overdue_invoice, renew_subscription
from .models import JobRunResult
from .store import BillingStore, get_store

logger = logging.getLogger(__name__)

# One run per process at a time; a trigger that finds the lock held is dropped.
_RENEWAL_LOCK = threading.Lock()
_OVERDUE_LOCK = threading.Lock()


def _alert_on_failures(result: JobRunResult) -> None:
    if result.failed:
        send_alert("billing_job_failures", result.model_dump(mode="json"))


def run_renewal_job(*, store: Optional[BillingStore] = None, now: Optional[datetime] = None) -> JobRunResult:
    """Renew every ACTIVE subscription whose billing date falls on the current business day."""
    if not _RENEWAL_LOCK.acquire(blocking=False):
        logger.warning("Renewal job already running; trigger skipped")
        return JobRunResult(job="renewal", ran=False)
    try:
        store = store or get_store()
        now = now or now_utc()
        result = JobRunResult(job="renewal", started_at=now_utc())

        start, end = day_bounds(now)
        due = store.list_subscriptions_due(start, end)
        logger.info("Renewal job: %d subscriptions due", len(due))

        for sub in due:
            result.processed += 1
            try:
                outcome = renew_subscription(subscription_id=sub.subscription_id, store=store, now=now)
            except Exception:
                logger.exception("Renewal failed for subscription %s", sub.subscription_id)
                result.failed += 1
                result.failed_ids.append(sub.subscription_id)
                continue
            if outcome == RenewalOutcome.RENEWED:
                result.succeeded += 1
            elif outcome == RenewalOutcome.LOCKED:
                result.locked += 1
            else:
                result.skipped += 1

        result.finished_at = now_utc()
        logger.info(
            "Renewal job done: renewed=%d locked=%d skipped=%d failed=%d",
            result.succeeded,
            result.locked,
            result.skipped,
            result.failed,
        )
        _alert_on_failures(result)
        return result
    finally:
        _RENEWAL_LOCK.release()


def run_overdue_job(*, store: Optional[BillingStore] = None, now: Optional[datetime] = None) -> JobRunResult:
    """Escalate every outstanding invoice whose due date is before the current business day."""
    if not _OVERDUE_LOCK.acquire(blocking=False):
        logger.warning("Overdue detection already running; trigger skipped")
        return JobRunResult(job="overdue", ran=False)
    try:
        store = store or get_store()
        now = now or now_utc()
        result = JobRunResult(job="overdue", started_at=now_utc())

        candidates = [inv for inv in store.list_outstanding_invoices() if is_overdue(inv.due_date, now)]
        logger.info("Overdue detection: %d overdue invoices", len(candidates))

        for invoice in candidates:
            result.processed += 1
            try:
                outcome = escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=now)
            except Exception:
                logger.exception("Overdue escalation failed for invoice %s", invoice.invoice_id)
                result.failed += 1
                result.failed_ids.append(invoice.invoice_id)
                continue
            if outcome in (EscalationOutcome.PAST_DUE, EscalationOutcome.CANCELED, EscalationOutcome.CLOSED):
                result.succeeded += 1
            else:
                result.skipped += 1

        result.finished_at = now_utc()
        logger.info(
            "Overdue detection done: escalated=%d skipped=%d failed=%d",
            result.succeeded,
            result.skipped,
            result.failed,
        )
        _alert_on_failures(result)
        return result
    finally:
        _OVERDUE_LOCK.release()
