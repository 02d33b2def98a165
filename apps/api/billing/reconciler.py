"""Applies authenticated gateway events to invoices, subscriptions and clients.

Order per delivery: authenticate, decode, normalize, claim the canonical key,
apply the outcome in one store transaction, then mark the key processed. Any
failure after the claim releases it so the gateway's retry can succeed.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .clock import now_utc
from .errors import EventInFlightError
from .gateways import GatewayAdapter
from .ledger import ClaimResult, IdempotencyLedger, get_ledger
from .models import (
    CanonicalPaymentEvent,
    InvoiceRecord,
    InvoiceStatus,
    PaymentOutcome,
    WebhookAck,
)
from .state import (
    CLIENT_TRANSITIONS,
    INVOICE_TRANSITIONS,
    SUBSCRIPTION_TRANSITIONS,
    LifecycleEvent,
    next_state,
)
from .store import BillingStore, BillingUnit, get_store

logger = logging.getLogger(__name__)


def decode_payload(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid webhook body: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("Webhook body must be a JSON object")
    return payload


def locate_invoice(unit: BillingUnit, event: CanonicalPaymentEvent) -> Optional[InvoiceRecord]:
    if event.gateway_reference:
        invoice = unit.find_invoice_by_gateway_reference(event.source, event.gateway_reference)
        if invoice is not None:
            return invoice
    if event.internal_reference:
        invoice = unit.get_invoice(event.internal_reference)
        if invoice is not None and invoice.refund_of is None:
            return invoice
    return None


def _stamp(invoice: InvoiceRecord, event: CanonicalPaymentEvent, now: datetime) -> None:
    invoice.gateway = invoice.gateway or event.source
    invoice.gateway_id = invoice.gateway_id or event.gateway_reference
    invoice.gateway_data = dict(event.payload)
    invoice.updated_at = now


def _move_invoice(invoice: InvoiceRecord, event: CanonicalPaymentEvent, lifecycle_event: LifecycleEvent) -> bool:
    new_status = next_state(INVOICE_TRANSITIONS, invoice.status, lifecycle_event)
    if new_status is None:
        logger.warning(
            "Ignoring %s for invoice %s in status %s",
            event.event_type,
            invoice.invoice_id,
            invoice.status.value,
        )
        return False
    invoice.status = new_status
    return True


def _cascade(unit: BillingUnit, invoice: InvoiceRecord, lifecycle_event: LifecycleEvent, now: datetime) -> None:
    """Move the invoice's subscription and client along ``lifecycle_event`` where the tables allow it."""
    sub = unit.get_subscription(invoice.subscription_id)
    if sub is not None:
        new_status = next_state(SUBSCRIPTION_TRANSITIONS, sub.status, lifecycle_event)
        if new_status is not None and new_status != sub.status:
            sub.status = new_status
            sub.updated_at = now
            unit.save_subscription(sub)

    client = unit.get_client(invoice.client_id)
    if client is not None:
        new_status = next_state(CLIENT_TRANSITIONS, client.status, lifecycle_event)
        if new_status is not None and new_status != client.status:
            logger.info("Client %s: %s -> %s", client.client_id, client.status.value, new_status.value)
            client.status = new_status
            client.updated_at = now
            unit.save_client(client)


def _apply_confirmed(unit: BillingUnit, invoice: InvoiceRecord, event: CanonicalPaymentEvent, now: datetime) -> None:
    if invoice.status == InvoiceStatus.PAID:
        logger.info("Invoice %s already paid; %s ignored", invoice.invoice_id, event.event_type)
        return
    if not _move_invoice(invoice, event, LifecycleEvent.PAYMENT_CONFIRMED):
        return
    invoice.paid_at = event.paid_at or now
    _stamp(invoice, event, now)
    unit.save_invoice(invoice)
    _cascade(unit, invoice, LifecycleEvent.PAYMENT_CONFIRMED, now)


def _apply_overdue(unit: BillingUnit, invoice: InvoiceRecord, event: CanonicalPaymentEvent, now: datetime) -> None:
    if not _move_invoice(invoice, event, LifecycleEvent.PAYMENT_LATE):
        return
    _stamp(invoice, event, now)
    unit.save_invoice(invoice)
    _cascade(unit, invoice, LifecycleEvent.PAYMENT_LATE, now)


def _apply_refunded(unit: BillingUnit, invoice: InvoiceRecord, event: CanonicalPaymentEvent, now: datetime) -> None:
    if invoice.status != InvoiceStatus.PAID:
        if _move_invoice(invoice, event, LifecycleEvent.PAYMENT_REFUNDED):
            _stamp(invoice, event, now)
            unit.save_invoice(invoice)
        return

    # Paid history is append-only: record the refund next to the paid invoice.
    if unit.find_refund_for(invoice.invoice_id) is not None:
        logger.info("Refund for invoice %s already recorded", invoice.invoice_id)
        return
    unit.save_invoice(
        InvoiceRecord(
            invoice_id=f"inv_{uuid.uuid4().hex}",
            subscription_id=invoice.subscription_id,
            client_id=invoice.client_id,
            amount=-abs(invoice.amount),
            due_date=invoice.due_date,
            status=InvoiceStatus.REFUNDED,
            gateway=event.source,
            gateway_id=event.gateway_reference,
            gateway_data=dict(event.payload),
            refund_of=invoice.invoice_id,
            created_at=now,
            updated_at=now,
        )
    )
    logger.info("Refund recorded for paid invoice %s", invoice.invoice_id)


def _apply_canceled(unit: BillingUnit, invoice: InvoiceRecord, event: CanonicalPaymentEvent, now: datetime) -> None:
    if not _move_invoice(invoice, event, LifecycleEvent.PAYMENT_CANCELED):
        return
    _stamp(invoice, event, now)
    unit.save_invoice(invoice)


def _apply_informational(unit: BillingUnit, invoice: InvoiceRecord, event: CanonicalPaymentEvent, now: datetime) -> None:
    if invoice.status == InvoiceStatus.PAID:
        return
    _stamp(invoice, event, now)
    unit.save_invoice(invoice)


OUTCOME_HANDLERS: Mapping[PaymentOutcome, Callable[[BillingUnit, InvoiceRecord, CanonicalPaymentEvent, datetime], None]] = {
    PaymentOutcome.PAYMENT_CONFIRMED: _apply_confirmed,
    PaymentOutcome.PAYMENT_OVERDUE: _apply_overdue,
    PaymentOutcome.PAYMENT_REFUNDED: _apply_refunded,
    PaymentOutcome.PAYMENT_CANCELED: _apply_canceled,
    PaymentOutcome.INFORMATIONAL: _apply_informational,
}


def apply_payment_event(unit: BillingUnit, event: CanonicalPaymentEvent, *, now: datetime) -> Optional[str]:
    """Apply ``event`` inside ``unit``; returns the target invoice id, or None if it is unknown."""
    invoice = locate_invoice(unit, event)
    if invoice is None:
        logger.warning(
            "No invoice for %s event %s (gateway ref %s, internal ref %s)",
            event.source,
            event.event_type,
            event.gateway_reference,
            event.internal_reference,
        )
        return None
    OUTCOME_HANDLERS[event.outcome](unit, invoice, event, now)
    return invoice.invoice_id


class WebhookReconciler:
    def __init__(self, *, store: Optional[BillingStore] = None, ledger: Optional[IdempotencyLedger] = None):
        self._store = store or get_store()
        self._ledger = ledger or get_ledger()

    def handle(self, adapter: GatewayAdapter, *, headers: Mapping[str, str], raw_body: bytes) -> WebhookAck:
        adapter.authenticate(headers=headers, raw_body=raw_body)
        event = adapter.normalize(decode_payload(raw_body))
        return self.reconcile(event)

    def reconcile(self, event: CanonicalPaymentEvent, *, now: Optional[datetime] = None) -> WebhookAck:
        now = now or now_utc()
        key = event.key

        claim = self._ledger.claim(key, now=now)
        if claim == ClaimResult.ALREADY_PROCESSED:
            logger.info("Duplicate webhook %s ignored", key)
            return WebhookAck(duplicate=True, outcome=event.outcome)
        if claim == ClaimResult.IN_FLIGHT:
            raise EventInFlightError(f"Event {key} is already being processed")

        try:
            invoice_id = self._store.run_in_transaction(lambda unit: apply_payment_event(unit, event, now=now))
        except Exception:
            self._ledger.release(key)
            logger.exception("Failed to apply webhook %s (%s)", key, event.event_type)
            raise

        if invoice_id is None:
            # Let a redelivery apply once the invoice exists.
            self._ledger.release(key)
            return WebhookAck(applied=False, outcome=event.outcome)

        self._ledger.mark_processed(key, now=now)
        logger.info("Webhook %s applied: %s on invoice %s", key, event.outcome.value, invoice_id)
        return WebhookAck(applied=True, outcome=event.outcome, invoice_id=invoice_id)
