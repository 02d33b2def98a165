"""Subscription lifecycle: creation, supersession, renewal, overdue escalation
and the read model exposed to CRM views.

Every multi-entity mutation runs inside one ``store.run_in_transaction`` call
and re-reads current state before deciding, so a transition is either applied
completely or not at all, and repeating it is harmless.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Optional, Tuple

from .clock import (
    day_bounds,
    days_overdue,
    local_date,
    next_billing_date,
    now_utc,
    parse_business_date,
    period_end,
    resolve_anchor_day,
)
from .errors import LifecycleStateError, NotFoundError
from .models import (
    OPEN_SUBSCRIPTION_STATUSES,
    OUTSTANDING_INVOICE_STATUSES,
    CancellationReason,
    ClientBillingView,
    ClientRecord,
    ClientStatus,
    InvoiceRecord,
    InvoiceStatus,
    PlanChangeRequest,
    ReactivationRequest,
    SubscriptionCreateRequest,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionView,
)
from .state import (
    CLIENT_TRANSITIONS,
    SUBSCRIPTION_TRANSITIONS,
    BillingPolicy,
    LifecycleEvent,
    client_transition,
    invoice_transition,
    next_state,
    policy_from_settings,
    subscription_transition,
)
from .store import BillingStore, BillingUnit, get_store

logger = logging.getLogger(__name__)

CREATABLE_CLIENT_STATUSES = frozenset({ClientStatus.TRIALING, ClientStatus.ACTIVE})
REACTIVATABLE_CLIENT_STATUSES = frozenset({ClientStatus.PAST_DUE, ClientStatus.RESTRICTED, ClientStatus.CANCELED})


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"
    LOCKED = "locked"
    SKIPPED = "skipped"


class EscalationOutcome(str, Enum):
    NOT_DUE = "not_due"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    CLOSED = "closed"
    SKIPPED = "skipped"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _require_client(unit: BillingUnit, client_id: str) -> ClientRecord:
    client = unit.get_client(client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")
    return client


def _open_subscription_for(unit: BillingUnit, client: ClientRecord) -> Optional[SubscriptionRecord]:
    if not client.active_subscription_id:
        return None
    sub = unit.get_subscription(client.active_subscription_id)
    if sub is None or sub.status not in OPEN_SUBSCRIPTION_STATUSES:
        return None
    return sub


def _build_contract(
    request: SubscriptionCreateRequest,
    *,
    policy: BillingPolicy,
    now: datetime,
    metadata: Optional[dict] = None,
) -> Tuple[SubscriptionRecord, InvoiceRecord]:
    payment_date = parse_business_date(request.first_payment_date)
    if request.anchor_day_override is not None:
        anchor_day = min(request.anchor_day_override, policy.anchor_day_max)
    else:
        anchor_day = resolve_anchor_day(payment_date, policy.anchor_day_max)

    subscription = SubscriptionRecord(
        subscription_id=_new_id("sub"),
        client_id=request.client_id,
        plan_id=request.plan_id,
        billing_cycle=request.billing_cycle,
        anchor_day=anchor_day,
        current_period_start=payment_date,
        current_period_end=period_end(payment_date, request.billing_cycle),
        next_billing_date=next_billing_date(payment_date, anchor_day, request.billing_cycle),
        status=SubscriptionStatus.ACTIVE,
        grace_period_days=request.grace_period_days if request.grace_period_days is not None else policy.grace_period_days,
        amount=float(request.amount),
        created_at=now,
        updated_at=now,
        metadata=dict(metadata or {}),
    )
    invoice = InvoiceRecord(
        invoice_id=_new_id("inv"),
        subscription_id=subscription.subscription_id,
        client_id=request.client_id,
        amount=subscription.amount,
        due_date=payment_date,
        status=InvoiceStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    return subscription, invoice


def _link_client(client: ClientRecord, subscription: SubscriptionRecord, *, now: datetime) -> ClientRecord:
    client.plan_id = subscription.plan_id
    client.billing_cycle = subscription.billing_cycle
    client.active_subscription_id = subscription.subscription_id
    if client.first_payment_date is None:
        client.first_payment_date = subscription.current_period_start
    client.updated_at = now
    return client


def _close_subscription(
    unit: BillingUnit,
    sub: SubscriptionRecord,
    *,
    event: LifecycleEvent,
    reason: CancellationReason,
    now: datetime,
) -> SubscriptionRecord:
    """Cancel ``sub`` and every invoice still open on it."""
    sub.status = subscription_transition(sub.status, event)
    sub.canceled_at = now
    sub.cancellation_reason = reason
    sub.updated_at = now
    unit.save_subscription(sub)

    for invoice in unit.list_outstanding_invoices_for_subscription(sub.subscription_id):
        invoice.status = invoice_transition(invoice.status, event)
        invoice.updated_at = now
        unit.save_invoice(invoice)
    return sub


def create_subscription(
    *,
    request: SubscriptionCreateRequest,
    store: Optional[BillingStore] = None,
    policy: Optional[BillingPolicy] = None,
    now: Optional[datetime] = None,
) -> Tuple[SubscriptionRecord, InvoiceRecord]:
    """Open the first contract of a converted client and its first PENDING invoice."""
    store = store or get_store()
    policy = policy or policy_from_settings()
    now = now or now_utc()

    def txn(unit: BillingUnit) -> Tuple[SubscriptionRecord, InvoiceRecord]:
        client = _require_client(unit, request.client_id)
        if client.status not in CREATABLE_CLIENT_STATUSES:
            raise LifecycleStateError(
                f"Client {client.client_id} is {client.status.value}; use reactivation instead"
            )
        if _open_subscription_for(unit, client) is not None:
            raise LifecycleStateError(f"Client {client.client_id} already has an active subscription")

        subscription, invoice = _build_contract(request, policy=policy, now=now)
        client.status = client_transition(client.status, LifecycleEvent.STARTED)
        unit.save_subscription(subscription)
        unit.save_invoice(invoice)
        unit.save_client(_link_client(client, subscription, now=now))
        return subscription, invoice

    subscription, invoice = store.run_in_transaction(txn)
    logger.info(
        "Subscription created: %s client=%s anchor_day=%d next_billing=%s",
        subscription.subscription_id,
        subscription.client_id,
        subscription.anchor_day,
        subscription.next_billing_date.isoformat(),
    )
    return subscription, invoice


def reactivate_subscription(
    *,
    request: ReactivationRequest,
    store: Optional[BillingStore] = None,
    policy: Optional[BillingPolicy] = None,
    now: Optional[datetime] = None,
) -> Tuple[SubscriptionRecord, InvoiceRecord]:
    """Bring a delinquent or canceled client back on a new contract."""
    store = store or get_store()
    policy = policy or policy_from_settings()
    now = now or now_utc()

    def txn(unit: BillingUnit) -> Tuple[SubscriptionRecord, InvoiceRecord]:
        client = _require_client(unit, request.client_id)
        if client.status not in REACTIVATABLE_CLIENT_STATUSES:
            allowed = ", ".join(sorted(s.value for s in REACTIVATABLE_CLIENT_STATUSES))
            raise LifecycleStateError(
                f"Client with status {client.status.value} cannot be reactivated (allowed: {allowed})"
            )

        previous_id = request.previous_subscription_id or client.active_subscription_id
        if previous_id:
            previous = unit.get_subscription(previous_id)
            if previous is None:
                raise NotFoundError(f"Subscription {previous_id} not found")
            if previous.client_id != client.client_id:
                raise LifecycleStateError(f"Subscription {previous_id} does not belong to client {client.client_id}")
            if previous.status in OPEN_SUBSCRIPTION_STATUSES:
                _close_subscription(
                    unit, previous, event=LifecycleEvent.SUPERSEDED, reason=CancellationReason.SUPERSEDED, now=now
                )

        metadata = {
            "reactivated_at": now.isoformat(),
            "requested_by": request.requested_by,
            "previous_subscription_id": previous_id,
        }
        subscription, invoice = _build_contract(request, policy=policy, now=now, metadata=metadata)
        client.status = client_transition(client.status, LifecycleEvent.REACTIVATED)
        unit.save_subscription(subscription)
        unit.save_invoice(invoice)
        unit.save_client(_link_client(client, subscription, now=now))
        return subscription, invoice

    subscription, invoice = store.run_in_transaction(txn)
    logger.info(
        "Client %s reactivated: subscription=%s next_billing=%s",
        subscription.client_id,
        subscription.subscription_id,
        subscription.next_billing_date.isoformat(),
    )
    return subscription, invoice


def change_plan(
    *,
    request: PlanChangeRequest,
    store: Optional[BillingStore] = None,
    policy: Optional[BillingPolicy] = None,
    now: Optional[datetime] = None,
) -> Tuple[SubscriptionRecord, InvoiceRecord]:
    """Supersede the client's open contract with one on a new plan."""
    store = store or get_store()
    policy = policy or policy_from_settings()
    now = now or now_utc()

    def txn(unit: BillingUnit) -> Tuple[SubscriptionRecord, InvoiceRecord]:
        client = _require_client(unit, request.client_id)
        current = _open_subscription_for(unit, client)
        if current is None:
            raise LifecycleStateError(f"Client {client.client_id} has no active subscription to change")
        # Superseding would cancel the unpaid debt; delinquent clients go through reactivation.
        overdue = [
            inv
            for inv in unit.list_outstanding_invoices_for_subscription(current.subscription_id)
            if inv.status == InvoiceStatus.OVERDUE
        ]
        if current.status == SubscriptionStatus.PAST_DUE or client.status not in CREATABLE_CLIENT_STATUSES or overdue:
            raise LifecycleStateError(
                f"Client {client.client_id} has overdue charges on subscription {current.subscription_id}; "
                "settle them or use reactivation instead"
            )

        _close_subscription(unit, current, event=LifecycleEvent.SUPERSEDED, reason=CancellationReason.SUPERSEDED, now=now)
        metadata = {"requested_by": request.requested_by, "previous_subscription_id": current.subscription_id}
        subscription, invoice = _build_contract(request, policy=policy, now=now, metadata=metadata)
        unit.save_subscription(subscription)
        unit.save_invoice(invoice)
        unit.save_client(_link_client(client, subscription, now=now))
        return subscription, invoice

    subscription, invoice = store.run_in_transaction(txn)
    logger.info(
        "Plan changed for client %s: %s -> %s",
        subscription.client_id,
        subscription.metadata.get("previous_subscription_id"),
        subscription.subscription_id,
    )
    return subscription, invoice


def cancel_subscription(
    *,
    subscription_id: str,
    reason: CancellationReason = CancellationReason.REQUESTED,
    store: Optional[BillingStore] = None,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    store = store or get_store()
    now = now or now_utc()

    def txn(unit: BillingUnit) -> SubscriptionRecord:
        sub = unit.get_subscription(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        _close_subscription(unit, sub, event=LifecycleEvent.CANCEL_REQUESTED, reason=reason, now=now)

        client = unit.get_client(sub.client_id)
        if client is not None and client.active_subscription_id == sub.subscription_id:
            new_status = next_state(CLIENT_TRANSITIONS, client.status, LifecycleEvent.CANCEL_REQUESTED)
            if new_status is not None:
                client.status = new_status
                client.updated_at = now
                unit.save_client(client)
        return sub

    sub = store.run_in_transaction(txn)
    logger.info("Subscription %s canceled (%s)", sub.subscription_id, reason.value)
    return sub


def link_gateway_charge(
    *,
    invoice_id: str,
    gateway: str,
    gateway_id: str,
    store: Optional[BillingStore] = None,
    now: Optional[datetime] = None,
) -> InvoiceRecord:
    """Record the charge a gateway created for an invoice, so its webhooks can find it."""
    store = store or get_store()
    now = now or now_utc()

    def txn(unit: BillingUnit) -> InvoiceRecord:
        invoice = unit.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if invoice.status not in OUTSTANDING_INVOICE_STATUSES:
            raise LifecycleStateError(f"Invoice {invoice_id} is {invoice.status.value}; only open invoices can be charged")
        invoice.gateway = gateway.strip().lower()
        invoice.gateway_id = gateway_id.strip()
        invoice.updated_at = now
        unit.save_invoice(invoice)
        return invoice

    return store.run_in_transaction(txn)


# ---------------------------------------------------------------------------
# Scheduled transitions
# ---------------------------------------------------------------------------


def renew_subscription(
    *,
    subscription_id: str,
    store: Optional[BillingStore] = None,
    now: Optional[datetime] = None,
) -> RenewalOutcome:
    """Roll a subscription whose billing date is today into its next period.

    Renewal is refused while any invoice of the subscription is still open, so a
    new charge never stacks on an unresolved one.
    """
    store = store or get_store()
    now = now or now_utc()
    today_start, today_end = day_bounds(now)

    def txn(unit: BillingUnit) -> RenewalOutcome:
        sub = unit.get_subscription(subscription_id)
        if sub is None or sub.status != SubscriptionStatus.ACTIVE:
            return RenewalOutcome.SKIPPED
        # Already rolled forward today, or not due: nothing to do.
        if not today_start <= sub.next_billing_date < today_end:
            return RenewalOutcome.SKIPPED

        outstanding = unit.find_outstanding_invoice(sub.subscription_id)
        if outstanding is not None:
            logger.warning(
                "Renewal blocked for subscription %s: invoice %s is %s",
                sub.subscription_id,
                outstanding.invoice_id,
                outstanding.status.value,
            )
            return RenewalOutcome.LOCKED

        new_start = sub.next_billing_date
        sub.status = subscription_transition(sub.status, LifecycleEvent.RENEWED)
        sub.current_period_start = new_start
        sub.current_period_end = period_end(new_start, sub.billing_cycle)
        sub.next_billing_date = next_billing_date(new_start, sub.anchor_day, sub.billing_cycle)
        sub.updated_at = now
        unit.save_subscription(sub)

        unit.save_invoice(
            InvoiceRecord(
                invoice_id=_new_id("inv"),
                subscription_id=sub.subscription_id,
                client_id=sub.client_id,
                amount=sub.amount,
                due_date=new_start,
                status=InvoiceStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Renewed subscription %s, next billing %s", sub.subscription_id, sub.next_billing_date.isoformat())
        return RenewalOutcome.RENEWED

    return store.run_in_transaction(txn)


def escalate_overdue_invoice(
    *,
    invoice_id: str,
    store: Optional[BillingStore] = None,
    as_of: Optional[datetime] = None,
) -> EscalationOutcome:
    """Demote or cascade-cancel the contract behind an unpaid invoice.

    Up to ``grace_period_days`` days late the subscription becomes PAST_DUE and
    the client INADIMPLENTE; beyond that subscription, client and invoice are
    canceled together. PAID invoices are never touched.
    """
    store = store or get_store()
    as_of = as_of or now_utc()

    def txn(unit: BillingUnit) -> EscalationOutcome:
        invoice = unit.get_invoice(invoice_id)
        if invoice is None or invoice.status not in OUTSTANDING_INVOICE_STATUSES:
            return EscalationOutcome.SKIPPED

        sub = unit.get_subscription(invoice.subscription_id)
        if sub is None:
            logger.warning("Invoice %s has no subscription %s", invoice.invoice_id, invoice.subscription_id)
            return EscalationOutcome.SKIPPED

        days = days_overdue(invoice.due_date, as_of)
        if days <= 0:
            return EscalationOutcome.NOT_DUE

        if sub.status == SubscriptionStatus.CANCELED:
            # Debt left on a contract that was already closed.
            invoice.status = invoice_transition(invoice.status, LifecycleEvent.CANCEL_REQUESTED)
            invoice.updated_at = as_of
            unit.save_invoice(invoice)
            logger.warning("Closed invoice %s of canceled subscription %s", invoice.invoice_id, sub.subscription_id)
            return EscalationOutcome.CLOSED

        client = unit.get_client(invoice.client_id)
        grace = sub.grace_period_days

        if days > grace:
            sub.status = subscription_transition(sub.status, LifecycleEvent.GRACE_EXPIRED)
            sub.canceled_at = as_of
            sub.cancellation_reason = CancellationReason.PAYMENT_FAILURE
            sub.updated_at = as_of
            unit.save_subscription(sub)

            invoice.status = invoice_transition(invoice.status, LifecycleEvent.GRACE_EXPIRED)
            invoice.updated_at = as_of
            unit.save_invoice(invoice)

            if client is not None:
                new_status = next_state(CLIENT_TRANSITIONS, client.status, LifecycleEvent.GRACE_EXPIRED)
                if new_status is not None and new_status != client.status:
                    client.status = new_status
                    client.updated_at = as_of
                    unit.save_client(client)

            logger.warning(
                "Canceled subscription %s of client %s: %d days overdue (grace %d)",
                sub.subscription_id,
                invoice.client_id,
                days,
                grace,
            )
            return EscalationOutcome.CANCELED

        new_sub_status = next_state(SUBSCRIPTION_TRANSITIONS, sub.status, LifecycleEvent.PAYMENT_LATE)
        if new_sub_status is not None and new_sub_status != sub.status:
            sub.status = new_sub_status
            sub.updated_at = as_of
            unit.save_subscription(sub)

        if invoice.status != InvoiceStatus.OVERDUE:
            invoice.status = invoice_transition(invoice.status, LifecycleEvent.PAYMENT_LATE)
            invoice.updated_at = as_of
            unit.save_invoice(invoice)

        if client is not None:
            new_status = next_state(CLIENT_TRANSITIONS, client.status, LifecycleEvent.PAYMENT_LATE)
            if new_status is not None and new_status != client.status:
                client.status = new_status
                client.updated_at = as_of
                unit.save_client(client)

        logger.info("Client %s past due: %d/%d days", invoice.client_id, days, grace)
        return EscalationOutcome.PAST_DUE

    return store.run_in_transaction(txn)


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------


def subscription_view(sub: SubscriptionRecord) -> SubscriptionView:
    return SubscriptionView(
        subscription_id=sub.subscription_id,
        status=sub.status,
        next_billing_date=sub.next_billing_date,
        amount=sub.amount,
    )


def get_subscription_view(*, subscription_id: str, store: Optional[BillingStore] = None) -> SubscriptionView:
    store = store or get_store()
    sub = store.get_subscription(subscription_id)
    if sub is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription_view(sub)


def list_client_subscriptions(*, client_id: str, store: Optional[BillingStore] = None) -> List[SubscriptionRecord]:
    store = store or get_store()
    if store.get_client(client_id) is None:
        raise NotFoundError(f"Client {client_id} not found")
    return store.list_subscriptions_for_client(client_id)


def list_client_invoices(*, client_id: str, store: Optional[BillingStore] = None) -> List[InvoiceRecord]:
    store = store or get_store()
    if store.get_client(client_id) is None:
        raise NotFoundError(f"Client {client_id} not found")
    return store.list_invoices_for_client(client_id)


def _current_subscription(store: BillingStore, client: ClientRecord) -> Optional[SubscriptionRecord]:
    for sub in store.list_subscriptions_for_client(client.client_id):
        if sub.status in OPEN_SUBSCRIPTION_STATUSES:
            return sub
    return None


def next_due_date(*, client: ClientRecord, store: Optional[BillingStore] = None) -> Optional[date]:
    """Next due date shown in CRM views.

    Falls back from the open subscription's billing date, to the oldest PENDING
    invoice, to first payment date plus one cycle.
    """
    store = store or get_store()
    sub = _current_subscription(store, client)
    if sub is not None:
        return local_date(sub.next_billing_date)

    pending = [inv for inv in store.list_invoices_for_client(client.client_id) if inv.status == InvoiceStatus.PENDING]
    if pending:
        return local_date(pending[0].due_date)

    if client.first_payment_date is not None and client.billing_cycle is not None:
        return local_date(period_end(client.first_payment_date, client.billing_cycle))
    return None


def get_client_billing_view(*, client_id: str, store: Optional[BillingStore] = None) -> ClientBillingView:
    store = store or get_store()
    client = store.get_client(client_id)
    if client is None:
        raise NotFoundError(f"Client {client_id} not found")
    sub = _current_subscription(store, client)
    return ClientBillingView(
        client_id=client.client_id,
        status=client.status,
        subscription=subscription_view(sub) if sub is not None else None,
        next_due_date=next_due_date(client=client, store=store),
    )
