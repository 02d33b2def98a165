from __future__ import annotations

from datetime import datetime, timezone

import pytest

from apps.api.billing.ledger import InMemoryIdempotencyLedger
from apps.api.billing.lifecycle import create_subscription
from apps.api.billing.models import (
    BillingCycle,
    ClientRecord,
    ClientStatus,
    InvoiceStatus,
    SubscriptionCreateRequest,
)
from apps.api.billing.state import BillingPolicy
from apps.api.billing.store import InMemoryBillingStore


CREATED_AT = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryBillingStore()


@pytest.fixture
def ledger():
    return InMemoryIdempotencyLedger(ttl_hours=24, claim_timeout_seconds=300)


@pytest.fixture
def policy():
    return BillingPolicy(anchor_day_max=28, grace_period_days=7, idempotency_ttl_hours=24)


@pytest.fixture
def make_client(store):
    def _make(client_id: str = "c1", status: ClientStatus = ClientStatus.ACTIVE) -> ClientRecord:
        client = ClientRecord(client_id=client_id, status=status, company="Acme", created_at=CREATED_AT, updated_at=CREATED_AT)
        store.save_client(client)
        return client

    return _make


@pytest.fixture
def subscribe(store, policy, make_client):
    """Seed a client and open a subscription; returns ``(subscription, first_invoice)``."""

    def _subscribe(
        client_id: str = "c1",
        first_payment_date: str = "2026-01-15",
        cycle: BillingCycle = BillingCycle.MONTHLY,
        amount: float = 99.9,
    ):
        make_client(client_id)
        req = SubscriptionCreateRequest(
            client_id=client_id,
            plan_id="pro",
            billing_cycle=cycle,
            first_payment_date=first_payment_date,
            amount=amount,
        )
        return create_subscription(request=req, store=store, policy=policy, now=CREATED_AT)

    return _subscribe


@pytest.fixture
def settle(store):
    """Mark an invoice PAID directly in the store."""

    def _settle(invoice_id: str, paid_at: datetime = CREATED_AT) -> None:
        def txn(unit):
            invoice = unit.get_invoice(invoice_id)
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = paid_at
            unit.save_invoice(invoice)

        store.run_in_transaction(txn)

    return _settle
