from __future__ import annotations

from datetime import datetime, timezone

import pytest

from apps.api.billing.clock import day_bounds, parse_business_date
from apps.api.billing.errors import PaidInvoiceImmutableError
from apps.api.billing.models import ClientStatus, InvoiceRecord, InvoiceStatus


def test_failed_transaction_leaves_nothing_behind(store, make_client):
    make_client("c1")

    def txn(unit):
        client = unit.get_client("c1")
        client.status = ClientStatus.CANCELED
        unit.save_client(client)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.run_in_transaction(txn)
    assert store.get_client("c1").status == ClientStatus.ACTIVE


def test_unit_reads_its_own_staged_writes(store, make_client):
    make_client("c1")

    def txn(unit):
        client = unit.get_client("c1")
        client.status = ClientStatus.PAST_DUE
        unit.save_client(client)
        return unit.get_client("c1").status

    assert store.run_in_transaction(txn) == ClientStatus.PAST_DUE


def test_paid_invoice_cannot_be_rewritten(store, subscribe, settle):
    _, invoice = subscribe()
    settle(invoice.invoice_id)

    def txn(unit):
        paid = unit.get_invoice(invoice.invoice_id)
        paid.status = InvoiceStatus.CANCELLED
        unit.save_invoice(paid)

    with pytest.raises(PaidInvoiceImmutableError):
        store.run_in_transaction(txn)
    assert store.get_invoice(invoice.invoice_id).status == InvoiceStatus.PAID


def test_list_subscriptions_due_uses_business_day_window(store, subscribe):
    sub, _ = subscribe(first_payment_date="2026-01-15")
    start, end = day_bounds(datetime(2026, 2, 15, 4, 0, tzinfo=timezone.utc))
    assert [s.subscription_id for s in store.list_subscriptions_due(start, end)] == [sub.subscription_id]

    start, end = day_bounds(datetime(2026, 2, 16, 4, 0, tzinfo=timezone.utc))
    assert store.list_subscriptions_due(start, end) == []


def test_gateway_lookup_ignores_refund_records(store, subscribe):
    sub, invoice = subscribe()
    now = datetime(2026, 1, 20, tzinfo=timezone.utc)

    def txn(unit):
        original = unit.get_invoice(invoice.invoice_id)
        original.gateway, original.gateway_id = "asaas", "pay_1"
        unit.save_invoice(original)
        unit.save_invoice(
            InvoiceRecord(
                invoice_id="refund_1",
                subscription_id=sub.subscription_id,
                client_id=sub.client_id,
                amount=-invoice.amount,
                due_date=parse_business_date("2026-01-15"),
                status=InvoiceStatus.REFUNDED,
                gateway="asaas",
                gateway_id="pay_1",
                refund_of=invoice.invoice_id,
                created_at=now,
                updated_at=now,
            )
        )

    store.run_in_transaction(txn)

    def lookup(unit):
        return unit.find_invoice_by_gateway_reference("asaas", "pay_1"), unit.find_refund_for(invoice.invoice_id)

    found, refund = store.run_in_transaction(lookup)
    assert found.invoice_id == invoice.invoice_id
    assert refund.invoice_id == "refund_1"


def test_outstanding_invoices_are_ordered_by_due_date(store, subscribe, settle):
    _, first = subscribe("c1", first_payment_date="2026-03-01")
    _, second = subscribe("c2", first_payment_date="2026-02-01")
    _, third = subscribe("c3", first_payment_date="2026-01-01")
    settle(third.invoice_id)

    ids = [inv.invoice_id for inv in store.list_outstanding_invoices()]
    assert ids == [second.invoice_id, first.invoice_id]
