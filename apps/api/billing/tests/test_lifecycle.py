from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from apps.api.billing.clock import local_date
from apps.api.billing.errors import LifecycleStateError, NotFoundError
from apps.api.billing.lifecycle import (
    EscalationOutcome,
    RenewalOutcome,
    cancel_subscription,
    change_plan,
    create_subscription,
    escalate_overdue_invoice,
    get_client_billing_view,
    get_subscription_view,
    link_gateway_charge,
    list_client_subscriptions,
    reactivate_subscription,
    renew_subscription,
)
from apps.api.billing.models import (
    BillingCycle,
    CancellationReason,
    ClientStatus,
    InvoiceStatus,
    PlanChangeRequest,
    ReactivationRequest,
    SubscriptionCreateRequest,
    SubscriptionStatus,
)


def _at(day: str, hour: int = 15) -> datetime:
    y, m, d = (int(p) for p in day.split("-"))
    return datetime(y, m, d, hour, 0, tzinfo=timezone.utc)


# --- creation ---------------------------------------------------------------


def test_create_subscription_on_month_end(store, subscribe):
    sub, invoice = subscribe(first_payment_date="2026-01-31")

    assert sub.anchor_day == 28
    assert local_date(sub.next_billing_date) == date(2026, 2, 28)
    assert sub.next_billing_date == datetime(2026, 2, 28, 15, 0, tzinfo=timezone.utc)
    assert local_date(sub.current_period_end) == date(2026, 2, 28)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.grace_period_days == 7

    assert invoice.status == InvoiceStatus.PENDING
    assert local_date(invoice.due_date) == date(2026, 1, 31)

    client = store.get_client("c1")
    assert client.active_subscription_id == sub.subscription_id
    assert client.plan_id == "pro"
    assert client.status == ClientStatus.ACTIVE
    assert local_date(client.first_payment_date) == date(2026, 1, 31)


def test_anchor_override_is_respected(store, policy, make_client):
    make_client("c1")
    req = SubscriptionCreateRequest(
        client_id="c1",
        plan_id="pro",
        billing_cycle=BillingCycle.MONTHLY,
        first_payment_date="2026-01-20",
        amount=50,
        anchor_day_override=5,
    )
    sub, _ = create_subscription(request=req, store=store, policy=policy)
    assert sub.anchor_day == 5
    assert local_date(sub.next_billing_date) == date(2026, 2, 5)


def test_create_rejects_second_open_subscription(store, policy, subscribe):
    subscribe("c1")
    req = SubscriptionCreateRequest(
        client_id="c1", plan_id="pro", billing_cycle=BillingCycle.MONTHLY, first_payment_date="2026-02-01", amount=10
    )
    with pytest.raises(LifecycleStateError):
        create_subscription(request=req, store=store, policy=policy)


def test_create_requires_converted_client(store, policy, make_client):
    make_client("c1", status=ClientStatus.RESTRICTED)
    req = SubscriptionCreateRequest(
        client_id="c1", plan_id="pro", billing_cycle=BillingCycle.MONTHLY, first_payment_date="2026-02-01", amount=10
    )
    with pytest.raises(LifecycleStateError):
        create_subscription(request=req, store=store, policy=policy)

    with pytest.raises(NotFoundError):
        create_subscription(request=req.model_copy(update={"client_id": "missing"}), store=store, policy=policy)


# --- supersession -------------------------------------------------------------


def test_reactivation_supersedes_previous_subscription(store, policy, subscribe):
    old_sub, old_invoice = subscribe("c1", first_payment_date="2026-01-10")
    escalate_overdue_invoice(invoice_id=old_invoice.invoice_id, store=store, as_of=_at("2026-01-14"))
    assert store.get_client("c1").status == ClientStatus.PAST_DUE

    req = ReactivationRequest(
        client_id="c1",
        plan_id="basic",
        billing_cycle=BillingCycle.QUARTERLY,
        first_payment_date="2026-01-20",
        amount=250,
        requested_by="ops@example.com",
    )
    now = _at("2026-01-20")
    new_sub, new_invoice = reactivate_subscription(request=req, store=store, policy=policy, now=now)

    previous = store.get_subscription(old_sub.subscription_id)
    assert previous.status == SubscriptionStatus.CANCELED
    assert previous.cancellation_reason == CancellationReason.SUPERSEDED
    assert store.get_invoice(old_invoice.invoice_id).status == InvoiceStatus.CANCELLED

    client = store.get_client("c1")
    assert client.status == ClientStatus.ACTIVE
    assert client.active_subscription_id == new_sub.subscription_id
    assert new_invoice.status == InvoiceStatus.PENDING
    assert local_date(new_sub.next_billing_date) == date(2026, 4, 20)
    assert new_sub.metadata == {
        "reactivated_at": now.isoformat(),
        "requested_by": "ops@example.com",
        "previous_subscription_id": old_sub.subscription_id,
    }


def test_reactivation_requires_delinquent_or_canceled_client(store, policy, subscribe):
    subscribe("c1")
    req = ReactivationRequest(
        client_id="c1", plan_id="pro", billing_cycle=BillingCycle.MONTHLY, first_payment_date="2026-02-01", amount=10
    )
    with pytest.raises(LifecycleStateError):
        reactivate_subscription(request=req, store=store, policy=policy)


def test_change_plan_keeps_one_open_subscription(store, policy, subscribe):
    old_sub, _ = subscribe("c1")
    req = PlanChangeRequest(
        client_id="c1", plan_id="enterprise", billing_cycle=BillingCycle.ANNUAL, first_payment_date="2026-02-01", amount=999
    )
    new_sub, _ = change_plan(request=req, store=store, policy=policy)

    subs = list_client_subscriptions(client_id="c1", store=store)
    open_subs = [s for s in subs if s.status != SubscriptionStatus.CANCELED]
    assert [s.subscription_id for s in open_subs] == [new_sub.subscription_id]
    assert store.get_subscription(old_sub.subscription_id).cancellation_reason == CancellationReason.SUPERSEDED
    assert store.get_client("c1").plan_id == "enterprise"


def test_change_plan_refused_while_past_due(store, policy, subscribe):
    old_sub, old_invoice = subscribe("c1", first_payment_date="2026-01-15")
    escalate_overdue_invoice(invoice_id=old_invoice.invoice_id, store=store, as_of=_at("2026-01-19"))

    req = PlanChangeRequest(
        client_id="c1", plan_id="basic", billing_cycle=BillingCycle.MONTHLY, first_payment_date="2026-01-20", amount=49
    )
    with pytest.raises(LifecycleStateError):
        change_plan(request=req, store=store, policy=policy)

    assert store.get_invoice(old_invoice.invoice_id).status == InvoiceStatus.OVERDUE
    assert store.get_subscription(old_sub.subscription_id).status == SubscriptionStatus.PAST_DUE
    assert store.get_client("c1").status == ClientStatus.PAST_DUE
    assert len(list_client_subscriptions(client_id="c1", store=store)) == 1

    # The debt still escalates once the grace period runs out.
    outcome = escalate_overdue_invoice(invoice_id=old_invoice.invoice_id, store=store, as_of=_at("2026-01-23"))
    assert outcome == EscalationOutcome.CANCELED


def test_cancel_subscription(store, subscribe):
    sub, invoice = subscribe("c1")
    canceled = cancel_subscription(subscription_id=sub.subscription_id, store=store)

    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.cancellation_reason == CancellationReason.REQUESTED
    assert store.get_invoice(invoice.invoice_id).status == InvoiceStatus.CANCELLED
    assert store.get_client("c1").status == ClientStatus.CANCELED

    with pytest.raises(LifecycleStateError):
        cancel_subscription(subscription_id=sub.subscription_id, store=store)


def test_link_gateway_charge(store, subscribe, settle):
    _, invoice = subscribe("c1")
    linked = link_gateway_charge(invoice_id=invoice.invoice_id, gateway="Asaas", gateway_id=" pay_1 ", store=store)
    assert (linked.gateway, linked.gateway_id) == ("asaas", "pay_1")

    settle(invoice.invoice_id)
    with pytest.raises(LifecycleStateError):
        link_gateway_charge(invoice_id=invoice.invoice_id, gateway="asaas", gateway_id="pay_2", store=store)


# --- renewal -------------------------------------------------------------------


def test_renewal_rolls_period_forward(store, subscribe, settle):
    sub, invoice = subscribe("c1", first_payment_date="2026-01-15")
    settle(invoice.invoice_id)

    outcome = renew_subscription(subscription_id=sub.subscription_id, store=store, now=_at("2026-02-15", hour=9))
    assert outcome == RenewalOutcome.RENEWED

    renewed = store.get_subscription(sub.subscription_id)
    assert local_date(renewed.current_period_start) == date(2026, 2, 15)
    assert local_date(renewed.current_period_end) == date(2026, 3, 15)
    assert local_date(renewed.next_billing_date) == date(2026, 3, 15)

    pending = [inv for inv in store.list_invoices_for_client("c1") if inv.status == InvoiceStatus.PENDING]
    assert len(pending) == 1
    assert local_date(pending[0].due_date) == date(2026, 2, 15)
    assert pending[0].amount == sub.amount

    # A second run the same day finds nothing due.
    again = renew_subscription(subscription_id=sub.subscription_id, store=store, now=_at("2026-02-15", hour=20))
    assert again == RenewalOutcome.SKIPPED


def test_renewal_blocked_by_outstanding_invoice(store, subscribe):
    sub, _ = subscribe("c1", first_payment_date="2026-01-15")

    outcome = renew_subscription(subscription_id=sub.subscription_id, store=store, now=_at("2026-02-15", hour=9))
    assert outcome == RenewalOutcome.LOCKED

    unchanged = store.get_subscription(sub.subscription_id)
    assert unchanged.next_billing_date == sub.next_billing_date
    assert len(store.list_invoices_for_client("c1")) == 1


def test_renewal_skips_when_not_due(store, subscribe, settle):
    sub, invoice = subscribe("c1", first_payment_date="2026-01-15")
    settle(invoice.invoice_id)
    assert renew_subscription(subscription_id=sub.subscription_id, store=store, now=_at("2026-02-14")) == RenewalOutcome.SKIPPED


# --- overdue escalation -----------------------------------------------------------


def test_four_days_late_marks_client_past_due(store, subscribe):
    sub, invoice = subscribe("c1", first_payment_date="2026-03-01")

    outcome = escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-05"))
    assert outcome == EscalationOutcome.PAST_DUE
    assert store.get_client("c1").status == ClientStatus.PAST_DUE
    assert store.get_subscription(sub.subscription_id).status == SubscriptionStatus.PAST_DUE
    assert store.get_invoice(invoice.invoice_id).status == InvoiceStatus.OVERDUE


def test_nine_days_late_cascades_cancellation(store, subscribe):
    sub, invoice = subscribe("c1", first_payment_date="2026-03-01")

    outcome = escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-10"))
    assert outcome == EscalationOutcome.CANCELED

    canceled = store.get_subscription(sub.subscription_id)
    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.cancellation_reason == CancellationReason.PAYMENT_FAILURE
    assert canceled.canceled_at is not None
    assert store.get_client("c1").status == ClientStatus.CANCELED
    assert store.get_invoice(invoice.invoice_id).status == InvoiceStatus.CANCELLED


@pytest.mark.parametrize(
    "as_of,expected",
    [
        ("2026-03-08", EscalationOutcome.PAST_DUE),
        ("2026-03-09", EscalationOutcome.CANCELED),
    ],
)
def test_grace_period_boundary(store, subscribe, as_of, expected):
    _, invoice = subscribe("c1", first_payment_date="2026-03-01")
    assert escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at(as_of)) == expected


def test_escalation_never_touches_paid_invoice(store, subscribe, settle):
    sub, invoice = subscribe("c1", first_payment_date="2026-03-01")
    settle(invoice.invoice_id)

    outcome = escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-20"))
    assert outcome == EscalationOutcome.SKIPPED
    assert store.get_invoice(invoice.invoice_id).status == InvoiceStatus.PAID
    assert store.get_subscription(sub.subscription_id).status == SubscriptionStatus.ACTIVE
    assert store.get_client("c1").status == ClientStatus.ACTIVE


def test_restricted_client_is_not_demoted(store, subscribe):
    _, invoice = subscribe("c1", first_payment_date="2026-03-01")
    client = store.get_client("c1")
    client.status = ClientStatus.RESTRICTED
    store.save_client(client)

    escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-03"))
    assert store.get_client("c1").status == ClientStatus.RESTRICTED


def test_escalation_is_idempotent(store, subscribe):
    _, invoice = subscribe("c1", first_payment_date="2026-03-01")
    escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-10"))
    assert escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-10")) == EscalationOutcome.SKIPPED


# --- read model ------------------------------------------------------------------


def test_client_billing_view_next_due_date_fallbacks(store, subscribe, make_client):
    sub, invoice = subscribe("c1", first_payment_date="2026-03-01")
    view = get_client_billing_view(client_id="c1", store=store)
    assert view.subscription.subscription_id == sub.subscription_id
    assert view.next_due_date == date(2026, 4, 1)

    # No open subscription and no pending invoice: first payment plus one cycle.
    escalate_overdue_invoice(invoice_id=invoice.invoice_id, store=store, as_of=_at("2026-03-20"))
    view = get_client_billing_view(client_id="c1", store=store)
    assert view.subscription is None
    assert view.status == ClientStatus.CANCELED
    assert view.next_due_date == date(2026, 4, 1)

    make_client("c2", status=ClientStatus.TRIALING)
    assert get_client_billing_view(client_id="c2", store=store).next_due_date is None


def test_subscription_view(store, subscribe):
    sub, _ = subscribe("c1", first_payment_date="2026-01-31")
    view = get_subscription_view(subscription_id=sub.subscription_id, store=store)
    assert view.status == SubscriptionStatus.ACTIVE
    assert view.next_billing_date == sub.next_billing_date
    assert view.amount == sub.amount

    with pytest.raises(NotFoundError):
        get_subscription_view(subscription_id="missing", store=store)
