from __future__ import annotations

from datetime import datetime, timedelta, timezone

from apps.api.billing.ledger import ClaimResult, InMemoryIdempotencyLedger, build_ledger
from apps.api.billing.state import BillingPolicy


T0 = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def test_claim_protocol(ledger):
    assert ledger.claim("asaas:evt_1", now=T0) == ClaimResult.CLAIMED
    assert ledger.claim("asaas:evt_1", now=T0) == ClaimResult.IN_FLIGHT

    ledger.mark_processed("asaas:evt_1", now=T0)
    assert ledger.claim("asaas:evt_1", now=T0 + timedelta(hours=1)) == ClaimResult.ALREADY_PROCESSED


def test_released_claim_can_be_retried(ledger):
    assert ledger.claim("abacatepay:evt_2", now=T0) == ClaimResult.CLAIMED
    ledger.release("abacatepay:evt_2")
    assert ledger.claim("abacatepay:evt_2", now=T0) == ClaimResult.CLAIMED


def test_release_never_drops_processed_record(ledger):
    ledger.claim("asaas:evt_3", now=T0)
    ledger.mark_processed("asaas:evt_3", now=T0)
    ledger.release("asaas:evt_3")
    assert ledger.claim("asaas:evt_3", now=T0) == ClaimResult.ALREADY_PROCESSED


def test_processed_record_expires_after_ttl():
    ledger = InMemoryIdempotencyLedger(ttl_hours=24, claim_timeout_seconds=300)
    ledger.claim("asaas:evt_4", now=T0)
    ledger.mark_processed("asaas:evt_4", now=T0)

    later = T0 + timedelta(hours=24, seconds=1)
    assert ledger.claim("asaas:evt_4", now=later) == ClaimResult.CLAIMED


def test_abandoned_claim_is_reclaimable(ledger):
    ledger.claim("asaas:evt_5", now=T0)
    assert ledger.claim("asaas:evt_5", now=T0 + timedelta(seconds=299)) == ClaimResult.IN_FLIGHT
    assert ledger.claim("asaas:evt_5", now=T0 + timedelta(seconds=300)) == ClaimResult.CLAIMED


def test_sweep_removes_expired_records(ledger):
    ledger.claim("k1", now=T0)
    ledger.mark_processed("k1", now=T0)
    ledger.claim("k2", now=T0 + timedelta(hours=23))
    ledger.mark_processed("k2", now=T0 + timedelta(hours=23))

    assert ledger.sweep(now=T0 + timedelta(hours=25)) == 1
    stats = ledger.stats()
    assert stats.total_records == 1
    assert stats.in_flight == 0
    assert stats.ttl_hours == 24
    assert stats.backend == "memory"


def test_ledger_retention_follows_billing_policy():
    ledger = build_ledger(BillingPolicy(idempotency_ttl_hours=2), backend="memory")
    assert ledger.stats().ttl_hours == 2

    ledger.claim("asaas:evt_6", now=T0)
    ledger.mark_processed("asaas:evt_6", now=T0)
    assert ledger.claim("asaas:evt_6", now=T0 + timedelta(hours=1)) == ClaimResult.ALREADY_PROCESSED
    assert ledger.claim("asaas:evt_6", now=T0 + timedelta(hours=2)) == ClaimResult.CLAIMED
