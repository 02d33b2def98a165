"""Idempotency ledger for gateway events.

A delivery first *claims* its canonical key. The claim is a single atomic
set-if-absent, so two concurrent deliveries of the same event can never both
proceed. The winner either marks the key processed (kept for the TTL) or
releases it on failure so the gateway's redelivery is applied.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Protocol

from firebase_admin import firestore

from ..settings import settings
from .clock import now_utc
from .models import LedgerStats
from .state import BillingPolicy, policy_from_settings

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"


@dataclass
class IdempotencyRecord:
    key: str
    claimed_at: datetime
    processed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def processed(self) -> bool:
        return self.processed_at is not None


class IdempotencyLedger(Protocol):
    backend: str

    def claim(self, key: str, *, now: Optional[datetime] = None) -> ClaimResult:
        ...

    def mark_processed(self, key: str, *, now: Optional[datetime] = None) -> None:
        ...

    def release(self, key: str) -> None:
        ...

    def sweep(self, *, now: Optional[datetime] = None) -> int:
        ...

    def stats(self) -> LedgerStats:
        ...


def _claim_outcome(record: Optional[IdempotencyRecord], now: datetime, claim_timeout: timedelta) -> Optional[ClaimResult]:
    """What an existing record means for a new claim; ``None`` means the key is free."""
    if record is None:
        return None
    if record.processed:
        if record.expires_at is not None and now >= record.expires_at:
            return None
        return ClaimResult.ALREADY_PROCESSED
    if now - record.claimed_at >= claim_timeout:
        logger.warning("Idempotency claim %s abandoned since %s, reclaiming", record.key, record.claimed_at.isoformat())
        return None
    return ClaimResult.IN_FLIGHT


class InMemoryIdempotencyLedger:
    backend = "memory"

    def __init__(self, *, ttl_hours: Optional[int] = None, claim_timeout_seconds: Optional[int] = None):
        self._ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.IDEMPOTENCY_TTL_HOURS)
        self._claim_timeout = timedelta(
            seconds=claim_timeout_seconds if claim_timeout_seconds is not None else settings.IDEMPOTENCY_CLAIM_TIMEOUT_SECONDS
        )
        self._lock = threading.Lock()
        self._records: Dict[str, IdempotencyRecord] = {}

    def claim(self, key: str, *, now: Optional[datetime] = None) -> ClaimResult:
        now = now or now_utc()
        with self._lock:
            outcome = _claim_outcome(self._records.get(key), now, self._claim_timeout)
            if outcome is not None:
                return outcome
            self._records[key] = IdempotencyRecord(key=key, claimed_at=now)
            return ClaimResult.CLAIMED

    def mark_processed(self, key: str, *, now: Optional[datetime] = None) -> None:
        now = now or now_utc()
        with self._lock:
            record = self._records.get(key) or IdempotencyRecord(key=key, claimed_at=now)
            record.processed_at = now
            record.expires_at = now + self._ttl
            self._records[key] = record
        logger.info("Event %s marked processed (expires %s)", key, record.expires_at.isoformat())

    def release(self, key: str) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None and not record.processed:
                del self._records[key]

    def sweep(self, *, now: Optional[datetime] = None) -> int:
        now = now or now_utc()
        with self._lock:
            expired = [
                key
                for key, record in self._records.items()
                if (record.processed and record.expires_at is not None and now >= record.expires_at)
                or (not record.processed and now - record.claimed_at >= self._claim_timeout)
            ]
            for key in expired:
                del self._records[key]
            remaining = len(self._records)
        if expired:
            logger.info("Idempotency sweep removed %d expired records (%d remaining)", len(expired), remaining)
        return len(expired)

    def stats(self) -> LedgerStats:
        with self._lock:
            in_flight = sum(1 for r in self._records.values() if not r.processed)
            return LedgerStats(
                backend=self.backend,
                total_records=len(self._records),
                in_flight=in_flight,
                ttl_hours=int(self._ttl.total_seconds() // 3600),
            )


LEDGER_COLLECTION = "billing_webhook_events"


def _record_from_dict(key: str, d: Dict) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=key,
        claimed_at=d.get("claimed_at"),
        processed_at=d.get("processed_at"),
        expires_at=d.get("expires_at"),
    )


class FirestoreIdempotencyLedger:
    """Shared ledger for multi-instance deployments.

    ``expires_at`` is a timestamp field so a Firestore TTL policy on the
    collection can delete records natively; :meth:`sweep` covers deployments
    without one.
    """

    backend = "firestore"

    def __init__(self, db=None, *, ttl_hours: Optional[int] = None, claim_timeout_seconds: Optional[int] = None):
        if db is None:
            from ..database import get_db

            db = get_db()
        self._db = db
        self._ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.IDEMPOTENCY_TTL_HOURS)
        self._claim_timeout = timedelta(
            seconds=claim_timeout_seconds if claim_timeout_seconds is not None else settings.IDEMPOTENCY_CLAIM_TIMEOUT_SECONDS
        )

    def _ref(self, key: str):
        # Firestore document ids cannot contain '/'.
        return self._db.collection(LEDGER_COLLECTION).document(key.replace("/", "_"))

    def claim(self, key: str, *, now: Optional[datetime] = None) -> ClaimResult:
        now = now or now_utc()
        ref = self._ref(key)

        @firestore.transactional
        def txn_claim(txn: firestore.Transaction) -> ClaimResult:
            snap = ref.get(transaction=txn)
            existing = _record_from_dict(key, snap.to_dict() or {}) if snap.exists else None
            outcome = _claim_outcome(existing, now, self._claim_timeout)
            if outcome is not None:
                return outcome
            txn.set(ref, {"key": key, "claimed_at": now, "processed_at": None, "expires_at": now + self._claim_timeout})
            return ClaimResult.CLAIMED

        return txn_claim(self._db.transaction())

    def mark_processed(self, key: str, *, now: Optional[datetime] = None) -> None:
        now = now or now_utc()
        self._ref(key).set({"key": key, "processed_at": now, "expires_at": now + self._ttl}, merge=True)
        logger.info("Event %s marked processed", key)

    def release(self, key: str) -> None:
        ref = self._ref(key)

        @firestore.transactional
        def txn_release(txn: firestore.Transaction) -> None:
            snap = ref.get(transaction=txn)
            if snap.exists and not (snap.to_dict() or {}).get("processed_at"):
                txn.delete(ref)

        txn_release(self._db.transaction())

    def sweep(self, *, now: Optional[datetime] = None) -> int:
        now = now or now_utc()
        removed = 0
        for snap in self._db.collection(LEDGER_COLLECTION).where("expires_at", "<=", now).stream():
            snap.reference.delete()
            removed += 1
        if removed:
            logger.info("Idempotency sweep removed %d expired records", removed)
        return removed

    def stats(self) -> LedgerStats:
        snaps = list(self._db.collection(LEDGER_COLLECTION).stream())
        in_flight = sum(1 for s in snaps if not (s.to_dict() or {}).get("processed_at"))
        return LedgerStats(
            backend=self.backend,
            total_records=len(snaps),
            in_flight=in_flight,
            ttl_hours=int(self._ttl.total_seconds() // 3600),
        )


_LEDGER: Optional[IdempotencyLedger] = None
_LEDGER_LOCK = threading.Lock()


def build_ledger(policy: Optional[BillingPolicy] = None, *, backend: Optional[str] = None) -> IdempotencyLedger:
    """Construct the configured ledger with the policy's retention window."""
    policy = policy or policy_from_settings()
    backend = (backend or settings.BILLING_STORE_BACKEND or "memory").strip().lower()
    if backend == "firestore":
        return FirestoreIdempotencyLedger(ttl_hours=policy.idempotency_ttl_hours)
    return InMemoryIdempotencyLedger(ttl_hours=policy.idempotency_ttl_hours)


def get_ledger() -> IdempotencyLedger:
    global _LEDGER
    with _LEDGER_LOCK:
        if _LEDGER is None:
            _LEDGER = build_ledger()
        return _LEDGER


def sweep_expired_events() -> int:
    return get_ledger().sweep()
