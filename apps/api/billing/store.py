from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from firebase_admin import firestore

from ..settings import settings
from .errors import PaidInvoiceImmutableError
from .models import (
    OUTSTANDING_INVOICE_STATUSES,
    ClientRecord,
    InvoiceRecord,
    InvoiceStatus,
    SubscriptionRecord,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


class BillingUnit(Protocol):
    """Reads and writes of one atomic transition. Writes become visible on commit only."""

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        ...

    def list_outstanding_invoices_for_subscription(self, subscription_id: str) -> List[InvoiceRecord]:
        ...

    def find_outstanding_invoice(self, subscription_id: str) -> Optional[InvoiceRecord]:
        ...

    def find_invoice_by_gateway_reference(self, gateway: str, gateway_id: str) -> Optional[InvoiceRecord]:
        ...

    def find_refund_for(self, invoice_id: str) -> Optional[InvoiceRecord]:
        ...

    def save_client(self, client: ClientRecord) -> None:
        ...

    def save_subscription(self, subscription: SubscriptionRecord) -> None:
        ...

    def save_invoice(self, invoice: InvoiceRecord) -> None:
        ...


class BillingStore(Protocol):
    backend: str

    def run_in_transaction(self, fn: Callable[[BillingUnit], R]) -> R:
        ...

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        ...

    def save_client(self, client: ClientRecord) -> None:
        ...

    def list_subscriptions_due(self, start: datetime, end: datetime) -> List[SubscriptionRecord]:
        ...

    def list_outstanding_invoices(self) -> List[InvoiceRecord]:
        ...

    def list_subscriptions_for_client(self, client_id: str) -> List[SubscriptionRecord]:
        ...

    def list_invoices_for_client(self, client_id: str) -> List[InvoiceRecord]:
        ...


def _by_due_date(invoices: Iterable[InvoiceRecord]) -> List[InvoiceRecord]:
    return sorted(invoices, key=lambda inv: (inv.due_date, inv.created_at))


def _newest_first(subscriptions: Iterable[SubscriptionRecord]) -> List[SubscriptionRecord]:
    return sorted(subscriptions, key=lambda s: s.created_at, reverse=True)


class _StagingUnit:
    """Shared transaction logic: reads see the unit's own staged writes, writes are
    buffered and handed to the backend in one commit."""

    def __init__(self):
        self._clients: Dict[str, ClientRecord] = {}
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._invoices: Dict[str, InvoiceRecord] = {}

    # Backend hooks ---------------------------------------------------------

    def _fetch_client(self, client_id: str) -> Optional[ClientRecord]:
        raise NotImplementedError

    def _fetch_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        raise NotImplementedError

    def _fetch_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        raise NotImplementedError

    def _fetch_invoices_where(self, field: str, value: Any) -> List[InvoiceRecord]:
        raise NotImplementedError

    def _commit(self) -> None:
        raise NotImplementedError

    # Reads -----------------------------------------------------------------

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        if client_id in self._clients:
            return self._clients[client_id].model_copy(deep=True)
        return self._fetch_client(client_id)

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        if subscription_id in self._subscriptions:
            return self._subscriptions[subscription_id].model_copy(deep=True)
        return self._fetch_subscription(subscription_id)

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        if invoice_id in self._invoices:
            return self._invoices[invoice_id].model_copy(deep=True)
        return self._fetch_invoice(invoice_id)

    def _invoices_where(self, field: str, value: Any, keep: Callable[[InvoiceRecord], bool]) -> List[InvoiceRecord]:
        merged = {inv.invoice_id: inv for inv in self._fetch_invoices_where(field, value)}
        for invoice_id, staged in self._invoices.items():
            merged[invoice_id] = staged.model_copy(deep=True)
        return _by_due_date(inv for inv in merged.values() if getattr(inv, field) == value and keep(inv))

    def list_outstanding_invoices_for_subscription(self, subscription_id: str) -> List[InvoiceRecord]:
        return self._invoices_where(
            "subscription_id", subscription_id, lambda inv: inv.status in OUTSTANDING_INVOICE_STATUSES
        )

    def find_outstanding_invoice(self, subscription_id: str) -> Optional[InvoiceRecord]:
        outstanding = self.list_outstanding_invoices_for_subscription(subscription_id)
        return outstanding[0] if outstanding else None

    def find_invoice_by_gateway_reference(self, gateway: str, gateway_id: str) -> Optional[InvoiceRecord]:
        matches = self._invoices_where(
            "gateway_id", gateway_id, lambda inv: inv.gateway == gateway and inv.refund_of is None
        )
        return matches[0] if matches else None

    def find_refund_for(self, invoice_id: str) -> Optional[InvoiceRecord]:
        matches = self._invoices_where("refund_of", invoice_id, lambda inv: True)
        return matches[0] if matches else None

    # Writes ----------------------------------------------------------------

    def save_client(self, client: ClientRecord) -> None:
        self._clients[client.client_id] = client.model_copy(deep=True)

    def save_subscription(self, subscription: SubscriptionRecord) -> None:
        self._subscriptions[subscription.subscription_id] = subscription.model_copy(deep=True)

    def save_invoice(self, invoice: InvoiceRecord) -> None:
        stored = self._fetch_invoice(invoice.invoice_id)
        if stored is not None and stored.status == InvoiceStatus.PAID:
            raise PaidInvoiceImmutableError(f"Invoice {invoice.invoice_id} is PAID and cannot be modified")
        self._invoices[invoice.invoice_id] = invoice.model_copy(deep=True)


class _MemoryUnit(_StagingUnit):
    def __init__(self, store: "InMemoryBillingStore"):
        super().__init__()
        self._store = store

    def _fetch_client(self, client_id: str) -> Optional[ClientRecord]:
        return _copy(self._store._clients.get(client_id))

    def _fetch_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return _copy(self._store._subscriptions.get(subscription_id))

    def _fetch_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        return _copy(self._store._invoices.get(invoice_id))

    def _fetch_invoices_where(self, field: str, value: Any) -> List[InvoiceRecord]:
        return [inv.model_copy(deep=True) for inv in self._store._invoices.values() if getattr(inv, field) == value]

    def _commit(self) -> None:
        self._store._clients.update(self._clients)
        self._store._subscriptions.update(self._subscriptions)
        self._store._invoices.update(self._invoices)


def _copy(record):
    return record.model_copy(deep=True) if record is not None else None


class InMemoryBillingStore:
    """Process-local store. Transactions are serialized by one lock and commit all
    staged writes at once, so a failing transition leaves nothing behind."""

    backend = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._clients: Dict[str, ClientRecord] = {}
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._invoices: Dict[str, InvoiceRecord] = {}

    def run_in_transaction(self, fn: Callable[[BillingUnit], R]) -> R:
        with self._lock:
            unit = _MemoryUnit(self)
            result = fn(unit)
            unit._commit()
            return result

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        with self._lock:
            return _copy(self._clients.get(client_id))

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        with self._lock:
            return _copy(self._subscriptions.get(subscription_id))

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        with self._lock:
            return _copy(self._invoices.get(invoice_id))

    def save_client(self, client: ClientRecord) -> None:
        self.run_in_transaction(lambda unit: unit.save_client(client))

    def list_subscriptions_due(self, start: datetime, end: datetime) -> List[SubscriptionRecord]:
        with self._lock:
            return _newest_first(
                s.model_copy(deep=True)
                for s in self._subscriptions.values()
                if s.status == SubscriptionStatus.ACTIVE and start <= s.next_billing_date < end
            )

    def list_outstanding_invoices(self) -> List[InvoiceRecord]:
        with self._lock:
            return _by_due_date(
                inv.model_copy(deep=True) for inv in self._invoices.values() if inv.status in OUTSTANDING_INVOICE_STATUSES
            )

    def list_subscriptions_for_client(self, client_id: str) -> List[SubscriptionRecord]:
        with self._lock:
            return _newest_first(s.model_copy(deep=True) for s in self._subscriptions.values() if s.client_id == client_id)

    def list_invoices_for_client(self, client_id: str) -> List[InvoiceRecord]:
        with self._lock:
            return _by_due_date(inv.model_copy(deep=True) for inv in self._invoices.values() if inv.client_id == client_id)


# ---------------------------------------------------------------------------
# Firestore backend
# ---------------------------------------------------------------------------

CLIENTS_COLLECTION = "billing_clients"
SUBSCRIPTIONS_COLLECTION = "billing_subscriptions"
INVOICES_COLLECTION = "billing_invoices"


def _doc(snap, model, id_field: str):
    if not snap.exists:
        return None
    d = snap.to_dict() or {}
    d.setdefault(id_field, snap.id)
    return model(**d)


class _FirestoreUnit(_StagingUnit):
    def __init__(self, db, txn):
        super().__init__()
        self._db = db
        self._txn = txn

    def _fetch_client(self, client_id: str) -> Optional[ClientRecord]:
        snap = self._db.collection(CLIENTS_COLLECTION).document(client_id).get(transaction=self._txn)
        return _doc(snap, ClientRecord, "client_id")

    def _fetch_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        snap = self._db.collection(SUBSCRIPTIONS_COLLECTION).document(subscription_id).get(transaction=self._txn)
        return _doc(snap, SubscriptionRecord, "subscription_id")

    def _fetch_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        snap = self._db.collection(INVOICES_COLLECTION).document(invoice_id).get(transaction=self._txn)
        return _doc(snap, InvoiceRecord, "invoice_id")

    def _fetch_invoices_where(self, field: str, value: Any) -> List[InvoiceRecord]:
        query = self._db.collection(INVOICES_COLLECTION).where(field, "==", value)
        return [_doc(s, InvoiceRecord, "invoice_id") for s in query.stream(transaction=self._txn)]

    def _commit(self) -> None:
        # Firestore requires every read of a transaction to precede its writes;
        # staging until here keeps that true whatever order the transition used.
        for client_id, client in self._clients.items():
            self._txn.set(self._db.collection(CLIENTS_COLLECTION).document(client_id), client.model_dump(mode="json"))
        for subscription_id, sub in self._subscriptions.items():
            self._txn.set(self._db.collection(SUBSCRIPTIONS_COLLECTION).document(subscription_id), sub.model_dump(mode="json"))
        for invoice_id, inv in self._invoices.items():
            self._txn.set(self._db.collection(INVOICES_COLLECTION).document(invoice_id), inv.model_dump(mode="json"))


class FirestoreBillingStore:
    backend = "firestore"

    def __init__(self, db=None):
        if db is None:
            from ..database import get_db

            db = get_db()
        self._db = db

    def run_in_transaction(self, fn: Callable[[BillingUnit], R]) -> R:
        @firestore.transactional
        def txn_run(txn: firestore.Transaction):
            unit = _FirestoreUnit(self._db, txn)
            result = fn(unit)
            unit._commit()
            return result

        return txn_run(self._db.transaction())

    def get_client(self, client_id: str) -> Optional[ClientRecord]:
        return _doc(self._db.collection(CLIENTS_COLLECTION).document(client_id).get(), ClientRecord, "client_id")

    def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        snap = self._db.collection(SUBSCRIPTIONS_COLLECTION).document(subscription_id).get()
        return _doc(snap, SubscriptionRecord, "subscription_id")

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        return _doc(self._db.collection(INVOICES_COLLECTION).document(invoice_id).get(), InvoiceRecord, "invoice_id")

    def save_client(self, client: ClientRecord) -> None:
        self._db.collection(CLIENTS_COLLECTION).document(client.client_id).set(client.model_dump(mode="json"))

    def list_subscriptions_due(self, start: datetime, end: datetime) -> List[SubscriptionRecord]:
        # next_billing_date is not indexed together with status; filter the window in Python.
        snaps = self._db.collection(SUBSCRIPTIONS_COLLECTION).where("status", "==", SubscriptionStatus.ACTIVE.value).stream()
        subs = [_doc(s, SubscriptionRecord, "subscription_id") for s in snaps]
        return _newest_first(s for s in subs if start <= s.next_billing_date < end)

    def list_outstanding_invoices(self) -> List[InvoiceRecord]:
        statuses = [s.value for s in OUTSTANDING_INVOICE_STATUSES]
        snaps = self._db.collection(INVOICES_COLLECTION).where("status", "in", statuses).stream()
        return _by_due_date(_doc(s, InvoiceRecord, "invoice_id") for s in snaps)

    def list_subscriptions_for_client(self, client_id: str) -> List[SubscriptionRecord]:
        snaps = self._db.collection(SUBSCRIPTIONS_COLLECTION).where("client_id", "==", client_id).stream()
        return _newest_first(_doc(s, SubscriptionRecord, "subscription_id") for s in snaps)

    def list_invoices_for_client(self, client_id: str) -> List[InvoiceRecord]:
        snaps = self._db.collection(INVOICES_COLLECTION).where("client_id", "==", client_id).stream()
        return _by_due_date(_doc(s, InvoiceRecord, "invoice_id") for s in snaps)


_STORE: Optional[BillingStore] = None
_STORE_LOCK = threading.Lock()


def get_store() -> BillingStore:
    global _STORE
    with _STORE_LOCK:
        if _STORE is None:
            backend = (settings.BILLING_STORE_BACKEND or "memory").strip().lower()
            if backend == "firestore":
                _STORE = FirestoreBillingStore()
            else:
                if backend != "memory":
                    logger.warning("Unknown BILLING_STORE_BACKEND %r, using in-memory store", backend)
                _STORE = InMemoryBillingStore()
            logger.info("Billing store backend: %s", _STORE.backend)
        return _STORE
