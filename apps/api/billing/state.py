from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, TypeVar

from ..settings import settings
from .clock import ANCHOR_DAY_BOUND
from .errors import LifecycleStateError
from .models import ClientStatus, InvoiceStatus, SubscriptionStatus


class LifecycleEvent(str, Enum):
    STARTED = "started"
    RENEWED = "renewed"
    PAYMENT_LATE = "payment_late"
    GRACE_EXPIRED = "grace_expired"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_CANCELED = "payment_canceled"
    PAYMENT_REFUNDED = "payment_refunded"
    CANCEL_REQUESTED = "cancel_requested"
    SUPERSEDED = "superseded"
    REACTIVATED = "reactivated"
    RESTRICTED = "restricted"


E = LifecycleEvent
S = SubscriptionStatus
C = ClientStatus
I = InvoiceStatus


SUBSCRIPTION_TRANSITIONS: Dict[SubscriptionStatus, Dict[LifecycleEvent, SubscriptionStatus]] = {
    S.ACTIVE: {
        E.RENEWED: S.ACTIVE,
        E.PAYMENT_LATE: S.PAST_DUE,
        E.PAYMENT_CONFIRMED: S.ACTIVE,
        E.GRACE_EXPIRED: S.CANCELED,
        E.CANCEL_REQUESTED: S.CANCELED,
        E.SUPERSEDED: S.CANCELED,
    },
    S.PAST_DUE: {
        E.PAYMENT_LATE: S.PAST_DUE,
        E.PAYMENT_CONFIRMED: S.ACTIVE,
        E.GRACE_EXPIRED: S.CANCELED,
        E.CANCEL_REQUESTED: S.CANCELED,
        E.SUPERSEDED: S.CANCELED,
    },
    S.CANCELED: {},
}


CLIENT_TRANSITIONS: Dict[ClientStatus, Dict[LifecycleEvent, ClientStatus]] = {
    C.TRIALING: {
        E.STARTED: C.TRIALING,
        E.PAYMENT_LATE: C.PAST_DUE,
        E.PAYMENT_CONFIRMED: C.ACTIVE,
        E.GRACE_EXPIRED: C.CANCELED,
        E.CANCEL_REQUESTED: C.CANCELED,
    },
    C.ACTIVE: {
        E.STARTED: C.ACTIVE,
        E.PAYMENT_LATE: C.PAST_DUE,
        E.PAYMENT_CONFIRMED: C.ACTIVE,
        E.GRACE_EXPIRED: C.CANCELED,
        E.CANCEL_REQUESTED: C.CANCELED,
    },
    C.PAST_DUE: {
        E.PAYMENT_LATE: C.PAST_DUE,
        E.PAYMENT_CONFIRMED: C.ACTIVE,
        E.RESTRICTED: C.RESTRICTED,
        E.GRACE_EXPIRED: C.CANCELED,
        E.CANCEL_REQUESTED: C.CANCELED,
        E.REACTIVATED: C.ACTIVE,
    },
    C.RESTRICTED: {
        E.PAYMENT_LATE: C.RESTRICTED,
        E.PAYMENT_CONFIRMED: C.ACTIVE,
        E.GRACE_EXPIRED: C.CANCELED,
        E.CANCEL_REQUESTED: C.CANCELED,
        E.REACTIVATED: C.ACTIVE,
    },
    C.CANCELED: {
        # A confirmed payment always clears the account, whatever came before.
        E.PAYMENT_CONFIRMED: C.ACTIVE,
        E.REACTIVATED: C.ACTIVE,
    },
}


INVOICE_TRANSITIONS: Dict[InvoiceStatus, Dict[LifecycleEvent, InvoiceStatus]] = {
    I.PENDING: {
        E.PAYMENT_LATE: I.OVERDUE,
        E.PAYMENT_CONFIRMED: I.PAID,
        E.PAYMENT_CANCELED: I.CANCELLED,
        E.PAYMENT_REFUNDED: I.REFUNDED,
        E.GRACE_EXPIRED: I.CANCELLED,
        E.CANCEL_REQUESTED: I.CANCELLED,
        E.SUPERSEDED: I.CANCELLED,
    },
    I.OVERDUE: {
        E.PAYMENT_LATE: I.OVERDUE,
        E.PAYMENT_CONFIRMED: I.PAID,
        E.PAYMENT_CANCELED: I.CANCELLED,
        E.PAYMENT_REFUNDED: I.REFUNDED,
        E.GRACE_EXPIRED: I.CANCELLED,
        E.CANCEL_REQUESTED: I.CANCELLED,
        E.SUPERSEDED: I.CANCELLED,
    },
    # A late payment after cascade cancellation is still revenue.
    I.CANCELLED: {
        E.PAYMENT_CONFIRMED: I.PAID,
    },
    I.PAID: {},
    I.REFUNDED: {},
}


T = TypeVar("T", bound=Enum)


def next_state(table: Mapping[T, Mapping[LifecycleEvent, T]], current: T, event: LifecycleEvent) -> Optional[T]:
    return table.get(current, {}).get(event)


def transition(table: Mapping[T, Mapping[LifecycleEvent, T]], current: T, event: LifecycleEvent) -> T:
    new = next_state(table, current, event)
    if new is None:
        raise LifecycleStateError(f"Invalid transition: {current.value} --{event.value}--> ?")
    return new


def subscription_transition(current: SubscriptionStatus, event: LifecycleEvent) -> SubscriptionStatus:
    return transition(SUBSCRIPTION_TRANSITIONS, current, event)


def client_transition(current: ClientStatus, event: LifecycleEvent) -> ClientStatus:
    return transition(CLIENT_TRANSITIONS, current, event)


def invoice_transition(current: InvoiceStatus, event: LifecycleEvent) -> InvoiceStatus:
    return transition(INVOICE_TRANSITIONS, current, event)


@dataclass(frozen=True)
class BillingPolicy:
    anchor_day_max: int = ANCHOR_DAY_BOUND
    grace_period_days: int = 7
    idempotency_ttl_hours: int = 24

    def __post_init__(self):
        if not 1 <= self.anchor_day_max <= ANCHOR_DAY_BOUND:
            raise ValueError(f"anchor_day_max must be within 1..{ANCHOR_DAY_BOUND}")
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must be >= 0")


def policy_from_settings() -> BillingPolicy:
    return BillingPolicy(
        anchor_day_max=int(settings.BILLING_ANCHOR_DAY_MAX),
        grace_period_days=int(settings.BILLING_GRACE_PERIOD_DAYS),
        idempotency_ttl_hours=int(settings.IDEMPOTENCY_TTL_HOURS),
    )
