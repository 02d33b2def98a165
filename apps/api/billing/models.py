from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    SEMIANNUAL = "SEMIANNUAL"
    ANNUAL = "ANNUAL"


class ClientStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ATIVO"
    PAST_DUE = "INADIMPLENTE"
    RESTRICTED = "BLOQUEADO"
    CANCELED = "CANCELADO"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


OUTSTANDING_INVOICE_STATUSES = frozenset({InvoiceStatus.PENDING, InvoiceStatus.OVERDUE})
OPEN_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})


class CancellationReason(str, Enum):
    PAYMENT_FAILURE = "PAYMENT_FAILURE"
    SUPERSEDED = "SUPERSEDED"
    REQUESTED = "REQUESTED"


class PaymentOutcome(str, Enum):
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_OVERDUE = "PAYMENT_OVERDUE"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_CANCELED = "PAYMENT_CANCELED"
    INFORMATIONAL = "INFORMATIONAL"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Record(BaseModel):
    @field_validator("*", mode="after")
    @classmethod
    def _normalize_instants(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return _as_utc(value)
        return value


class ClientRecord(_Record):
    client_id: str
    status: ClientStatus = ClientStatus.TRIALING
    company: Optional[str] = None

    plan_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    # Calendar date of the first payment, kept for the next-due-date fallback.
    first_payment_date: Optional[datetime] = None
    active_subscription_id: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionRecord(_Record):
    subscription_id: str
    client_id: str
    plan_id: str
    billing_cycle: BillingCycle
    anchor_day: int = Field(ge=1, le=28)

    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: datetime

    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    grace_period_days: int = Field(default=7, ge=0)
    amount: float

    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[CancellationReason] = None

    created_at: datetime
    updated_at: datetime

    metadata: Dict[str, Any] = Field(default_factory=dict)


class InvoiceRecord(_Record):
    invoice_id: str
    subscription_id: str
    client_id: str

    amount: float
    due_date: datetime
    status: InvoiceStatus = InvoiceStatus.PENDING
    paid_at: Optional[datetime] = None

    # Populated once the invoice is registered with (or reported by) a gateway.
    gateway: Optional[str] = None
    gateway_id: Optional[str] = None
    gateway_data: Optional[Dict[str, Any]] = None

    # Set on the appended refund record of a PAID invoice.
    refund_of: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionCreateRequest(BaseModel):
    client_id: str
    plan_id: str
    billing_cycle: BillingCycle
    first_payment_date: str
    amount: float = Field(gt=0)

    anchor_day_override: Optional[int] = Field(default=None, ge=1, le=28)
    grace_period_days: Optional[int] = Field(default=None, ge=0)

    @field_validator("first_payment_date")
    @classmethod
    def _validate_calendar_date(cls, value: str) -> str:
        text = (value or "").strip()
        if not ISO_DATE_PATTERN.match(text):
            raise ValueError("first_payment_date must be YYYY-MM-DD")
        date.fromisoformat(text)
        return text


class ReactivationRequest(SubscriptionCreateRequest):
    previous_subscription_id: Optional[str] = None
    requested_by: Optional[str] = None


class PlanChangeRequest(SubscriptionCreateRequest):
    requested_by: Optional[str] = None


class SubscriptionCancelRequest(BaseModel):
    reason: CancellationReason = CancellationReason.REQUESTED


class GatewayChargeLinkRequest(BaseModel):
    gateway: str
    gateway_id: str = Field(min_length=1)


class SubscriptionView(BaseModel):
    subscription_id: str
    status: SubscriptionStatus
    next_billing_date: datetime
    amount: float


class ClientBillingView(BaseModel):
    client_id: str
    status: ClientStatus
    subscription: Optional[SubscriptionView] = None
    next_due_date: Optional[date] = None


class SubscriptionListResponse(BaseModel):
    subscriptions: List[SubscriptionRecord]
    total: int


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceRecord]
    total: int


class SubscriptionActionResponse(BaseModel):
    ok: bool = True
    subscription: SubscriptionRecord
    invoice: Optional[InvoiceRecord] = None
    message: str


# ---------------------------------------------------------------------------
# Gateway payloads. Only the fields the reconciler reads are declared; the
# raw body is kept verbatim on the invoice.
# ---------------------------------------------------------------------------


class AsaasPayment(BaseModel):
    id: str
    customer: Optional[str] = None
    value: Optional[float] = None
    status: Optional[str] = None
    dueDate: Optional[str] = None
    paymentDate: Optional[str] = None
    confirmedDate: Optional[str] = None
    externalReference: Optional[str] = None

    model_config = {"extra": "allow"}


class AsaasWebhookRequest(BaseModel):
    id: Optional[str] = None
    event: str
    payment: AsaasPayment

    model_config = {"extra": "allow"}


class AbacatePayMetadata(BaseModel):
    payment_id: Optional[str] = None
    client_id: Optional[str] = None

    model_config = {"extra": "allow"}


class AbacatePayBilling(BaseModel):
    id: str
    amount: Optional[float] = None
    status: Optional[str] = None
    metadata: Optional[AbacatePayMetadata] = None
    paid_at: Optional[str] = None

    model_config = {"extra": "allow"}


class AbacatePayWebhookRequest(BaseModel):
    id: Optional[str] = None
    event: str
    data: AbacatePayBilling

    model_config = {"extra": "allow"}


@dataclass(frozen=True)
class CanonicalPaymentEvent:
    source: str
    native_event_id: str
    event_type: str
    outcome: PaymentOutcome
    gateway_reference: Optional[str] = None
    internal_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.source}:{self.native_event_id}"


class WebhookAck(BaseModel):
    ok: bool = True
    duplicate: bool = False
    applied: bool = False
    outcome: Optional[PaymentOutcome] = None
    invoice_id: Optional[str] = None


class JobRunResult(BaseModel):
    job: str
    ran: bool = True
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    locked: int = 0
    failed: int = 0
    failed_ids: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class LedgerStats(BaseModel):
    backend: str
    total_records: int
    in_flight: int
    ttl_hours: int
