from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Protocol

from ..settings import settings
from .clock import parse_business_date
from .errors import WebhookAuthError
from .models import (
    ISO_DATE_PATTERN,
    AbacatePayWebhookRequest,
    AsaasWebhookRequest,
    CanonicalPaymentEvent,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)


class GatewayAdapter(Protocol):
    name: str

    def authenticate(self, *, headers: Mapping[str, str], raw_body: bytes) -> None:
        ...

    def normalize(self, payload: Dict[str, Any]) -> CanonicalPaymentEvent:
        ...


def _header(headers: Mapping[str, str], name: str) -> str:
    # Starlette headers are case-insensitive; plain mappings are not.
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return (value or "").strip()


def _parse_gateway_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    parsed: Optional[datetime] = None
    try:
        if ISO_DATE_PATTERN.match(text):
            parsed = parse_business_date(text)
        elif ISO_DATE_PATTERN.match(text[:10]) and text[10:11] in ("T", " "):
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        logger.warning("Unparseable gateway timestamp %r ignored", value)
    return parsed


ASAAS_OUTCOMES = {
    "PAYMENT_CREATED": PaymentOutcome.INFORMATIONAL,
    "PAYMENT_AWAITING_PAYMENT": PaymentOutcome.INFORMATIONAL,
    "PAYMENT_PENDING": PaymentOutcome.INFORMATIONAL,
    "PAYMENT_UPDATED": PaymentOutcome.INFORMATIONAL,
    "PAYMENT_RECEIVED": PaymentOutcome.PAYMENT_CONFIRMED,
    "PAYMENT_CONFIRMED": PaymentOutcome.PAYMENT_CONFIRMED,
    "PAYMENT_RECEIVED_IN_CASH": PaymentOutcome.PAYMENT_CONFIRMED,
    "PAYMENT_OVERDUE": PaymentOutcome.PAYMENT_OVERDUE,
    "PAYMENT_REFUNDED": PaymentOutcome.PAYMENT_REFUNDED,
    "PAYMENT_DELETED": PaymentOutcome.PAYMENT_CANCELED,
}


class AsaasAdapter:
    """Gateway A: card and boleto charges, authenticated by a shared access token."""

    name = "asaas"
    token_header = "asaas-access-token"

    def __init__(self, token: Optional[str] = None):
        self._token = settings.ASAAS_WEBHOOK_TOKEN if token is None else token

    def authenticate(self, *, headers: Mapping[str, str], raw_body: bytes) -> None:
        if not self._token:
            logger.error("ASAAS_WEBHOOK_TOKEN is not configured; rejecting webhook")
            raise WebhookAuthError("Asaas webhook token not configured")
        provided = _header(headers, self.token_header)
        if not provided:
            raise WebhookAuthError(f"Missing {self.token_header} header")
        if not hmac.compare_digest(provided.encode("utf-8"), self._token.encode("utf-8")):
            raise WebhookAuthError("Invalid Asaas access token")

    def normalize(self, payload: Dict[str, Any]) -> CanonicalPaymentEvent:
        req = AsaasWebhookRequest.model_validate(payload)
        event = req.event.strip().upper()
        outcome = ASAAS_OUTCOMES.get(event)
        if outcome is None:
            logger.warning("Unhandled Asaas event %s treated as informational", event)
            outcome = PaymentOutcome.INFORMATIONAL
        return CanonicalPaymentEvent(
            source=self.name,
            native_event_id=req.id or f"{event}_{req.payment.id}",
            event_type=event,
            outcome=outcome,
            gateway_reference=req.payment.id,
            internal_reference=req.payment.externalReference,
            paid_at=_parse_gateway_instant(req.payment.paymentDate or req.payment.confirmedDate),
            payload=payload,
        )


ABACATEPAY_OUTCOMES = {
    "billing.paid": PaymentOutcome.PAYMENT_CONFIRMED,
    "billing.expired": PaymentOutcome.PAYMENT_CANCELED,
    "billing.refunded": PaymentOutcome.PAYMENT_REFUNDED,
    "billing.updated": PaymentOutcome.INFORMATIONAL,
}


class AbacatePayAdapter:
    """Gateway B: PIX charges, authenticated by an HMAC-SHA256 signature of the raw body."""

    name = "abacatepay"
    signature_header = "X-Signature"

    def __init__(self, secret: Optional[str] = None):
        self._secret = settings.ABACATEPAY_WEBHOOK_SECRET if secret is None else secret

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self._secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    def authenticate(self, *, headers: Mapping[str, str], raw_body: bytes) -> None:
        if not self._secret:
            logger.error("ABACATEPAY_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise WebhookAuthError("AbacatePay webhook secret not configured")
        provided = _header(headers, self.signature_header).lower()
        if not provided:
            raise WebhookAuthError(f"Missing {self.signature_header} header")
        if not hmac.compare_digest(provided, self.sign(raw_body)):
            raise WebhookAuthError("Invalid AbacatePay signature")

    def normalize(self, payload: Dict[str, Any]) -> CanonicalPaymentEvent:
        req = AbacatePayWebhookRequest.model_validate(payload)
        event = req.event.strip().lower()
        outcome = ABACATEPAY_OUTCOMES.get(event)
        if outcome is None:
            logger.warning("Unhandled AbacatePay event %s treated as informational", event)
            outcome = PaymentOutcome.INFORMATIONAL
        metadata = req.data.metadata
        return CanonicalPaymentEvent(
            source=self.name,
            native_event_id=req.id or f"{event}_{req.data.id}",
            event_type=event,
            outcome=outcome,
            gateway_reference=req.data.id,
            internal_reference=metadata.payment_id if metadata else None,
            paid_at=_parse_gateway_instant(req.data.paid_at),
            payload=payload,
        )


def get_adapter(name: str) -> GatewayAdapter:
    n = (name or "").strip().lower()
    if n == AsaasAdapter.name:
        return AsaasAdapter()
    if n == AbacatePayAdapter.name:
        return AbacatePayAdapter()
    raise ValueError(f"Unknown payment gateway: {name}")
