from __future__ import annotations


class BillingError(Exception):
    pass


class NotFoundError(BillingError, LookupError):
    pass


class LifecycleStateError(BillingError, ValueError):
    pass


class PaidInvoiceImmutableError(LifecycleStateError):
    """A stored PAID invoice is append-only history and is never rewritten."""


class WebhookAuthError(BillingError):
    pass


class EventInFlightError(BillingError):
    """Another delivery of the same canonical event is being applied right now."""
