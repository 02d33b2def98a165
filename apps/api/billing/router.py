from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from ..settings import settings
from .errors import EventInFlightError, LifecycleStateError, NotFoundError, WebhookAuthError
from .gateways import GatewayAdapter, get_adapter
from .jobs import run_overdue_job, run_renewal_job
from .ledger import IdempotencyLedger, get_ledger
from .lifecycle import (
    cancel_subscription,
    change_plan,
    create_subscription,
    get_client_billing_view,
    get_subscription_view,
    link_gateway_charge,
    list_client_invoices,
    list_client_subscriptions,
    reactivate_subscription,
)
from .reconciler import WebhookReconciler
from .models import (
    ClientBillingView,
    GatewayChargeLinkRequest,
    InvoiceListResponse,
    InvoiceRecord,
    JobRunResult,
    LedgerStats,
    PlanChangeRequest,
    ReactivationRequest,
    SubscriptionActionResponse,
    SubscriptionCancelRequest,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
    SubscriptionView,
    WebhookAck,
)
from .store import BillingStore, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["Billing"])


def require_admin_token(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.BILLING_ADMIN_TOKEN
    if not expected:
        raise HTTPException(status_code=403, detail="Admin operations are disabled")
    if not hmac.compare_digest((x_admin_token or "").encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, LifecycleStateError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.post("/billing/subscriptions", response_model=SubscriptionActionResponse)
async def subscriptions_create(req: SubscriptionCreateRequest, store: BillingStore = Depends(get_store)):
    try:
        sub, invoice = create_subscription(request=req, store=store)
    except (LookupError, ValueError) as e:
        raise _http_error(e)
    return SubscriptionActionResponse(subscription=sub, invoice=invoice, message="Subscription created")


@router.post("/billing/subscriptions/reactivate", response_model=SubscriptionActionResponse)
async def subscriptions_reactivate(req: ReactivationRequest, store: BillingStore = Depends(get_store)):
    try:
        sub, invoice = reactivate_subscription(request=req, store=store)
    except (LookupError, ValueError) as e:
        raise _http_error(e)
    return SubscriptionActionResponse(subscription=sub, invoice=invoice, message="Client reactivated")


@router.post("/billing/subscriptions/change-plan", response_model=SubscriptionActionResponse)
async def subscriptions_change_plan(req: PlanChangeRequest, store: BillingStore = Depends(get_store)):
    try:
        sub, invoice = change_plan(request=req, store=store)
    except (LookupError, ValueError) as e:
        raise _http_error(e)
    return SubscriptionActionResponse(subscription=sub, invoice=invoice, message="Plan changed")


@router.post("/billing/subscriptions/{subscription_id}/cancel", response_model=SubscriptionActionResponse)
async def subscriptions_cancel(
    subscription_id: str,
    req: SubscriptionCancelRequest,
    store: BillingStore = Depends(get_store),
):
    try:
        sub = cancel_subscription(subscription_id=subscription_id, reason=req.reason, store=store)
    except (LookupError, ValueError) as e:
        raise _http_error(e)
    return SubscriptionActionResponse(subscription=sub, message="Subscription canceled")


@router.get("/billing/subscriptions/{subscription_id}", response_model=SubscriptionView)
async def subscriptions_get(subscription_id: str, store: BillingStore = Depends(get_store)):
    try:
        return get_subscription_view(subscription_id=subscription_id, store=store)
    except LookupError as e:
        raise _http_error(e)


@router.get("/billing/clients/{client_id}", response_model=ClientBillingView)
async def clients_billing_view(client_id: str, store: BillingStore = Depends(get_store)):
    try:
        return get_client_billing_view(client_id=client_id, store=store)
    except LookupError as e:
        raise _http_error(e)


@router.get("/billing/clients/{client_id}/subscriptions", response_model=SubscriptionListResponse)
async def clients_subscriptions(client_id: str, store: BillingStore = Depends(get_store)):
    try:
        items = list_client_subscriptions(client_id=client_id, store=store)
    except LookupError as e:
        raise _http_error(e)
    return SubscriptionListResponse(subscriptions=items, total=len(items))


@router.get("/billing/clients/{client_id}/invoices", response_model=InvoiceListResponse)
async def clients_invoices(client_id: str, store: BillingStore = Depends(get_store)):
    try:
        items = list_client_invoices(client_id=client_id, store=store)
    except LookupError as e:
        raise _http_error(e)
    return InvoiceListResponse(invoices=items, total=len(items))


@router.post("/billing/invoices/{invoice_id}/gateway", response_model=InvoiceRecord)
async def invoices_link_gateway(
    invoice_id: str,
    req: GatewayChargeLinkRequest,
    store: BillingStore = Depends(get_store),
):
    try:
        return link_gateway_charge(invoice_id=invoice_id, gateway=req.gateway, gateway_id=req.gateway_id, store=store)
    except (LookupError, ValueError) as e:
        raise _http_error(e)


async def _handle_webhook(
    adapter: GatewayAdapter,
    request: Request,
    store: BillingStore,
    ledger: IdempotencyLedger,
) -> WebhookAck:
    raw_body = await request.body()
    reconciler = WebhookReconciler(store=store, ledger=ledger)
    try:
        return reconciler.handle(adapter, headers=request.headers, raw_body=raw_body)
    except WebhookAuthError as e:
        logger.warning("Rejected %s webhook: %s", adapter.name, e)
        raise HTTPException(status_code=401, detail=str(e))
    except EventInFlightError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Failed to process %s webhook", adapter.name)
        raise HTTPException(status_code=500, detail="Webhook processing failed")


@router.post("/webhooks/asaas", response_model=WebhookAck)
async def asaas_webhook(
    request: Request,
    store: BillingStore = Depends(get_store),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    return await _handle_webhook(get_adapter("asaas"), request, store, ledger)


@router.post("/webhooks/abacatepay", response_model=WebhookAck)
async def abacatepay_webhook(
    request: Request,
    store: BillingStore = Depends(get_store),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    return await _handle_webhook(get_adapter("abacatepay"), request, store, ledger)


@router.post("/billing/jobs/renewal/run", response_model=JobRunResult)
async def jobs_run_renewal(
    _: None = Depends(require_admin_token),
    store: BillingStore = Depends(get_store),
):
    return run_renewal_job(store=store)


@router.post("/billing/jobs/overdue/run", response_model=JobRunResult)
async def jobs_run_overdue(
    _: None = Depends(require_admin_token),
    store: BillingStore = Depends(get_store),
):
    return run_overdue_job(store=store)


@router.get("/billing/idempotency/stats", response_model=LedgerStats)
async def idempotency_stats(
    _: None = Depends(require_admin_token),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    return ledger.stats()
