"""
Payments API routes.

Thin HTTP surface over the PaymentOrchestrator: money-moving operations,
queries and searches, payment methods, hosted pages, gateway notifications
and ledger maintenance. No gateway SDK details here.
"""
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from api.dependencies import get_call_context, get_payment_orchestrator
from application.dtos.payments import (
    CallContext,
    Currency,
    HostedPageDescriptorFields,
    OperationKind,
    OperationRequest,
    Page,
    PaymentMethodDetail,
)
from application.services.payment_orchestrator import PaymentOrchestrator
from core.config import settings
from core.response import page_response, success_response
from core.settings import payment_settings


router = APIRouter(prefix="/payments", tags=["Payments"])


class OperationBody(BaseModel):
    operation_id: str
    account_id: str
    payment_id: str
    payment_method_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[Currency] = None
    properties: dict[str, str] = Field(default_factory=dict)


class AddPaymentMethodBody(BaseModel):
    payment_method_id: str
    plugin_name: Optional[str] = None
    set_default: bool = False
    detail: PaymentMethodDetail = Field(default_factory=PaymentMethodDetail)
    properties: dict[str, str] = Field(default_factory=dict)


class HostedPageBody(BaseModel):
    fields: HostedPageDescriptorFields = Field(default_factory=HostedPageDescriptorFields)
    plugin_name: Optional[str] = None
    payment_method_id: Optional[str] = None
    properties: dict[str, str] = Field(default_factory=dict)


async def _execute(
    kind: OperationKind,
    body: OperationBody,
    ctx: CallContext,
    orchestrator: PaymentOrchestrator,
):
    req = OperationRequest(kind=kind, **body.model_dump())
    envelope = await orchestrator.execute(req, ctx)
    return success_response(data=envelope.model_dump(mode="json"), message=f"{kind.value} {envelope.status.value}")


def _page(page: Page):
    return page_response(
        [item.model_dump(mode="json") for item in page.items],
        offset=page.offset,
        limit=page.limit,
        has_more=page.has_more,
        total_count=page.total_count,
    )


@router.post("/authorize", summary="Authorize a payment")
async def authorize(
    body: OperationBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await _execute(OperationKind.AUTHORIZE, body, ctx, orchestrator)


@router.post("/capture", summary="Capture an authorized payment")
async def capture(
    body: OperationBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await _execute(OperationKind.CAPTURE, body, ctx, orchestrator)


@router.post("/charge", summary="Authorize and capture in one step")
async def charge(
    body: OperationBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await _execute(OperationKind.CHARGE, body, ctx, orchestrator)


@router.post("/void", summary="Void an authorization")
async def void(
    body: OperationBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await _execute(OperationKind.VOID, body, ctx, orchestrator)


@router.post("/refund", summary="Refund a captured payment")
async def refund(
    body: OperationBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await _execute(OperationKind.REFUND, body, ctx, orchestrator)


# ----------------------------------------------------------------------
# Queries and searches
# ----------------------------------------------------------------------
@router.get("/accounts/{account_id}/payments/{payment_id}", summary="Payment transactions")
async def get_payment_info(
    account_id: str,
    payment_id: str,
    payment_method_id: Optional[str] = Query(default=None),
    plugin_name: Optional[str] = Query(default=None),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    envelopes = await orchestrator.get_payment_info(
        account_id, payment_id, ctx, payment_method_id=payment_method_id, plugin_name=plugin_name
    )
    return success_response(data=[e.model_dump(mode="json") for e in envelopes])


@router.get("/accounts/{account_id}/payments/{payment_id}/refunds", summary="Refund transactions")
async def get_refund_info(
    account_id: str,
    payment_id: str,
    payment_method_id: Optional[str] = Query(default=None),
    plugin_name: Optional[str] = Query(default=None),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    envelopes = await orchestrator.get_refund_info(
        account_id, payment_id, ctx, payment_method_id=payment_method_id, plugin_name=plugin_name
    )
    return success_response(data=[e.model_dump(mode="json") for e in envelopes])


@router.get("/search", summary="Search payments")
async def search_payments(
    search_key: str = Query(...),
    offset: int = Query(default=0),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE),
    plugin_name: Optional[str] = Query(default=None),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    page = await orchestrator.search_payments(search_key, ctx, offset=offset, limit=limit, plugin_name=plugin_name)
    return _page(page)


@router.get("/refunds/search", summary="Search refunds")
async def search_refunds(
    search_key: str = Query(...),
    offset: int = Query(default=0),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE),
    plugin_name: Optional[str] = Query(default=None),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    page = await orchestrator.search_refunds(search_key, ctx, offset=offset, limit=limit, plugin_name=plugin_name)
    return _page(page)


@router.get("/payment-methods/search", summary="Search payment methods")
async def search_payment_methods(
    search_key: str = Query(...),
    offset: int = Query(default=0),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE),
    plugin_name: Optional[str] = Query(default=None),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    page = await orchestrator.search_payment_methods(
        search_key, ctx, offset=offset, limit=limit, plugin_name=plugin_name
    )
    return _page(page)


# ----------------------------------------------------------------------
# Payment methods
# ----------------------------------------------------------------------
@router.post("/accounts/{account_id}/payment-methods", summary="Add a payment method")
async def add_payment_method(
    account_id: str,
    body: AddPaymentMethodBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    descriptor = await orchestrator.add_payment_method(
        account_id,
        body.payment_method_id,
        body.detail,
        ctx,
        plugin_name=body.plugin_name,
        set_default=body.set_default,
        properties=body.properties,
    )
    return success_response(data=asdict(descriptor), message="payment method added")


@router.get("/accounts/{account_id}/payment-methods", summary="List payment methods")
async def list_payment_methods(
    account_id: str,
    refresh: bool = Query(default=False, description="Mirror the gateway's view before listing"),
    plugin_name: Optional[str] = Query(default=None),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    descriptors = await orchestrator.list_payment_methods(
        account_id, ctx, refresh_from_gateway=refresh, plugin_name=plugin_name
    )
    return success_response(data=[asdict(d) for d in descriptors])


@router.get("/accounts/{account_id}/payment-methods/{payment_method_id}", summary="Payment method detail")
async def get_payment_method_detail(
    account_id: str,
    payment_method_id: str,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    detail = await orchestrator.get_payment_method_detail(account_id, payment_method_id, ctx)
    return success_response(data=detail.model_dump(mode="json"))


@router.delete("/accounts/{account_id}/payment-methods/{payment_method_id}", summary="Delete a payment method")
async def delete_payment_method(
    account_id: str,
    payment_method_id: str,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    await orchestrator.delete_payment_method(account_id, payment_method_id, ctx)
    return success_response(
        data={"account_id": account_id, "payment_method_id": payment_method_id},
        message="payment method deleted",
    )


@router.put("/accounts/{account_id}/payment-methods/{payment_method_id}/default", summary="Set default method")
async def set_default_payment_method(
    account_id: str,
    payment_method_id: str,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    descriptor = await orchestrator.set_default_payment_method(account_id, payment_method_id, ctx)
    return success_response(data=asdict(descriptor))


# ----------------------------------------------------------------------
# Hosted pages and notifications
# ----------------------------------------------------------------------
@router.post("/accounts/{account_id}/hosted-page", summary="Build a hosted payment page form")
async def build_hosted_page(
    account_id: str,
    body: HostedPageBody,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    descriptor = await orchestrator.build_hosted_page_descriptor(
        account_id,
        body.fields,
        ctx,
        plugin_name=body.plugin_name,
        payment_method_id=body.payment_method_id,
        properties=body.properties,
    )
    return success_response(data=descriptor.model_dump(mode="json"))


@router.post("/notifications/{plugin_name}", summary="Gateway notification callback")
async def process_notification(
    plugin_name: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    # Gateways do not send tenant headers; fall back to the system tenant
    ctx = CallContext(
        tenant_id=request.headers.get("X-Tenant-ID") or payment_settings.reconciliation.tenant_id,
        request_id=getattr(request.state, "request_id", None),
    )
    raw_body = await request.body()
    notification = await orchestrator.process_notification(
        plugin_name,
        raw_body,
        ctx,
        headers=dict(request.headers.items()),
    )
    # 200 acknowledges receipt per gateway conventions
    return success_response(data=notification.model_dump(mode="json", exclude={"raw_payload"}), message="received")


# ----------------------------------------------------------------------
# Ledger maintenance
# ----------------------------------------------------------------------
@router.get("/operations/{operation_id}", summary="Ledger record of an operation")
async def get_operation(
    operation_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    record = await orchestrator.get_operation(operation_id)
    return success_response(data=record.to_dict())


@router.post("/operations/{operation_id}/reconcile", summary="Resolve an in-flight operation")
async def reconcile_operation(
    operation_id: str,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    envelope = await orchestrator.reconcile(operation_id, ctx)
    return success_response(data=envelope.model_dump(mode="json"))


@router.post("/operations/reconcile", summary="Sweep stale in-flight operations")
async def reconcile_in_flight(
    min_age_seconds: int = Query(default=payment_settings.reconciliation.min_age_seconds, ge=0),
    limit: int = Query(default=payment_settings.reconciliation.batch_size, ge=1),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    older_than = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
    report = await orchestrator.reconcile_in_flight(ctx, older_than=older_than, limit=limit)
    return success_response(data=asdict(report))


@router.delete("/operations/{operation_id}", summary="Purge a ledger record")
async def purge_operation(
    operation_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    await orchestrator.purge_operation(operation_id)
    return success_response(data={"operation_id": operation_id}, message="purged")
