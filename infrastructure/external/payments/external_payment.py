"""In-process plugin for payments settled outside any gateway.

Cash, wire transfers or cheques are recorded here: every operation is
accepted and kept in memory, so the plugin doubles as the reference
implementation of the adapter contract for local dev and tests.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from application.dtos.payments import (
    CallContext,
    HostedPageDescriptorFields,
    HostedPageFormDescriptor,
    HostedPageNotification,
    OperationKind,
    OperationRequest,
    OperationStatus,
    Page,
    PaymentMethodDetail,
    PaymentMethodInfo,
    ResultEnvelope,
)
from application.ports.payment_gateway import ALL_CAPABILITIES
from domain.payment.exceptions import BusinessDeclineError, PaymentSignatureError
from infrastructure.external.payments.base import BasePaymentClient, parse_currency


EXTERNAL_PAYMENT_PLUGIN = "__external_payment__"
SIGNATURE_HEADER = "X-Payment-Signature"


class ExternalPaymentGateway(BasePaymentClient):
    plugin_name = EXTERNAL_PAYMENT_PLUGIN
    capabilities = ALL_CAPABILITIES

    def __init__(
        self,
        *,
        form_url: str = "https://payments.invalid/external",
        webhook_secret: Optional[str] = None,
    ) -> None:
        self._form_url = form_url
        self._webhook_secret = webhook_secret
        # payment_id -> transactions in arrival order
        self._transactions: dict[str, list[ResultEnvelope]] = {}
        # account_id -> payment_method_id -> detail
        self._methods: dict[str, dict[str, PaymentMethodDetail]] = {}
        self._lock = asyncio.Lock()

    async def _record(self, req: OperationRequest) -> ResultEnvelope:
        envelope = ResultEnvelope(
            status=OperationStatus.SUCCESS,
            kind=req.kind,
            operation_id=req.operation_id,
            payment_id=req.payment_id,
            gateway_reference_id=f"ext-{uuid.uuid4().hex[:16]}",
            amount_processed=None if req.kind == OperationKind.VOID else req.amount,
            currency=req.currency,
            raw_gateway_payload={"status": "PROCESSED", "properties": dict(req.properties)},
        )
        async with self._lock:
            self._transactions.setdefault(req.payment_id, []).append(envelope)
        self._log("external_payment_recorded", kind=req.kind.value, payment_id=req.payment_id)
        return envelope

    async def authorize_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        return await self._record(req)

    async def capture_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        return await self._record(req)

    async def process_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        return await self._record(req)

    async def void_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        return await self._record(req)

    async def process_refund(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        paid = self._sum(req.payment_id, {OperationKind.CAPTURE, OperationKind.CHARGE})
        refunded = self._sum(req.payment_id, {OperationKind.REFUND})
        if req.amount is not None and refunded + req.amount > paid:
            raise BusinessDeclineError(
                f"refund of {req.amount} exceeds the {paid - refunded} left on payment {req.payment_id}",
                plugin_name=self.plugin_name,
                gateway_error_code="REFUND_EXCEEDS_PAYMENT",
            )
        return await self._record(req)

    def _sum(self, payment_id: str, kinds: set[OperationKind]) -> Decimal:
        return sum(
            (e.amount_processed or Decimal(0) for e in self._transactions.get(payment_id, []) if e.kind in kinds),
            Decimal(0),
        )

    async def get_payment_info(self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext) -> list[ResultEnvelope]:  # type: ignore[override]
        return [e for e in self._transactions.get(payment_id, []) if e.kind != OperationKind.REFUND]

    async def get_refund_info(self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext) -> list[ResultEnvelope]:  # type: ignore[override]
        return [e for e in self._transactions.get(payment_id, []) if e.kind == OperationKind.REFUND]

    def _search(self, search_key: str, refunds: bool) -> list[ResultEnvelope]:
        found = []
        for payment_id, envelopes in self._transactions.items():
            for e in envelopes:
                if (e.kind == OperationKind.REFUND) != refunds:
                    continue
                if search_key in (payment_id, e.gateway_reference_id, e.operation_id) or search_key == "*":
                    found.append(e)
        return found

    async def search_payments(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[ResultEnvelope]:  # type: ignore[override]
        found = self._search(search_key, refunds=False)
        return Page(items=found[offset:offset + limit], offset=offset, limit=limit, total_count=len(found))

    async def search_refunds(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[ResultEnvelope]:  # type: ignore[override]
        found = self._search(search_key, refunds=True)
        return Page(items=found[offset:offset + limit], offset=offset, limit=limit, total_count=len(found))

    async def search_payment_methods(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[PaymentMethodInfo]:  # type: ignore[override]
        found = [
            info
            for account_id in self._methods
            for info in self._infos(account_id)
            if search_key in ("*", account_id, info.payment_method_id)
        ]
        return Page(items=found[offset:offset + limit], offset=offset, limit=limit, total_count=len(found))

    async def add_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        detail: PaymentMethodDetail,
        set_default: bool,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> PaymentMethodDetail:  # type: ignore[override]
        stored = detail.model_copy(
            update={
                "external_payment_method_id": detail.external_payment_method_id or f"ext-pm-{uuid.uuid4().hex[:12]}",
                "is_default": set_default,
            }
        )
        async with self._lock:
            methods = self._methods.setdefault(account_id, {})
            if set_default:
                self._clear_default(account_id)
            methods[payment_method_id] = stored
        return stored

    def _clear_default(self, account_id: str) -> None:
        methods = self._methods.get(account_id, {})
        for key, detail in methods.items():
            if detail.is_default:
                methods[key] = detail.model_copy(update={"is_default": False})

    def _require_method(self, account_id: str, payment_method_id: str) -> PaymentMethodDetail:
        detail = self._methods.get(account_id, {}).get(payment_method_id)
        if detail is None:
            raise BusinessDeclineError(
                f"unknown payment method {payment_method_id}",
                plugin_name=self.plugin_name,
                gateway_error_code="PAYMENT_METHOD_UNKNOWN",
            )
        return detail

    async def delete_payment_method(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        async with self._lock:
            self._methods.get(account_id, {}).pop(payment_method_id, None)

    async def get_payment_method_detail(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> PaymentMethodDetail:  # type: ignore[override]
        return self._require_method(account_id, payment_method_id)

    async def set_default_payment_method(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        async with self._lock:
            detail = self._require_method(account_id, payment_method_id)
            self._clear_default(account_id)
            self._methods[account_id][payment_method_id] = detail.model_copy(update={"is_default": True})

    def _infos(self, account_id: str) -> list[PaymentMethodInfo]:
        return [
            PaymentMethodInfo(
                account_id=account_id,
                payment_method_id=payment_method_id,
                is_default=detail.is_default,
                external_payment_method_id=detail.external_payment_method_id,
            )
            for payment_method_id, detail in self._methods.get(account_id, {}).items()
        ]

    async def get_payment_methods(self, account_id: str, refresh_from_gateway: bool, properties: Mapping[str, str], ctx: CallContext) -> list[PaymentMethodInfo]:  # type: ignore[override]
        return self._infos(account_id)

    async def reset_payment_methods(self, account_id: str, methods: list[PaymentMethodInfo], properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        async with self._lock:
            current = self._methods.get(account_id, {})
            self._methods[account_id] = {
                info.payment_method_id: (
                    current[info.payment_method_id] if info.payment_method_id in current else PaymentMethodDetail()
                ).model_copy(
                    update={
                        "is_default": info.is_default,
                        "external_payment_method_id": info.external_payment_method_id,
                    }
                )
                for info in methods
            }

    async def build_form_descriptor(
        self,
        account_id: str,
        fields: HostedPageDescriptorFields,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageFormDescriptor:  # type: ignore[override]
        form_fields: dict[str, str] = {"accountId": account_id}
        if fields.amount is not None:
            form_fields["amount"] = str(fields.amount)
        if fields.currency is not None:
            form_fields["currency"] = fields.currency.value
        optional = {
            "order": fields.order,
            "transactionType": fields.transaction_type,
            "description": fields.description,
            "notifyUrl": fields.notify_url,
            "returnUrl": fields.return_url,
            "cancelReturnUrl": fields.cancel_return_url,
            "email": fields.customer.email,
        }
        form_fields.update({k: v for k, v in optional.items() if v is not None})
        form_fields.update(fields.custom_field_map)
        return HostedPageFormDescriptor(
            account_id=account_id,
            form_method="POST",
            form_url=fields.forward_url or self._form_url,
            form_fields=form_fields,
            properties=dict(properties),
        )

    def _signature_valid(self, payload: bytes, headers: Optional[Mapping[str, Any]]) -> bool:
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        signature = str(lowered.get(SIGNATURE_HEADER.lower()) or "")
        expected = hmac.new(self._webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    async def process_notification(
        self,
        payload: bytes,
        headers: Optional[Mapping[str, Any]],
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageNotification:  # type: ignore[override]
        """Parse a JSON notification.

        With a webhook secret configured the body must carry a hex
        HMAC-SHA256 in ``X-Payment-Signature``. Without one the notification
        is still parsed but stays unverified, so it never settles a record.
        """
        payload = payload or b"{}"
        verified = False
        if self._webhook_secret:
            if not self._signature_valid(payload, headers):
                raise PaymentSignatureError("invalid notification signature", plugin_name=self.plugin_name)
            verified = True

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise PaymentSignatureError("notification body is not valid JSON", plugin_name=self.plugin_name) from exc
        if not isinstance(body, dict):
            raise PaymentSignatureError("notification body must be a JSON object", plugin_name=self.plugin_name)

        kind = body.get("kind")
        try:
            kind = OperationKind(kind) if kind else None
        except ValueError as exc:
            raise PaymentSignatureError(
                f"unknown operation kind '{kind}'", plugin_name=self.plugin_name, details={"field": "kind"}
            ) from exc
        amount = body.get("amount")
        try:
            amount = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation as exc:
            raise PaymentSignatureError(
                f"amount '{amount}' is not a number", plugin_name=self.plugin_name, details={"field": "amount"}
            ) from exc
        if amount is not None and not amount.is_finite():
            raise PaymentSignatureError(
                f"amount '{amount}' is not a number", plugin_name=self.plugin_name, details={"field": "amount"}
            )

        return HostedPageNotification(
            notification_id=str(body.get("notification_id") or uuid.uuid4().hex),
            plugin_name=self.plugin_name,
            status=self._map_status(str(body.get("status", "PENDING"))),
            operation_id=body.get("operation_id"),
            payment_id=body.get("payment_id"),
            gateway_reference_id=body.get("reference_id"),
            kind=kind,
            amount=amount,
            currency=parse_currency(body.get("currency")),
            acknowledged=True,
            verified=verified,
            raw_payload=body,
        )
