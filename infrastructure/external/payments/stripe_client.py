"""
Stripe plugin using the official stripe-python SDK.

Notes on SDK usage:
- SDK calls are blocking; each one runs in a worker thread via
  ``asyncio.to_thread`` so the event loop never waits on Stripe.
- Idempotency keys are the orchestrator's operation ids, passed with the
  ``idempotency_key`` kwarg, so a retried attempt never creates a second
  PaymentIntent or Refund.
- Orchestrator identifiers travel in ``metadata`` (``payment_id``,
  ``operation_id``, ...) which is also how intents are searched.
- Webhook verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Mapping, Optional

import stripe

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
from application.ports.payment_gateway import Capability
from core.settings import StripeSettings, payment_settings
from domain.payment.exceptions import (
    BusinessDeclineError,
    PaymentSignatureError,
    PaymentValidationError,
    TransientTransportError,
)
from infrastructure.external.payments.base import BasePaymentClient, from_minor, parse_currency, to_minor


STRIPE_PLUGIN = "stripe"

# Intent states in which a manual-capture intent was successfully authorized
_AUTHORIZED_STATES = {"requires_capture", "succeeded", "canceled"}


def _search_literal(value: str) -> str:
    # Stripe search query strings are single-quoted
    return value.replace("\\", "\\\\").replace("'", "\\'")


class StripeGateway(BasePaymentClient):
    plugin_name = STRIPE_PLUGIN
    capabilities = frozenset(
        {
            Capability.AUTHORIZE,
            Capability.CAPTURE,
            Capability.CHARGE,
            Capability.VOID,
            Capability.REFUND,
            Capability.GET_PAYMENT_INFO,
            Capability.GET_REFUND_INFO,
            Capability.SEARCH_PAYMENTS,
            Capability.ADD_PAYMENT_METHOD,
            Capability.DELETE_PAYMENT_METHOD,
            Capability.GET_PAYMENT_METHOD_DETAIL,
            Capability.SET_DEFAULT_PAYMENT_METHOD,
            Capability.GET_PAYMENT_METHODS,
            Capability.RESET_PAYMENT_METHODS,
            Capability.HOSTED_PAGE,
            Capability.NOTIFICATION,
        }
    )

    def __init__(self, config: Optional[StripeSettings] = None, *, webhook_tolerance: Optional[int] = None):
        self._config = config or payment_settings.stripe
        if not self._config.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._webhook_tolerance = webhook_tolerance or payment_settings.webhook.tolerance_seconds
        # Configure module-level key for compatibility across SDK variants
        stripe.api_key = self._config.secret_key
        if self._config.api_version:
            stripe.api_version = self._config.api_version

    # ------------------------------------------------------------------
    # SDK plumbing
    # ------------------------------------------------------------------
    async def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.CardError as exc:
            raise BusinessDeclineError(
                exc.user_message or str(exc),
                plugin_name=self.plugin_name,
                gateway_error_code=exc.code,
                details={"decline_code": getattr(exc, "decline_code", None)},
            ) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientTransportError(str(exc), plugin_name=self.plugin_name) from exc
        except stripe.InvalidRequestError as exc:
            raise BusinessDeclineError(
                exc.user_message or str(exc),
                plugin_name=self.plugin_name,
                gateway_error_code=exc.code,
            ) from exc
        except stripe.APIError as exc:
            status = exc.http_status
            if status is None or status >= 500:
                raise TransientTransportError(str(exc), plugin_name=self.plugin_name) from exc
            raise BusinessDeclineError(str(exc), plugin_name=self.plugin_name, gateway_error_code=exc.code) from exc

    @staticmethod
    def _metadata(req: OperationRequest, ctx: CallContext) -> dict[str, str]:
        return {
            "account_id": req.account_id,
            "payment_id": req.payment_id,
            "operation_id": req.operation_id,
            "tenant_id": ctx.tenant_id,
        }

    def _intent_envelope(self, pi: Mapping[str, Any], kind: OperationKind, operation_id: Optional[str]) -> ResultEnvelope:
        currency = parse_currency(pi.get("currency"))
        status_name = str(pi.get("status") or "")
        if kind == OperationKind.AUTHORIZE and status_name in _AUTHORIZED_STATES:
            status = OperationStatus.SUCCESS
        elif kind == OperationKind.VOID and status_name == "canceled":
            status = OperationStatus.SUCCESS
        else:
            status = self._map_status(status_name)
        if kind in (OperationKind.CAPTURE, OperationKind.CHARGE) and pi.get("amount_received"):
            minor = pi.get("amount_received")
        else:
            minor = pi.get("amount")
        error = pi.get("last_payment_error") or {}
        return ResultEnvelope(
            status=status,
            kind=kind,
            operation_id=operation_id,
            payment_id=(pi.get("metadata") or {}).get("payment_id"),
            gateway_reference_id=pi.get("id"),
            second_reference_id=pi.get("latest_charge"),
            amount_processed=None if kind == OperationKind.VOID else from_minor(minor, currency),
            currency=currency,
            gateway_error=error.get("message") if status == OperationStatus.FAILED else None,
            gateway_error_code=error.get("code") if status == OperationStatus.FAILED else None,
            raw_gateway_payload=dict(pi),
        )

    def _refund_envelope(self, refund: Mapping[str, Any]) -> ResultEnvelope:
        currency = parse_currency(refund.get("currency"))
        metadata = refund.get("metadata") or {}
        status_name = str(refund.get("status") or "")
        status = OperationStatus.FAILED if status_name == "canceled" else self._map_status(status_name)
        return ResultEnvelope(
            status=status,
            kind=OperationKind.REFUND,
            operation_id=metadata.get("operation_id"),
            payment_id=metadata.get("payment_id"),
            gateway_reference_id=refund.get("id"),
            second_reference_id=refund.get("payment_intent"),
            amount_processed=from_minor(refund.get("amount"), currency),
            currency=currency,
            gateway_error=refund.get("failure_reason") if status == OperationStatus.FAILED else None,
            raw_gateway_payload=dict(refund),
        )

    async def _intents_for_payment(self, payment_id: str) -> list[Mapping[str, Any]]:
        result = await self._call(
            stripe.PaymentIntent.search,
            query=f"metadata['payment_id']:'{_search_literal(payment_id)}'",
        )
        return list(result.get("data") or [])

    async def _find_intent(self, req: OperationRequest) -> str:
        intent_id = req.properties.get("payment_intent_id")
        if intent_id:
            return intent_id
        intents = await self._intents_for_payment(req.payment_id)
        if not intents:
            raise BusinessDeclineError(
                f"no Stripe PaymentIntent for payment {req.payment_id}",
                plugin_name=self.plugin_name,
                gateway_error_code="resource_missing",
            )
        return max(intents, key=lambda pi: pi.get("created") or 0)["id"]

    # ------------------------------------------------------------------
    # Money-moving operations
    # ------------------------------------------------------------------
    async def _create_intent(self, req: OperationRequest, ctx: CallContext, capture_method: str) -> Mapping[str, Any]:
        params: dict[str, Any] = {
            "amount": to_minor(req.amount, req.currency),
            "currency": req.currency.value.lower(),
            "capture_method": capture_method,
            "confirm": True,
            "metadata": self._metadata(req, ctx),
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "idempotency_key": req.operation_id,
        }
        if req.properties.get("external_payment_method_id"):
            params["payment_method"] = req.properties["external_payment_method_id"]
        if req.properties.get("customer_id"):
            params["customer"] = req.properties["customer_id"]
            params["off_session"] = True
        pi = await self._call(stripe.PaymentIntent.create, **params)
        self._log("stripe_intent_created", intent_id=pi.get("id"), status=pi.get("status"))
        return pi

    async def authorize_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        pi = await self._create_intent(req, ctx, "manual")
        return self._intent_envelope(pi, OperationKind.AUTHORIZE, req.operation_id)

    async def process_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        pi = await self._create_intent(req, ctx, "automatic")
        return self._intent_envelope(pi, OperationKind.CHARGE, req.operation_id)

    async def capture_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        intent_id = await self._find_intent(req)
        pi = await self._call(
            stripe.PaymentIntent.capture,
            intent_id,
            amount_to_capture=to_minor(req.amount, req.currency),
            idempotency_key=req.operation_id,
        )
        return self._intent_envelope(pi, OperationKind.CAPTURE, req.operation_id)

    async def void_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        intent_id = await self._find_intent(req)
        pi = await self._call(stripe.PaymentIntent.cancel, intent_id, idempotency_key=req.operation_id)
        return self._intent_envelope(pi, OperationKind.VOID, req.operation_id)

    async def process_refund(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        intent_id = await self._find_intent(req)
        refund = await self._call(
            stripe.Refund.create,
            payment_intent=intent_id,
            amount=to_minor(req.amount, req.currency),
            metadata=self._metadata(req, ctx),
            idempotency_key=req.operation_id,
        )
        return self._refund_envelope(refund)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _intent_history(self, pi: Mapping[str, Any]) -> list[ResultEnvelope]:
        metadata = pi.get("metadata") or {}
        manual = pi.get("capture_method") == "manual"
        envelopes = [
            self._intent_envelope(
                pi,
                OperationKind.AUTHORIZE if manual else OperationKind.CHARGE,
                metadata.get("operation_id"),
            )
        ]
        if manual and pi.get("status") == "succeeded":
            envelopes.append(self._intent_envelope(pi, OperationKind.CAPTURE, None))
        if pi.get("status") == "canceled":
            envelopes.append(self._intent_envelope(pi, OperationKind.VOID, None))
        return envelopes

    async def get_payment_info(self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext) -> list[ResultEnvelope]:  # type: ignore[override]
        envelopes: list[ResultEnvelope] = []
        for pi in await self._intents_for_payment(payment_id):
            envelopes.extend(self._intent_history(pi))
        return envelopes

    async def get_refund_info(self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext) -> list[ResultEnvelope]:  # type: ignore[override]
        envelopes: list[ResultEnvelope] = []
        for pi in await self._intents_for_payment(payment_id):
            refunds = await self._call(stripe.Refund.list, payment_intent=pi["id"], limit=100)
            envelopes.extend(self._refund_envelope(r) for r in refunds.get("data") or [])
        return envelopes

    async def search_payments(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[ResultEnvelope]:  # type: ignore[override]
        def fetch() -> list[Any]:
            result = stripe.PaymentIntent.search(query=search_key, limit=min(100, offset + limit))
            # Stripe search pages by token; walk forward to the requested offset
            return list(itertools.islice(result.auto_paging_iter(), offset, offset + limit))

        intents = await self._call(fetch)
        items = [env for pi in intents for env in self._intent_history(pi)[:1]]
        return Page(items=items, offset=offset, limit=limit)

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------
    async def _customer(self, account_id: str, properties: Mapping[str, str], *, create: bool = False) -> Optional[Mapping[str, Any]]:
        if properties.get("customer_id"):
            return await self._call(stripe.Customer.retrieve, properties["customer_id"])
        result = await self._call(
            stripe.Customer.search,
            query=f"metadata['account_id']:'{_search_literal(account_id)}'",
        )
        data = list(result.get("data") or [])
        if data:
            return data[0]
        if not create:
            return None
        return await self._call(
            stripe.Customer.create,
            metadata={"account_id": account_id},
            idempotency_key=f"customer-{account_id}",
        )

    @staticmethod
    def _default_pm(customer: Optional[Mapping[str, Any]]) -> Optional[str]:
        if not customer:
            return None
        return (customer.get("invoice_settings") or {}).get("default_payment_method")

    @staticmethod
    def _external_id(properties: Mapping[str, str]) -> str:
        external_id = properties.get("external_payment_method_id")
        if not external_id:
            raise PaymentValidationError(
                "Stripe payment method id is required",
                field="external_payment_method_id",
            )
        return external_id

    def _pm_detail(self, pm: Mapping[str, Any], is_default: bool, customer_id: Optional[str]) -> PaymentMethodDetail:
        card = pm.get("card") or {}
        props = {
            "type": str(pm.get("type") or ""),
            "brand": str(card.get("brand") or ""),
            "last4": str(card.get("last4") or ""),
            "exp_month": str(card.get("exp_month") or ""),
            "exp_year": str(card.get("exp_year") or ""),
        }
        if customer_id:
            props["customer_id"] = customer_id
        return PaymentMethodDetail(
            external_payment_method_id=pm.get("id"),
            is_default=is_default,
            properties={k: v for k, v in props.items() if v},
        )

    async def add_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        detail: PaymentMethodDetail,
        set_default: bool,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> PaymentMethodDetail:  # type: ignore[override]
        external_id = detail.external_payment_method_id or self._external_id(properties)
        customer = await self._customer(account_id, properties, create=True)
        pm = await self._call(stripe.PaymentMethod.attach, external_id, customer=customer["id"])
        await self._call(
            stripe.PaymentMethod.modify,
            external_id,
            metadata={"account_id": account_id, "payment_method_id": payment_method_id},
        )
        if set_default:
            await self._call(
                stripe.Customer.modify,
                customer["id"],
                invoice_settings={"default_payment_method": external_id},
            )
        self._log("stripe_payment_method_attached", account_id=account_id, external_id=external_id)
        return self._pm_detail(pm, set_default, customer["id"])

    async def delete_payment_method(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        await self._call(stripe.PaymentMethod.detach, self._external_id(properties))

    async def get_payment_method_detail(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> PaymentMethodDetail:  # type: ignore[override]
        external_id = self._external_id(properties)
        pm = await self._call(stripe.PaymentMethod.retrieve, external_id)
        customer = await self._customer(account_id, properties)
        return self._pm_detail(pm, self._default_pm(customer) == external_id, pm.get("customer"))

    async def set_default_payment_method(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        external_id = self._external_id(properties)
        customer = await self._customer(account_id, properties)
        if customer is None:
            raise BusinessDeclineError(
                f"no Stripe customer for account {account_id}",
                plugin_name=self.plugin_name,
                gateway_error_code="resource_missing",
            )
        await self._call(
            stripe.Customer.modify,
            customer["id"],
            invoice_settings={"default_payment_method": external_id},
        )

    async def get_payment_methods(self, account_id: str, refresh_from_gateway: bool, properties: Mapping[str, str], ctx: CallContext) -> list[PaymentMethodInfo]:  # type: ignore[override]
        customer = await self._customer(account_id, properties)
        if customer is None:
            return []
        default_pm = self._default_pm(customer)
        listing = await self._call(stripe.Customer.list_payment_methods, customer["id"], limit=100)
        infos = []
        for pm in listing.get("data") or []:
            metadata = pm.get("metadata") or {}
            infos.append(
                PaymentMethodInfo(
                    account_id=account_id,
                    # Methods attached outside this service use the Stripe id
                    payment_method_id=metadata.get("payment_method_id") or pm["id"],
                    is_default=pm["id"] == default_pm,
                    external_payment_method_id=pm["id"],
                )
            )
        return infos

    async def reset_payment_methods(self, account_id: str, methods: list[PaymentMethodInfo], properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        # Tag every mirrored method so the next listing maps back to the same local id
        for info in methods:
            if not info.external_payment_method_id:
                continue
            await self._call(
                stripe.PaymentMethod.modify,
                info.external_payment_method_id,
                metadata={"account_id": account_id, "payment_method_id": info.payment_method_id},
            )

    # ------------------------------------------------------------------
    # Hosted page and notifications
    # ------------------------------------------------------------------
    async def build_form_descriptor(
        self,
        account_id: str,
        fields: HostedPageDescriptorFields,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageFormDescriptor:  # type: ignore[override]
        if fields.amount is None or fields.currency is None:
            raise PaymentValidationError("amount and currency are required for Stripe Checkout", field="amount")
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": fields.currency.value.lower(),
                        "unit_amount": to_minor(fields.amount, fields.currency),
                        "product_data": {"name": fields.description or fields.order or "Payment"},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": fields.return_url or self._config.checkout_success_url,
            "cancel_url": fields.cancel_return_url or self._config.checkout_cancel_url,
            "metadata": {"account_id": account_id, "tenant_id": ctx.tenant_id, **fields.custom_field_map},
        }
        if fields.order:
            params["client_reference_id"] = fields.order
        if fields.customer.email:
            params["customer_email"] = fields.customer.email
        session = await self._call(stripe.checkout.Session.create, **params)
        return HostedPageFormDescriptor(
            account_id=account_id,
            form_method="GET",
            form_url=session["url"],
            form_fields={},
            properties={"session_id": session["id"]},
        )

    def _notification_from_event(self, event: Mapping[str, Any]) -> HostedPageNotification:
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        currency = parse_currency(obj.get("currency"))
        manual = obj.get("capture_method") == "manual"
        creation_kind = OperationKind.AUTHORIZE if manual else OperationKind.CHARGE

        kind: Optional[OperationKind] = None
        operation_id: Optional[str] = None
        status = OperationStatus.PENDING
        minor = obj.get("amount")
        if event_type == "payment_intent.amount_capturable_updated":
            kind, operation_id, status = OperationKind.AUTHORIZE, metadata.get("operation_id"), OperationStatus.SUCCESS
        elif event_type == "payment_intent.succeeded":
            kind = OperationKind.CAPTURE if manual else OperationKind.CHARGE
            # Capture ids are not kept in intent metadata
            operation_id = None if manual else metadata.get("operation_id")
            status = OperationStatus.SUCCESS
            minor = obj.get("amount_received") or minor
        elif event_type == "payment_intent.payment_failed":
            kind, operation_id, status = creation_kind, metadata.get("operation_id"), OperationStatus.FAILED
        elif event_type == "payment_intent.canceled":
            kind, status = OperationKind.VOID, OperationStatus.SUCCESS
            minor = None
        elif event_type.startswith("refund."):
            kind, operation_id = OperationKind.REFUND, metadata.get("operation_id")
            status = self._map_status(str(obj.get("status") or ""))
        elif event_type == "checkout.session.completed":
            kind, status = OperationKind.CHARGE, OperationStatus.SUCCESS
            minor = obj.get("amount_total")

        return HostedPageNotification(
            notification_id=str(event.get("id")),
            plugin_name=self.plugin_name,
            status=status,
            operation_id=operation_id,
            payment_id=metadata.get("payment_id"),
            gateway_reference_id=obj.get("id"),
            kind=kind,
            amount=from_minor(minor, currency),
            currency=currency,
            # Stripe treats the 2xx answer to the webhook as the acknowledgement
            acknowledged=True,
            raw_payload={"type": event_type, "data": dict(event.get("data") or {})},
        )

    async def process_notification(
        self,
        payload: bytes,
        headers: Optional[Mapping[str, Any]],
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageNotification:  # type: ignore[override]
        secret = self._config.webhook_secret
        if not secret:
            raise PaymentSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", plugin_name=self.plugin_name)
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        sig = lowered.get("stripe-signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", plugin_name=self.plugin_name)
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=sig,
                secret=secret,
                tolerance=self._webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise PaymentSignatureError(str(exc), plugin_name=self.plugin_name) from exc
        notification = self._notification_from_event(event).model_copy(update={"verified": True})
        self._log("stripe_webhook_parsed", event_type=notification.raw_payload.get("type"), event_id=notification.notification_id)
        return notification
