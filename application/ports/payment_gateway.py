"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Every adapter declares the capabilities it supports; the orchestrator
consults that table before touching the ledger or the gateway.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CallContext,
    HostedPageDescriptorFields,
    HostedPageFormDescriptor,
    HostedPageNotification,
    OperationKind,
    OperationRequest,
    Page,
    PaymentMethodDetail,
    PaymentMethodInfo,
    ResultEnvelope,
)


class Capability(str, Enum):
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    CHARGE = "charge"
    VOID = "void"
    REFUND = "refund"
    GET_PAYMENT_INFO = "get_payment_info"
    GET_REFUND_INFO = "get_refund_info"
    SEARCH_PAYMENTS = "search_payments"
    SEARCH_REFUNDS = "search_refunds"
    SEARCH_PAYMENT_METHODS = "search_payment_methods"
    ADD_PAYMENT_METHOD = "add_payment_method"
    DELETE_PAYMENT_METHOD = "delete_payment_method"
    GET_PAYMENT_METHOD_DETAIL = "get_payment_method_detail"
    SET_DEFAULT_PAYMENT_METHOD = "set_default_payment_method"
    GET_PAYMENT_METHODS = "get_payment_methods"
    RESET_PAYMENT_METHODS = "reset_payment_methods"
    HOSTED_PAGE = "build_form_descriptor"
    NOTIFICATION = "process_notification"


KIND_CAPABILITY: dict[OperationKind, Capability] = {
    OperationKind.AUTHORIZE: Capability.AUTHORIZE,
    OperationKind.CAPTURE: Capability.CAPTURE,
    OperationKind.CHARGE: Capability.CHARGE,
    OperationKind.VOID: Capability.VOID,
    OperationKind.REFUND: Capability.REFUND,
}

# Adapter method invoked for each money-moving kind
KIND_METHOD: dict[OperationKind, str] = {
    OperationKind.AUTHORIZE: "authorize_payment",
    OperationKind.CAPTURE: "capture_payment",
    OperationKind.CHARGE: "process_payment",
    OperationKind.VOID: "void_payment",
    OperationKind.REFUND: "process_refund",
}

ALL_CAPABILITIES = frozenset(Capability)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Money-moving methods return a ResultEnvelope whose status is success,
    pending or failed. Transport problems are raised as
    TransientTransportError, definitive rejections as BusinessDeclineError.
    Implementations should be async and side-effect free beyond IO.
    """

    plugin_name: str
    capabilities: frozenset[Capability]

    async def authorize_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope: ...

    async def capture_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope: ...

    async def process_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope: ...

    async def void_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope: ...

    async def process_refund(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope: ...

    async def get_payment_info(
        self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext
    ) -> list[ResultEnvelope]: ...

    async def get_refund_info(
        self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext
    ) -> list[ResultEnvelope]: ...

    async def search_payments(
        self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext
    ) -> Page[ResultEnvelope]: ...

    async def search_refunds(
        self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext
    ) -> Page[ResultEnvelope]: ...

    async def search_payment_methods(
        self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext
    ) -> Page[PaymentMethodInfo]: ...

    async def add_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        detail: PaymentMethodDetail,
        set_default: bool,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> PaymentMethodDetail: ...

    async def delete_payment_method(
        self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext
    ) -> None: ...

    async def get_payment_method_detail(
        self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext
    ) -> PaymentMethodDetail: ...

    async def set_default_payment_method(
        self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext
    ) -> None: ...

    async def get_payment_methods(
        self, account_id: str, refresh_from_gateway: bool, properties: Mapping[str, str], ctx: CallContext
    ) -> list[PaymentMethodInfo]: ...

    async def reset_payment_methods(
        self,
        account_id: str,
        methods: list[PaymentMethodInfo],
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> None: ...

    async def build_form_descriptor(
        self,
        account_id: str,
        fields: HostedPageDescriptorFields,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageFormDescriptor: ...

    async def process_notification(
        self,
        payload: bytes,
        headers: Optional[Mapping[str, Any]],
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageNotification: ...

    async def aclose(self) -> None: ...
