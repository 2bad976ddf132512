"""
Base payment client implementing shared concerns: capability defaults,
amount conversion, status mapping and logging.

Concrete plugins subclass it, declare ``plugin_name``/``capabilities`` and
override the operations they support. Every operation left alone raises
UnsupportedOperationError, so a plugin never has to stub what its gateway
cannot do.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional

from application.dtos.payments import (
    CallContext,
    Currency,
    HostedPageDescriptorFields,
    HostedPageFormDescriptor,
    HostedPageNotification,
    OperationRequest,
    OperationStatus,
    Page,
    PaymentMethodDetail,
    PaymentMethodInfo,
    ResultEnvelope,
)
from application.ports.payment_gateway import Capability, PaymentGateway
from core.logging_config import get_logger
from domain.payment.exceptions import UnsupportedOperationError
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


def to_minor(amount: Decimal, currency: Currency) -> int:
    """Gateways expect amounts in the smallest currency unit."""
    return int((amount * (Decimal(10) ** currency.minor_unit_exponent)).to_integral_value())


def from_minor(minor: Optional[int], currency: Optional[Currency]) -> Optional[Decimal]:
    if minor is None or currency is None:
        return None
    return Decimal(int(minor)).scaleb(-currency.minor_unit_exponent)


def parse_currency(code: Any) -> Optional[Currency]:
    """Map a gateway currency code to Currency, None when unknown here."""
    if not code:
        return None
    try:
        return Currency(str(code).upper())
    except ValueError:
        return None


class BasePaymentClient(PaymentGateway):
    plugin_name: str = "base"
    capabilities: frozenset[Capability] = frozenset()

    def _unsupported(self, capability: Capability):
        return UnsupportedOperationError(capability.value, plugin_name=self.plugin_name)

    async def aclose(self) -> None:
        """Release gateway resources; nothing to do by default."""
        return None

    # Default implementations raise so unsupported is a first-class outcome
    async def authorize_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        raise self._unsupported(Capability.AUTHORIZE)

    async def capture_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        raise self._unsupported(Capability.CAPTURE)

    async def process_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        raise self._unsupported(Capability.CHARGE)

    async def void_payment(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        raise self._unsupported(Capability.VOID)

    async def process_refund(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:  # type: ignore[override]
        raise self._unsupported(Capability.REFUND)

    async def get_payment_info(self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext) -> list[ResultEnvelope]:  # type: ignore[override]
        raise self._unsupported(Capability.GET_PAYMENT_INFO)

    async def get_refund_info(self, account_id: str, payment_id: str, properties: Mapping[str, str], ctx: CallContext) -> list[ResultEnvelope]:  # type: ignore[override]
        raise self._unsupported(Capability.GET_REFUND_INFO)

    async def search_payments(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[ResultEnvelope]:  # type: ignore[override]
        raise self._unsupported(Capability.SEARCH_PAYMENTS)

    async def search_refunds(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[ResultEnvelope]:  # type: ignore[override]
        raise self._unsupported(Capability.SEARCH_REFUNDS)

    async def search_payment_methods(self, search_key: str, offset: int, limit: int, properties: Mapping[str, str], ctx: CallContext) -> Page[PaymentMethodInfo]:  # type: ignore[override]
        raise self._unsupported(Capability.SEARCH_PAYMENT_METHODS)

    async def add_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        detail: PaymentMethodDetail,
        set_default: bool,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> PaymentMethodDetail:  # type: ignore[override]
        raise self._unsupported(Capability.ADD_PAYMENT_METHOD)

    async def delete_payment_method(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        raise self._unsupported(Capability.DELETE_PAYMENT_METHOD)

    async def get_payment_method_detail(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> PaymentMethodDetail:  # type: ignore[override]
        raise self._unsupported(Capability.GET_PAYMENT_METHOD_DETAIL)

    async def set_default_payment_method(self, account_id: str, payment_method_id: str, properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        raise self._unsupported(Capability.SET_DEFAULT_PAYMENT_METHOD)

    async def get_payment_methods(self, account_id: str, refresh_from_gateway: bool, properties: Mapping[str, str], ctx: CallContext) -> list[PaymentMethodInfo]:  # type: ignore[override]
        raise self._unsupported(Capability.GET_PAYMENT_METHODS)

    async def reset_payment_methods(self, account_id: str, methods: list[PaymentMethodInfo], properties: Mapping[str, str], ctx: CallContext) -> None:  # type: ignore[override]
        raise self._unsupported(Capability.RESET_PAYMENT_METHODS)

    async def build_form_descriptor(
        self,
        account_id: str,
        fields: HostedPageDescriptorFields,
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageFormDescriptor:  # type: ignore[override]
        raise self._unsupported(Capability.HOSTED_PAGE)

    async def process_notification(
        self,
        payload: bytes,
        headers: Optional[Mapping[str, Any]],
        properties: Mapping[str, str],
        ctx: CallContext,
    ) -> HostedPageNotification:  # type: ignore[override]
        raise self._unsupported(Capability.NOTIFICATION)

    # Helpers
    def _map_status(self, provider_status: str, default: OperationStatus = OperationStatus.PENDING) -> OperationStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.plugin_name, {})
        value = mapping.get(provider_status)
        # Unknown gateway states are never reported as final
        return OperationStatus(value) if value else default

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            plugin_name=self.plugin_name,
            **kwargs,
        )
