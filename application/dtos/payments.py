"""
Payment DTOs (Pydantic v2) used at application boundaries.

Requests, result envelopes and hosted-page value objects are frozen: once
handed to an adapter or stored in the ledger they never change.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Generic, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Currency(str, Enum):
    """ISO-4217 currencies accepted by the orchestrator (extend as needed)."""

    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CHF = "CHF"
    CNY = "CNY"
    JPY = "JPY"
    KRW = "KRW"
    HKD = "HKD"
    AUD = "AUD"
    CAD = "CAD"
    SGD = "SGD"
    BRL = "BRL"

    @property
    def minor_unit_exponent(self) -> int:
        return 0 if self in _ZERO_DECIMAL_CURRENCIES else 2


_ZERO_DECIMAL_CURRENCIES = frozenset({Currency.JPY, Currency.KRW})


def _upper_currency(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().upper() or None
    return v


class OperationKind(str, Enum):
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    CHARGE = "charge"
    VOID = "void"
    REFUND = "refund"


class OperationStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    # Only ever produced by the orchestrator, never by an adapter
    UNDETERMINED = "undetermined"


class CallContext(BaseModel):
    """Tenant scoping for one call. Carries no business logic."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    user_name: Optional[str] = None
    reason_code: Optional[str] = None
    comments: Optional[str] = None
    request_id: Optional[str] = None


class OperationRequest(BaseModel):
    """A logical money-moving operation.

    Amount sign and required identifiers are checked by the orchestrator,
    not at construction, so that a bad request is rejected before any
    ledger or gateway work with a PaymentValidationError.
    """

    model_config = ConfigDict(frozen=True)

    operation_id: str
    kind: OperationKind
    account_id: str
    payment_id: str
    payment_method_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[Currency] = None
    # Opaque key/values forwarded to the adapter
    properties: dict[str, str] = Field(default_factory=dict)

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, v: Any) -> Any:
        return _upper_currency(v)


class ResultEnvelope(BaseModel):
    """Normalized gateway response, independent of the adapter that produced it."""

    model_config = ConfigDict(frozen=True)

    status: OperationStatus
    kind: Optional[OperationKind] = None
    operation_id: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    second_reference_id: Optional[str] = None
    amount_processed: Optional[Decimal] = None
    currency: Optional[Currency] = None
    gateway_error: Optional[str] = None
    gateway_error_code: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # Passthrough for auditing, never interpreted by the core
    raw_gateway_payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, v: Any) -> Any:
        return _upper_currency(v)


class PaymentMethodDetail(BaseModel):
    """Payment method as seen by the gateway."""

    external_payment_method_id: Optional[str] = None
    is_default: bool = False
    properties: dict[str, str] = Field(default_factory=dict)


class PaymentMethodInfo(BaseModel):
    """Entry of an account's payment-method listing (refresh/reset)."""

    account_id: str
    payment_method_id: str
    is_default: bool = False
    external_payment_method_id: Optional[str] = None


class Customer(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class BillingAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    city: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


class HostedPageDescriptorFields(BaseModel):
    """Fields an adapter needs to build a redirect form to a hosted payment page."""

    model_config = ConfigDict(frozen=True)

    amount: Optional[Decimal] = None
    currency: Optional[Currency] = None
    order: Optional[str] = None
    credential2: Optional[str] = None
    credential3: Optional[str] = None
    credential4: Optional[str] = None
    transaction_type: Optional[str] = None
    auth_code: Optional[str] = None
    account_name: Optional[str] = None
    customer: Customer = Field(default_factory=Customer)
    billing_address: BillingAddress = Field(default_factory=BillingAddress)
    notify_url: Optional[str] = None
    return_url: Optional[str] = None
    forward_url: Optional[str] = None
    cancel_return_url: Optional[str] = None
    redirect_param: Optional[str] = None
    description: Optional[str] = None
    tax: Optional[Decimal] = None
    shipping: Optional[Decimal] = None
    # Ordered pairs so the value object stays immutable
    custom_fields: tuple[tuple[str, str], ...] = ()

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, v: Any) -> Any:
        return _upper_currency(v)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _freeze_custom_fields(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, Mapping):
            return tuple((str(k), str(val)) for k, val in v.items())
        return tuple((str(k), str(val)) for k, val in v)

    @property
    def custom_field_map(self) -> Mapping[str, str]:
        return MappingProxyType(dict(self.custom_fields))


class HostedPageFormDescriptor(BaseModel):
    """Redirect form metadata returned to the client."""

    account_id: str
    form_method: Literal["GET", "POST"] = "GET"
    form_url: str
    form_fields: dict[str, str] = Field(default_factory=dict)
    properties: dict[str, str] = Field(default_factory=dict)


class HostedPageNotification(BaseModel):
    """Normalized gateway notification."""

    notification_id: str
    plugin_name: str
    status: OperationStatus
    operation_id: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_reference_id: Optional[str] = None
    kind: Optional[OperationKind] = None
    amount: Optional[Decimal] = None
    currency: Optional[Currency] = None
    # True once the adapter acknowledged receipt with the gateway
    acknowledged: bool = False
    # True when the adapter authenticated the sender; only verified
    # notifications may settle ledger records
    verified: bool = False
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, v: Any) -> Any:
        return _upper_currency(v)


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One page of adapter-reported records."""

    items: list[T]
    offset: int = 0
    limit: int
    # Hint only: gateways may not know, or may drift between calls
    total_count: Optional[int] = None
    has_more: bool = False
