"""
支付领域实体 - 幂等账本记录与支付方式描述
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import OperationAlreadyResolvedError

if TYPE_CHECKING:
    from application.dtos.payments import ResultEnvelope


class OperationState(str, Enum):
    """账本状态枚举"""
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IdempotencyRecord:
    """
    幂等记录 - 一个 operation_id 对应一次网关副作用

    业务规则：
    1. 首次尝试时以 in_flight 创建
    2. 只能从 in_flight 转换为 completed / failed
    3. undetermined 不是终态：记录保持 in_flight，直到显式对账
    4. 除非显式清除（或配置了保留期），记录不会过期
    """

    operation_id: str
    kind: str
    request_fingerprint: str
    # Snapshot of the originating request, used by reconciliation
    request: dict[str, Any] = field(default_factory=dict)
    plugin_name: Optional[str] = None
    # Merged outbound properties as sent to the plugin on the last attempt
    dispatch_properties: dict[str, str] = field(default_factory=dict)
    state: OperationState = OperationState.IN_FLIGHT
    result: Optional["ResultEnvelope"] = None
    error: Optional[dict[str, Any]] = None
    undetermined: bool = False
    attempts: int = 0
    created_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.operation_id:
            raise DomainValidationException("operation_id is required", field="operation_id")
        self.created_at = _ensure_utc(self.created_at) or _now()
        self.last_attempt_at = _ensure_utc(self.last_attempt_at)

    @property
    def is_terminal(self) -> bool:
        return self.state in (OperationState.COMPLETED, OperationState.FAILED)

    def _require_in_flight(self, target: str) -> None:
        if self.state != OperationState.IN_FLIGHT:
            raise OperationAlreadyResolvedError(self.operation_id, self.state.value, target)

    def record_attempt(
        self,
        plugin_name: Optional[str] = None,
        properties: Optional[dict[str, str]] = None,
    ) -> None:
        self._require_in_flight("in_flight")
        self.attempts += 1
        self.last_attempt_at = _now()
        if plugin_name:
            self.plugin_name = plugin_name
        if properties is not None:
            self.dispatch_properties = dict(properties)

    def mark_completed(self, result: "ResultEnvelope") -> None:
        self._require_in_flight(OperationState.COMPLETED.value)
        self.state = OperationState.COMPLETED
        self.result = result
        self.error = None
        self.undetermined = False

    def mark_failed(self, error: dict[str, Any], result: Optional["ResultEnvelope"] = None) -> None:
        self._require_in_flight(OperationState.FAILED.value)
        self.state = OperationState.FAILED
        self.error = error
        self.result = result
        self.undetermined = False

    def mark_undetermined(self, reason: str) -> None:
        self._require_in_flight("undetermined")
        self.undetermined = True
        self.error = {"reason": reason}

    def to_dict(self) -> dict[str, Any]:
        """JSON 友好的快照（持久化与 API 输出共用）"""
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "request_fingerprint": self.request_fingerprint,
            "request": self.request,
            "plugin_name": self.plugin_name,
            "dispatch_properties": self.dispatch_properties,
            "state": self.state.value,
            "result": self.result.model_dump(mode="json") if self.result is not None else None,
            "error": self.error,
            "undetermined": self.undetermined,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }

    def copy(self) -> "IdempotencyRecord":
        return replace(
            self,
            request=dict(self.request),
            dispatch_properties=dict(self.dispatch_properties),
            error=dict(self.error) if self.error is not None else None,
        )


@dataclass(frozen=True)
class Fresh:
    """Caller owns the exclusive right to contact the gateway."""
    record: IdempotencyRecord


@dataclass(frozen=True)
class InFlight:
    """Another attempt holds the operation; never re-issue the gateway call."""
    record: IdempotencyRecord


@dataclass(frozen=True)
class Completed:
    record: IdempotencyRecord

    @property
    def result(self) -> "ResultEnvelope":
        return self.record.result  # type: ignore[return-value]


@dataclass(frozen=True)
class Failed:
    record: IdempotencyRecord


@dataclass
class PaymentMethodDescriptor:
    """
    支付方式描述 - 由编排层持有，刷新时与网关状态同步

    业务规则：同一账户最多一个默认支付方式（由仓储保证）
    """

    account_id: str
    payment_method_id: str
    plugin_name: str
    is_default: bool = False
    external_payment_method_id: Optional[str] = None
    gateway_props: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.account_id:
            raise DomainValidationException("account_id is required", field="account_id")
        if not self.payment_method_id:
            raise DomainValidationException("payment_method_id is required", field="payment_method_id")
        if not self.plugin_name:
            raise DomainValidationException("plugin_name is required", field="plugin_name")
        if self.gateway_props is None:
            self.gateway_props = {}
