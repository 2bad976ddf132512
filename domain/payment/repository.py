"""
支付仓储接口 - 幂等账本与支付方式存储的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Union

from .entity import Completed, Failed, Fresh, IdempotencyRecord, InFlight, PaymentMethodDescriptor

if TYPE_CHECKING:
    from application.dtos.payments import ResultEnvelope


LedgerDecision = Union[Fresh, InFlight, Completed, Failed]


class IdempotencyLedger(ABC):
    """幂等账本抽象接口

    所有状态转换对同一 operation_id 的并发 begin_or_reuse 必须是原子的；
    不同 operation_id 之间互不阻塞。
    """

    @abstractmethod
    async def begin_or_reuse(self, record: IdempotencyRecord) -> LedgerDecision:
        """Create ``record`` in flight, or report the existing one."""
        pass

    @abstractmethod
    async def record_attempt(
        self,
        operation_id: str,
        plugin_name: Optional[str] = None,
        properties: Optional[dict] = None,
    ) -> IdempotencyRecord:
        """Count one gateway dispatch against an in-flight record.

        ``plugin_name`` and ``properties`` are what the attempt was sent with;
        reconciliation reuses them to query the same plugin.
        """
        pass

    @abstractmethod
    async def complete(self, operation_id: str, result: "ResultEnvelope") -> IdempotencyRecord:
        pass

    @abstractmethod
    async def fail(
        self,
        operation_id: str,
        error: dict,
        result: Optional["ResultEnvelope"] = None,
    ) -> IdempotencyRecord:
        pass

    @abstractmethod
    async def mark_undetermined(self, operation_id: str, reason: str) -> IdempotencyRecord:
        """Flag the record as unresolved; it stays in flight."""
        pass

    @abstractmethod
    async def release(self, operation_id: str) -> bool:
        """Drop an in-flight record that never reached a gateway."""
        pass

    @abstractmethod
    async def get(self, operation_id: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def purge(self, operation_id: str) -> bool:
        """Explicit removal by the caller, whatever the state."""
        pass

    @abstractmethod
    async def list_in_flight(
        self,
        older_than: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[IdempotencyRecord]:
        pass


class PaymentMethodRepository(ABC):
    """支付方式仓储抽象接口"""

    @abstractmethod
    async def get(self, account_id: str, payment_method_id: str) -> Optional[PaymentMethodDescriptor]:
        pass

    @abstractmethod
    async def list_by_account(self, account_id: str) -> List[PaymentMethodDescriptor]:
        pass

    @abstractmethod
    async def get_default(self, account_id: str) -> Optional[PaymentMethodDescriptor]:
        pass

    @abstractmethod
    async def save(self, descriptor: PaymentMethodDescriptor) -> PaymentMethodDescriptor:
        """Insert or replace; a new default clears the previous one."""
        pass

    @abstractmethod
    async def delete(self, account_id: str, payment_method_id: str) -> bool:
        pass

    @abstractmethod
    async def replace_for_plugin(
        self,
        account_id: str,
        plugin_name: str,
        descriptors: List[PaymentMethodDescriptor],
    ) -> List[PaymentMethodDescriptor]:
        """Mirror a gateway listing: the plugin's methods become exactly ``descriptors``."""
        pass
