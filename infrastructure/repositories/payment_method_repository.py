"""
支付方式仓储实现 - 进程内存储
"""
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List, Optional

from domain.payment.entity import PaymentMethodDescriptor
from domain.payment.repository import PaymentMethodRepository


def _clone(descriptor: PaymentMethodDescriptor) -> PaymentMethodDescriptor:
    return replace(descriptor, gateway_props=dict(descriptor.gateway_props))


class InMemoryPaymentMethodRepository(PaymentMethodRepository):
    """支付方式仓储的内存实现（按账户分组，保持插入顺序）"""

    def __init__(self) -> None:
        self._by_account: dict[str, dict[str, PaymentMethodDescriptor]] = {}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str, payment_method_id: str) -> Optional[PaymentMethodDescriptor]:
        found = self._by_account.get(account_id, {}).get(payment_method_id)
        return _clone(found) if found else None

    async def list_by_account(self, account_id: str) -> List[PaymentMethodDescriptor]:
        return [_clone(d) for d in self._by_account.get(account_id, {}).values()]

    async def get_default(self, account_id: str) -> Optional[PaymentMethodDescriptor]:
        for descriptor in self._by_account.get(account_id, {}).values():
            if descriptor.is_default:
                return _clone(descriptor)
        return None

    async def save(self, descriptor: PaymentMethodDescriptor) -> PaymentMethodDescriptor:
        async with self._lock:
            methods = self._by_account.setdefault(descriptor.account_id, {})
            if descriptor.is_default:
                # 同一账户只保留一个默认支付方式
                for other in methods.values():
                    other.is_default = False
            methods[descriptor.payment_method_id] = _clone(descriptor)
            return _clone(descriptor)

    async def delete(self, account_id: str, payment_method_id: str) -> bool:
        async with self._lock:
            return self._by_account.get(account_id, {}).pop(payment_method_id, None) is not None

    async def replace_for_plugin(
        self,
        account_id: str,
        plugin_name: str,
        descriptors: List[PaymentMethodDescriptor],
    ) -> List[PaymentMethodDescriptor]:
        async with self._lock:
            current = self._by_account.get(account_id, {})
            kept = {k: v for k, v in current.items() if v.plugin_name != plugin_name}
            has_default = any(d.is_default for d in descriptors)
            if has_default:
                for other in kept.values():
                    other.is_default = False
            seen_default = False
            for descriptor in descriptors:
                stored = _clone(descriptor)
                if stored.is_default:
                    # A gateway reporting several defaults keeps the first
                    stored.is_default = not seen_default
                    seen_default = True
                kept[stored.payment_method_id] = stored
            self._by_account[account_id] = kept
            return [_clone(d) for d in kept.values() if d.plugin_name == plugin_name]
