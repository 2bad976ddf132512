"""
Adapter registry: plugin name -> gateway adapter.
"""
from __future__ import annotations

from typing import Iterable, Optional

from application.ports.payment_gateway import Capability, PaymentGateway
from core.logging_config import get_logger
from domain.payment.exceptions import AdapterNotRegisteredError, UnsupportedOperationError


logger = get_logger(__name__)


class AdapterRegistry:
    """Holds one adapter per plugin name.

    An adapter must at least support ``charge``; every other capability is
    optional and checked per call with :meth:`require`.
    """

    def __init__(self, adapters: Iterable[PaymentGateway] = (), *, default_plugin: Optional[str] = None) -> None:
        self._adapters: dict[str, PaymentGateway] = {}
        self.default_plugin = default_plugin
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: PaymentGateway) -> None:
        if not isinstance(adapter, PaymentGateway):
            raise TypeError(f"{type(adapter).__name__} does not implement PaymentGateway")
        name = adapter.plugin_name
        if not name:
            raise ValueError("adapter plugin_name must not be empty")
        if Capability.CHARGE not in adapter.capabilities:
            raise ValueError(f"adapter '{name}' must support charge")
        if name in self._adapters:
            raise ValueError(f"adapter '{name}' is already registered")
        self._adapters[name] = adapter
        logger.info(
            "payment_adapter_registered",
            plugin_name=name,
            capabilities=sorted(c.value for c in adapter.capabilities),
        )

    def get(self, plugin_name: Optional[str] = None) -> PaymentGateway:
        name = plugin_name or self.default_plugin
        adapter = self._adapters.get(name) if name else None
        if adapter is None:
            raise AdapterNotRegisteredError(name)
        return adapter

    def require(self, plugin_name: Optional[str], capability: Capability) -> PaymentGateway:
        adapter = self.get(plugin_name)
        if capability not in adapter.capabilities:
            raise UnsupportedOperationError(capability.value, plugin_name=adapter.plugin_name)
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, plugin_name: object) -> bool:
        return plugin_name in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def aclose(self) -> None:
        for name, adapter in self._adapters.items():
            try:
                await adapter.aclose()
            except Exception as exc:
                logger.warning("payment_adapter_close_failed", plugin_name=name, error=str(exc))
