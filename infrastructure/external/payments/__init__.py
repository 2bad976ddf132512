"""
Factory for payment plugins and the orchestrator composition root.
"""
from __future__ import annotations

from typing import Iterable, Optional

from application.ports.payment_gateway import PaymentGateway
from application.services.adapter_registry import AdapterRegistry
from application.services.payment_orchestrator import PaymentOrchestrator, RetryPolicy
from core.config import settings
from core.settings import PaymentSettings, payment_settings
from domain.payment.repository import IdempotencyLedger, PaymentMethodRepository


def get_payment_gateway(plugin_name: str) -> PaymentGateway:
    name = plugin_name.lower()
    if name == "stripe":
        from .stripe_client import StripeGateway
        return StripeGateway()
    if name in {"__external_payment__", "external"}:
        from .external_payment import ExternalPaymentGateway
        return ExternalPaymentGateway(
            form_url=payment_settings.external.form_url,
            webhook_secret=payment_settings.external.webhook_secret,
        )
    raise ValueError(f"Unsupported payment plugin: {plugin_name}")


def build_adapter_registry(
    plugin_names: Optional[Iterable[str]] = None,
    *,
    default_plugin: Optional[str] = None,
) -> AdapterRegistry:
    names = list(plugin_names if plugin_names is not None else payment_settings.enabled_plugins)
    return AdapterRegistry(
        [get_payment_gateway(name) for name in names],
        default_plugin=default_plugin or payment_settings.default_plugin,
    )


def retry_policy_from(cfg: PaymentSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=cfg.retry.max_attempts,
        base_backoff=cfg.retry.base_backoff,
        max_backoff=cfg.retry.max_backoff,
        call_timeout=cfg.timeouts.call,
    )


def build_payment_orchestrator(
    *,
    registry: Optional[AdapterRegistry] = None,
    ledger: Optional[IdempotencyLedger] = None,
    payment_methods: Optional[PaymentMethodRepository] = None,
    cfg: Optional[PaymentSettings] = None,
) -> PaymentOrchestrator:
    from infrastructure.idempotency import create_ledger
    from infrastructure.repositories.payment_method_repository import InMemoryPaymentMethodRepository

    cfg = cfg or payment_settings
    return PaymentOrchestrator(
        registry or build_adapter_registry(cfg.enabled_plugins, default_plugin=cfg.default_plugin),
        ledger or create_ledger(cfg.ledger),
        payment_methods or InMemoryPaymentMethodRepository(),
        retry_policy=retry_policy_from(cfg),
        max_page_size=settings.MAX_PAGE_SIZE,
    )


__all__ = [
    "get_payment_gateway",
    "build_adapter_registry",
    "build_payment_orchestrator",
    "retry_policy_from",
]
