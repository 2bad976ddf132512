"""
Factory for idempotency ledgers.
"""
from __future__ import annotations

from typing import Optional

from core.config import settings
from core.settings import LedgerSettings, payment_settings
from domain.payment.repository import IdempotencyLedger

from .memory_ledger import InMemoryIdempotencyLedger
from .redis_ledger import RedisIdempotencyLedger, create_redis


def create_ledger(ledger_settings: Optional[LedgerSettings] = None) -> IdempotencyLedger:
    cfg = ledger_settings or payment_settings.ledger
    if cfg.backend == "memory":
        return InMemoryIdempotencyLedger()
    if cfg.backend == "redis":
        if not settings.redis.url:
            raise RuntimeError("REDIS__URL is required for the redis ledger backend")
        client = create_redis(settings.redis.url, max_connections=settings.redis.max_connections)
        return RedisIdempotencyLedger(
            client,
            key_prefix=f"{settings.redis.namespace}:{cfg.key_prefix}",
            lock_timeout=cfg.lock_timeout,
            lock_blocking_timeout=cfg.lock_blocking_timeout,
            retention_seconds=cfg.retention_seconds,
            owns_client=True,
        )
    raise ValueError(f"Unsupported ledger backend: {cfg.backend}")


__all__ = [
    "InMemoryIdempotencyLedger",
    "RedisIdempotencyLedger",
    "create_ledger",
    "create_redis",
]
