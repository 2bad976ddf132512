"""Payment reconciliation Celery tasks.

Each run builds its own orchestrator inside ``asyncio.run`` so no event loop
or client outlives the task. Only a shared ledger backend (redis) makes these
useful across processes.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from celery import shared_task

from application.dtos.payments import CallContext
from application.services.payment_orchestrator import PaymentOrchestrator
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.payment.exceptions import UndeterminedOperationError
from infrastructure.external.payments import build_payment_orchestrator
from ..utils.base_task import BaseTask

logger = get_logger(__name__)

# Replaced in tests to inject an orchestrator with stub adapters
orchestrator_factory: Callable[[], PaymentOrchestrator] = build_payment_orchestrator


def _system_context(tenant_id: Optional[str] = None, reason_code: str = "reconciliation") -> CallContext:
    return CallContext(
        tenant_id=tenant_id or payment_settings.reconciliation.tenant_id,
        user_name="celery",
        reason_code=reason_code,
    )


async def _with_orchestrator(work: Callable[[PaymentOrchestrator], Awaitable[Any]]) -> Any:
    orchestrator = orchestrator_factory()
    try:
        return await work(orchestrator)
    finally:
        await orchestrator.aclose()
        close_ledger = getattr(orchestrator.ledger, "aclose", None)
        if callable(close_ledger):
            await close_ledger()


@shared_task(name="payments.reconcile_in_flight", bind=True, base=BaseTask)
def reconcile_in_flight(self, min_age_seconds: Optional[int] = None, limit: Optional[int] = None) -> dict:
    """Sweep in-flight operations idle for at least ``min_age_seconds``."""
    cfg = payment_settings.reconciliation
    age = cfg.min_age_seconds if min_age_seconds is None else min_age_seconds
    older_than = datetime.now(timezone.utc) - timedelta(seconds=age)
    ctx = _system_context()

    report = asyncio.run(
        _with_orchestrator(
            lambda orchestrator: orchestrator.reconcile_in_flight(
                ctx, older_than=older_than, limit=limit or cfg.batch_size
            )
        )
    )
    return asdict(report)


@shared_task(
    name="payments.reconcile_operation",
    bind=True,
    base=BaseTask,
    max_retries=3,
    default_retry_delay=30,
)
def reconcile_operation(self, operation_id: str, tenant_id: Optional[str] = None) -> dict:
    ctx = _system_context(tenant_id)
    try:
        envelope = asyncio.run(_with_orchestrator(lambda orchestrator: orchestrator.reconcile(operation_id, ctx)))
    except UndeterminedOperationError as exc:
        # Still unknown at the gateway; left in flight for the next sweep
        logger.warning("payment_reconcile_task_undetermined", operation_id=operation_id, reason=exc.reason)
        return {"operation_id": operation_id, "status": "undetermined"}
    return {"operation_id": operation_id, "status": envelope.status.value}
