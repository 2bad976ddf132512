"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Optional

from ..config.celery import celery_app


class TaskDispatcher:
    """Facade used by callers outside the worker to schedule payment jobs."""

    def reconcile_operation(self, operation_id: str, *, tenant_id: Optional[str] = None, countdown: int = 0) -> None:
        """Queue reconciliation of one undetermined operation."""
        celery_app.send_task(
            "payments.reconcile_operation",
            kwargs={"operation_id": operation_id, "tenant_id": tenant_id},
            countdown=countdown,
        )

    def reconcile_in_flight(self, *, min_age_seconds: Optional[int] = None, limit: Optional[int] = None) -> None:
        celery_app.send_task(
            "payments.reconcile_in_flight",
            kwargs={"min_age_seconds": min_age_seconds, "limit": limit},
        )

