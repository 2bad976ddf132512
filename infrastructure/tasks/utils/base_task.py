"""Common base task for payment Celery jobs"""
from __future__ import annotations

from celery import Task
from structlog.contextvars import bound_contextvars

from core.logging_config import get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Binds task identity into the log context and reports outcomes.

    Every log line emitted while the task body runs (orchestrator, ledger,
    adapters) carries ``task_id`` and, for single-operation jobs, the
    ``operation_id`` being reconciled.
    """

    def __call__(self, *args, **kwargs):
        context = {"task_id": self.request.id, "task_name": self.name}
        if kwargs.get("operation_id"):
            context["operation_id"] = kwargs["operation_id"]
        with bound_contextvars(**context):
            return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "payment_task_failed",
            task_id=task_id,
            task_name=self.name,
            kwargs=kwargs,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        # Reconciliation results are small dicts
        logger.info(
            "payment_task_succeeded",
            task_id=task_id,
            task_name=self.name,
            result=retval,
        )
        super().on_success(retval, task_id, args, kwargs)
