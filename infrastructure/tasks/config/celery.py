"""Celery application for payment reconciliation jobs.

Broker and result backend share the Redis instance used by the redis
ledger (``REDIS__URL``); ``CELERY_BROKER_URL`` / ``CELERY_RESULT_BACKEND``
override them.
"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from .beat import CELERY_BEAT_SCHEDULE


CELERY_IMPORTS = (
    "infrastructure.tasks.tasks",
)

# A reconcile task makes at most one history lookup per in-flight record,
# each bounded by the adapter call timeout and its retries.
_PER_RECORD_SECONDS = payment_settings.timeouts.call * payment_settings.retry.max_attempts
SWEEP_SOFT_TIME_LIMIT = int(_PER_RECORD_SECONDS * payment_settings.reconciliation.batch_size) + 30


celery_app = Celery("payment_orchestrator")

celery_app.conf.update(
    broker_url=os.getenv("CELERY_BROKER_URL") or settings.redis.url,
    result_backend=os.getenv("CELERY_RESULT_BACKEND") or settings.redis.url,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Ack after the run so a lost worker re-delivers the sweep; reconciling twice is harmless
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=max(3600, payment_settings.reconciliation.interval_seconds * 2),
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=5,
    task_queues=(
        Queue("high"),
        Queue("default"),
        Queue("low"),
    ),
    task_routes={
        # Single-operation reconciliation is usually operator-triggered
        "payments.reconcile_operation": {"queue": "high"},
        "payments.reconcile_in_flight": {"queue": "low"},
    },
    task_annotations={
        "payments.reconcile_in_flight": {"soft_time_limit": SWEEP_SOFT_TIME_LIMIT},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
)

celery_app.conf.imports = CELERY_IMPORTS

environment = getattr(settings, "ENVIRONMENT", "production") or "production"
if environment.lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=CELERY_IMPORTS)


logger = get_logger(__name__)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        eager=bool(sender.conf.task_always_eager),
        beat_entries=sorted(sender.conf.beat_schedule or {}),
    )
