"""Celery beat schedule configuration.

The in-flight reconciliation sweep only runs when
``PAYMENT__RECONCILIATION__ENABLED`` is set.
"""
from __future__ import annotations

from core.settings import payment_settings


CELERY_BEAT_SCHEDULE: dict = {}

if payment_settings.reconciliation.enabled:
    CELERY_BEAT_SCHEDULE["payments-reconcile-in-flight"] = {
        "task": "payments.reconcile_in_flight",
        "schedule": payment_settings.reconciliation.interval_seconds,
        "kwargs": {
            "min_age_seconds": payment_settings.reconciliation.min_age_seconds,
            "limit": payment_settings.reconciliation.batch_size,
        },
    }
