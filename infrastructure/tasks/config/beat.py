"""Celery beat schedule configuration.

The pending sweep picks up transactions whose webhook never arrived.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "ompay-sweep-pending": {
        "task": "ompay.sweep_pending",
        "schedule": settings.celery.sweep_interval_seconds,
        "kwargs": {
            "older_than_seconds": settings.celery.sweep_min_age_seconds,
            "limit": settings.celery.sweep_batch_size,
        },
    },
}
