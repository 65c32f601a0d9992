"""Celery application bootstrap."""

from __future__ import annotations

import os

from celery import Celery

from billing.core.config import Config

broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", broker_url)

celery_app = Celery("billing", broker=broker_url, backend=result_backend, include=["billing.tasks.billing_tasks"])
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # A billing cycle is idempotent, but running two at once only wastes work.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

# Local/dev convenience: run tasks synchronously when requested.
if os.getenv("CELERY_TASK_ALWAYS_EAGER", "false").lower() in {"1", "true", "yes", "on"}:
    celery_app.conf.task_always_eager = True


def configure_celery(config: Config) -> Celery:
    """Point the app at the broker from the loaded configuration."""
    celery_app.conf.update(
        broker_url=config.CELERY_BROKER_URL,
        result_backend=config.CELERY_RESULT_BACKEND,
    )
    return celery_app
