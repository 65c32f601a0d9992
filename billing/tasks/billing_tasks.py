from __future__ import annotations

import logging
from typing import Any

from billing.core.config import load_config
from billing.core.startup import build_scheduler
from billing.models.base import parse_utc_timestamp
from billing.tasks.celery_app import celery_app
from billing.tasks.hooks import after_task, before_task

logger = logging.getLogger(__name__)

RUN_CYCLE_TASK = "billing.run_cycle"
RESEND_TASK = "billing.resend_invoice"


@celery_app.task(bind=True, name=RUN_CYCLE_TASK)
def run_billing_cycle(self, now: str | None = None) -> dict[str, Any]:
    """Run one billing cycle; ``now`` is an optional ISO timestamp (UTC)."""
    config = load_config()
    scheduler = build_scheduler(config)
    context = {"run_id": getattr(self.request, "id", None)}
    logger.info("task.start", extra=before_task(task_key=RUN_CYCLE_TASK, context=context))
    try:
        report = scheduler.run_cycle(now=parse_utc_timestamp(now) if now else None)
    except Exception:
        logger.exception("task.failed", extra=after_task(task_key=RUN_CYCLE_TASK, context=context, status="failed"))
        raise
    finally:
        scheduler.store.dispose()

    logger.info("task.finish", extra=after_task(task_key=RUN_CYCLE_TASK, context=context, status="succeeded"))
    return report.as_dict()


@celery_app.task(bind=True, name=RESEND_TASK)
def resend_invoice(self, tenant_id: str, invoice_id: int) -> dict[str, Any]:
    """Manually resend an undelivered invoice from its stored document."""
    config = load_config()
    scheduler = build_scheduler(config)
    context = {"tenant_id": tenant_id, "invoice_id": invoice_id, "run_id": getattr(self.request, "id", None)}
    logger.info("task.start", extra=before_task(task_key=RESEND_TASK, context=context))
    try:
        attempt = scheduler.delivery.resend(tenant_id, invoice_id)
    except Exception:
        logger.exception("task.failed", extra=after_task(task_key=RESEND_TASK, context=context, status="failed"))
        raise
    finally:
        scheduler.store.dispose()

    logger.info("task.finish", extra=after_task(task_key=RESEND_TASK, context=context, status=attempt.outcome.value))
    return {
        "tenant_id": tenant_id,
        "invoice_id": invoice_id,
        "attempt_number": attempt.attempt_number,
        "outcome": attempt.outcome.value,
        "smtp_code": attempt.smtp_code,
    }
