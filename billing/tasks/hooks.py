"""Lifecycle hooks for queue task execution."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from billing.core.logging import LogContext, build_log_event


def _context(context: dict[str, Any]) -> LogContext:
    tenant_id = context.get("tenant_id")
    return LogContext(
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        invoice_id=context.get("invoice_id"),
        run_id=context.get("run_id"),
    )


def before_task(task_key: str, context: dict[str, Any]) -> dict[str, Any]:
    """Build pre-task log payload."""
    return build_log_event(event="task.start", context=_context(context), task=task_key)


def after_task(task_key: str, context: dict[str, Any], status: str) -> dict[str, Any]:
    """Build post-task log payload."""
    return build_log_event(
        event="task.finish",
        context=_context(context),
        task=task_key,
        status=status,
        finished_at=datetime.now(timezone.utc).isoformat(),
    )
