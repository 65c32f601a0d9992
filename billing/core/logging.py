"""Structured logging helpers for the billing engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

CONTEXT_FIELDS = (
    "tenant_id",
    "contract_id",
    "invoice_id",
    "period_start",
    "period_end",
    "run_id",
)


@dataclass(frozen=True)
class LogContext:
    """Normalized context fields expected in structured logs."""

    tenant_id: str | None = None
    contract_id: int | None = None
    invoice_id: int | None = None
    period_start: date | None = None
    period_end: date | None = None
    run_id: str | None = None


def _plain(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def build_log_event(event: str, context: LogContext, **fields: Any) -> dict[str, Any]:
    """Build a normalized structured log payload."""
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "tenant_id": context.tenant_id,
        "contract_id": context.contract_id,
        "invoice_id": context.invoice_id,
        "period_start": _plain(context.period_start),
        "period_end": _plain(context.period_end),
        "run_id": context.run_id,
    }
    payload.update({key: _plain(value) for key, value in fields.items()})
    return payload
