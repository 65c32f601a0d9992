"""Decides when a recurring contract has a billing period due."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billing.core.config import Config
from billing.models import Cadence, Contract, Invoice, InvoiceStatus
from billing.utils.periods import PeriodWindow, window_containing

logger = logging.getLogger(__name__)


class RecurrenceEngine:
    """Derives the next due period from the invoice ledger.

    There is no stored cursor: the latest non-void invoice of a contract is
    the only record of how far billing has progressed, so the ledger and the
    schedule can never disagree. A window becomes due at midnight of its end
    date shifted by ``GENERATION_OFFSET_DAYS``; a negative offset generates
    before the period closes.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.offset = timedelta(days=config.GENERATION_OFFSET_DAYS)

    def last_generated_period_end(self, db: Session, contract_id: int) -> date | None:
        stmt = select(func.max(Invoice.period_end)).where(
            Invoice.contract_id == contract_id,
            Invoice.status != InvoiceStatus.VOID,
            Invoice.period_end.is_not(None),
        )
        return db.scalar(stmt)

    def window_exists(self, db: Session, contract_id: int, window: PeriodWindow) -> bool:
        stmt = select(Invoice.id).where(
            Invoice.contract_id == contract_id,
            Invoice.period_start == window.start,
            Invoice.period_end == window.end,
            Invoice.status != InvoiceStatus.VOID,
        )
        return db.scalars(stmt.limit(1)).first() is not None

    def trigger_time(self, window: PeriodWindow) -> datetime:
        return window.end_at + self.offset

    def candidate_window(self, contract: Contract, cursor: date | None) -> PeriodWindow:
        cadence = contract.effective_cadence
        anchor = contract.start_date
        interval = contract.recurrence_interval_days
        if cursor is None:
            return window_containing(cadence, anchor, anchor, interval)
        window = window_containing(cadence, cursor, anchor, interval)
        if window.start < cursor:
            # Cadence changed since the last invoice; never overlap billed days.
            window = PeriodWindow(start=cursor, end=window.end)
        return window

    def next_due(
        self,
        db: Session,
        contract: Contract,
        now: datetime,
        after: date | None = None,
    ) -> PeriodWindow | None:
        """Return the next window to bill, or None when nothing is due.

        ``after`` overrides the ledger cursor so a caller that skipped a
        window (nothing to bill) can look at the one that follows it.
        """
        if not contract.active or contract.effective_cadence == Cadence.NONE:
            return None

        cursor = after if after is not None else self.last_generated_period_end(db, contract.id)
        window = self.candidate_window(contract, cursor)

        if contract.end_date is not None and window.start >= contract.end_date:
            return None
        if now < self.trigger_time(window):
            return None
        if self.window_exists(db, contract.id, window):
            logger.debug(
                "recurrence.window_already_invoiced",
                extra={
                    "event": "recurrence.window_already_invoiced",
                    "contract_id": contract.id,
                    "period_start": window.start.isoformat(),
                    "period_end": window.end.isoformat(),
                },
            )
            return None
        return window
