"""Time entry model module."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing.core.exceptions import ValidationError
from billing.models.base import AuditMixin, Base


class TimeEntry(Base, AuditMixin):
    __tablename__ = "time_entries"
    __table_args__ = (
        Index("idx_time_entries_contract_start", "contract_id", "start_time"),
        Index("idx_time_entries_invoice", "invoice_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=False)
    project_name: Mapped[str | None] = mapped_column(String(255))
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime)
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    billable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="RESTRICT"))

    contract = relationship("Contract", back_populates="time_entries")
    invoice = relationship("Invoice", back_populates="time_entries")

    @property
    def effective_seconds(self) -> int:
        """Explicit duration wins; otherwise end minus start; open entries count zero."""
        if self.duration_seconds is not None:
            return max(int(self.duration_seconds), 0)
        if self.end_time is None:
            return 0
        return max(int((self.end_time - self.start_time).total_seconds()), 0)

    @property
    def is_running(self) -> bool:
        """A started timer with no end and no explicit duration."""
        return self.end_time is None and self.duration_seconds is None

    @property
    def hours(self) -> Decimal:
        return Decimal(self.effective_seconds) / Decimal(3600)

    @property
    def is_invoiced(self) -> bool:
        return self.invoice_id is not None


@event.listens_for(TimeEntry, "before_update")
def _reject_changes_to_invoiced_entries(_mapper, _connection, target: TimeEntry) -> None:
    history = inspect(target).attrs.invoice_id.history
    if history.deleted:
        previous = history.deleted[0]
    elif history.added:
        previous = None
    else:
        previous = target.invoice_id
    if previous is not None:
        raise ValidationError(f"Time entry {target.id} is attached to invoice {previous} and is immutable.")
