"""Delivery attempt audit model module."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing.core.exceptions import ValidationError
from billing.models.base import Base, enum_type, utcnow
from billing.models.enums import DeliveryOutcome


class DeliveryAttempt(Base):
    """One SMTP send try. Rows are appended, never updated or deleted."""

    __tablename__ = "delivery_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    outcome: Mapped[DeliveryOutcome] = mapped_column(enum_type(DeliveryOutcome), nullable=False)
    smtp_code: Mapped[int | None] = mapped_column(Integer)
    error_detail: Mapped[str | None] = mapped_column(Text)
    exhausted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    invoice = relationship("Invoice", back_populates="delivery_attempts")


@event.listens_for(DeliveryAttempt, "before_update")
def _reject_attempt_update(_mapper, _connection, target: DeliveryAttempt) -> None:
    raise ValidationError(f"Delivery attempt {target.id} is append-only.")


@event.listens_for(DeliveryAttempt, "before_delete")
def _reject_attempt_delete(_mapper, _connection, target: DeliveryAttempt) -> None:
    raise ValidationError(f"Delivery attempt {target.id} is append-only.")
