"""Contract model module."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from billing.core.exceptions import ValidationError
from billing.models.base import AuditMixin, Base, enum_type
from billing.models.enums import Cadence, PricingModel


class Contract(Base, AuditMixin):
    __tablename__ = "contracts"
    __table_args__ = (Index("idx_contracts_active_recurrence", "active", "recurrence"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_num: Mapped[str | None] = mapped_column(String(64), unique=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    pricing_model: Mapped[PricingModel] = mapped_column(enum_type(PricingModel), nullable=False)
    hourly_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    fixed_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    retainer_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    retainer_cadence: Mapped[Cadence | None] = mapped_column(enum_type(Cadence))
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    recurrence: Mapped[Cadence] = mapped_column(enum_type(Cadence), default=Cadence.NONE, nullable=False)
    recurrence_interval_days: Mapped[int | None] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date)
    payment_terms_days: Mapped[int | None] = mapped_column(Integer)
    always_bill: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    minimum_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    auto_send: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    client = relationship("Client", back_populates="contracts")
    invoices = relationship("Invoice", back_populates="contract")
    time_entries = relationship("TimeEntry", back_populates="contract")

    @property
    def effective_cadence(self) -> Cadence:
        """Recurrence cadence, falling back to the retainer cadence."""
        if self.recurrence and self.recurrence != Cadence.NONE:
            return Cadence(self.recurrence)
        if self.pricing_model == PricingModel.RETAINER and self.retainer_cadence:
            return Cadence(self.retainer_cadence)
        return Cadence.NONE

    @property
    def is_recurring(self) -> bool:
        return self.effective_cadence != Cadence.NONE

    @validates("currency")
    def _validate_currency(self, _key: str, value: str) -> str:
        normalized = (value or "").strip().upper()
        if self.currency and normalized != self.currency and self.invoices:
            raise ValidationError(
                f"Contract {self.id} currency is locked to {self.currency}: invoices already exist."
            )
        return normalized
