"""Document snapshots handed to renderers and mail templates."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class PartySnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    email: str
    address: str | None = None
    tax_id: str | None = None
    phone: str | None = None
    bank_name: str | None = None
    bank_account: str | None = None
    bank_swift: str | None = None


class LineItemSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_name: str
    description: str | None = None
    quantity: Decimal
    rate: Decimal
    amount: Decimal


class InvoiceSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_num: str = Field(min_length=1, max_length=64)
    currency: str = Field(min_length=3, max_length=3)
    amount: Decimal
    description: str | None = None
    issued_date: date
    due_date: date
    period_start: date | None = None
    period_end: date | None = None


class InvoiceDocument(BaseModel):
    """Everything a renderer needs, detached from the ORM session."""

    invoice: InvoiceSnapshot
    company: PartySnapshot
    client: PartySnapshot
    line_items: list[LineItemSnapshot]

    @classmethod
    def from_invoice(cls, invoice, company, client) -> "InvoiceDocument":
        return cls(
            invoice=InvoiceSnapshot.model_validate(invoice),
            company=PartySnapshot.model_validate(company),
            client=PartySnapshot.model_validate(client),
            line_items=[LineItemSnapshot.model_validate(item) for item in invoice.line_items],
        )
