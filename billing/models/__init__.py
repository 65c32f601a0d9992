"""Modular SQLAlchemy model package for the per-tenant billing schema."""

from billing.models.base import Base
from billing.models.client import Client
from billing.models.company import Company
from billing.models.contract import Contract
from billing.models.delivery_attempt import DeliveryAttempt
from billing.models.enums import (
    Cadence,
    DeliveryOutcome,
    DeliveryStatus,
    InvoiceStatus,
    PricingModel,
)
from billing.models.invoice import Invoice
from billing.models.line_item import LineItem
from billing.models.time_entry import TimeEntry

__all__ = [
    "Base",
    "Cadence",
    "Client",
    "Company",
    "Contract",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "DeliveryStatus",
    "Invoice",
    "InvoiceStatus",
    "LineItem",
    "PricingModel",
    "TimeEntry",
]
