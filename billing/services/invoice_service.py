"""Invoice service for lifecycle transitions on persisted invoices."""

from __future__ import annotations

from datetime import date

from sqlalchemy import select

from billing.core.exceptions import NotFoundError
from billing.models import DeliveryAttempt, DeliveryStatus, Invoice, InvoiceStatus
from billing.models.base import utcnow
from billing.orchestration.state_machine import invoice_state_machine
from billing.services.base_service import BaseService


class InvoiceService(BaseService):
    """Service for invoice status, delivery state and document bookkeeping.

    Invoices are never deleted; every change is a status transition checked
    against the invoice state machine.
    """

    def get_invoice(self, invoice_id: int) -> Invoice | None:
        return self.db.get(Invoice, invoice_id)

    def require_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found.")
        return invoice

    def list_by_status(self, status: InvoiceStatus) -> list[Invoice]:
        stmt = select(Invoice).where(Invoice.status == status).order_by(Invoice.sequence)
        return list(self.db.scalars(stmt))

    def list_by_delivery_status(self, delivery_status: DeliveryStatus) -> list[Invoice]:
        stmt = select(Invoice).where(Invoice.delivery_status == delivery_status).order_by(Invoice.sequence)
        return list(self.db.scalars(stmt))

    def list_delivery_attempts(self, invoice_id: int) -> list[DeliveryAttempt]:
        stmt = select(DeliveryAttempt).where(DeliveryAttempt.invoice_id == invoice_id).order_by(DeliveryAttempt.id)
        return list(self.db.scalars(stmt))

    def _transition(self, invoice: Invoice, target: InvoiceStatus) -> None:
        invoice_state_machine.assert_transition(InvoiceStatus(invoice.status).value, target.value)
        invoice.status = target

    def mark_sent(self, invoice_id: int) -> Invoice:
        invoice = self.require_invoice(invoice_id)
        self._transition(invoice, InvoiceStatus.SENT)
        invoice.delivery_status = DeliveryStatus.DELIVERED
        invoice.sent_at = utcnow()
        self.flush()
        return invoice

    def mark_paid(self, invoice_id: int) -> Invoice:
        invoice = self.require_invoice(invoice_id)
        self._transition(invoice, InvoiceStatus.PAID)
        invoice.paid_at = utcnow()
        self.flush()
        return invoice

    def void(self, invoice_id: int) -> Invoice:
        """Void an invoice. Its consumed time entries stay consumed."""
        invoice = self.require_invoice(invoice_id)
        self._transition(invoice, InvoiceStatus.VOID)
        self.flush()
        return invoice

    def mark_overdue(self, today: date) -> list[Invoice]:
        stmt = select(Invoice).where(Invoice.status == InvoiceStatus.SENT, Invoice.due_date < today)
        overdue = list(self.db.scalars(stmt))
        for invoice in overdue:
            self._transition(invoice, InvoiceStatus.OVERDUE)
        if overdue:
            self.flush()
        return overdue

    def set_delivery_status(self, invoice_id: int, delivery_status: DeliveryStatus) -> Invoice:
        invoice = self.require_invoice(invoice_id)
        invoice.delivery_status = delivery_status
        self.flush()
        return invoice

    def attach_document(self, invoice_id: int, document_path: str) -> Invoice:
        invoice = self.require_invoice(invoice_id)
        invoice.document_path = document_path
        self.flush()
        return invoice
