"""Invoice email delivery with retry bookkeeping."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from sqlalchemy import func, select

from billing.core.config import Config
from billing.core.exceptions import InvalidRecipientError, NotFoundError, ValidationError
from billing.core.logging import LogContext, build_log_event
from billing.database.tenant_store import TenantStore
from billing.models import Client, DeliveryAttempt, DeliveryOutcome, DeliveryStatus, Invoice, InvoiceStatus
from billing.models.base import utcnow
from billing.services.email_message import (
    build_invoice_message,
    invoice_html_body,
    invoice_subject,
    invoice_text_body,
    message_bytes,
)
from billing.services.invoice_service import InvoiceService
from billing.services.smtp_transport import SMTPTransport, classify_failure
from billing.utils.validators import is_valid_email, sanitize_text

logger = logging.getLogger(__name__)

_FINAL_DELIVERY_STATUS = {
    DeliveryOutcome.PERMANENT_FAILURE: DeliveryStatus.FAILED,
    DeliveryOutcome.TRANSIENT_FAILURE: DeliveryStatus.UNDELIVERED,
    DeliveryOutcome.UNKNOWN: DeliveryStatus.UNKNOWN,
}


class DeliveryService:
    """Sends invoice emails and records every attempt.

    Each SMTP try appends one ``DeliveryAttempt`` row. Transient failures are
    retried with exponential backoff up to ``DELIVERY_MAX_ATTEMPTS``; the row
    for the final transient try is flagged ``exhausted``. Only a successful
    send moves the invoice to ``sent``; any other ending leaves the status
    alone and records the result in ``delivery_status``.
    """

    def __init__(
        self,
        config: Config,
        store: TenantStore,
        transport: SMTPTransport | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.transport = transport or SMTPTransport(config)
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(config.DELIVERY_MAX_CONCURRENCY)

    def send(
        self,
        tenant_id: str,
        invoice: Invoice,
        pdf_bytes: bytes,
        recipient: str,
        html_body: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DeliveryAttempt:
        recipient = (recipient or "").strip()
        context = LogContext(
            tenant_id=tenant_id,
            contract_id=invoice.contract_id,
            invoice_id=invoice.id,
            period_start=invoice.period_start,
            period_end=invoice.period_end,
        )
        prior = self._attempt_count(tenant_id, invoice.id)

        if not is_valid_email(recipient):
            error = InvalidRecipientError(f"Malformed recipient address: {recipient!r}")
            return self._record(
                tenant_id,
                invoice.id,
                prior + 1,
                recipient,
                DeliveryOutcome.PERMANENT_FAILURE,
                None,
                str(error),
                exhausted=False,
                final=True,
                context=context,
            )

        sender_name = self.config.SMTP_FROM_NAME
        payload = message_bytes(
            build_invoice_message(
                sender_email=self.config.SMTP_FROM_EMAIL,
                sender_name=sender_name,
                recipient=recipient,
                subject=invoice_subject(invoice, sender_name),
                invoice_num=invoice.invoice_num,
                pdf_bytes=pdf_bytes,
                text_body=invoice_text_body(invoice, sender_name),
                html_body=html_body,
            )
        )

        max_attempts = self.config.DELIVERY_MAX_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            outcome, smtp_code, detail = self._try_send(recipient, payload)
            cancelled = cancel_event is not None and cancel_event.is_set()
            exhausted = outcome == DeliveryOutcome.TRANSIENT_FAILURE and (attempt == max_attempts or cancelled)
            final = outcome != DeliveryOutcome.TRANSIENT_FAILURE or exhausted
            row = self._record(
                tenant_id,
                invoice.id,
                prior + attempt,
                recipient,
                outcome,
                smtp_code,
                detail,
                exhausted=exhausted,
                final=final,
                context=context,
            )
            if final:
                return row

            delay = max(0.0, self.config.DELIVERY_BASE_BACKOFF_SECONDS) * (2 ** (attempt - 1))
            if self._wait(delay, cancel_event):
                logger.warning(
                    "delivery.cancelled",
                    extra=build_log_event("delivery.cancelled", context, attempt=attempt),
                )
                self._finish(tenant_id, invoice.id, DeliveryOutcome.TRANSIENT_FAILURE)
                return row
        return row

    def resend(self, tenant_id: str, invoice_id: int, cancel_event: threading.Event | None = None) -> DeliveryAttempt:
        """Send a generated but undelivered invoice again from its stored PDF."""
        with self.store.session(tenant_id) as db:
            invoice = InvoiceService(db).require_invoice(invoice_id)
            if invoice.status != InvoiceStatus.DRAFT:
                raise ValidationError(f"Invoice {invoice_id} is {invoice.status.value}; only drafts can be resent.")
            if not invoice.document_path:
                raise NotFoundError(f"Invoice {invoice_id} has no stored document.")
            client = db.get(Client, invoice.client_id)
            if client is None:
                raise NotFoundError(f"Client {invoice.client_id} not found.")
            recipient = client.email

        pdf_bytes = Path(invoice.document_path).read_bytes()
        logger.info(
            "delivery.resend",
            extra={"event": "delivery.resend", "tenant_id": tenant_id, "invoice_id": invoice_id},
        )
        return self.send(
            tenant_id,
            invoice,
            pdf_bytes,
            recipient,
            html_body=invoice_html_body(invoice, self.config.SMTP_FROM_NAME),
            cancel_event=cancel_event,
        )

    def _try_send(self, recipient: str, payload: bytes) -> tuple[DeliveryOutcome, int | None, str | None]:
        try:
            with self._slots:
                self.transport.send(self.config.SMTP_FROM_EMAIL, recipient, payload)
        except Exception as exc:
            outcome, smtp_code = classify_failure(exc)
            return outcome, smtp_code, sanitize_text(f"{exc.__class__.__name__}: {exc}", 2000)
        return DeliveryOutcome.SUCCESS, None, None

    def _wait(self, delay: float, cancel_event: threading.Event | None) -> bool:
        """Back off for ``delay`` seconds; True when cancellation was requested."""
        if self._sleep is not None:
            self._sleep(delay)
            return cancel_event is not None and cancel_event.is_set()
        if cancel_event is not None:
            return cancel_event.wait(delay)
        if delay > 0:
            time.sleep(delay)
        return False

    def _attempt_count(self, tenant_id: str, invoice_id: int) -> int:
        with self.store.session(tenant_id) as db:
            stmt = select(func.count(DeliveryAttempt.id)).where(DeliveryAttempt.invoice_id == invoice_id)
            return db.scalar(stmt) or 0

    def _record(
        self,
        tenant_id: str,
        invoice_id: int,
        attempt_number: int,
        recipient: str,
        outcome: DeliveryOutcome,
        smtp_code: int | None,
        detail: str | None,
        *,
        exhausted: bool,
        final: bool,
        context: LogContext,
    ) -> DeliveryAttempt:
        with self.store.write(tenant_id) as db:
            row = DeliveryAttempt(
                invoice_id=invoice_id,
                attempt_number=attempt_number,
                attempted_at=utcnow(),
                recipient=sanitize_text(recipient, 320),
                outcome=outcome,
                smtp_code=smtp_code,
                error_detail=detail,
                exhausted=exhausted,
            )
            db.add(row)
            if final:
                self._apply_outcome(InvoiceService(db), invoice_id, outcome)

        level = logging.INFO if outcome == DeliveryOutcome.SUCCESS else logging.WARNING
        logger.log(
            level,
            "delivery.attempt",
            extra=build_log_event(
                "delivery.attempt",
                context,
                attempt=attempt_number,
                outcome=outcome.value,
                smtp_code=smtp_code,
                exhausted=exhausted,
                reason=detail,
            ),
        )
        return row

    def _finish(self, tenant_id: str, invoice_id: int, outcome: DeliveryOutcome) -> None:
        with self.store.write(tenant_id) as db:
            self._apply_outcome(InvoiceService(db), invoice_id, outcome)

    @staticmethod
    def _apply_outcome(service: InvoiceService, invoice_id: int, outcome: DeliveryOutcome) -> None:
        if outcome == DeliveryOutcome.SUCCESS:
            service.mark_sent(invoice_id)
        else:
            service.set_delivery_status(invoice_id, _FINAL_DELIVERY_STATUS[outcome])
