from __future__ import annotations

import smtplib
import threading
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from billing.core.exceptions import ConfigurationError, ValidationError
from billing.models import DeliveryOutcome, DeliveryStatus, Invoice, InvoiceStatus
from billing.services.delivery_service import DeliveryService
from billing.services.invoice_service import InvoiceService

PDF = b"%PDF-1.4 invoice\n%%EOF"


@pytest.fixture
def invoice(store, seed):
    company_id = seed.company()
    contract_id, client_id = seed.contract()
    with store.write("acme") as db:
        row = Invoice(
            sequence=1,
            invoice_num="INV-2024-00001",
            company_id=company_id,
            client_id=client_id,
            contract_id=contract_id,
            period_start=date(2024, 1, 1),
            period_end=date(2024, 2, 1),
            currency="USD",
            amount=Decimal("175.00"),
            issued_date=date(2024, 2, 1),
            due_date=date(2024, 3, 2),
        )
        db.add(row)
    return row


def _attempts(store, invoice_id):
    with store.session("acme") as db:
        return InvoiceService(db).list_delivery_attempts(invoice_id)


def _reload(store, invoice_id) -> Invoice:
    with store.session("acme") as db:
        return db.get(Invoice, invoice_id)


def test_success_marks_invoice_sent(config, store, invoice, make_transport):
    transport = make_transport()
    service = DeliveryService(config, store, transport=transport)

    attempt = service.send("acme", invoice, PDF, "client@example.com")

    assert attempt.outcome == DeliveryOutcome.SUCCESS
    assert attempt.attempt_number == 1
    assert len(transport.calls) == 1
    sender, recipient, payload = transport.calls[0]
    assert (sender, recipient) == ("billing@example.com", "client@example.com")
    assert b"INV-2024-00001.pdf" in payload
    stored = _reload(store, invoice.id)
    assert stored.status == InvoiceStatus.SENT
    assert stored.delivery_status == DeliveryStatus.DELIVERED


def test_permanent_550_records_one_attempt_and_keeps_status(config, store, invoice, make_transport):
    transport = make_transport([smtplib.SMTPRecipientsRefused({"client@example.com": (550, b"No such user")})])
    service = DeliveryService(config, store, transport=transport)

    attempt = service.send("acme", invoice, PDF, "client@example.com")

    assert attempt.outcome == DeliveryOutcome.PERMANENT_FAILURE
    assert attempt.smtp_code == 550
    assert len(transport.calls) == 1
    assert len(_attempts(store, invoice.id)) == 1
    stored = _reload(store, invoice.id)
    assert stored.status == InvoiceStatus.DRAFT
    assert stored.delivery_status == DeliveryStatus.FAILED


def test_transient_failures_exhaust_after_max_attempts(config, store, invoice, make_transport):
    transport = make_transport([ConnectionRefusedError("refused")] * 5)
    delays: list[float] = []
    service = DeliveryService(
        replace(config, DELIVERY_BASE_BACKOFF_SECONDS=1.5),
        store,
        transport=transport,
        sleep=delays.append,
    )

    attempt = service.send("acme", invoice, PDF, "client@example.com")

    rows = _attempts(store, invoice.id)
    assert [row.attempt_number for row in rows] == [1, 2, 3]
    assert [row.exhausted for row in rows] == [False, False, True]
    assert all(row.outcome == DeliveryOutcome.TRANSIENT_FAILURE for row in rows)
    assert attempt.exhausted is True
    assert delays == [1.5, 3.0]
    stored = _reload(store, invoice.id)
    assert stored.status == InvoiceStatus.DRAFT
    assert stored.delivery_status == DeliveryStatus.UNDELIVERED


def test_transient_then_success(config, store, invoice, make_transport):
    transport = make_transport([smtplib.SMTPDataError(451, b"try again"), None])
    service = DeliveryService(config, store, transport=transport, sleep=lambda _delay: None)

    attempt = service.send("acme", invoice, PDF, "client@example.com")

    rows = _attempts(store, invoice.id)
    assert [row.outcome for row in rows] == [DeliveryOutcome.TRANSIENT_FAILURE, DeliveryOutcome.SUCCESS]
    assert rows[0].smtp_code == 451
    assert attempt.attempt_number == 2
    assert _reload(store, invoice.id).status == InvoiceStatus.SENT


def test_auth_failure_is_permanent(config, store, invoice, make_transport):
    transport = make_transport([smtplib.SMTPAuthenticationError(535, b"bad credentials")])
    service = DeliveryService(config, store, transport=transport)

    attempt = service.send("acme", invoice, PDF, "client@example.com")

    assert attempt.outcome == DeliveryOutcome.PERMANENT_FAILURE
    assert len(transport.calls) == 1


def test_malformed_recipient_never_reaches_smtp(config, store, invoice, make_transport):
    transport = make_transport()
    service = DeliveryService(config, store, transport=transport)

    attempt = service.send("acme", invoice, PDF, "not-an-address")

    assert attempt.outcome == DeliveryOutcome.PERMANENT_FAILURE
    assert "Malformed recipient" in attempt.error_detail
    assert transport.calls == []
    assert _reload(store, invoice.id).delivery_status == DeliveryStatus.FAILED


def test_missing_smtp_host_is_recorded_as_permanent(config, store, invoice, make_transport):
    transport = make_transport([ConfigurationError("SMTP_HOST is not configured.")])
    service = DeliveryService(config, store, transport=transport)

    attempt = service.send("acme", invoice, PDF, "client@example.com")

    assert attempt.outcome == DeliveryOutcome.PERMANENT_FAILURE
    assert "SMTP_HOST" in attempt.error_detail


def test_cancellation_stops_retrying(config, store, invoice, make_transport):
    cancel = threading.Event()
    transport = make_transport([TimeoutError("timed out")] * 3)
    service = DeliveryService(config, store, transport=transport, sleep=lambda _delay: cancel.set())

    service.send("acme", invoice, PDF, "client@example.com", cancel_event=cancel)

    assert len(transport.calls) == 1
    assert _reload(store, invoice.id).delivery_status == DeliveryStatus.UNDELIVERED


def test_resend_uses_stored_document_and_continues_numbering(config, store, invoice, make_transport, tmp_path):
    document = tmp_path / "INV-2024-00001.pdf"
    document.write_bytes(PDF)
    with store.write("acme") as db:
        InvoiceService(db).attach_document(invoice.id, str(document))
    transport = make_transport([smtplib.SMTPServerDisconnected("closed")] * 3 + [None])
    service = DeliveryService(config, store, transport=transport, sleep=lambda _delay: None)
    service.send("acme", invoice, PDF, "client@example.com")
    assert _reload(store, invoice.id).delivery_status == DeliveryStatus.UNDELIVERED

    attempt = service.resend("acme", invoice.id)

    assert attempt.outcome == DeliveryOutcome.SUCCESS
    assert attempt.attempt_number == 4
    assert _reload(store, invoice.id).status == InvoiceStatus.SENT
    with pytest.raises(ValidationError, match="only drafts"):
        service.resend("acme", invoice.id)
