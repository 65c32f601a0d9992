from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from sqlalchemy import select

from billing.core.exceptions import RenderError
from billing.core.startup import build_scheduler
from billing.models import DeliveryAttempt, DeliveryStatus, Invoice, InvoiceStatus, PricingModel, TimeEntry

FEB_FIRST = datetime(2024, 2, 1, 9, 0)


def _invoices(store, tenant_id="acme") -> list[Invoice]:
    with store.session(tenant_id) as db:
        return list(db.scalars(select(Invoice).order_by(Invoice.sequence)))


def _attempt_count(store, tenant_id="acme") -> int:
    with store.session(tenant_id) as db:
        return len(list(db.scalars(select(DeliveryAttempt))))


def test_cycle_generates_renders_archives_and_sends(config, store, seed, make_transport, make_renderer):
    seed.company()
    contract_id, _ = seed.contract()
    seed.entry("acme", contract_id, datetime(2024, 1, 8, 9, 0), "2")
    seed.entry("acme", contract_id, datetime(2024, 1, 22, 13, 0), "1.5")
    transport = make_transport()
    scheduler = build_scheduler(config, store=store, transport=transport, renderer=make_renderer())

    report = scheduler.run_cycle(now=FEB_FIRST)

    assert (report.tenants, report.contracts, report.generated, report.delivered) == (1, 1, 1, 1)
    assert report.failed == 0
    [invoice] = _invoices(store)
    assert invoice.amount == Decimal("175.00")
    assert invoice.status == InvoiceStatus.SENT
    assert invoice.delivery_status == DeliveryStatus.DELIVERED
    assert Path(invoice.document_path) == Path(config.INVOICE_OUTPUT_DIR) / "acme" / "INV-2024-00001.pdf"
    assert Path(invoice.document_path).read_bytes().startswith(b"%PDF")
    assert transport.calls[0][1] == "client@example.com"


def test_second_run_for_same_window_creates_nothing(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("1200"))
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())

    first = scheduler.run_cycle(now=FEB_FIRST)
    second = scheduler.run_cycle(now=FEB_FIRST)

    assert first.generated == 1
    assert second.generated == 0
    assert len(_invoices(store)) == 1
    assert _attempt_count(store) == 1


def test_catch_up_generates_each_missed_window(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("100"))
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())

    report = scheduler.run_cycle(now=datetime(2024, 4, 2))

    assert report.generated == 3
    assert [(inv.period_start, inv.period_end) for inv in _invoices(store)] == [
        (date(2024, 1, 1), date(2024, 2, 1)),
        (date(2024, 2, 1), date(2024, 3, 1)),
        (date(2024, 3, 1), date(2024, 4, 1)),
    ]


def test_catch_up_is_bounded_per_cycle(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("100"))
    scheduler = build_scheduler(
        replace(config, MAX_PERIODS_PER_CYCLE=2), store=store, transport=make_transport(), renderer=make_renderer()
    )

    assert scheduler.run_cycle(now=datetime(2024, 4, 2)).generated == 2
    assert scheduler.run_cycle(now=datetime(2024, 4, 2)).generated == 1


def test_empty_hourly_window_is_skipped_not_invoiced(config, store, seed, make_transport, make_renderer):
    seed.company()
    contract_id, _ = seed.contract()
    entry_id = seed.entry("acme", contract_id, datetime(2024, 2, 12, 10, 0), "4")
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())

    report = scheduler.run_cycle(now=datetime(2024, 3, 5))

    assert report.skipped == 1
    assert report.generated == 1
    [invoice] = _invoices(store)
    assert (invoice.period_start, invoice.amount) == (date(2024, 2, 1), Decimal("200.00"))
    assert seed.load("acme", TimeEntry, entry_id).invoice_id == invoice.id


def test_contract_failure_does_not_stop_other_contracts(config, store, seed, make_transport, make_renderer):
    seed.company(default_currency="USD")
    seed.contract(
        pricing_model=PricingModel.FIXED_PRICE,
        hourly_rate=None,
        fixed_price=Decimal("100"),
        currency="EUR",
    )
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("300"))
    seed.company("globex")
    seed.contract("globex", pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("50"))
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())

    report = scheduler.run_cycle(now=FEB_FIRST)

    assert report.tenants == 2
    assert report.failed == 1
    assert report.generated == 2
    assert [inv.amount for inv in _invoices(store)] == [Decimal("300.00")]
    assert [inv.amount for inv in _invoices(store, "globex")] == [Decimal("50.00")]


def test_render_failure_leaves_draft_without_attempts(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("100"))
    transport = make_transport()
    broken = build_scheduler(
        config, store=store, transport=transport, renderer=make_renderer(error=RenderError("font missing"))
    )

    report = broken.run_cycle(now=FEB_FIRST)

    assert (report.generated, report.render_failures, report.delivered) == (1, 1, 0)
    [invoice] = _invoices(store)
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.document_path is None
    assert _attempt_count(store) == 0
    assert transport.calls == []

    repaired = build_scheduler(config, store=store, transport=transport, renderer=make_renderer())
    retry = repaired.run_cycle(now=FEB_FIRST)

    assert (retry.generated, retry.delivered) == (0, 1)
    assert _invoices(store)[0].status == InvoiceStatus.SENT


def test_failed_delivery_keeps_invoice_generated(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("100"))
    transport = make_transport([ConnectionResetError("reset")] * 3)
    scheduler = build_scheduler(config, store=store, transport=transport, renderer=make_renderer())

    report = scheduler.run_cycle(now=FEB_FIRST)

    assert (report.generated, report.delivery_failures) == (1, 1)
    [invoice] = _invoices(store)
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.delivery_status == DeliveryStatus.UNDELIVERED
    assert _attempt_count(store) == 3


def test_auto_send_disabled_only_archives(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(
        pricing_model=PricingModel.FIXED_PRICE,
        hourly_rate=None,
        fixed_price=Decimal("100"),
        auto_send=False,
    )
    transport = make_transport()
    scheduler = build_scheduler(config, store=store, transport=transport, renderer=make_renderer())

    report = scheduler.run_cycle(now=FEB_FIRST)

    [invoice] = _invoices(store)
    assert report.generated == 1
    assert invoice.document_path is not None
    assert invoice.delivery_status == DeliveryStatus.PENDING
    assert transport.calls == []


def test_cancelled_cycle_dispatches_nothing(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("100"))
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())
    cancel = threading.Event()
    cancel.set()

    report = scheduler.run_cycle(now=FEB_FIRST, cancel_event=cancel)

    assert report.cancelled is True
    assert report.generated == 0
    assert _invoices(store) == []


def test_cycle_marks_sent_invoices_overdue(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("100"))
    scheduler = build_scheduler(
        replace(config, MAX_PERIODS_PER_CYCLE=1), store=store, transport=make_transport(), renderer=make_renderer()
    )
    scheduler.run_cycle(now=FEB_FIRST)

    report = scheduler.run_cycle(now=datetime(2024, 3, 4))

    assert report.overdue == 1
    statuses = [inv.status for inv in _invoices(store)]
    assert statuses == [InvoiceStatus.OVERDUE, InvoiceStatus.SENT]


def test_running_timer_stays_open_after_cycle(config, store, seed, make_transport, make_renderer):
    seed.company()
    contract_id, _ = seed.contract()
    seed.entry("acme", contract_id, datetime(2024, 1, 8, 9, 0), "2")
    with store.write("acme") as db:
        running = TimeEntry(contract_id=contract_id, start_time=datetime(2024, 1, 31, 22, 0), billable=True)
        db.add(running)
        db.flush()
        running_id = running.id
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())

    report = scheduler.run_cycle(now=FEB_FIRST)

    [invoice] = _invoices(store)
    assert report.generated == 1
    assert invoice.amount == Decimal("100.00")
    with store.write("acme") as db:
        timer = db.get(TimeEntry, running_id)
        assert timer.invoice_id is None
        timer.end_time = datetime(2024, 2, 1, 1, 0)
    assert seed.load("acme", TimeEntry, running_id).end_time == datetime(2024, 2, 1, 1, 0)


def test_offset_aware_now_is_treated_as_utc(config, store, seed, make_transport, make_renderer):
    seed.company()
    seed.contract(pricing_model=PricingModel.FIXED_PRICE, hourly_rate=None, fixed_price=Decimal("1200"))
    scheduler = build_scheduler(config, store=store, transport=make_transport(), renderer=make_renderer())
    paris = timezone(timedelta(hours=1))

    early = scheduler.run_cycle(now=datetime(2024, 2, 1, 0, 30, tzinfo=paris))
    on_time = scheduler.run_cycle(now=datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc))

    assert (early.generated, early.failed) == (0, 0)
    assert (on_time.generated, on_time.failed) == (1, 0)
    assert _invoices(store)[0].issued_date == date(2024, 2, 1)


def test_preview_lists_due_windows_without_writing(config, store, seed, make_transport, make_renderer):
    seed.company()
    contract_id, _ = seed.contract()
    entry_id = seed.entry("acme", contract_id, datetime(2024, 1, 8, 9, 0), "2")
    transport = make_transport()
    scheduler = build_scheduler(config, store=store, transport=transport, renderer=make_renderer())

    due = scheduler.preview(now=datetime(2024, 3, 1, 9, 0))

    assert due == [
        {
            "tenant_id": "acme",
            "contract_id": contract_id,
            "period_start": "2024-01-01",
            "period_end": "2024-02-01",
            "amount": "100.00",
            "currency": "USD",
            "nothing_to_bill": False,
        },
        {
            "tenant_id": "acme",
            "contract_id": contract_id,
            "period_start": "2024-02-01",
            "period_end": "2024-03-01",
            "amount": "0.00",
            "currency": "USD",
            "nothing_to_bill": True,
        },
    ]
    assert _invoices(store) == []
    assert transport.calls == []
    assert seed.load("acme", TimeEntry, entry_id).invoice_id is None
