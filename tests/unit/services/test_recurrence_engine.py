from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal

from billing.models import Cadence, Contract, Invoice, InvoiceStatus, PricingModel
from billing.services.recurrence_engine import RecurrenceEngine
from billing.utils.periods import PeriodWindow


def _insert_invoice(store, tenant_id, company_id, client_id, contract_id, window, sequence, status=InvoiceStatus.DRAFT):
    with store.write(tenant_id) as db:
        db.add(
            Invoice(
                sequence=sequence,
                invoice_num=f"INV-2024-{sequence:05d}",
                company_id=company_id,
                client_id=client_id,
                contract_id=contract_id,
                period_start=window.start,
                period_end=window.end,
                currency="USD",
                amount=Decimal("100.00"),
                status=status,
                issued_date=window.end,
                due_date=window.end + timedelta(days=30),
            )
        )


def _load_contract(store, tenant_id, contract_id) -> Contract:
    with store.session(tenant_id) as db:
        return db.get(Contract, contract_id)


def test_first_window_is_due_once_period_has_ended(config, store, seed):
    seed.company()
    contract_id, _ = seed.contract()
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(config)

    with store.session("acme") as db:
        assert engine.next_due(db, contract, datetime(2024, 1, 31, 23, 59)) is None
        window = engine.next_due(db, contract, datetime(2024, 2, 1, 0, 0))

    assert window == PeriodWindow(date(2024, 1, 1), date(2024, 2, 1))


def test_ledger_advances_cursor_and_void_frees_window(config, store, seed):
    company_id = seed.company()
    contract_id, client_id = seed.contract()
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(config)
    january = PeriodWindow(date(2024, 1, 1), date(2024, 2, 1))
    now = datetime(2024, 3, 10, 9, 0)

    _insert_invoice(store, "acme", company_id, client_id, contract_id, january, sequence=1)
    with store.session("acme") as db:
        assert engine.last_generated_period_end(db, contract_id) == date(2024, 2, 1)
        assert engine.next_due(db, contract, now) == PeriodWindow(date(2024, 2, 1), date(2024, 3, 1))

    with store.write("acme") as db:
        db.query(Invoice).filter(Invoice.sequence == 1).update({"status": InvoiceStatus.VOID})
    with store.session("acme") as db:
        assert engine.next_due(db, contract, now) == january


def test_after_overrides_ledger_cursor(config, store, seed):
    seed.company()
    contract_id, _ = seed.contract()
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(config)

    with store.session("acme") as db:
        window = engine.next_due(db, contract, datetime(2024, 4, 2), after=date(2024, 2, 1))
        not_yet = engine.next_due(db, contract, datetime(2024, 4, 2), after=date(2024, 4, 1))

    assert window == PeriodWindow(date(2024, 2, 1), date(2024, 3, 1))
    assert not_yet is None


def test_negative_offset_generates_before_period_end(config, store, seed):
    seed.company()
    contract_id, _ = seed.contract()
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(replace(config, GENERATION_OFFSET_DAYS=-2))

    with store.session("acme") as db:
        assert engine.next_due(db, contract, datetime(2024, 1, 29, 23, 0)) is None
        assert engine.next_due(db, contract, datetime(2024, 1, 30, 0, 0)) == PeriodWindow(
            date(2024, 1, 1), date(2024, 2, 1)
        )


def test_contract_end_date_stops_recurrence(config, store, seed):
    seed.company()
    contract_id, _ = seed.contract(end_date=date(2024, 2, 1))
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(config)

    with store.session("acme") as db:
        assert engine.next_due(db, contract, datetime(2024, 6, 1), after=date(2024, 2, 1)) is None


def test_inactive_or_one_off_contract_is_never_due(config, store, seed):
    seed.company()
    inactive_id, _ = seed.contract(active=False)
    one_off_id, _ = seed.contract(recurrence=Cadence.NONE)
    engine = RecurrenceEngine(config)

    with store.session("acme") as db:
        for contract_id in (inactive_id, one_off_id):
            assert engine.next_due(db, db.get(Contract, contract_id), datetime(2025, 1, 1)) is None


def test_weekly_windows_align_to_contract_start(config, store, seed):
    seed.company()
    contract_id, _ = seed.contract(recurrence=Cadence.WEEKLY, start_date=date(2024, 1, 3))
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(config)

    with store.session("acme") as db:
        first = engine.next_due(db, contract, datetime(2024, 2, 1))
        second = engine.next_due(db, contract, datetime(2024, 2, 1), after=first.end)

    assert first == PeriodWindow(date(2024, 1, 3), date(2024, 1, 10))
    assert second == PeriodWindow(date(2024, 1, 10), date(2024, 1, 17))


def test_retainer_uses_retainer_cadence(config, store, seed):
    seed.company()
    contract_id, _ = seed.contract(
        pricing_model=PricingModel.RETAINER,
        hourly_rate=None,
        retainer_amount=Decimal("900"),
        recurrence=Cadence.NONE,
        retainer_cadence=Cadence.QUARTERLY,
    )
    contract = _load_contract(store, "acme", contract_id)
    engine = RecurrenceEngine(config)

    with store.session("acme") as db:
        window = engine.next_due(db, contract, datetime(2024, 4, 1))

    assert window == PeriodWindow(date(2024, 1, 1), date(2024, 4, 1))


def test_cadence_change_never_overlaps_billed_days(config):
    engine = RecurrenceEngine(config)
    contract = Contract(
        id=1,
        pricing_model=PricingModel.HOURLY,
        hourly_rate=Decimal("10"),
        recurrence=Cadence.MONTHLY,
        start_date=date(2024, 1, 1),
        active=True,
    )

    window = engine.candidate_window(contract, date(2024, 1, 15))

    assert window == PeriodWindow(date(2024, 1, 15), date(2024, 2, 1))
