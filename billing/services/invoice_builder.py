"""Assembles and persists invoices for a contract billing period."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_CEILING, Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.core.config import Config
from billing.core.exceptions import (
    CurrencyMismatchError,
    DatabaseError,
    EntryAlreadyInvoicedError,
    IdempotencyConflictError,
    ValidationError,
)
from billing.core.logging import LogContext, build_log_event
from billing.database.tenant_store import TenantStore
from billing.models import Client, Company, Contract, Invoice, InvoiceStatus, LineItem, PricingModel, TimeEntry
from billing.models.base import utcnow
from billing.services.rate_engine import RateResult
from billing.services.recurrence_engine import RecurrenceEngine
from billing.utils.money import normalize_currency, round_money
from billing.utils.periods import PeriodWindow

logger = logging.getLogger(__name__)

MIN_HOURS_PLACES = 4
MAX_HOURS_PLACES = 10


@dataclass(frozen=True)
class LineItemDraft:
    item_name: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal
    description: str | None = None


def line_quantity(hours: Decimal, rate: Decimal, amount: Decimal, currency: str) -> Decimal:
    """Shortest rounding of ``hours`` for which quantity times rate still rounds to ``amount``.

    Rounding up keeps the product on the same side of a half-unit boundary
    as the exact hours, so a few extra places reproduce the amount.
    """
    for places in range(MIN_HOURS_PLACES, MAX_HOURS_PLACES + 1):
        quantity = hours.quantize(Decimal(1).scaleb(-places), rounding=ROUND_CEILING)
        if round_money(quantity * rate, currency) == amount:
            return quantity
    return quantity


def draft_line_items(contract: Contract, result: RateResult, window: PeriodWindow) -> list[LineItemDraft]:
    """Turn a rate result into invoice lines.

    Hourly contracts get a single time line whose amount is the period total
    rounded once, plus an adjustment line when a minimum applies. Fixed and
    retainer contracts get one flat line.
    """
    period = window.label()
    if result.pricing_model == PricingModel.HOURLY:
        hours = line_quantity(result.total_hours, result.rate, result.time_amount, result.currency)
        lines = [
            LineItemDraft(
                item_name=contract.name,
                description=f"{hours.normalize():f} h at {result.rate:f} {result.currency}/h, {period}",
                quantity=hours,
                rate=result.rate,
                amount=result.time_amount,
            )
        ]
        if result.minimum_applied:
            adjustment = result.amount - result.time_amount
            lines.append(
                LineItemDraft(
                    item_name="Minimum billing adjustment",
                    description=f"Contract minimum {result.amount:f} {result.currency}",
                    quantity=Decimal("1"),
                    rate=adjustment,
                    amount=adjustment,
                )
            )
        return lines

    if result.pricing_model == PricingModel.RETAINER:
        cadence = contract.effective_cadence.value.replace("_", " ")
        description = f"{cadence.capitalize()} retainer, {period}"
    else:
        description = f"Fixed price, {period}"
    return [
        LineItemDraft(
            item_name=contract.name,
            description=description,
            quantity=Decimal("1"),
            rate=result.amount,
            amount=result.amount,
        )
    ]


def format_invoice_number(sequence: int, issued: date) -> str:
    return f"INV-{issued.year}-{sequence:05d}"


class InvoiceBuilder:
    """Creates an invoice, its lines and the entry consumption in one transaction.

    The invoice number comes from a per-tenant counter read inside the same
    write transaction as the insert. A failed insert rolls back and the
    number is simply never used, so numbers never repeat but may skip.
    """

    NUMBER_ALLOCATION_ATTEMPTS = 3

    def __init__(self, config: Config, store: TenantStore, recurrence: RecurrenceEngine) -> None:
        self.config = config
        self.store = store
        self.recurrence = recurrence

    def tenant_currency(self, company: Company) -> str:
        return normalize_currency(company.default_currency or self.config.DEFAULT_CURRENCY)

    def payment_terms_days(self, contract: Contract) -> int:
        if contract.payment_terms_days is not None:
            return contract.payment_terms_days
        return self.config.DEFAULT_PAYMENT_TERMS_DAYS

    def build(
        self,
        tenant_id: str,
        contract: Contract,
        client: Client,
        amount: RateResult,
        period_window: PeriodWindow,
        line_item_source: Sequence[LineItemDraft] | None = None,
        issue_date: date | None = None,
    ) -> Invoice:
        if amount.nothing_to_bill:
            raise ValidationError(f"Contract {contract.id} has nothing to bill for {period_window.label()}.")
        if client.id != contract.client_id:
            raise ValidationError(f"Client {client.id} does not own contract {contract.id}.")

        lines = list(line_item_source) if line_item_source is not None else draft_line_items(contract, amount, period_window)
        total = round_money(sum((line.amount for line in lines), Decimal("0")), amount.currency)
        if total != amount.amount:
            raise ValidationError(f"Line items total {total} does not match amount {amount.amount}.")

        issued = issue_date or utcnow().date()
        context = LogContext(
            tenant_id=tenant_id,
            contract_id=contract.id,
            period_start=period_window.start,
            period_end=period_window.end,
        )

        for attempt in range(1, self.NUMBER_ALLOCATION_ATTEMPTS + 1):
            try:
                invoice = self._insert(tenant_id, contract, client, amount, period_window, lines, issued)
            except IntegrityError as exc:
                if self._period_taken(tenant_id, contract.id, period_window):
                    raise IdempotencyConflictError(contract.id, period_window.start, period_window.end) from exc
                if attempt == self.NUMBER_ALLOCATION_ATTEMPTS:
                    raise DatabaseError(f"Could not allocate an invoice number for contract {contract.id}.") from exc
                logger.warning(
                    "invoice.number_allocation_retry",
                    extra=build_log_event("invoice.number_allocation_retry", context, attempt=attempt),
                )
                continue

            logger.info(
                "invoice.generated",
                extra=build_log_event(
                    "invoice.generated",
                    LogContext(
                        tenant_id=tenant_id,
                        contract_id=contract.id,
                        invoice_id=invoice.id,
                        period_start=period_window.start,
                        period_end=period_window.end,
                    ),
                    invoice_num=invoice.invoice_num,
                    amount=str(invoice.amount),
                    currency=invoice.currency,
                    consumed_entries=len(amount.consumed_entry_ids),
                ),
            )
            return invoice

        raise DatabaseError(f"Could not allocate an invoice number for contract {contract.id}.")

    def _period_taken(self, tenant_id: str, contract_id: int, window: PeriodWindow) -> bool:
        with self.store.session(tenant_id) as db:
            return self.recurrence.window_exists(db, contract_id, window)

    def _next_sequence(self, db: Session) -> int:
        return (db.scalar(select(func.max(Invoice.sequence))) or 0) + 1

    def _insert(
        self,
        tenant_id: str,
        contract: Contract,
        client: Client,
        result: RateResult,
        window: PeriodWindow,
        lines: list[LineItemDraft],
        issued: date,
    ) -> Invoice:
        with self.store.write(tenant_id) as db:
            company = self.store.get_company(db)
            tenant_currency = self.tenant_currency(company)
            if result.currency != tenant_currency:
                raise CurrencyMismatchError(
                    f"Contract {contract.id} bills in {result.currency} but tenant default is {tenant_currency}."
                )
            if self.recurrence.window_exists(db, contract.id, window):
                raise IdempotencyConflictError(contract.id, window.start, window.end)

            sequence = self._next_sequence(db)
            invoice = Invoice(
                sequence=sequence,
                invoice_num=format_invoice_number(sequence, issued),
                company_id=company.id,
                client_id=client.id,
                contract_id=contract.id,
                period_start=window.start,
                period_end=window.end,
                currency=result.currency,
                amount=result.amount,
                description=f"{contract.name}: {window.label()}",
                status=InvoiceStatus.DRAFT,
                issued_date=issued,
                due_date=issued + timedelta(days=self.payment_terms_days(contract)),
            )
            invoice.line_items = [
                LineItem(
                    item_name=line.item_name,
                    description=line.description,
                    quantity=line.quantity,
                    rate=line.rate,
                    amount=line.amount,
                )
                for line in lines
            ]
            db.add(invoice)
            db.flush()

            entry_ids = list(result.consumed_entry_ids)
            if entry_ids:
                marked = db.execute(
                    update(TimeEntry)
                    .where(
                        TimeEntry.id.in_(entry_ids),
                        TimeEntry.contract_id == contract.id,
                        TimeEntry.invoice_id.is_(None),
                    )
                    .values(invoice_id=invoice.id, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if marked.rowcount != len(entry_ids):
                    raise EntryAlreadyInvoicedError(
                        f"{len(entry_ids) - marked.rowcount} of {len(entry_ids)} time entries for contract "
                        f"{contract.id} were already invoiced."
                    )
            return invoice
