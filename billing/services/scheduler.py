"""Billing cycle orchestration across tenants and contracts."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, fields
from datetime import datetime

from sqlalchemy import select

from billing.core.config import Config
from billing.core.exceptions import IdempotencyConflictError, NotFoundError, RenderError
from billing.core.logging import LogContext, build_log_event
from billing.database.tenant_store import TenantStore
from billing.models import Client, Contract, DeliveryOutcome, Invoice, InvoiceStatus
from billing.models.base import as_naive_utc, utcnow
from billing.schemas.documents import InvoiceDocument
from billing.services.delivery_service import DeliveryService
from billing.services.document_renderer import DocumentArchive, DocumentRenderer
from billing.services.email_message import invoice_html_body
from billing.services.invoice_builder import InvoiceBuilder
from billing.services.invoice_service import InvoiceService
from billing.services.rate_engine import RateEngine
from billing.services.recurrence_engine import RecurrenceEngine
from billing.utils.periods import PeriodWindow

logger = logging.getLogger(__name__)


@dataclass
class ContractReport:
    generated: int = 0
    skipped: int = 0
    conflicts: int = 0
    failed: int = 0
    render_failures: int = 0
    delivered: int = 0
    delivery_failures: int = 0


@dataclass
class CycleReport:
    """Counters for one scheduler cycle."""

    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    tenants: int = 0
    contracts: int = 0
    generated: int = 0
    skipped: int = 0
    conflicts: int = 0
    failed: int = 0
    render_failures: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    overdue: int = 0
    cancelled: bool = False
    failed_tenants: list[str] = field(default_factory=list)

    def add(self, contract_report: ContractReport) -> None:
        self.contracts += 1
        for item in fields(ContractReport):
            setattr(self, item.name, getattr(self, item.name) + getattr(contract_report, item.name))

    def as_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "tenants": self.tenants,
            "contracts": self.contracts,
            "generated": self.generated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "failed": self.failed,
            "render_failures": self.render_failures,
            "delivered": self.delivered,
            "delivery_failures": self.delivery_failures,
            "overdue": self.overdue,
            "cancelled": self.cancelled,
            "failed_tenants": list(self.failed_tenants),
        }


class BillingScheduler:
    """Runs one billing cycle: generate due invoices, publish them, age the ledger.

    Contracts are processed on a bounded worker pool. A failure in one
    contract is logged with its tenant, contract and period and counted; it
    never stops the other contracts or tenants in the same cycle. Setting the
    cancel event stops new work from being dispatched while in-flight
    contracts finish their current invoice.
    """

    def __init__(
        self,
        config: Config,
        store: TenantStore,
        rate_engine: RateEngine,
        recurrence_engine: RecurrenceEngine,
        invoice_builder: InvoiceBuilder,
        renderer: DocumentRenderer,
        archive: DocumentArchive,
        delivery_service: DeliveryService,
    ) -> None:
        self.config = config
        self.store = store
        self.rate_engine = rate_engine
        self.recurrence = recurrence_engine
        self.builder = invoice_builder
        self.renderer = renderer
        self.archive = archive
        self.delivery = delivery_service

    def run_cycle(self, now: datetime | None = None, cancel_event: threading.Event | None = None) -> CycleReport:
        now = as_naive_utc(now or utcnow())
        cancel_event = cancel_event or threading.Event()
        report = CycleReport(run_id=f"run-{uuid.uuid4().hex}", started_at=utcnow())
        context = LogContext(run_id=report.run_id)
        logger.info("scheduler.cycle.started", extra=build_log_event("scheduler.cycle.started", context))

        processed_tenants: list[str] = []
        with ThreadPoolExecutor(max_workers=self.config.WORKER_POOL_SIZE, thread_name_prefix="billing") as pool:
            futures = []
            for tenant_id in self.store.list_tenants():
                if cancel_event.is_set():
                    break
                try:
                    with self.store.session(tenant_id) as db:
                        contract_ids = [contract.id for contract in self.store.list_active_recurring_contracts(db)]
                except Exception as exc:
                    report.failed_tenants.append(tenant_id)
                    logger.exception(
                        "scheduler.tenant_failed",
                        extra=build_log_event(
                            "scheduler.tenant_failed",
                            LogContext(tenant_id=tenant_id, run_id=report.run_id),
                            reason=str(exc),
                        ),
                    )
                    continue

                report.tenants += 1
                processed_tenants.append(tenant_id)
                for contract_id in contract_ids:
                    if cancel_event.is_set():
                        break
                    futures.append(
                        pool.submit(self.process_contract, tenant_id, contract_id, now, report.run_id, cancel_event)
                    )

            for future in as_completed(futures):
                report.add(future.result())

        report.cancelled = cancel_event.is_set()
        if not report.cancelled:
            for tenant_id in processed_tenants:
                report.overdue += self._mark_overdue(tenant_id, now, report.run_id)

        report.finished_at = utcnow()
        logger.info(
            "scheduler.cycle.finished",
            extra=build_log_event(
                "scheduler.cycle.finished",
                context,
                status="cancelled" if report.cancelled else "ok",
                summary=report.as_dict(),
            ),
        )
        return report

    def preview(self, now: datetime | None = None) -> list[dict]:
        """List the windows a cycle at ``now`` would bill, without writing anything."""
        now = as_naive_utc(now or utcnow())
        due: list[dict] = []
        for tenant_id in self.store.list_tenants():
            with self.store.session(tenant_id) as db:
                for contract in self.store.list_active_recurring_contracts(db):
                    try:
                        due.extend(self._preview_contract(db, tenant_id, contract, now))
                    except Exception as exc:
                        logger.exception(
                            "scheduler.preview_failed",
                            extra=build_log_event(
                                "scheduler.preview_failed",
                                LogContext(tenant_id=tenant_id, contract_id=contract.id),
                                reason=str(exc),
                            ),
                        )
                        due.append(
                            {
                                "tenant_id": tenant_id,
                                "contract_id": contract.id,
                                "error": f"{exc.__class__.__name__}: {exc}",
                            }
                        )
        return due

    def _preview_contract(self, db, tenant_id: str, contract: Contract, now: datetime) -> list[dict]:
        windows: list[dict] = []
        cursor = None
        billable = 0
        while billable < self.config.MAX_PERIODS_PER_CYCLE:
            window = self.recurrence.next_due(db, contract, now, after=cursor)
            if window is None:
                break
            cursor = window.end
            entries = self.store.list_uninvoiced_entries(db, contract.id, window, billable_only=False)
            result = self.rate_engine.compute_amount(contract, window.start, window.end, entries)
            if not result.nothing_to_bill:
                billable += 1
            windows.append(
                {
                    "tenant_id": tenant_id,
                    "contract_id": contract.id,
                    "period_start": window.start.isoformat(),
                    "period_end": window.end.isoformat(),
                    "amount": str(result.amount),
                    "currency": result.currency,
                    "nothing_to_bill": result.nothing_to_bill,
                }
            )
        return windows

    def process_contract(
        self,
        tenant_id: str,
        contract_id: int,
        now: datetime,
        run_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ContractReport:
        """Generate and publish every due invoice of one contract.

        Never raises; failures are logged with the window being processed and
        counted in the returned report, and the window is retried next cycle.
        """
        now = as_naive_utc(now)
        report = ContractReport()
        context = LogContext(tenant_id=tenant_id, contract_id=contract_id, run_id=run_id)
        try:
            with self.store.session(tenant_id) as db:
                contract = db.get(Contract, contract_id)
                if contract is None:
                    raise NotFoundError(f"Contract {contract_id} not found.")
                client = db.get(Client, contract.client_id)
                if client is None:
                    raise NotFoundError(f"Client {contract.client_id} not found.")
                unpublished = list(
                    db.scalars(
                        select(Invoice.id)
                        .where(
                            Invoice.contract_id == contract_id,
                            Invoice.status == InvoiceStatus.DRAFT,
                            Invoice.document_path.is_(None),
                        )
                        .order_by(Invoice.sequence)
                    )
                )

            # Drafts whose document failed to render in an earlier cycle.
            for invoice_id in unpublished:
                self._publish(tenant_id, invoice_id, contract, client, run_id, cancel_event, report)

            cursor = None
            while report.generated < self.config.MAX_PERIODS_PER_CYCLE:
                if cancel_event is not None and cancel_event.is_set():
                    break
                with self.store.session(tenant_id) as db:
                    window = self.recurrence.next_due(db, contract, now, after=cursor)
                    if window is None:
                        break
                    entries = self.store.list_uninvoiced_entries(db, contract.id, window, billable_only=False)
                cursor = window.end
                context = self._context(tenant_id, contract.id, window, run_id)

                result = self.rate_engine.compute_amount(contract, window.start, window.end, entries)
                if result.nothing_to_bill:
                    report.skipped += 1
                    logger.info("scheduler.window_skipped", extra=build_log_event("scheduler.window_skipped", context))
                    continue
                try:
                    invoice = self.builder.build(tenant_id, contract, client, result, window, issue_date=now.date())
                except IdempotencyConflictError:
                    # Another worker generated this window first.
                    report.conflicts += 1
                    logger.info(
                        "scheduler.window_already_generated",
                        extra=build_log_event("scheduler.window_already_generated", context),
                    )
                    continue

                report.generated += 1
                self._publish(tenant_id, invoice.id, contract, client, run_id, cancel_event, report)
        except Exception as exc:
            report.failed += 1
            logger.exception(
                "scheduler.contract_failed",
                extra=build_log_event(
                    "scheduler.contract_failed",
                    context,
                    reason=f"{exc.__class__.__name__}: {exc}",
                ),
            )
        return report

    def _publish(
        self,
        tenant_id: str,
        invoice_id: int,
        contract: Contract,
        client: Client,
        run_id: str | None,
        cancel_event: threading.Event | None,
        report: ContractReport,
    ) -> None:
        with self.store.session(tenant_id) as db:
            invoice = db.get(Invoice, invoice_id)
            company = self.store.get_company(db)
            document = InvoiceDocument.from_invoice(invoice, company, client)
        window = PeriodWindow(invoice.period_start, invoice.period_end) if invoice.period_start else None
        context = LogContext(
            tenant_id=tenant_id,
            contract_id=contract.id,
            invoice_id=invoice_id,
            period_start=window.start if window else None,
            period_end=window.end if window else None,
            run_id=run_id,
        )

        try:
            pdf_bytes = self.renderer.render(document)
        except RenderError as exc:
            report.render_failures += 1
            logger.error(
                "scheduler.render_failed",
                extra=build_log_event("scheduler.render_failed", context, reason=str(exc)),
            )
            return

        path = self.archive.store(tenant_id, invoice.invoice_num, pdf_bytes)
        with self.store.write(tenant_id) as db:
            invoice = InvoiceService(db).attach_document(invoice_id, str(path))

        if not contract.auto_send:
            return
        if not client.email:
            logger.warning(
                "scheduler.no_recipient",
                extra=build_log_event("scheduler.no_recipient", context),
            )
            return

        attempt = self.delivery.send(
            tenant_id,
            invoice,
            pdf_bytes,
            client.email,
            html_body=invoice_html_body(invoice, self.config.SMTP_FROM_NAME),
            cancel_event=cancel_event,
        )
        if attempt.outcome == DeliveryOutcome.SUCCESS:
            report.delivered += 1
        else:
            report.delivery_failures += 1

    def _mark_overdue(self, tenant_id: str, now: datetime, run_id: str) -> int:
        try:
            with self.store.write(tenant_id) as db:
                return len(InvoiceService(db).mark_overdue(now.date()))
        except Exception as exc:
            logger.exception(
                "scheduler.overdue_failed",
                extra=build_log_event(
                    "scheduler.overdue_failed",
                    LogContext(tenant_id=tenant_id, run_id=run_id),
                    reason=str(exc),
                ),
            )
            return 0

    @staticmethod
    def _context(tenant_id: str, contract_id: int, window: PeriodWindow, run_id: str | None) -> LogContext:
        return LogContext(
            tenant_id=tenant_id,
            contract_id=contract_id,
            period_start=window.start,
            period_end=window.end,
            run_id=run_id,
        )
