from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from billing.core.config import _build_config
from billing.database.tenant_store import TenantStore
from billing.models import Cadence, Client, Company, Contract, PricingModel, TimeEntry


@pytest.fixture
def config(tmp_path):
    return replace(
        _build_config("test"),
        TENANT_DB_DIR=str(tmp_path / "tenants"),
        INVOICE_OUTPUT_DIR=str(tmp_path / "invoices"),
        DEFAULT_CURRENCY="USD",
        DEFAULT_PAYMENT_TERMS_DAYS=30,
        GENERATION_OFFSET_DAYS=0,
        MAX_PERIODS_PER_CYCLE=24,
        WORKER_POOL_SIZE=2,
        SMTP_HOST="smtp.example.com",
        SMTP_PORT=465,
        SMTP_USERNAME="billing@example.com",
        SMTP_PASSWORD="secret",
        SMTP_USE_TLS=True,
        SMTP_FROM_EMAIL="billing@example.com",
        SMTP_FROM_NAME="Acme Studio",
        DELIVERY_MAX_ATTEMPTS=3,
        DELIVERY_BASE_BACKOFF_SECONDS=0.0,
        DELIVERY_MAX_CONCURRENCY=2,
    )


@pytest.fixture
def store(config):
    tenant_store = TenantStore(config)
    yield tenant_store
    tenant_store.dispose()


@dataclass
class Seeder:
    """Writes tenant fixtures through the store the code under test uses."""

    store: TenantStore

    def company(self, tenant_id: str = "acme", default_currency: str | None = "USD") -> int:
        with self.store.write(tenant_id) as db:
            company = Company(
                name="Acme Studio",
                email="billing@acme.example.com",
                address="1 Market Street",
                bank_name="First Bank",
                bank_account="DE89370400440532013000",
                default_currency=default_currency,
            )
            db.add(company)
            db.flush()
            return company.id

    def contract(
        self,
        tenant_id: str = "acme",
        client_email: str = "client@example.com",
        **overrides,
    ) -> tuple[int, int]:
        fields = {
            "name": "Website retainer",
            "pricing_model": PricingModel.HOURLY,
            "hourly_rate": Decimal("50.00"),
            "currency": "USD",
            "recurrence": Cadence.MONTHLY,
            "start_date": date(2024, 1, 1),
        }
        fields.update(overrides)
        with self.store.write(tenant_id) as db:
            client = Client(name="Globex", email=client_email, address="2 Side Road")
            db.add(client)
            db.flush()
            contract = Contract(client_id=client.id, **fields)
            db.add(contract)
            db.flush()
            return contract.id, client.id

    def entry(
        self,
        tenant_id: str,
        contract_id: int,
        start: datetime,
        hours: float | str,
        billable: bool = True,
    ) -> int:
        seconds = int(Decimal(str(hours)) * 3600)
        with self.store.write(tenant_id) as db:
            entry = TimeEntry(
                contract_id=contract_id,
                project_name="Website",
                start_time=start,
                end_time=start + timedelta(seconds=seconds),
                duration_seconds=seconds,
                billable=billable,
            )
            db.add(entry)
            db.flush()
            return entry.id

    def load(self, tenant_id: str, model, ident: int):
        with self.store.session(tenant_id) as db:
            return db.get(model, ident)


@pytest.fixture
def seed(store):
    return Seeder(store)


class FakeTransport:
    """Scripted SMTP transport: each call pops the next outcome.

    ``None`` means the message was accepted; an exception instance is raised.
    """

    def __init__(self, outcomes=None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[str, str, bytes]] = []

    def send(self, sender: str, recipient: str, payload: bytes) -> None:
        self.calls.append((sender, recipient, payload))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome


class FakeRenderer:
    def __init__(self, payload: bytes = b"%PDF-1.4 fake invoice\n%%EOF", error: Exception | None = None) -> None:
        self.payload = payload
        self.error = error
        self.rendered: list[str] = []

    def render(self, document) -> bytes:
        self.rendered.append(document.invoice.invoice_num)
        if self.error is not None:
            raise self.error
        return self.payload


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_renderer():
    return FakeRenderer
