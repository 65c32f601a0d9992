"""Per-tenant database handles with a single-writer discipline."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import and_, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from billing.core.config import Config
from billing.core.exceptions import NotFoundError, ValidationError
from billing.database.db import build_engine
from billing.models import Base, Cadence, Company, Contract, PricingModel, TimeEntry
from billing.utils.periods import PeriodWindow

logger = logging.getLogger(__name__)

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class TenantStore:
    """Owns one engine and one writer lock per tenant database.

    Each tenant database is opened once, its schema created on first use,
    and the engine reused for every later read or write. Writes for a tenant
    go through :meth:`write`, which serializes them behind the tenant lock so
    concurrent workers never interleave invoice transactions in one file.
    """

    def __init__(self, config: Config, base_dir: str | Path | None = None) -> None:
        self.config = config
        self._base_dir = Path(base_dir or config.TENANT_DB_DIR)
        self._urls: dict[str, str] = {}
        self._engines: dict[str, Engine] = {}
        self._sessionmakers: dict[str, sessionmaker] = {}
        self._write_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def _validate_tenant_id(tenant_id: str) -> str:
        if not _TENANT_ID_RE.match(tenant_id or ""):
            raise ValidationError(f"Invalid tenant id: {tenant_id!r}")
        return tenant_id

    def register(self, tenant_id: str, database_url: str | None = None) -> None:
        """Register a tenant, optionally with an explicit database URL."""
        tenant_id = self._validate_tenant_id(tenant_id)
        with self._registry_lock:
            self._urls[tenant_id] = database_url or self._default_url(tenant_id)

    def _default_url(self, tenant_id: str) -> str:
        return f"sqlite:///{self._base_dir / f'{tenant_id}.db'}"

    def list_tenants(self) -> list[str]:
        tenants = set(self._urls)
        if self._base_dir.is_dir():
            for path in self._base_dir.glob("*.db"):
                if _TENANT_ID_RE.match(path.stem):
                    tenants.add(path.stem)
        return sorted(tenants)

    def _sessionmaker(self, tenant_id: str) -> sessionmaker:
        factory = self._sessionmakers.get(tenant_id)
        if factory is not None:
            return factory

        with self._registry_lock:
            # Double-check after acquiring the registry lock.
            factory = self._sessionmakers.get(tenant_id)
            if factory is not None:
                return factory

            self._validate_tenant_id(tenant_id)
            url = self._urls.get(tenant_id) or self._default_url(tenant_id)
            if url.startswith("sqlite:///"):
                self._base_dir.mkdir(parents=True, exist_ok=True)
            engine = build_engine(url, echo=False)
            Base.metadata.create_all(bind=engine)
            factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
            self._engines[tenant_id] = engine
            self._write_locks[tenant_id] = threading.Lock()
            self._sessionmakers[tenant_id] = factory
            logger.info(
                "tenant.database.opened",
                extra={"event": "tenant.database.opened", "tenant_id": tenant_id},
            )
            return factory

    def engine(self, tenant_id: str) -> Engine:
        self._sessionmaker(tenant_id)
        return self._engines[tenant_id]

    @contextmanager
    def session(self, tenant_id: str) -> Generator[Session, None, None]:
        """Read session; callers must not commit writes through it."""
        db = self._sessionmaker(tenant_id)()
        try:
            yield db
        finally:
            db.close()

    @contextmanager
    def write(self, tenant_id: str) -> Generator[Session, None, None]:
        """Serialized write transaction for one tenant.

        Commits when the block exits cleanly and rolls back on any error, so
        partial application is never observable.
        """
        factory = self._sessionmaker(tenant_id)
        with self._write_locks[tenant_id]:
            db = factory()
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def dispose(self) -> None:
        with self._registry_lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            self._sessionmakers.clear()
            self._write_locks.clear()

    # Collaborator queries consumed by the billing core.

    def list_active_recurring_contracts(self, db: Session) -> list[Contract]:
        stmt = (
            select(Contract)
            .where(
                Contract.active.is_(True),
                or_(
                    Contract.recurrence != Cadence.NONE,
                    and_(
                        Contract.pricing_model == PricingModel.RETAINER,
                        Contract.retainer_cadence.is_not(None),
                        Contract.retainer_cadence != Cadence.NONE,
                    ),
                ),
            )
            .order_by(Contract.id)
        )
        return list(db.scalars(stmt))

    def list_uninvoiced_entries(
        self,
        db: Session,
        contract_id: int,
        window: PeriodWindow,
        billable_only: bool = True,
    ) -> list[TimeEntry]:
        conditions = [
            TimeEntry.contract_id == contract_id,
            TimeEntry.invoice_id.is_(None),
            TimeEntry.start_time >= window.start_at,
            TimeEntry.start_time < window.end_at,
            # Running timers have no duration yet and stay open for the next period.
            or_(TimeEntry.end_time.is_not(None), TimeEntry.duration_seconds.is_not(None)),
        ]
        if billable_only:
            conditions.append(TimeEntry.billable.is_(True))
        stmt = select(TimeEntry).where(*conditions).order_by(TimeEntry.start_time, TimeEntry.id)
        return list(db.scalars(stmt))

    def get_company(self, db: Session) -> Company:
        company = db.scalars(select(Company).order_by(Company.id).limit(1)).first()
        if company is None:
            raise NotFoundError("No company configured for tenant.")
        return company
