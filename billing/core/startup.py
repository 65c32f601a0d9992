"""Startup validation and component wiring."""

from __future__ import annotations

import logging
from pathlib import Path

from billing.core.config import Config, load_config
from billing.core.logging_config import configure_logging
from billing.database.tenant_store import TenantStore
from billing.services.delivery_service import DeliveryService
from billing.services.document_renderer import DocumentArchive, DocumentRenderer, ReportLabRenderer
from billing.services.invoice_builder import InvoiceBuilder
from billing.services.rate_engine import RateEngine
from billing.services.recurrence_engine import RecurrenceEngine
from billing.services.scheduler import BillingScheduler
from billing.services.smtp_transport import SMTPTransport
from billing.tasks.celery_app import configure_celery

logger = logging.getLogger(__name__)


def validate_startup_config(config: Config) -> None:
    """Fail-fast filesystem checks plus warnings for degraded modes."""
    for directory in (config.TENANT_DB_DIR, config.INVOICE_OUTPUT_DIR):
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        if not path.is_dir():
            raise RuntimeError(f"{directory} is not a directory.")

    if not config.SMTP_HOST:
        logger.warning(
            "startup.smtp.not_configured",
            extra={"event": "startup.smtp.not_configured", "reason": "invoices will be generated but not delivered"},
        )
    if config.SMTP_HOST and not config.SMTP_USE_TLS:
        logger.warning(
            "startup.smtp.plaintext",
            extra={"event": "startup.smtp.plaintext"},
        )

    logger.info(
        "startup.config.validated",
        extra={
            "event": "startup.config.validated",
            "status": config.ENV,
            "reason": f"workers={config.WORKER_POOL_SIZE} run_time={config.SCHEDULER_RUN_TIME}",
        },
    )


def build_scheduler(
    config: Config,
    store: TenantStore | None = None,
    transport: SMTPTransport | None = None,
    renderer: DocumentRenderer | None = None,
) -> BillingScheduler:
    """Wire the billing components around one configuration value."""
    store = store or TenantStore(config)
    recurrence = RecurrenceEngine(config)
    return BillingScheduler(
        config=config,
        store=store,
        rate_engine=RateEngine(config),
        recurrence_engine=recurrence,
        invoice_builder=InvoiceBuilder(config, store, recurrence),
        renderer=renderer or ReportLabRenderer(),
        archive=DocumentArchive(config),
        delivery_service=DeliveryService(config, store, transport=transport),
    )


def bootstrap(config: Config | None = None) -> Config:
    """Load configuration, initialize logging and validate the runtime."""
    config = config or load_config()
    configure_logging(config)
    configure_celery(config)
    validate_startup_config(config)
    return config
