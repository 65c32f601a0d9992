from __future__ import annotations

import logging
from dataclasses import replace

import billing.core.startup as startup_module
from billing.services.scheduler import BillingScheduler


def test_startup_creates_directories_and_warns_without_smtp(config, tmp_path, caplog):
    cfg = replace(
        config,
        SMTP_HOST=None,
        TENANT_DB_DIR=str(tmp_path / "fresh" / "tenants"),
        INVOICE_OUTPUT_DIR=str(tmp_path / "fresh" / "invoices"),
    )

    with caplog.at_level(logging.WARNING, logger="billing.core.startup"):
        startup_module.validate_startup_config(cfg)

    assert (tmp_path / "fresh" / "tenants").is_dir()
    assert (tmp_path / "fresh" / "invoices").is_dir()
    assert any(record.getMessage() == "startup.smtp.not_configured" for record in caplog.records)


def test_bootstrap_uses_given_config(config, monkeypatch):
    calls: list[str] = []
    monkeypatch.setattr(startup_module, "configure_logging", lambda cfg: calls.append("logging"))
    monkeypatch.setattr(startup_module, "configure_celery", lambda cfg: calls.append("celery"))

    assert startup_module.bootstrap(config) is config
    assert calls == ["logging", "celery"]


def test_build_scheduler_wires_one_store(config, store):
    scheduler = startup_module.build_scheduler(config, store=store)

    assert isinstance(scheduler, BillingScheduler)
    assert scheduler.store is store
    assert scheduler.builder.store is store
    assert scheduler.delivery.store is store
    assert scheduler.config is config
