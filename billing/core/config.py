"""Configuration module for the billing engine."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

from billing.core.exceptions import ConfigurationError

_RUN_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    """Runtime configuration with validation."""

    APP_NAME: str
    ENV: str
    DEBUG: bool
    TENANT_DB_DIR: str
    DEFAULT_CURRENCY: str
    DEFAULT_PAYMENT_TERMS_DAYS: int
    GENERATION_OFFSET_DAYS: int
    MAX_PERIODS_PER_CYCLE: int
    WORKER_POOL_SIZE: int
    SCHEDULER_RUN_TIME: str
    SCHEDULER_INTERVAL_HOURS: int
    INVOICE_OUTPUT_DIR: str
    SMTP_HOST: str | None
    SMTP_PORT: int
    SMTP_USERNAME: str | None
    SMTP_PASSWORD: str | None
    SMTP_USE_TLS: bool
    SMTP_CONNECT_TIMEOUT_SECONDS: float
    SMTP_SEND_TIMEOUT_SECONDS: float
    SMTP_FROM_EMAIL: str
    SMTP_FROM_NAME: str
    DELIVERY_MAX_ATTEMPTS: int
    DELIVERY_BASE_BACKOFF_SECONDS: float
    DELIVERY_MAX_CONCURRENCY: int
    CELERY_BROKER_URL: str
    CELERY_RESULT_BACKEND: str
    LOG_LEVEL: str
    LOG_FILE: str

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def run_time(self) -> tuple[int, int]:
        hour, minute = self.SCHEDULER_RUN_TIME.split(":")
        return int(hour), int(minute)


def _build_config(env: str | None = None) -> Config:
    resolved_env = (env or os.getenv("ENV", "development")).strip().lower()
    debug = _as_bool(os.getenv("DEBUG"), default=(resolved_env != "production"))
    smtp_username = os.getenv("SMTP_USERNAME")

    return Config(
        APP_NAME="billing-engine",
        ENV=resolved_env,
        DEBUG=debug if resolved_env != "production" else False,
        TENANT_DB_DIR=os.getenv("TENANT_DB_DIR", "./tenants"),
        DEFAULT_CURRENCY=os.getenv("DEFAULT_CURRENCY", "USD").strip().upper(),
        DEFAULT_PAYMENT_TERMS_DAYS=int(os.getenv("DEFAULT_PAYMENT_TERMS_DAYS", "30")),
        GENERATION_OFFSET_DAYS=int(os.getenv("GENERATION_OFFSET_DAYS", "0")),
        MAX_PERIODS_PER_CYCLE=int(os.getenv("MAX_PERIODS_PER_CYCLE", "24")),
        WORKER_POOL_SIZE=int(os.getenv("WORKER_POOL_SIZE", "4")),
        SCHEDULER_RUN_TIME=os.getenv("SCHEDULER_RUN_TIME", "09:00").strip(),
        SCHEDULER_INTERVAL_HOURS=int(os.getenv("SCHEDULER_INTERVAL_HOURS", "24")),
        INVOICE_OUTPUT_DIR=os.getenv("INVOICE_OUTPUT_DIR", "./invoices"),
        SMTP_HOST=os.getenv("SMTP_HOST") or None,
        SMTP_PORT=int(os.getenv("SMTP_PORT", "465")),
        SMTP_USERNAME=smtp_username,
        SMTP_PASSWORD=os.getenv("SMTP_PASSWORD"),
        SMTP_USE_TLS=_as_bool(os.getenv("SMTP_USE_TLS"), default=True),
        SMTP_CONNECT_TIMEOUT_SECONDS=float(os.getenv("SMTP_CONNECT_TIMEOUT_SECONDS", "10")),
        SMTP_SEND_TIMEOUT_SECONDS=float(os.getenv("SMTP_SEND_TIMEOUT_SECONDS", "60")),
        SMTP_FROM_EMAIL=os.getenv("SMTP_FROM_EMAIL", smtp_username or "billing@localhost"),
        SMTP_FROM_NAME=os.getenv("SMTP_FROM_NAME", "Billing"),
        DELIVERY_MAX_ATTEMPTS=int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3")),
        DELIVERY_BASE_BACKOFF_SECONDS=float(os.getenv("DELIVERY_BASE_BACKOFF_SECONDS", "2.0")),
        DELIVERY_MAX_CONCURRENCY=int(os.getenv("DELIVERY_MAX_CONCURRENCY", "2")),
        CELERY_BROKER_URL=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
        CELERY_RESULT_BACKEND=os.getenv(
            "CELERY_RESULT_BACKEND", os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
        ),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        LOG_FILE=os.getenv("LOG_FILE", ""),
    )


def validate_config(config: Config) -> None:
    if not re.fullmatch(r"[A-Z]{3}", config.DEFAULT_CURRENCY):
        raise ConfigurationError("DEFAULT_CURRENCY must be a three-letter ISO 4217 code.")
    if config.DEFAULT_PAYMENT_TERMS_DAYS < 0:
        raise ConfigurationError("DEFAULT_PAYMENT_TERMS_DAYS must be >= 0.")
    if config.MAX_PERIODS_PER_CYCLE < 1:
        raise ConfigurationError("MAX_PERIODS_PER_CYCLE must be >= 1.")
    if config.WORKER_POOL_SIZE < 1:
        raise ConfigurationError("WORKER_POOL_SIZE must be >= 1.")
    if not _RUN_TIME_RE.match(config.SCHEDULER_RUN_TIME):
        raise ConfigurationError("SCHEDULER_RUN_TIME must use HH:MM (24h) format.")
    if config.SCHEDULER_INTERVAL_HOURS < 1:
        raise ConfigurationError("SCHEDULER_INTERVAL_HOURS must be >= 1.")
    if not 0 < config.SMTP_PORT < 65536:
        raise ConfigurationError("SMTP_PORT must be a valid TCP port.")
    if config.SMTP_CONNECT_TIMEOUT_SECONDS <= 0 or config.SMTP_SEND_TIMEOUT_SECONDS <= 0:
        raise ConfigurationError("SMTP timeouts must be > 0.")
    if config.DELIVERY_MAX_ATTEMPTS < 1:
        raise ConfigurationError("DELIVERY_MAX_ATTEMPTS must be >= 1.")
    if config.DELIVERY_BASE_BACKOFF_SECONDS < 0:
        raise ConfigurationError("DELIVERY_BASE_BACKOFF_SECONDS must be >= 0.")
    if config.DELIVERY_MAX_CONCURRENCY < 1:
        raise ConfigurationError("DELIVERY_MAX_CONCURRENCY must be >= 1.")
    if config.LOG_LEVEL not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigurationError("LOG_LEVEL must be one of DEBUG/INFO/WARNING/ERROR/CRITICAL.")


def load_config(env: str | None = None) -> Config:
    """Build the validated configuration once at process start.

    The returned value is passed explicitly to the store, the engines and
    the delivery service; nothing reads configuration from module state.
    """
    load_dotenv()
    config = _build_config(env)
    validate_config(config)
    return config
