"""Process entrypoint: run one billing cycle, serve on a timer, or resend."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from datetime import datetime

from billing.core.startup import bootstrap, build_scheduler
from billing.models.base import parse_utc_timestamp
from billing.orchestration.ticker import Ticker

logger = logging.getLogger(__name__)


def _parse_now(value: str | None) -> datetime | None:
    return parse_utc_timestamp(value) if value else None


def run_once(now: datetime | None = None, dry_run: bool = False) -> dict:
    config = bootstrap()
    scheduler = build_scheduler(config)
    try:
        if dry_run:
            return {"dry_run": True, "due": scheduler.preview(now=now)}
        return scheduler.run_cycle(now=now).as_dict()
    finally:
        scheduler.store.dispose()


def serve() -> None:
    config = bootstrap()
    scheduler = build_scheduler(config)
    stop_event = threading.Event()

    def _stop(signum, _frame) -> None:
        logger.info("serve.stopping", extra={"event": "serve.stopping", "reason": signal.Signals(signum).name})
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    try:
        Ticker(config).run_forever(stop_event, lambda: scheduler.run_cycle(cancel_event=stop_event))
    finally:
        scheduler.store.dispose()


def resend(tenant_id: str, invoice_id: int) -> dict:
    config = bootstrap()
    scheduler = build_scheduler(config)
    try:
        attempt = scheduler.delivery.resend(tenant_id, invoice_id)
    finally:
        scheduler.store.dispose()
    return {"attempt_number": attempt.attempt_number, "outcome": attempt.outcome.value, "smtp_code": attempt.smtp_code}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Recurring invoice generation and delivery.")
    commands = parser.add_subparsers(dest="command", required=True)

    once = commands.add_parser("run-once", help="Run a single billing cycle and exit.")
    once.add_argument("--now", help="Evaluate due periods as of this ISO timestamp (UTC).")
    once.add_argument("--dry-run", action="store_true", help="List due periods without creating invoices.")

    commands.add_parser("serve", help="Run billing cycles at SCHEDULER_RUN_TIME until stopped.")

    resend_cmd = commands.add_parser("resend", help="Resend an undelivered invoice from its stored PDF.")
    resend_cmd.add_argument("tenant_id")
    resend_cmd.add_argument("invoice_id", type=int)

    args = parser.parse_args(argv)
    if args.command == "run-once":
        print(json.dumps(run_once(_parse_now(args.now), dry_run=args.dry_run), indent=2))
    elif args.command == "serve":
        serve()
    else:
        print(json.dumps(resend(args.tenant_id, args.invoice_id), indent=2))


if __name__ == "__main__":
    main()
