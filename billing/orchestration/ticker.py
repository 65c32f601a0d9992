"""Wall-clock trigger for the billing cycle."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from billing.core.config import Config
from billing.models.base import utcnow

logger = logging.getLogger(__name__)


class Ticker:
    """Fires a callback at ``SCHEDULER_RUN_TIME`` (UTC) and every
    ``SCHEDULER_INTERVAL_HOURS`` after it.

    The firing times are anchored to the run time of the current day, so a
    24 hour interval means once a day at the run time.
    """

    def __init__(self, config: Config, clock: Callable[[], datetime] = utcnow) -> None:
        self.hour, self.minute = config.run_time
        self.interval = timedelta(hours=config.SCHEDULER_INTERVAL_HOURS)
        self.clock = clock

    def next_fire_time(self, now: datetime) -> datetime:
        anchor = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        steps = (now - anchor) // self.interval + 1
        return anchor + steps * self.interval

    def run_forever(self, stop_event: threading.Event, callback: Callable[[], Any]) -> None:
        while not stop_event.is_set():
            fire_at = self.next_fire_time(self.clock())
            delay = max(0.0, (fire_at - self.clock()).total_seconds())
            logger.info(
                "ticker.waiting",
                extra={"event": "ticker.waiting", "reason": f"next run at {fire_at.isoformat()}"},
            )
            if stop_event.wait(delay):
                break
            try:
                callback()
            except Exception:
                logger.exception("ticker.callback_failed", extra={"event": "ticker.callback_failed"})
        logger.info("ticker.stopped", extra={"event": "ticker.stopped"})
