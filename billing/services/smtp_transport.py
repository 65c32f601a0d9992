"""SMTP session handling and failure classification."""

from __future__ import annotations

import logging
import smtplib
import socket
import ssl
import threading
import time
from collections.abc import Callable

from billing.core.config import Config
from billing.core.exceptions import (
    AmbiguousDeliveryError,
    ConfigurationError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from billing.models import DeliveryOutcome

logger = logging.getLogger(__name__)


def _is_transient_code(code: int | None) -> bool:
    return code is not None and 400 <= code < 500


def classify_failure(exc: BaseException) -> tuple[DeliveryOutcome, int | None]:
    """Map a send failure to a delivery outcome and the SMTP reply code, if any.

    Connection problems and 4xx replies are transient. 5xx replies, rejected
    credentials, certificate failures and local validation errors are
    permanent. A session lost after the message data was handed over is
    unknown because the server may already have queued it.
    """
    if isinstance(exc, AmbiguousDeliveryError):
        return DeliveryOutcome.UNKNOWN, exc.smtp_code
    if isinstance(exc, TransientDeliveryError):
        return DeliveryOutcome.TRANSIENT_FAILURE, exc.smtp_code
    if isinstance(exc, PermanentDeliveryError):
        return DeliveryOutcome.PERMANENT_FAILURE, exc.smtp_code
    if isinstance(exc, ConfigurationError):
        return DeliveryOutcome.PERMANENT_FAILURE, None

    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return DeliveryOutcome.PERMANENT_FAILURE, exc.smtp_code
    if isinstance(exc, smtplib.SMTPResponseException):
        if _is_transient_code(exc.smtp_code):
            return DeliveryOutcome.TRANSIENT_FAILURE, exc.smtp_code
        return DeliveryOutcome.PERMANENT_FAILURE, exc.smtp_code
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        codes = [code for code, _reply in exc.recipients.values()]
        first = codes[0] if codes else None
        if codes and all(_is_transient_code(code) for code in codes):
            return DeliveryOutcome.TRANSIENT_FAILURE, first
        return DeliveryOutcome.PERMANENT_FAILURE, first

    # Certificate errors are OSErrors too, but retrying will not fix them.
    if isinstance(exc, ssl.SSLCertVerificationError):
        return DeliveryOutcome.PERMANENT_FAILURE, None
    if isinstance(exc, smtplib.SMTPServerDisconnected):
        return DeliveryOutcome.TRANSIENT_FAILURE, None
    if isinstance(exc, smtplib.SMTPException):
        return DeliveryOutcome.PERMANENT_FAILURE, None
    if isinstance(exc, OSError):
        return DeliveryOutcome.TRANSIENT_FAILURE, None
    return DeliveryOutcome.PERMANENT_FAILURE, None


class SMTPTransport:
    """One SMTP session per message.

    With ``SMTP_USE_TLS`` the connection is TLS from the first byte and the
    certificate is verified against ``SMTP_HOST``. Credentials, when set, are
    sent with the PLAIN mechanism.
    """

    def __init__(self, config: Config, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self.clock = clock

    def _connect(self) -> smtplib.SMTP:
        host = self.config.SMTP_HOST
        if not host:
            raise ConfigurationError("SMTP_HOST is not configured.")
        timeout = self.config.SMTP_CONNECT_TIMEOUT_SECONDS
        if self.config.SMTP_USE_TLS:
            context = ssl.create_default_context()
            return smtplib.SMTP_SSL(host, self.config.SMTP_PORT, timeout=timeout, context=context)
        return smtplib.SMTP(host, self.config.SMTP_PORT, timeout=timeout)

    def _authenticate(self, server: smtplib.SMTP) -> None:
        if not self.config.SMTP_USERNAME:
            return
        server.user, server.password = self.config.SMTP_USERNAME, self.config.SMTP_PASSWORD or ""
        server.auth("PLAIN", server.auth_plain)

    def _abort(self, server: smtplib.SMTP) -> None:
        """Watchdog callback: break a session that outlived the send timeout."""
        sock = server.sock
        if sock is None:
            return
        logger.warning(
            "smtp.send_timeout",
            extra={"event": "smtp.send_timeout", "reason": f"exceeded {self.config.SMTP_SEND_TIMEOUT_SECONDS}s"},
        )
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            logger.debug("smtp.shutdown_failed", extra={"event": "smtp.shutdown_failed"})

    def send(self, sender: str, recipient: str, payload: bytes) -> None:
        """Deliver one message within ``SMTP_SEND_TIMEOUT_SECONDS`` overall.

        Every SMTP step gets only the time left before the deadline, and a
        watchdog shuts the socket down when the deadline passes mid-step. A
        deadline missed before DATA is transient; a session broken during
        DATA has an unknown outcome.
        """
        limit = self.config.SMTP_SEND_TIMEOUT_SECONDS
        deadline = self.clock() + limit
        server = self._connect()
        watchdog = threading.Timer(limit, self._abort, args=(server,))
        watchdog.daemon = True
        watchdog.start()

        def remaining() -> None:
            left = deadline - self.clock()
            if left <= 0:
                raise TransientDeliveryError(f"SMTP session to {recipient} exceeded the {limit}s send timeout.")
            if server.sock is not None:
                server.sock.settimeout(left)

        try:
            remaining()
            server.ehlo()
            remaining()
            self._authenticate(server)

            remaining()
            code, reply = server.mail(sender)
            if code != 250:
                raise smtplib.SMTPSenderRefused(code, reply, sender)
            remaining()
            code, reply = server.rcpt(recipient)
            if code not in (250, 251):
                raise smtplib.SMTPRecipientsRefused({recipient: (code, reply)})

            remaining()
            try:
                server.data(payload)
            except smtplib.SMTPResponseException:
                raise
            except (smtplib.SMTPServerDisconnected, OSError) as exc:
                raise AmbiguousDeliveryError(
                    f"Connection lost after DATA for {recipient}: {exc}"
                ) from exc
        finally:
            watchdog.cancel()
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                server.close()
