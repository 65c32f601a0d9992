"""Deterministic validators and sanitizers used by the billing services."""

from __future__ import annotations

import re
from email.utils import parseaddr

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+'-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")
_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_text(value: str | None, max_len: int = 20000) -> str:
    """Sanitize free-form content before persistence."""
    if value is None:
        return ""
    cleaned = str(value).replace("\x00", "").strip()
    cleaned = cleaned[:max_len]
    return cleaned


def is_valid_email(address: str | None) -> bool:
    if not address:
        return False
    _name, parsed = parseaddr(address)
    if parsed != address.strip():
        return False
    return bool(_EMAIL_RE.match(parsed))


def safe_filename(value: str, default: str = "document") -> str:
    """Reduce a label to characters that are safe in file names and headers."""
    cleaned = _FILENAME_RE.sub("_", sanitize_text(value, max_len=120)).strip("._")
    return cleaned or default
