"""Currency precision and rounding helpers."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal

from billing.core.exceptions import ConfigurationError

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

# ISO 4217 currencies whose minor unit is not 2 decimals.
MINOR_UNITS: dict[str, int] = {
    "BIF": 0,
    "CLP": 0,
    "DJF": 0,
    "GNF": 0,
    "ISK": 0,
    "JPY": 0,
    "KMF": 0,
    "KRW": 0,
    "PYG": 0,
    "RWF": 0,
    "UGX": 0,
    "VND": 0,
    "VUV": 0,
    "XAF": 0,
    "XOF": 0,
    "XPF": 0,
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
}


def normalize_currency(code: str | None) -> str:
    """Return an upper-case ISO code or raise ConfigurationError."""
    value = (code or "").strip().upper()
    if not _CURRENCY_RE.match(value):
        raise ConfigurationError(f"Invalid currency code: {code!r}")
    return value


def minor_units(currency: str) -> int:
    return MINOR_UNITS.get(normalize_currency(currency), 2)


def quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-minor_units(currency))


def to_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal | float | int | str, currency: str) -> Decimal:
    """Round half-up to the currency's minor-unit precision."""
    return to_decimal(value).quantize(quantum(currency), rounding=ROUND_HALF_UP)


def format_money(value: Decimal | float | int | str, currency: str) -> str:
    return f"{round_money(value, currency):,} {normalize_currency(currency)}"
