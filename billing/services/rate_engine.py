"""Billable amount computation for a contract over one billing period."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from billing.core.config import Config
from billing.core.exceptions import ConfigurationError
from billing.models import Contract, PricingModel, TimeEntry
from billing.utils.money import normalize_currency, round_money, to_decimal
from billing.utils.periods import PeriodWindow

logger = logging.getLogger(__name__)

_PRICE_FIELDS = {
    PricingModel.HOURLY: "hourly_rate",
    PricingModel.FIXED_PRICE: "fixed_price",
    PricingModel.RETAINER: "retainer_amount",
}


@dataclass(frozen=True)
class RateResult:
    """Outcome of one :meth:`RateEngine.compute_amount` call."""

    amount: Decimal
    currency: str
    pricing_model: PricingModel
    rate: Decimal
    total_hours: Decimal = Decimal("0")
    consumed_entry_ids: tuple[int, ...] = field(default_factory=tuple)
    nothing_to_bill: bool = False
    minimum_applied: bool = False

    @property
    def time_amount(self) -> Decimal:
        """Hours multiplied by rate, before any minimum adjustment."""
        if self.pricing_model != PricingModel.HOURLY:
            return self.amount
        return round_money(self.total_hours * self.rate, self.currency)


def resolve_pricing(contract: Contract) -> tuple[PricingModel, Decimal]:
    """Return the single active pricing model and its price value.

    Raises ConfigurationError when the model's value is missing, negative,
    or when values for other pricing models are set at the same time.
    """
    try:
        model = PricingModel(contract.pricing_model)
    except ValueError as exc:
        raise ConfigurationError(f"Contract {contract.id} has unknown pricing model {contract.pricing_model!r}") from exc

    value = getattr(contract, _PRICE_FIELDS[model])
    if value is None:
        raise ConfigurationError(f"Contract {contract.id} is {model.value} but {_PRICE_FIELDS[model]} is not set.")
    others = [name for other, name in _PRICE_FIELDS.items() if other != model and getattr(contract, name) is not None]
    if others:
        raise ConfigurationError(
            f"Contract {contract.id} has more than one pricing model set ({model.value} plus {', '.join(others)})."
        )
    price = to_decimal(value)
    if price < 0:
        raise ConfigurationError(f"Contract {contract.id} price must be >= 0.")
    return model, price


class RateEngine:
    """Pure amount computation; marking entries invoiced happens in the builder."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config

    def compute_amount(
        self,
        contract: Contract,
        period_start: date,
        period_end: date,
        time_entries: Iterable[TimeEntry],
    ) -> RateResult:
        window = PeriodWindow(start=period_start, end=period_end)
        model, price = resolve_pricing(contract)
        fallback = self.config.DEFAULT_CURRENCY if self.config else None
        currency = normalize_currency(contract.currency or fallback)
        in_period = [
            entry
            for entry in time_entries
            if entry.contract_id == contract.id
            and entry.invoice_id is None
            and not entry.is_running
            and window.contains(entry.start_time)
        ]

        if model == PricingModel.HOURLY:
            return self._hourly(contract, price, currency, in_period)

        if model == PricingModel.FIXED_PRICE:
            consumed = tuple(entry.id for entry in in_period if entry.billable)
        else:
            consumed = tuple(entry.id for entry in in_period)
        return RateResult(
            amount=round_money(price, currency),
            currency=currency,
            pricing_model=model,
            rate=price,
            consumed_entry_ids=consumed,
        )

    def _hourly(
        self,
        contract: Contract,
        rate: Decimal,
        currency: str,
        entries: list[TimeEntry],
    ) -> RateResult:
        billable = [entry for entry in entries if entry.billable]
        total_seconds = sum(entry.effective_seconds for entry in billable)
        total_hours = Decimal(total_seconds) / Decimal(3600)
        consumed = tuple(entry.id for entry in billable)

        if total_seconds == 0 and not contract.always_bill:
            logger.debug(
                "rate.nothing_to_bill",
                extra={"event": "rate.nothing_to_bill", "contract_id": contract.id},
            )
            return RateResult(
                amount=round_money(0, currency),
                currency=currency,
                pricing_model=PricingModel.HOURLY,
                rate=rate,
                total_hours=total_hours,
                consumed_entry_ids=consumed,
                nothing_to_bill=True,
            )

        # Round once over the period total, never per entry.
        amount = round_money(total_hours * rate, currency)
        minimum_applied = False
        if contract.always_bill and contract.minimum_amount is not None:
            minimum = round_money(contract.minimum_amount, currency)
            if minimum > amount:
                amount = minimum
                minimum_applied = True

        return RateResult(
            amount=amount,
            currency=currency,
            pricing_model=PricingModel.HOURLY,
            rate=rate,
            total_hours=total_hours,
            consumed_entry_ids=consumed,
            minimum_applied=minimum_applied,
        )
