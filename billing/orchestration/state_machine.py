"""Canonical state transition helpers for invoices."""

from __future__ import annotations

from billing.models.enums import InvoiceStatus


class InvalidTransitionError(ValueError):
    """Raised when a disallowed state transition is attempted."""


class StateMachine:
    """Simple state machine over string-valued statuses."""

    def __init__(self, transitions: dict[str, set[str]]) -> None:
        self._transitions = transitions

    def can_transition(self, current: str, target: str) -> bool:
        return target in self._transitions.get(current, set())

    def assert_transition(self, current: str, target: str) -> None:
        if not self.can_transition(current=current, target=target):
            raise InvalidTransitionError(f"Transition not allowed: {current} -> {target}")


INVOICE_TRANSITIONS: dict[str, set[str]] = {
    InvoiceStatus.DRAFT.value: {InvoiceStatus.SENT.value, InvoiceStatus.VOID.value},
    InvoiceStatus.SENT.value: {InvoiceStatus.PAID.value, InvoiceStatus.OVERDUE.value, InvoiceStatus.VOID.value},
    InvoiceStatus.OVERDUE.value: {InvoiceStatus.PAID.value, InvoiceStatus.VOID.value},
    InvoiceStatus.PAID.value: set(),
    InvoiceStatus.VOID.value: set(),
}

invoice_state_machine = StateMachine(INVOICE_TRANSITIONS)
