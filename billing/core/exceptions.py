"""Custom exceptions for the billing engine."""


class BillingException(Exception):
    """Base exception for the billing engine."""

    pass


class ValidationError(BillingException):
    """Raised when validation fails."""

    pass


class NotFoundError(BillingException):
    """Raised when a resource is not found."""

    pass


class DatabaseError(BillingException):
    """Raised when a database operation fails."""

    pass


class ServiceError(BillingException):
    """Raised when a service operation fails."""

    pass


class ConfigurationError(BillingException):
    """Raised when configuration is invalid."""

    pass


class CurrencyMismatchError(ConfigurationError):
    """Raised when a contract currency differs from the tenant default."""

    pass


class IdempotencyConflictError(BillingException):
    """Raised when an invoice already exists for a contract period."""

    def __init__(self, contract_id: int, period_start, period_end) -> None:
        super().__init__(
            f"Invoice already exists for contract {contract_id} period {period_start}..{period_end}"
        )
        self.contract_id = contract_id
        self.period_start = period_start
        self.period_end = period_end


class EntryAlreadyInvoicedError(BillingException):
    """Raised when a time entry was consumed by another invoice."""

    pass


class RenderError(BillingException):
    """Raised when the document renderer fails."""

    pass


class DeliveryError(BillingException):
    """Base class for email delivery failures."""

    def __init__(self, message: str, smtp_code: int | None = None) -> None:
        super().__init__(message)
        self.smtp_code = smtp_code


class TransientDeliveryError(DeliveryError):
    """Retryable failure: network errors and 4xx SMTP replies."""

    pass


class PermanentDeliveryError(DeliveryError):
    """Non-retryable failure: 5xx replies, auth failure, bad recipient."""

    pass


class InvalidRecipientError(PermanentDeliveryError):
    """Raised when a recipient address is malformed."""

    pass


class AmbiguousDeliveryError(DeliveryError):
    """Raised when the server may or may not have accepted the message."""

    pass
