"""Billing error taxonomy shared by services, routes and the CLI."""


class BillingError(Exception):
    """Base class for every error raised by the billing services."""

    kind = "billing_error"


class NotFoundError(BillingError):
    """Raised when a subscription, invoice, payment or log entry is missing."""

    kind = "not_found"


class InvalidStateError(BillingError):
    """Raised for a transition the current status does not allow."""

    kind = "invalid_state"


class ValidationError(BillingError):
    """Raised for bad input (negative amounts, over-refunds, missing reason)."""

    kind = "validation_error"


class ConcurrencyError(BillingError):
    """Raised when a sequence number or idempotency key collides."""

    kind = "concurrency_error"


class NotificationError(BillingError):
    """Raised by notifiers.  Always logged and swallowed by the callers."""

    kind = "notification_error"
