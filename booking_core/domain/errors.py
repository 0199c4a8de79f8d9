"""Domain errors for booking, ledger and webhook operations."""
from __future__ import annotations

from typing import Any


class BookingError(Exception):
    """Domain error for booking operations."""

    def __init__(self, message: str, booking_id: str | None = None):
        self.booking_id = booking_id
        super().__init__(message)


class BookingValidationError(BookingError):
    """
    Raised when submitted booking data fails required/type/range checks.

    Carries field-level detail so the submitting client can fix its input:
    ``[{"field": "payload.check_out", "message": "..."}]``.
    """

    def __init__(
        self,
        message: str,
        field_errors: list[dict[str, Any]] | None = None,
        booking_id: str | None = None,
    ):
        self.field_errors = field_errors or []
        super().__init__(message, booking_id=booking_id)


class CurrencyMismatchError(BookingValidationError):
    """Raised when a transaction currency differs from the ledger currency."""

    def __init__(self, expected: str, actual: str, booking_id: str | None = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Transaction currency {actual} does not match ledger currency {expected}",
            field_errors=[{"field": "currency", "message": f"must be {expected}"}],
            booking_id=booking_id,
        )


class InvalidTransitionError(BookingError):
    """Raised when a status change is not allowed by the booking state machine."""

    def __init__(self, current: str, target: str, booking_id: str | None = None):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition booking from {current} to {target}",
            booking_id=booking_id,
        )


class BookingNotFoundError(BookingError):
    """Raised when a booking id does not resolve to a stored booking."""

    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found", booking_id=booking_id)


class TransactionNotFoundError(BookingError):
    """Raised when a ledger operation names a transaction that was never recorded."""

    def __init__(self, transaction_id: str, booking_id: str | None = None):
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} not found in ledger",
            booking_id=booking_id,
        )


class ConcurrencyError(BookingError):
    """
    Raised when an optimistic concurrency check fails.

    The writer read an older version than the one stored; it must re-read
    and retry. Neither write is dropped silently.
    """

    def __init__(self, aggregate_id: str, expected: int, current: int | None):
        self.aggregate_id = aggregate_id
        self.expected_version = expected
        self.current_version = current
        super().__init__(
            f"Concurrency conflict for {aggregate_id}: "
            f"expected version {expected}, current version {current}",
            booking_id=aggregate_id,
        )


class ReferenceAllocationError(BookingError):
    """Raised when a booking reference cannot be allocated atomically."""

    pass


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(message)


class UnauthorizedWebhookError(WebhookError):
    """Raised when a webhook signature does not verify against the shared secret."""

    pass


class UnsupportedProviderError(WebhookError):
    """Raised when a webhook names a gateway that is not configured."""

    pass


class WebhookProcessingError(WebhookError):
    """
    Raised when an authenticated webhook could not be applied and a
    redelivery from the provider may succeed.
    """

    pass
