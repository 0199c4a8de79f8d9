"""Booking domain: aggregates, payloads, value objects and errors."""
from .aggregates import Booking, PaymentLedger, derive_payment_status
from .errors import (
    BookingError,
    BookingNotFoundError,
    BookingValidationError,
    ConcurrencyError,
    CurrencyMismatchError,
    InvalidTransitionError,
    ReferenceAllocationError,
    TransactionNotFoundError,
    UnauthorizedWebhookError,
    UnsupportedProviderError,
    WebhookError,
    WebhookProcessingError,
)
from .payloads import ServicePayload, parse_payload
from .value_objects import (
    BookingStatus,
    Customer,
    PaymentStatus,
    Priority,
    ServiceType,
    StatusChange,
    Transaction,
    TransactionKind,
    TransactionStatus,
)

__all__ = [
    "Booking",
    "BookingError",
    "BookingNotFoundError",
    "BookingStatus",
    "BookingValidationError",
    "ConcurrencyError",
    "CurrencyMismatchError",
    "Customer",
    "InvalidTransitionError",
    "PaymentLedger",
    "PaymentStatus",
    "Priority",
    "ReferenceAllocationError",
    "ServicePayload",
    "ServiceType",
    "StatusChange",
    "Transaction",
    "TransactionKind",
    "TransactionNotFoundError",
    "TransactionStatus",
    "UnauthorizedWebhookError",
    "UnsupportedProviderError",
    "WebhookError",
    "WebhookProcessingError",
    "derive_payment_status",
    "parse_payload",
]
