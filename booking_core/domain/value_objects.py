"""
Value Objects - Immutable Booking Concepts

Status enums, money conversion, customer details, status-history entries and
ledger transactions. Everything here is immutable; the aggregates in
``booking_core.domain.aggregates`` are the only things that change state.

Money is carried in integer minor units (cents, kobo, ...) everywhere inside
the core. Gateways already report minor units; manual entries and staff
quotes arrive in major units and are converted once, at the boundary.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceType(str, Enum):
    """Services a customer can request."""

    VISA_APPLICATION = "visa-application"
    FLIGHT_BOOKING = "flight-booking"
    HOTEL_BOOKING = "hotel-booking"
    CONCIERGE = "concierge"
    CORPORATE_TRAVEL = "corporate-travel"
    CONSULTATION = "consultation"
    PACKAGE_REQUEST = "package-request"

    @property
    def code(self) -> str:
        """Three-letter code used in booking reference numbers."""
        return SERVICE_CODES[self]


SERVICE_CODES: dict[ServiceType, str] = {
    ServiceType.VISA_APPLICATION: "VIS",
    ServiceType.FLIGHT_BOOKING: "FLT",
    ServiceType.HOTEL_BOOKING: "HTL",
    ServiceType.CONCIERGE: "CON",
    ServiceType.CORPORATE_TRAVEL: "CRP",
    ServiceType.CONSULTATION: "CST",
    ServiceType.PACKAGE_REQUEST: "PKG",
}


class BookingStatus(str, Enum):
    """
    Booking lifecycle states.

    State machine:
    PENDING → PROCESSING → CONFIRMED → COMPLETED
       ↓           ↓            ↓
    ON_HOLD / CANCELLED (from any non-terminal state)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on-hold"


class PaymentStatus(str, Enum):
    """Ledger status, always derived from the transaction set."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    PENDING = "pending"  # manual entry awaiting staff verification
    COMPLETED = "completed"
    REJECTED = "rejected"


class TransactionKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# ISO 4217 currencies without a minor unit (Stripe's list).
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)


def normalize_currency(currency: str) -> str:
    code = (currency or "").strip().upper()
    if not re.fullmatch(r"[A-Z]{3}", code):
        raise ValueError(f"Invalid currency code: {currency!r}")
    return code


def minor_unit_factor(currency: str) -> int:
    return 1 if normalize_currency(currency) in ZERO_DECIMAL_CURRENCIES else 100


def to_minor_units(amount: Decimal | int | float | str, currency: str) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Example: to_minor_units("12.345", "USD") == 1235, to_minor_units(500, "JPY") == 500
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    if value < 0:
        raise ValueError("Amount must not be negative")
    factor = minor_unit_factor(currency)
    return int((value * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount_cents: int, currency: str) -> Decimal:
    factor = minor_unit_factor(currency)
    if factor == 1:
        return Decimal(amount_cents)
    return (Decimal(amount_cents) / factor).quantize(Decimal("0.01"))


PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9\s\-().]{6,19}$")


class Customer(BaseModel):
    """Contact details of the person who submitted the request."""

    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: str
    address: Optional[str] = None
    nationality: Optional[str] = None
    passport_number: Optional[str] = None

    model_config = {"frozen": True, "str_strip_whitespace": True}

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not PHONE_PATTERN.match(v):
            raise ValueError("Invalid phone number format")
        return v


class StatusChange(BaseModel):
    """One entry in a booking's append-only status history."""

    previous_status: BookingStatus
    new_status: BookingStatus
    changed_by: str
    changed_at: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"frozen": True}


class Transaction(BaseModel):
    """
    A payment or refund reported by a gateway or entered by staff.

    ``transaction_id`` is the gateway's own identifier and the ledger's
    idempotency key: a re-delivered webhook carries the same id and is ignored.
    """

    transaction_id: str = Field(..., min_length=1, max_length=255)
    kind: TransactionKind = TransactionKind.PAYMENT
    amount_cents: int = Field(..., gt=0)
    currency: str
    method: str = Field(..., min_length=1)
    status: TransactionStatus = TransactionStatus.COMPLETED
    occurred_at: datetime = Field(default_factory=utcnow)
    recorded_at: Optional[datetime] = None
    notes: Optional[str] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return normalize_currency(v)

    @property
    def counts_toward_paid(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def signed_amount_cents(self) -> int:
        """Contribution to the paid amount (refunds subtract)."""
        if not self.counts_toward_paid:
            return 0
        if self.kind == TransactionKind.REFUND:
            return -self.amount_cents
        return self.amount_cents
