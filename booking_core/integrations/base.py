"""
Gateway contract shared by the Stripe and Paystack adapters.

Adapters authenticate and translate provider payloads into ``GatewayEvent`` /
``GatewayCharge``; they never touch bookings. Mapping a charge onto a ledger
transaction is the same for every provider.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from booking_core.config import Settings
from booking_core.domain.value_objects import Transaction, TransactionStatus, utcnow


class GatewayError(Exception):
    """
    Outbound gateway call failed.

    ``transient`` errors (network, rate limit, provider 5xx) are retried;
    the rest (bad request, declined card, bad credentials) are not.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        transient: bool = False,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.transient = transient
        self.original_error = original_error


def is_transient(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.transient


@dataclass(frozen=True)
class GatewayCharge:
    """A charge as the provider reports it. Amounts are already minor units."""

    provider: str
    transaction_id: str
    amount_cents: int
    currency: str
    succeeded: bool
    booking_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_transaction(self, notes: Optional[str] = None) -> Transaction:
        return Transaction(
            transaction_id=self.transaction_id,
            amount_cents=self.amount_cents,
            currency=self.currency.upper(),
            method=self.provider,
            status=TransactionStatus.COMPLETED,
            occurred_at=self.occurred_at,
            notes=notes,
        )


@dataclass(frozen=True)
class GatewayEvent:
    """An authenticated webhook event; ``charge`` is set for success events only."""

    provider: str
    event_id: str
    event_type: str
    charge: Optional[GatewayCharge] = None

    @property
    def is_payment_success(self) -> bool:
        return self.charge is not None and self.charge.succeeded


class PaymentGateway(Protocol):
    name: str

    def parse_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        """
        Authenticate and decode a webhook body.

        Raises:
            UnauthorizedWebhookError: missing or invalid signature
        """
        ...

    async def fetch_charge(self, charge_id: str) -> GatewayCharge:
        ...


def booking_id_from_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Booking id stamped on the charge at creation time (older clients used ``bookingId``)."""
    if not metadata:
        return None
    value = metadata.get("booking_id") or metadata.get("bookingId")
    return str(value) if value else None


def available_payment_methods(settings: Settings) -> List[Dict[str, Any]]:
    """Payment methods a customer can choose; bank transfer is always offered."""
    methods: List[Dict[str, Any]] = []
    if settings.stripe_enabled:
        methods.append(
            {
                "id": "stripe",
                "name": "Credit/Debit Card",
                "description": "Pay with Visa, Mastercard, or American Express",
                "currencies": ["USD", "EUR", "GBP"],
            }
        )
    if settings.paystack_enabled:
        methods.append(
            {
                "id": "paystack",
                "name": "Card Payment (Paystack)",
                "description": "Pay with local and international cards",
                "currencies": ["NGN", "USD", "GHS", "ZAR"],
            }
        )
    methods.append(
        {
            "id": "bank-transfer",
            "name": "Bank Transfer",
            "description": "Transfer directly to our bank account",
            "currencies": ["NGN", "USD"],
        }
    )
    return methods
