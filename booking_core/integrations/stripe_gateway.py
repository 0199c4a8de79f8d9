"""
Stripe adapter: PaymentIntent creation/retrieval and webhook verification.

Implements:
- Retry with exponential backoff for transient API errors
- Idempotent payment intent creation (key derived from booking + amount)
- Webhook signature verification (HMAC-SHA256 with timestamp tolerance)
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from booking_core.config import Settings
from booking_core.domain.aggregates import Booking
from booking_core.domain.errors import UnauthorizedWebhookError
from booking_core.integrations.base import (
    GatewayCharge,
    GatewayError,
    GatewayEvent,
    booking_id_from_metadata,
    is_transient,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PROVIDER = "stripe"
SUCCESS_EVENTS = frozenset({"payment_intent.succeeded"})


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _classify(error: stripe.StripeError) -> GatewayError:
    """Wrap a Stripe SDK error, marking which ones are worth retrying."""
    transient = isinstance(
        error,
        (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError),
    )
    return GatewayError(str(error), PROVIDER, transient=transient, original_error=error)


def charge_from_intent(intent: Dict[str, Any], succeeded: Optional[bool] = None) -> GatewayCharge:
    created = intent.get("created")
    occurred_at = (
        datetime.fromtimestamp(created, tz=timezone.utc)
        if created
        else datetime.now(timezone.utc)
    )
    # amount_received is what actually landed; fall back to the requested amount.
    amount = intent.get("amount_received") or intent["amount"]
    return GatewayCharge(
        provider=PROVIDER,
        transaction_id=intent["id"],
        amount_cents=int(amount),
        currency=str(intent["currency"]).upper(),
        succeeded=intent.get("status") == "succeeded" if succeeded is None else succeeded,
        booking_id=booking_id_from_metadata(intent.get("metadata")),
        occurred_at=occurred_at,
    )


class StripeGateway:
    """Stripe SDK wrapper; one instance per configured account."""

    name = PROVIDER

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_version: Optional[str] = None,
        max_attempts: int = 3,
        retry_wait_seconds: float = 0.5,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        if not settings.stripe_enabled:
            raise ValueError("Stripe secret key and webhook secret must both be set")
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            max_attempts=settings.gateway_retry_max_attempts,
        )

    # Webhooks

    def parse_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        if not signature_header:
            raise UnauthorizedWebhookError("Missing Stripe-Signature header", provider=PROVIDER)
        if not signature_header.isascii():
            raise UnauthorizedWebhookError("Malformed Stripe-Signature header", provider=PROVIDER)

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, self.tolerance
            )
        except UnicodeDecodeError as e:
            # Stripe only ever signs UTF-8 JSON.
            raise UnauthorizedWebhookError(
                "Stripe webhook body is not UTF-8", provider=PROVIDER
            ) from e
        except stripe.SignatureVerificationError as e:
            raise UnauthorizedWebhookError(
                f"Invalid Stripe signature: {e}", provider=PROVIDER
            ) from e

        try:
            event = json.loads(payload)
            event_id = event["id"]
            event_type = event["type"]
            charge = None
            if event_type in SUCCESS_EVENTS:
                charge = charge_from_intent(event["data"]["object"], succeeded=True)
        except (ValueError, KeyError, TypeError, AttributeError, OverflowError) as e:
            # Signed but malformed: nothing a redelivery would change.
            logger.error("stripe_event_malformed", error=repr(e))
            return GatewayEvent(provider=PROVIDER, event_id="", event_type="malformed")

        return GatewayEvent(
            provider=PROVIDER, event_id=event_id, event_type=event_type, charge=charge
        )

    # API calls

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=16),
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.to_thread(func)
                except stripe.StripeError as e:
                    error = _classify(e)
                    logger.error(
                        "stripe_api_error",
                        operation=operation,
                        transient=error.transient,
                        error_code=getattr(e, "code", None),
                        error_message=str(e),
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise error from e
        raise AssertionError("unreachable")

    async def create_payment_intent(
        self, booking: Booking, amount_cents: int, currency: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a PaymentIntent carrying the booking id in its metadata.

        Returns:
            dict with ``id``, ``client_secret`` and ``status``
        """
        currency = (currency or booking.payment.currency).lower()
        idempotency_key = f"booking-{booking.id}-{amount_cents}-{currency}"
        logger.info(
            "creating_payment_intent",
            booking_id=booking.id,
            amount_cents=amount_cents,
            currency=currency,
        )

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata={
                    "booking_id": booking.id,
                    "reference_number": booking.reference_number,
                    "customer_email": booking.customer.email,
                },
                description=f"Payment for booking {booking.reference_number}",
                receipt_email=booking.customer.email,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=self.secret_key,
                stripe_version=self.api_version,
            )

        intent = _as_dict(await self._call("create_payment_intent", _create))
        logger.info(
            "payment_intent_created",
            booking_id=booking.id,
            payment_intent_id=intent["id"],
            status=intent.get("status"),
        )
        return {
            "id": intent["id"],
            "client_secret": intent.get("client_secret"),
            "status": intent.get("status"),
        }

    async def fetch_charge(self, charge_id: str) -> GatewayCharge:
        logger.info("retrieving_payment_intent", payment_intent_id=charge_id)

        def _retrieve() -> Any:
            return stripe.PaymentIntent.retrieve(
                charge_id, api_key=self.secret_key, stripe_version=self.api_version
            )

        intent = _as_dict(await self._call("retrieve_payment_intent", _retrieve))
        return charge_from_intent(intent)
