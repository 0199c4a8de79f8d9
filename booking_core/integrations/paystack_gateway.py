"""
Paystack adapter: transaction initialization, verification and webhooks.

Paystack signs webhook bodies with HMAC-SHA512 using the account secret key
and sends the hex digest in ``x-paystack-signature``. The transaction
``reference`` is the idempotency key on both the webhook and the verify
paths, so a charge seen through either is recorded once.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
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
from booking_core.domain.value_objects import utcnow
from booking_core.integrations.base import (
    GatewayCharge,
    GatewayError,
    GatewayEvent,
    booking_id_from_metadata,
    is_transient,
)

logger = structlog.get_logger(__name__)

PROVIDER = "paystack"
SUCCESS_EVENTS = frozenset({"charge.success"})


def sign_body(secret_key: str, raw_body: bytes) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def _parse_paid_at(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return utcnow()


def charge_from_data(data: Dict[str, Any], succeeded: Optional[bool] = None) -> GatewayCharge:
    metadata = data.get("metadata")
    # Paystack sends metadata as a JSON string when the client did.
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            metadata = None
    return GatewayCharge(
        provider=PROVIDER,
        transaction_id=str(data["reference"]),
        amount_cents=int(data["amount"]),
        currency=str(data.get("currency") or "NGN").upper(),
        succeeded=data.get("status") == "success" if succeeded is None else succeeded,
        booking_id=booking_id_from_metadata(metadata if isinstance(metadata, dict) else None),
        occurred_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
    )


class PaystackGateway:
    """Paystack REST client over httpx."""

    name = PROVIDER

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 15.0,
        max_attempts: int = 3,
        retry_wait_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "PaystackGateway":
        if not settings.paystack_enabled:
            raise ValueError("paystack_secret_key must be set")
        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.gateway_timeout_seconds,
            max_attempts=settings.gateway_retry_max_attempts,
            transport=transport,
        )

    # Webhooks

    def parse_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        if not signature_header:
            raise UnauthorizedWebhookError(
                "Missing x-paystack-signature header", provider=PROVIDER
            )
        expected = sign_body(self.secret_key, raw_body).encode("ascii")
        received = signature_header.strip().lower().encode("utf-8", "replace")
        if not hmac.compare_digest(expected, received):
            raise UnauthorizedWebhookError("Invalid Paystack signature", provider=PROVIDER)

        try:
            event = json.loads(raw_body)
            event_type = event["event"]
            data = event.get("data") or {}
            event_id = f"{event_type}:{data.get('id') or data.get('reference', '')}"
            charge = None
            if event_type in SUCCESS_EVENTS:
                charge = charge_from_data(data, succeeded=True)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # Signed but malformed: nothing a redelivery would change.
            logger.error("paystack_event_malformed", error=repr(e))
            return GatewayEvent(provider=PROVIDER, event_id="", event_type="malformed")

        return GatewayEvent(
            provider=PROVIDER, event_id=event_id, event_type=event_type, charge=charge
        )

    # API calls

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def _request(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=16),
            reraise=True,
        ):
            with attempt:
                try:
                    async with self._client() as client:
                        response = await client.request(method, path, json=json_body)
                        response.raise_for_status()
                        body = response.json()
                except httpx.HTTPStatusError as e:
                    status_code = e.response.status_code
                    logger.error(
                        "paystack_api_error",
                        path=path,
                        status_code=status_code,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise GatewayError(
                        f"Paystack returned {status_code} for {path}",
                        PROVIDER,
                        transient=status_code == 429 or status_code >= 500,
                        original_error=e,
                    ) from e
                except httpx.TransportError as e:
                    logger.error(
                        "paystack_connection_error",
                        path=path,
                        error=str(e),
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise GatewayError(
                        f"Could not reach Paystack: {e}", PROVIDER, transient=True, original_error=e
                    ) from e

                if not body.get("status"):
                    raise GatewayError(
                        body.get("message") or f"Paystack rejected {path}", PROVIDER
                    )
                return body.get("data") or {}
        raise AssertionError("unreachable")

    async def initialize_transaction(
        self,
        booking: Booking,
        amount_cents: int,
        currency: Optional[str] = None,
        email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Start a Paystack checkout for ``booking``.

        Returns:
            Paystack's ``data`` object: authorization_url, access_code, reference
        """
        reference = f"{booking.reference_number}-{int(time.time() * 1000)}"
        body: Dict[str, Any] = {
            "email": email or booking.customer.email,
            "amount": amount_cents,
            "currency": (currency or booking.payment.currency).upper(),
            "reference": reference,
            "metadata": {
                "booking_id": booking.id,
                "reference_number": booking.reference_number,
                "custom_fields": [
                    {
                        "display_name": "Booking Reference",
                        "variable_name": "booking_reference",
                        "value": booking.reference_number,
                    }
                ],
            },
        }
        if callback_url:
            body["callback_url"] = callback_url

        logger.info(
            "initializing_paystack_transaction",
            booking_id=booking.id,
            reference=reference,
            amount_cents=amount_cents,
        )
        return await self._request("POST", "/transaction/initialize", body)

    async def fetch_charge(self, charge_id: str) -> GatewayCharge:
        logger.info("verifying_paystack_transaction", reference=charge_id)
        data = await self._request("GET", f"/transaction/verify/{charge_id}")
        try:
            return charge_from_data(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("paystack_verify_malformed", reference=charge_id, error=repr(e))
            raise GatewayError(
                f"Malformed verify response for {charge_id}", PROVIDER, original_error=e
            ) from e
