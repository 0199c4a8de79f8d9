"""
Webhook reconciliation - gateway notifications into booking ledgers.

Gateways deliver at least once, in any order, possibly concurrently. The
pipeline per delivery:

1. Authenticate the raw body against the provider's signature scheme
2. Classify: only payment-success events touch a ledger
3. Map the charge onto a canonical transaction (amounts stay in minor units)
4. Apply it through the booking service, idempotent on the transaction id
5. Acknowledge, and send a best-effort payment confirmation

What the provider sees:
- bad signature → UnauthorizedWebhookError (reject the request)
- a retry could succeed (write conflict, database down) → WebhookProcessingError,
  so the provider redelivers; the ledger's idempotency makes that safe
- anything else → a WebhookAck, even when nothing was recorded
"""
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from booking_core.core.booking_service import BookingService, payment_confirmation_data
from booking_core.domain.errors import (
    BookingNotFoundError,
    BookingValidationError,
    ConcurrencyError,
    UnauthorizedWebhookError,
    UnsupportedProviderError,
    WebhookProcessingError,
)
from booking_core.integrations.base import GatewayCharge, GatewayEvent, PaymentGateway
from booking_core.integrations.notifications import NotificationSender
from booking_core.monitoring.logging import webhook_context
from booking_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECORDED = "recorded"
DUPLICATE = "duplicate"
IGNORED = "ignored"
BOOKING_NOT_FOUND = "booking_not_found"
REJECTED = "rejected"


@dataclass(frozen=True)
class WebhookAck:
    """What happened to one delivery; returned to the caller for the 2xx response."""

    provider: str
    event_type: str
    outcome: str
    event_id: Optional[str] = None
    booking_id: Optional[str] = None
    transaction_id: Optional[str] = None


class WebhookReconciler:
    """Applies gateway events and pulled charges to booking ledgers."""

    def __init__(
        self,
        gateways: Mapping[str, PaymentGateway],
        booking_service: BookingService,
        notifier: NotificationSender,
    ):
        self.gateways: Dict[str, PaymentGateway] = dict(gateways)
        self.booking_service = booking_service
        self.notifier = notifier

    def _gateway(self, provider: str) -> PaymentGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            logger.warning("webhook_unsupported_provider", provider=provider)
            raise UnsupportedProviderError(
                f"No gateway configured for provider {provider!r}", provider=provider
            )
        return gateway

    async def handle_webhook(
        self, provider: str, raw_body: bytes, signature_header: Optional[str]
    ) -> WebhookAck:
        """
        Process one webhook delivery.

        Args:
            provider: gateway name ("stripe", "paystack")
            raw_body: request body exactly as received (signatures cover the bytes)
            signature_header: Stripe-Signature / x-paystack-signature value

        Raises:
            UnsupportedProviderError: provider not configured
            UnauthorizedWebhookError: signature missing or invalid
            WebhookProcessingError: transient failure, provider should redeliver
        """
        gateway = self._gateway(provider)
        start = time.perf_counter()
        with webhook_context(provider):
            event = self._authenticate(provider, gateway, raw_body, signature_header, start)
            with webhook_context(provider, event.event_id, event.event_type):
                return await self._process_event(provider, event, start)

    def _authenticate(
        self,
        provider: str,
        gateway: PaymentGateway,
        raw_body: bytes,
        signature_header: Optional[str],
        start: float,
    ) -> GatewayEvent:
        try:
            return gateway.parse_event(raw_body, signature_header)
        except UnauthorizedWebhookError as e:
            metrics.record_signature_failure(provider)
            metrics.record_webhook_event(
                provider, "unknown", "unauthorized", time.perf_counter() - start
            )
            logger.warning("webhook_signature_rejected", error=str(e))
            raise

    async def _process_event(self, provider: str, event: GatewayEvent, start: float) -> WebhookAck:
        if not event.is_payment_success:
            logger.info("webhook_event_ignored")
            ack = WebhookAck(
                provider=provider,
                event_type=event.event_type,
                outcome=IGNORED,
                event_id=event.event_id,
            )
        else:
            try:
                ack = await self._apply_charge(
                    event.charge,
                    event_type=event.event_type,
                    event_id=event.event_id,
                    notes=f"{provider} webhook - {event.event_type}",
                )
            except WebhookProcessingError:
                metrics.record_webhook_event(
                    provider, event.event_type, "retry", time.perf_counter() - start
                )
                raise

        metrics.record_webhook_event(
            provider, event.event_type, ack.outcome, time.perf_counter() - start
        )
        return ack

    async def reconcile_charge(self, provider: str, charge_id: str) -> WebhookAck:
        """
        Pull a charge from the gateway and apply it like a webhook would.

        Used when the customer returns from checkout before (or instead of)
        the webhook arriving. Gateway errors propagate to the caller.
        """
        gateway = self._gateway(provider)
        charge = await gateway.fetch_charge(charge_id)
        if not charge.succeeded:
            logger.info(
                "reconcile_charge_not_successful",
                provider=provider,
                charge_id=charge_id,
                booking_id=charge.booking_id,
            )
            return WebhookAck(
                provider=provider,
                event_type="verify",
                outcome=IGNORED,
                booking_id=charge.booking_id,
                transaction_id=charge.transaction_id,
            )
        return await self._apply_charge(
            charge, event_type="verify", event_id=None, notes=f"{provider} payment verified"
        )

    async def _apply_charge(
        self,
        charge: GatewayCharge,
        event_type: str,
        event_id: Optional[str],
        notes: str,
    ) -> WebhookAck:
        def ack(outcome: str) -> WebhookAck:
            return WebhookAck(
                provider=charge.provider,
                event_type=event_type,
                outcome=outcome,
                event_id=event_id,
                booking_id=charge.booking_id,
                transaction_id=charge.transaction_id,
            )

        log = logger.bind(
            provider=charge.provider,
            event_id=event_id,
            transaction_id=charge.transaction_id,
            booking_id=charge.booking_id,
        )

        if not charge.booking_id:
            log.warning("webhook_missing_booking_metadata")
            return ack(BOOKING_NOT_FOUND)

        try:
            transaction = charge.to_transaction(notes=notes)
        except ValidationError as e:
            log.error(
                "webhook_charge_invalid",
                amount_cents=charge.amount_cents,
                currency=charge.currency,
                error=str(e),
            )
            return ack(REJECTED)

        try:
            outcome = await self.booking_service.record_transaction(
                charge.booking_id, transaction
            )
        except BookingNotFoundError:
            log.warning("webhook_booking_not_found")
            return ack(BOOKING_NOT_FOUND)
        except BookingValidationError as e:
            log.error("webhook_transaction_rejected", error=str(e), field_errors=e.field_errors)
            return ack(REJECTED)
        except ConcurrencyError as e:
            log.error("webhook_apply_conflict", error=str(e))
            raise WebhookProcessingError(
                f"Could not apply {charge.transaction_id}: {e}", provider=charge.provider
            ) from e
        except SQLAlchemyError as e:
            log.error("webhook_storage_error", error=str(e))
            raise WebhookProcessingError(
                f"Storage failure applying {charge.transaction_id}", provider=charge.provider
            ) from e

        if not outcome.recorded:
            log.info("webhook_duplicate_transaction")
            return ack(DUPLICATE)

        log.info(
            "webhook_payment_recorded",
            amount_cents=charge.amount_cents,
            currency=charge.currency,
            payment_status=outcome.booking.payment.status.value,
        )
        await self._send_confirmation(outcome.booking, outcome.transaction)
        return ack(RECORDED)

    async def _send_confirmation(self, booking, transaction) -> None:
        try:
            result = await self.notifier.send(
                booking.customer.email,
                "payment-confirmation",
                payment_confirmation_data(booking, transaction),
            )
        except Exception as e:
            logger.error(
                "payment_confirmation_failed",
                booking_id=booking.id,
                transaction_id=transaction.transaction_id,
                error=str(e),
            )
            return
        if not result.success:
            logger.warning(
                "payment_confirmation_not_delivered",
                booking_id=booking.id,
                transaction_id=transaction.transaction_id,
                error=result.error,
            )
