"""
Tests for webhook reconciliation across Stripe and Paystack.

Bodies are signed exactly the way each provider signs them, so signature
verification runs for real.
"""
import asyncio
import json
from typing import Any, Dict

import httpx
import pytest
import pytest_asyncio
import structlog
from structlog.testing import LogCapture

from booking_core.core import BookingService, WebhookReconciler
from booking_core.domain import (
    BookingStatus,
    ConcurrencyError,
    PaymentStatus,
    UnauthorizedWebhookError,
    UnsupportedProviderError,
    WebhookProcessingError,
)
from booking_core.integrations import (
    LoggingNotificationSender,
    NotificationResult,
    PaystackGateway,
    StripeGateway,
)
from booking_core.integrations.paystack_gateway import sign_body


class RefusingNotifier:
    async def send(self, to: str, template_name: str, data: Dict[str, Any]) -> NotificationResult:
        return NotificationResult(success=False, error="mailbox full")


class ExplodingNotifier:
    async def send(self, to: str, template_name: str, data: Dict[str, Any]) -> NotificationResult:
        raise RuntimeError("template renderer crashed")


@pytest.fixture
def captured_logs() -> Any:
    capture = LogCapture()
    structlog.configure(processors=[structlog.contextvars.merge_contextvars, capture])
    yield capture
    structlog.reset_defaults()


@pytest_asyncio.fixture
async def booking(service: BookingService, hotel_payload: dict, customer_data: dict) -> Any:
    return await service.create_booking(
        "hotel-booking", hotel_payload, customer_data, total_amount=10
    )


class TestStripeWebhooks:

    @pytest.mark.asyncio
    async def test_payment_and_redelivery(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        notifier: LoggingNotificationSender,
        booking: Any,
        signed_stripe_event: Any,
    ) -> None:
        """A succeeded PaymentIntent delivered twice: paid 1000, confirmed, one email."""
        body, signature = signed_stripe_event(booking.id, amount=1000)

        first = await reconciler.handle_webhook("stripe", body, signature)
        second = await reconciler.handle_webhook("stripe", body, signature)

        assert first.outcome == "recorded"
        assert first.transaction_id == "pi_test_123"
        assert second.outcome == "duplicate"

        stored = await service.get_booking(booking.id)
        assert stored.payment.paid_cents == 1000
        assert stored.payment.status == PaymentStatus.PAID
        assert stored.status == BookingStatus.CONFIRMED
        [transaction] = stored.payment.transactions
        assert transaction.method == "stripe"
        assert transaction.currency == "USD"

        confirmations = [s for s in notifier.sent if s[1] == "payment-confirmation"]
        assert len(confirmations) == 1
        assert confirmations[0][2]["amount"] == "10.00"

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_stripe_event: Any,
    ) -> None:
        body, signature = signed_stripe_event(booking.id)
        tampered = body.replace(b'"amount": 1000', b'"amount": 999999')

        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("stripe", tampered, signature)
        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("stripe", body, None)

        stored = await service.get_booking(booking.id)
        assert stored.payment.transactions == ()
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_other_events_ignored(
        self, reconciler: WebhookReconciler, booking: Any, signed_stripe_event: Any
    ) -> None:
        body, signature = signed_stripe_event(
            booking.id, event_type="payment_intent.payment_failed"
        )

        ack = await reconciler.handle_webhook("stripe", body, signature)

        assert ack.outcome == "ignored"
        assert ack.event_type == "payment_intent.payment_failed"

    @pytest.mark.asyncio
    async def test_unknown_booking_acknowledged(
        self, reconciler: WebhookReconciler, signed_stripe_event: Any
    ) -> None:
        body, signature = signed_stripe_event("no-such-booking")

        ack = await reconciler.handle_webhook("stripe", body, signature)

        assert ack.outcome == "booking_not_found"

    @pytest.mark.asyncio
    async def test_currency_mismatch_acknowledged_as_rejected(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_stripe_event: Any,
    ) -> None:
        body, signature = signed_stripe_event(booking.id, currency="eur")

        ack = await reconciler.handle_webhook("stripe", body, signature)

        assert ack.outcome == "rejected"
        assert (await service.get_booking(booking.id)).payment.paid_cents == 0

    @pytest.mark.asyncio
    async def test_conflict_exhaustion_asks_for_redelivery(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_stripe_event: Any,
        mocker: Any,
    ) -> None:
        mocker.patch.object(
            service.repository, "save", side_effect=ConcurrencyError(booking.id, 1, 2)
        )
        body, signature = signed_stripe_event(booking.id)

        with pytest.raises(WebhookProcessingError):
            await reconciler.handle_webhook("stripe", body, signature)

    @pytest.mark.asyncio
    async def test_non_text_body_or_header_is_unauthorized(
        self, reconciler: WebhookReconciler, service: BookingService, booking: Any
    ) -> None:
        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("stripe", b"\xff\xfe garbage", "t=1,v1=abc")
        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("stripe", b"{}", "t=1,v1=\u00e9abc")

        assert (await service.get_booking(booking.id)).payment.transactions == ()

    @pytest.mark.asyncio
    async def test_signed_success_event_without_intent_ignored(
        self, reconciler: WebhookReconciler, service: BookingService, booking: Any, sign_stripe: Any
    ) -> None:
        body = json.dumps(
            {"id": "evt_broken", "type": "payment_intent.succeeded", "data": {}}
        ).encode()

        ack = await reconciler.handle_webhook("stripe", body, sign_stripe(body))

        assert ack.outcome == "ignored"
        assert ack.event_type == "malformed"
        assert (await service.get_booking(booking.id)).version == 1

    @pytest.mark.asyncio
    async def test_log_lines_carry_delivery_context(
        self,
        reconciler: WebhookReconciler,
        booking: Any,
        signed_stripe_event: Any,
        captured_logs: LogCapture,
    ) -> None:
        body, signature = signed_stripe_event(booking.id, amount=1000)

        await reconciler.handle_webhook("stripe", body, signature)

        [recorded] = [e for e in captured_logs.entries if e["event"] == "webhook_payment_recorded"]
        assert recorded["provider"] == "stripe"
        assert recorded["event_id"] == "evt_test_1"
        assert recorded["event_type"] == "payment_intent.succeeded"
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_rejected_signature_logged_without_header(
        self, reconciler: WebhookReconciler, captured_logs: LogCapture
    ) -> None:
        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("stripe", b"{}", "t=1,v1=deadbeef")

        [rejected] = [e for e in captured_logs.entries if e["event"] == "webhook_signature_rejected"]
        assert rejected["provider"] == "stripe"
        assert "t=1,v1=deadbeef" not in str(rejected)


class TestPaystackWebhooks:

    @pytest.mark.asyncio
    async def test_charge_success_recorded(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_paystack_event: Any,
    ) -> None:
        body, signature = signed_paystack_event(booking.id, reference="NJ-HTL-1", amount=400)

        ack = await reconciler.handle_webhook("paystack", body, signature)

        assert ack.outcome == "recorded"
        stored = await service.get_booking(booking.id)
        assert stored.payment.paid_cents == 400
        assert stored.payment.status == PaymentStatus.PARTIAL
        assert stored.payment.transactions[0].transaction_id == "NJ-HTL-1"

    @pytest.mark.asyncio
    async def test_bad_signature(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_paystack_event: Any,
    ) -> None:
        body, _ = signed_paystack_event(booking.id)

        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("paystack", body, "0" * 128)

        assert (await service.get_booking(booking.id)).payment.transactions == ()

    @pytest.mark.asyncio
    async def test_legacy_booking_id_metadata_key(
        self, reconciler: WebhookReconciler, booking: Any, paystack_gateway: PaystackGateway
    ) -> None:
        body = json.dumps(
            {
                "event": "charge.success",
                "data": {
                    "reference": "ref-legacy",
                    "amount": 1000,
                    "currency": "USD",
                    "status": "success",
                    "metadata": {"bookingId": booking.id},
                },
            }
        ).encode()

        ack = await reconciler.handle_webhook(
            "paystack", body, sign_body(paystack_gateway.secret_key, body)
        )

        assert ack.outcome == "recorded"
        assert ack.booking_id == booking.id

    @pytest.mark.asyncio
    async def test_missing_metadata_acknowledged(
        self, reconciler: WebhookReconciler, paystack_gateway: PaystackGateway
    ) -> None:
        body = json.dumps(
            {"event": "charge.success", "data": {"reference": "r1", "amount": 100, "currency": "NGN"}}
        ).encode()

        ack = await reconciler.handle_webhook(
            "paystack", body, sign_body(paystack_gateway.secret_key, body)
        )

        assert ack.outcome == "booking_not_found"

    @pytest.mark.asyncio
    async def test_non_ascii_signature_is_unauthorized(
        self, reconciler: WebhookReconciler, service: BookingService, booking: Any
    ) -> None:
        with pytest.raises(UnauthorizedWebhookError):
            await reconciler.handle_webhook("paystack", b"{}", "\u00e9abc")

        assert (await service.get_booking(booking.id)).payment.transactions == ()

    @pytest.mark.asyncio
    async def test_success_without_amount_ignored(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        paystack_gateway: PaystackGateway,
    ) -> None:
        body = json.dumps(
            {
                "event": "charge.success",
                "data": {
                    "reference": "ref-no-amount",
                    "currency": "USD",
                    "metadata": {"booking_id": booking.id},
                },
            }
        ).encode()

        ack = await reconciler.handle_webhook(
            "paystack", body, sign_body(paystack_gateway.secret_key, body)
        )

        assert ack.outcome == "ignored"
        assert ack.event_type == "malformed"
        assert (await service.get_booking(booking.id)).payment.transactions == ()

    @pytest.mark.asyncio
    async def test_zero_amount_rejected(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_paystack_event: Any,
    ) -> None:
        body, signature = signed_paystack_event(booking.id, reference="ref-zero", amount=0)

        ack = await reconciler.handle_webhook("paystack", body, signature)

        assert ack.outcome == "rejected"
        assert ack.transaction_id == "ref-zero"
        stored = await service.get_booking(booking.id)
        assert stored.payment.transactions == ()
        assert stored.version == 1


class TestCrossProvider:

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_deliveries_from_both_gateways(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        signed_stripe_event: Any,
        signed_paystack_event: Any,
    ) -> None:
        """Two partial payments, each delivered three times, interleaved: 400 + 400 of 1000."""
        stripe_body, stripe_sig = signed_stripe_event(booking.id, intent_id="pi_a", amount=400)
        paystack_body, paystack_sig = signed_paystack_event(booking.id, reference="ps_b", amount=400)

        acks = await asyncio.gather(
            *[reconciler.handle_webhook("stripe", stripe_body, stripe_sig) for _ in range(3)],
            *[reconciler.handle_webhook("paystack", paystack_body, paystack_sig) for _ in range(3)],
        )

        assert sorted(ack.outcome for ack in acks).count("recorded") == 2
        stored = await service.get_booking(booking.id)
        assert stored.payment.paid_cents == 800
        assert stored.payment.status == PaymentStatus.PARTIAL
        assert stored.status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, reconciler: WebhookReconciler) -> None:
        with pytest.raises(UnsupportedProviderError):
            await reconciler.handle_webhook("paypal", b"{}", "sig")


class TestNotificationIsolation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("notifier_cls", [RefusingNotifier, ExplodingNotifier])
    async def test_notification_failure_does_not_change_ack(
        self,
        notifier_cls: Any,
        service: BookingService,
        stripe_gateway: StripeGateway,
        booking: Any,
        signed_stripe_event: Any,
    ) -> None:
        reconciler = WebhookReconciler({"stripe": stripe_gateway}, service, notifier_cls())
        body, signature = signed_stripe_event(booking.id)

        ack = await reconciler.handle_webhook("stripe", body, signature)

        assert ack.outcome == "recorded"
        assert (await service.get_booking(booking.id)).payment.paid_cents == 1000


class TestReconcileCharge:

    @pytest.mark.asyncio
    async def test_paystack_verify_then_webhook_deduplicates(
        self,
        service: BookingService,
        notifier: LoggingNotificationSender,
        booking: Any,
        signed_paystack_event: Any,
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/transaction/verify/ps_ref_1"
            assert request.headers["Authorization"] == "Bearer sk_test_paystack_secret"
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Verification successful",
                    "data": {
                        "reference": "ps_ref_1",
                        "amount": 1000,
                        "currency": "USD",
                        "status": "success",
                        "paid_at": "2024-01-14T10:00:00.000Z",
                        "metadata": {"booking_id": booking.id},
                    },
                },
            )

        gateway = PaystackGateway(
            secret_key="sk_test_paystack_secret",
            transport=httpx.MockTransport(handler),
            retry_wait_seconds=0,
        )
        reconciler = WebhookReconciler({"paystack": gateway}, service, notifier)

        pulled = await reconciler.reconcile_charge("paystack", "ps_ref_1")
        body, signature = signed_paystack_event(booking.id, reference="ps_ref_1", amount=1000)
        pushed = await reconciler.handle_webhook("paystack", body, signature)

        assert pulled.outcome == "recorded"
        assert pushed.outcome == "duplicate"
        stored = await service.get_booking(booking.id)
        assert stored.payment.paid_cents == 1000
        assert stored.status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_stripe_unsuccessful_intent_ignored(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        mocker: Any,
    ) -> None:
        retrieve = mocker.patch(
            "stripe.PaymentIntent.retrieve",
            return_value={
                "id": "pi_pending",
                "amount": 1000,
                "currency": "usd",
                "status": "requires_payment_method",
                "metadata": {"booking_id": booking.id},
            },
        )

        ack = await reconciler.reconcile_charge("stripe", "pi_pending")

        assert ack.outcome == "ignored"
        retrieve.assert_called_once()
        assert (await service.get_booking(booking.id)).payment.transactions == ()

    @pytest.mark.asyncio
    async def test_stripe_succeeded_intent_recorded(
        self,
        reconciler: WebhookReconciler,
        service: BookingService,
        booking: Any,
        mocker: Any,
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.retrieve",
            return_value={
                "id": "pi_done",
                "amount": 1000,
                "amount_received": 1000,
                "currency": "usd",
                "status": "succeeded",
                "created": 1700000000,
                "metadata": {"booking_id": booking.id},
            },
        )

        ack = await reconciler.reconcile_charge("stripe", "pi_done")

        assert ack.outcome == "recorded"
        assert (await service.get_booking(booking.id)).payment.status == PaymentStatus.PAID
