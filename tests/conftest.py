"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
from datetime import date, timedelta
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from booking_core.config import Settings
from booking_core.core import BookingService, ReferenceGenerator, WebhookReconciler
from booking_core.database import (
    InMemoryBookingRepository,
    InMemoryDailyCounter,
    init_db,
    make_session_factory,
)
from booking_core.database.connection import create_engine_from_url
from booking_core.integrations import (
    LoggingNotificationSender,
    PaystackGateway,
    StripeGateway,
)

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYSTACK_SECRET = "sk_test_paystack_secret"


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        paystack_secret_key=PAYSTACK_SECRET,
        reference_prefix="NJ",
        default_currency="USD",
        # Enough attempts for every racing writer in the race tests to land.
        concurrency_max_attempts=25,
        concurrency_retry_base_delay=0,
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def repository() -> InMemoryBookingRepository:
    return InMemoryBookingRepository()


@pytest.fixture
def counter() -> InMemoryDailyCounter:
    return InMemoryDailyCounter()


@pytest.fixture
def reference_generator(counter: InMemoryDailyCounter) -> ReferenceGenerator:
    return ReferenceGenerator(counter, prefix="NJ")


@pytest.fixture
def notifier() -> LoggingNotificationSender:
    return LoggingNotificationSender()


@pytest.fixture
def service(
    repository: InMemoryBookingRepository,
    reference_generator: ReferenceGenerator,
    notifier: LoggingNotificationSender,
    test_settings: Settings,
) -> BookingService:
    return BookingService(repository, reference_generator, notifier, test_settings)


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test_fake_key_for_testing",
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        retry_wait_seconds=0,
    )


@pytest.fixture
def paystack_gateway() -> PaystackGateway:
    return PaystackGateway(secret_key=PAYSTACK_SECRET, retry_wait_seconds=0)


@pytest.fixture
def reconciler(
    stripe_gateway: StripeGateway,
    paystack_gateway: PaystackGateway,
    service: BookingService,
    notifier: LoggingNotificationSender,
) -> WebhookReconciler:
    return WebhookReconciler(
        {"stripe": stripe_gateway, "paystack": paystack_gateway}, service, notifier
    )


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite database with all tables created."""
    engine = create_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sqlite_session_factory(sqlite_engine: AsyncEngine) -> Any:
    return make_session_factory(sqlite_engine)


# ----------------------------------------------------------------------------
# Sample data
# ----------------------------------------------------------------------------


@pytest.fixture
def customer_data() -> dict[str, Any]:
    return {
        "name": "Amina Yusuf",
        "email": "Amina.Yusuf@Example.com",
        "phone": "+234 803 555 0101",
        "nationality": "Nigerian",
    }


@pytest.fixture
def hotel_payload() -> dict[str, Any]:
    check_in = date.today() + timedelta(days=30)
    return {
        "destination": "Dubai",
        "check_in": check_in.isoformat(),
        "check_out": (check_in + timedelta(days=4)).isoformat(),
        "guests": 2,
    }


@pytest.fixture
def visa_payload() -> dict[str, Any]:
    travel = date.today() + timedelta(days=60)
    return {
        "nationality": "Nigerian",
        "destination": "United Kingdom",
        "travel_date": travel.isoformat(),
        "return_date": (travel + timedelta(days=14)).isoformat(),
        "passport_number": "A12345678",
        "passport_expiry": (travel + timedelta(days=400)).isoformat(),
        "date_of_birth": "1990-05-17",
        "purpose": "Tourism",
    }


# ----------------------------------------------------------------------------
# Signed webhook bodies
# ----------------------------------------------------------------------------


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    """Stripe-Signature header value for ``payload`` signed now."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event_body(
    booking_id: str,
    intent_id: str = "pi_test_123",
    amount: int = 1000,
    currency: str = "usd",
    event_type: str = "payment_intent.succeeded",
    event_id: str = "evt_test_1",
) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": intent_id,
                    "object": "payment_intent",
                    "amount": amount,
                    "amount_received": amount,
                    "currency": currency,
                    "status": "succeeded",
                    "created": 1700000000,
                    "metadata": {"booking_id": booking_id},
                }
            },
        }
    ).encode("utf-8")


def paystack_signature(payload: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def paystack_event_body(
    booking_id: str,
    reference: str = "NJ-HTL-TEST-1700000000000",
    amount: int = 1000,
    currency: str = "USD",
    event_type: str = "charge.success",
) -> bytes:
    return json.dumps(
        {
            "event": event_type,
            "data": {
                "id": 302961,
                "status": "success",
                "reference": reference,
                "amount": amount,
                "currency": currency,
                "paid_at": "2024-01-14T10:00:00.000Z",
                "metadata": {"booking_id": booking_id},
            },
        }
    ).encode("utf-8")


@pytest.fixture
def signed_stripe_event() -> Any:
    """Builder: ``(booking_id, **fields) -> (body, Stripe-Signature)``."""

    def build(booking_id: str, **fields: Any) -> tuple[bytes, str]:
        body = stripe_event_body(booking_id, **fields)
        return body, stripe_signature(body)

    return build


@pytest.fixture
def signed_paystack_event() -> Any:
    """Builder: ``(booking_id, **fields) -> (body, x-paystack-signature)``."""

    def build(booking_id: str, **fields: Any) -> tuple[bytes, str]:
        body = paystack_event_body(booking_id, **fields)
        return body, paystack_signature(body)

    return build


@pytest.fixture
def sign_stripe() -> Any:
    """``(raw_body) -> Stripe-Signature`` for hand-built event bodies."""
    return stripe_signature
