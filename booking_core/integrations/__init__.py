"""External integrations: payment gateways and notification senders."""
from typing import Dict

from booking_core.config import Settings

from .base import (
    GatewayCharge,
    GatewayError,
    GatewayEvent,
    PaymentGateway,
    available_payment_methods,
)
from .notifications import (
    LoggingNotificationSender,
    NotificationResult,
    NotificationSender,
    SmtpNotificationSender,
    build_notification_sender,
)
from .paystack_gateway import PaystackGateway
from .stripe_gateway import StripeGateway


def build_gateways(settings: Settings) -> Dict[str, PaymentGateway]:
    """Gateways keyed by provider name; a provider without secrets is left out."""
    gateways: Dict[str, PaymentGateway] = {}
    if settings.stripe_enabled:
        gateways[StripeGateway.name] = StripeGateway.from_settings(settings)
    if settings.paystack_enabled:
        gateways[PaystackGateway.name] = PaystackGateway.from_settings(settings)
    return gateways


__all__ = [
    "GatewayCharge",
    "GatewayError",
    "GatewayEvent",
    "LoggingNotificationSender",
    "NotificationResult",
    "NotificationSender",
    "PaymentGateway",
    "PaystackGateway",
    "SmtpNotificationSender",
    "StripeGateway",
    "available_payment_methods",
    "build_gateways",
    "build_notification_sender",
]
