"""Core application services: booking operations, references, webhook reconciliation."""
from .booking_service import BookingService, TransactionOutcome
from .reconciliation import WebhookAck, WebhookReconciler
from .reference import ReferenceGenerator

__all__ = [
    "BookingService",
    "ReferenceGenerator",
    "TransactionOutcome",
    "WebhookAck",
    "WebhookReconciler",
]
