"""Monitoring and observability for the booking core."""
from .logging import booking_context, setup_logging, webhook_context
from .metrics import metrics

__all__ = ["booking_context", "metrics", "setup_logging", "webhook_context"]
