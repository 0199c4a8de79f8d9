"""
Customer notifications.

The core only decides *which* template to send and with what data; rendering
and delivery belong to the sender. Senders are constructed explicitly and
injected into the service and the webhook reconciler. Notifications are
always best-effort: a failed send is reported in the result, never raised
into a ledger or status operation.
"""
import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Optional, Protocol

import structlog

from booking_core.config import Settings

logger = structlog.get_logger(__name__)


SUBJECTS: Dict[str, str] = {
    "visa-confirmation": "Visa Application Received - {reference_number}",
    "flight-confirmation": "Flight Booking Received - {reference_number}",
    "hotel-confirmation": "Hotel Booking Received - {reference_number}",
    "concierge-confirmation": "Concierge Request Received - {reference_number}",
    "corporate-confirmation": "Corporate Travel Request Received - {reference_number}",
    "consultation-confirmation": "Consultation Request Received - {reference_number}",
    "package-confirmation": "Package Request Received - {reference_number}",
    "payment-confirmation": "Payment Received - {reference_number}",
    "status-update": "Booking Update - {reference_number}",
}


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of a single send."""

    success: bool
    error: Optional[str] = None


class NotificationSender(Protocol):
    """Interface for anything that can deliver a templated message."""

    async def send(
        self, to: str, template_name: str, data: Dict[str, Any]
    ) -> NotificationResult:
        ...


class LoggingNotificationSender:
    """
    Development sender: logs the message instead of delivering it.

    Keeps every send in ``sent`` so tests can assert on what went out.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Dict[str, Any]]] = []

    async def send(
        self, to: str, template_name: str, data: Dict[str, Any]
    ) -> NotificationResult:
        self.sent.append((to, template_name, dict(data)))
        logger.info("notification_logged", to=to, template=template_name)
        return NotificationResult(success=True)


def render_subject(template_name: str, data: Dict[str, Any]) -> str:
    pattern = SUBJECTS.get(template_name, "Booking Notification - {reference_number}")
    return pattern.format(reference_number=data.get("reference_number", ""))


def render_text(template_name: str, data: Dict[str, Any]) -> str:
    """Plain-text body; one ``key: value`` line per template field."""
    name = data.get("customer_name") or "Customer"
    lines = [f"Dear {name},", ""]
    lines.extend(
        f"{key.replace('_', ' ').capitalize()}: {value}"
        for key, value in data.items()
        if key != "customer_name" and value is not None
    )
    lines.extend(["", "Thank you for choosing us."])
    return "\n".join(lines)


class SmtpNotificationSender:
    """
    Sends plain-text email over SMTP.

    smtplib is blocking, so each send runs in a worker thread.
    """

    def __init__(self, settings: Settings):
        if not settings.smtp_host:
            raise ValueError("smtp_host must be set to use SmtpNotificationSender")
        self.settings = settings

    def _build_message(self, to: str, template_name: str, data: Dict[str, Any]) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = render_subject(template_name, data)
        message["From"] = self.settings.smtp_from
        message["To"] = to
        message.set_content(render_text(template_name, data))
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self.settings.smtp_host,
            self.settings.smtp_port,
            timeout=self.settings.gateway_timeout_seconds,
        ) as server:
            if self.settings.smtp_use_tls:
                server.starttls()
            if self.settings.smtp_username and self.settings.smtp_password:
                server.login(self.settings.smtp_username, self.settings.smtp_password)
            server.send_message(message)

    async def send(
        self, to: str, template_name: str, data: Dict[str, Any]
    ) -> NotificationResult:
        message = self._build_message(to, template_name, data)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "notification_send_failed",
                to=to,
                template=template_name,
                error=str(e),
            )
            return NotificationResult(success=False, error=str(e))

        logger.info("notification_sent", to=to, template=template_name)
        return NotificationResult(success=True)


def build_notification_sender(settings: Settings) -> NotificationSender:
    """SMTP when a host is configured, logging otherwise."""
    if settings.smtp_host:
        return SmtpNotificationSender(settings)
    return LoggingNotificationSender()
