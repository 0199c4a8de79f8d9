"""
Structured logging configuration.

Every module logs through ``structlog.get_logger(__name__)`` with snake_case
event names. ``setup_logging`` renders those events as JSON lines on stdout
and routes stdlib loggers (SQLAlchemy, httpx, stripe) through a
python-json-logger handler.

Booking and webhook code wraps its work in ``booking_context`` /
``webhook_context`` so that every line emitted underneath, including lines
from the repository and the notification sender, carries the booking id or
the provider and event id without passing them around.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from booking_core.config import Settings, get_settings

REDACTED = "[redacted]"

# Keys whose values must never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "api_key",
        "secret_key",
        "webhook_secret",
        "signature",
        "signature_header",
        "smtp_password",
        "client_secret",
    }
)


class AppContext:
    """Processor stamping app name and environment on every event."""

    def __init__(self, settings: Settings):
        self.app_name = settings.app_name
        self.app_env = settings.app_env

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("app_name", self.app_name)
        event_dict.setdefault("app_env", self.app_env)
        return event_dict


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask credentials and webhook signatures if a caller logs them."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


@contextmanager
def booking_context(booking_id: str, operation: Optional[str] = None) -> Iterator[None]:
    """Bind ``booking_id`` (and the operation name) to every log line in the block."""
    values: dict[str, Any] = {"booking_id": booking_id}
    if operation:
        values["operation"] = operation
    with structlog.contextvars.bound_contextvars(**values):
        yield


@contextmanager
def webhook_context(
    provider: str, event_id: Optional[str] = None, event_type: Optional[str] = None
) -> Iterator[None]:
    """Bind the delivering provider (and the event, once authenticated) to every log line in the block."""
    values: dict[str, Any] = {"provider": provider}
    if event_id:
        values["event_id"] = event_id
    if event_type:
        values["event_type"] = event_type
    with structlog.contextvars.bound_contextvars(**values):
        yield


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the root stdlib handler for JSON output."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            AppContext(settings),
            redact_sensitive,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    # Gateway SDKs log request bodies at DEBUG.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
