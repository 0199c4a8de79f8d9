"""
Booking reference numbers.

Format: ``{PREFIX}-{SERVICE_CODE}-{YYMMDD}-{SEQ4}``, e.g. ``NJ-VIS-250114-0007``.

The sequence is per calendar day and shared by every service type. It comes
from a single atomic increment on the daily counter store, so two bookings
created at the same instant can never be handed the same number. SEQ4 caps a
day at 9999 references; past that, allocation fails rather than widening
the format.
"""
from datetime import datetime
from typing import Optional

import structlog

from booking_core.database.repository import DailyCounterStore
from booking_core.domain.errors import ReferenceAllocationError
from booking_core.domain.value_objects import ServiceType, utcnow

logger = structlog.get_logger(__name__)

MAX_DAILY_SEQUENCE = 9999


class ReferenceGenerator:
    """Allocates human-readable booking references from a daily counter."""

    def __init__(self, counter: DailyCounterStore, prefix: str = "NJ"):
        self.counter = counter
        self.prefix = prefix.strip().upper()

    async def allocate(
        self, service_type: ServiceType, now: Optional[datetime] = None
    ) -> str:
        """
        Allocate the next reference for ``service_type``.

        Raises:
            ReferenceAllocationError: the counter could not be incremented
        """
        now = now or utcnow()
        service_type = ServiceType(service_type)
        try:
            sequence = await self.counter.increment(now.date())
        except ReferenceAllocationError:
            raise
        except Exception as e:
            logger.error(
                "reference_allocation_failed",
                service_type=service_type.value,
                day=now.date().isoformat(),
                error=str(e),
            )
            raise ReferenceAllocationError(
                f"Could not allocate a reference for {service_type.value}"
            ) from e

        if sequence > MAX_DAILY_SEQUENCE:
            logger.error(
                "reference_sequence_exhausted",
                service_type=service_type.value,
                day=now.date().isoformat(),
                sequence=sequence,
            )
            raise ReferenceAllocationError(
                f"Daily reference sequence exhausted for {now.date().isoformat()}"
            )

        reference = f"{self.prefix}-{service_type.code}-{now:%y%m%d}-{sequence:04d}"
        logger.debug("reference_allocated", reference_number=reference, sequence=sequence)
        return reference
