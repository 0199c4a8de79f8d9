"""
Booking persistence with optimistic concurrency, and the atomic daily counter.

Two contracts:

BookingRepository
    get / get_by_reference / add / save(booking, expected_version).
    ``save`` only succeeds if the stored version still equals the version
    the caller loaded. Otherwise it raises ConcurrencyError and the caller
    re-reads and retries. Two racing writers can never both "win" and
    silently overwrite each other.

    Race without versioning:
    T0: webhook A reads booking (version 5, paid 0)
    T0: webhook B reads booking (version 5, paid 0)
    T1: A writes paid=400 (version 6) ✓
    T2: B writes paid=400 (version 6) ✗ A's payment lost

    With versioning, B's UPDATE ... WHERE version = 5 matches no row,
    B re-reads version 6 (paid 400) and writes paid=800 at version 7.

DailyCounterStore
    increment(day) -> int, a single atomic operation. Never implemented as
    count-then-write.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import date
from typing import Any, Optional, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from booking_core.database.models import BookingRecord, DailyCounter
from booking_core.domain.aggregates import Booking
from booking_core.domain.errors import (
    BookingNotFoundError,
    ConcurrencyError,
    ReferenceAllocationError,
)

logger = structlog.get_logger(__name__)


class BookingRepository(Protocol):
    """Interface for booking storage."""

    async def get(self, booking_id: str) -> Optional[Booking]:
        """Load a booking, or None if it does not exist."""
        ...

    async def get_by_reference(self, reference_number: str) -> Optional[Booking]:
        ...

    async def add(self, booking: Booking) -> None:
        """Insert a new booking at version 1."""
        ...

    async def save(self, booking: Booking, expected_version: int) -> None:
        """
        Persist a mutated booking.

        Raises:
            ConcurrencyError: the stored version is not ``expected_version``
            BookingNotFoundError: the booking was never added
        """
        ...


class DailyCounterStore(Protocol):
    """Interface for the per-day reference sequence."""

    async def increment(self, day: date) -> int:
        """Atomically add one to the day's counter and return the new value."""
        ...


def _record_values(booking: Booking, version: int) -> dict[str, Any]:
    document = booking.to_snapshot()
    document["version"] = version
    return {
        "status": booking.status.value,
        "payment_status": booking.payment.status.value,
        "customer_email": booking.customer.email,
        "document": document,
        "version": version,
        "updated_at": booking.updated_at,
    }


def _to_booking(record: BookingRecord) -> Booking:
    # The column is authoritative for the version.
    return Booking.from_snapshot({**record.document, "version": record.version})


class SqlAlchemyBookingRepository:
    """Booking repository backed by the ``bookings`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, booking_id: str) -> Optional[Booking]:
        async with self.session_factory() as session:
            record = await session.get(BookingRecord, booking_id)
            return _to_booking(record) if record is not None else None

    async def get_by_reference(self, reference_number: str) -> Optional[Booking]:
        async with self.session_factory() as session:
            stmt = select(BookingRecord).where(
                BookingRecord.reference_number == reference_number
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            return _to_booking(record) if record is not None else None

    async def add(self, booking: Booking) -> None:
        record = BookingRecord(
            id=booking.id,
            reference_number=booking.reference_number,
            service_type=booking.service_type.value,
            submitted_at=booking.submitted_at,
            **_record_values(booking, 1),
        )
        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.error(
                    "booking_insert_conflict",
                    booking_id=booking.id,
                    reference_number=booking.reference_number,
                    error=str(e.orig),
                )
                raise ReferenceAllocationError(
                    f"Booking id or reference {booking.reference_number} already exists",
                    booking_id=booking.id,
                ) from e
        booking.mark_persisted(1)

    async def save(self, booking: Booking, expected_version: int) -> None:
        new_version = expected_version + 1
        stmt = (
            update(BookingRecord)
            .where(
                BookingRecord.id == booking.id,
                BookingRecord.version == expected_version,
            )
            .values(**_record_values(booking, new_version))
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                current = await session.scalar(
                    select(BookingRecord.version).where(BookingRecord.id == booking.id)
                )
                if current is None:
                    raise BookingNotFoundError(booking.id)
                raise ConcurrencyError(booking.id, expected_version, current)
            await session.commit()
        booking.mark_persisted(new_version)


class SqlAlchemyDailyCounter:
    """
    Daily counter using an upsert with RETURNING.

    Supported on PostgreSQL and SQLite (3.35+). Any other dialect, or any
    database error, fails closed with ReferenceAllocationError.
    """

    _INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def increment(self, day: date) -> int:
        insert = self._INSERTS.get(self.engine.dialect.name)
        if insert is None:
            raise ReferenceAllocationError(
                f"No atomic counter support for dialect {self.engine.dialect.name}"
            )
        stmt = (
            insert(DailyCounter)
            .values(day=day, value=1)
            .on_conflict_do_update(
                index_elements=[DailyCounter.day],
                set_={"value": DailyCounter.value + 1},
            )
            .returning(DailyCounter.value)
        )
        try:
            async with self.engine.begin() as conn:
                value = (await conn.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            logger.error("daily_counter_increment_failed", day=day.isoformat(), error=str(e))
            raise ReferenceAllocationError(f"Could not allocate sequence for {day}") from e
        return value


# ============================================================================
# IN-MEMORY IMPLEMENTATIONS (for testing and local development)
# ============================================================================


class InMemoryBookingRepository:
    """
    In-memory booking storage with the same version semantics as SQL.

    Stores snapshots, not live objects, so every ``get`` returns an
    independent copy exactly like a database read.
    """

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._references: dict[str, str] = {}

    async def get(self, booking_id: str) -> Optional[Booking]:
        document = self._documents.get(booking_id)
        # Yield after the read like a driver round-trip would, so concurrent
        # writers can load the same version and race on save.
        await asyncio.sleep(0)
        return Booking.from_snapshot(document) if document is not None else None

    async def get_by_reference(self, reference_number: str) -> Optional[Booking]:
        booking_id = self._references.get(reference_number)
        if booking_id is None:
            return None
        return await self.get(booking_id)

    async def add(self, booking: Booking) -> None:
        if booking.id in self._documents or booking.reference_number in self._references:
            raise ReferenceAllocationError(
                f"Booking id or reference {booking.reference_number} already exists",
                booking_id=booking.id,
            )
        document = booking.to_snapshot()
        document["version"] = 1
        self._documents[booking.id] = document
        self._references[booking.reference_number] = booking.id
        booking.mark_persisted(1)

    async def save(self, booking: Booking, expected_version: int) -> None:
        stored = self._documents.get(booking.id)
        if stored is None:
            raise BookingNotFoundError(booking.id)
        current = stored["version"]
        if current != expected_version:
            raise ConcurrencyError(booking.id, expected_version, current)
        document = booking.to_snapshot()
        document["version"] = expected_version + 1
        self._documents[booking.id] = document
        booking.mark_persisted(expected_version + 1)

    def __len__(self) -> int:
        return len(self._documents)


class InMemoryDailyCounter:
    """Lock-guarded counter; safe across threads as well as tasks."""

    def __init__(self) -> None:
        self._values: dict[date, int] = {}
        self._lock = threading.Lock()

    async def increment(self, day: date) -> int:
        with self._lock:
            value = self._values.get(day, 0) + 1
            self._values[day] = value
            return value
