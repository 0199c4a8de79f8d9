"""SQLAlchemy database models for bookings and reference counters."""
from datetime import date, datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class BookingRecord(Base):
    """
    Bookings table.

    The full aggregate is stored as one JSON document; status, payment status,
    customer email and timestamps are copied into columns for querying.
    ``version`` is the optimistic-concurrency counter checked on every update.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    reference_number: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, index=True
    )
    service_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    document: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("version >= 1", name="positive_version"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'confirmed', 'completed', "
            "'cancelled', 'on-hold')",
            name="valid_booking_status",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'partial', 'paid', 'refunded', 'cancelled')",
            name="valid_payment_status",
        ),
        Index("idx_bookings_submitted_desc", "submitted_at", postgresql_ops={"submitted_at": "DESC"}),
        Index("idx_bookings_service_status", "service_type", "status"),
    )

    def __repr__(self) -> str:
        """String representation of BookingRecord."""
        return (
            f"<BookingRecord(id={self.id}, reference={self.reference_number}, "
            f"status={self.status}, version={self.version})>"
        )


class DailyCounter(Base):
    """
    Per-day reference sequence.

    Incremented with a single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
    so concurrent creators never read the same value.
    """

    __tablename__ = "daily_counters"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("value >= 0", name="non_negative_counter"),)

    def __repr__(self) -> str:
        return f"<DailyCounter(day={self.day}, value={self.value})>"
