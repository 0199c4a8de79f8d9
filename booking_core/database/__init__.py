"""Database package for the booking core."""
from .connection import close_db, get_engine, get_session_factory, init_db, make_session_factory
from .models import Base, BookingRecord, DailyCounter
from .repository import (
    BookingRepository,
    DailyCounterStore,
    InMemoryBookingRepository,
    InMemoryDailyCounter,
    SqlAlchemyBookingRepository,
    SqlAlchemyDailyCounter,
)

__all__ = [
    "Base",
    "BookingRecord",
    "BookingRepository",
    "DailyCounter",
    "DailyCounterStore",
    "InMemoryBookingRepository",
    "InMemoryDailyCounter",
    "SqlAlchemyBookingRepository",
    "SqlAlchemyDailyCounter",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "make_session_factory",
]
