"""
Tests for the booking status state machine and its audit trail.
"""
from datetime import datetime, timedelta, timezone

import pytest

from booking_core.domain import (
    Booking,
    BookingStatus,
    BookingValidationError,
    Customer,
    InvalidTransitionError,
    PaymentStatus,
    ServiceType,
    parse_payload,
)
from booking_core.domain.state_machine import ALLOWED_TRANSITIONS, TERMINAL_STATUSES

T0 = datetime(2025, 1, 14, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def booking(hotel_payload: dict, customer_data: dict) -> Booking:
    return Booking.submit(
        reference_number="NJ-HTL-250114-0001",
        service_type=ServiceType.HOTEL_BOOKING,
        payload=parse_payload(ServiceType.HOTEL_BOOKING, hotel_payload),
        customer=Customer.model_validate(customer_data),
        currency="USD",
        total_cents=1000,
        now=T0,
    )


class TestTransitions:

    @pytest.mark.unit
    def test_new_booking_is_pending_with_empty_history(self, booking: Booking) -> None:
        assert booking.status == BookingStatus.PENDING
        assert booking.status_history == ()
        assert booking.submitted_at == T0
        assert booking.payment.status == PaymentStatus.PENDING

    @pytest.mark.unit
    def test_processing_then_cancelled(self, booking: Booking) -> None:
        """
        processing → cancelled leaves two history entries, stamps
        cancelled_at and closes the booking to any further move.
        """
        booking.transition(BookingStatus.PROCESSING, actor="staff:ada", now=T0)
        booking.transition(
            BookingStatus.CANCELLED,
            actor="staff:ada",
            reason="Customer request",
            now=T0 + timedelta(hours=1),
        )

        history = booking.status_history
        assert [(c.previous_status, c.new_status) for c in history] == [
            (BookingStatus.PENDING, BookingStatus.PROCESSING),
            (BookingStatus.PROCESSING, BookingStatus.CANCELLED),
        ]
        assert history[1].reason == "Customer request"
        assert booking.processed_at == T0
        assert booking.cancelled_at == T0 + timedelta(hours=1)
        assert booking.payment.status == PaymentStatus.CANCELLED

        with pytest.raises(InvalidTransitionError):
            booking.transition(BookingStatus.PENDING, actor="staff:ada")
        assert len(booking.status_history) == 2

    @pytest.mark.unit
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_no_move_out_of_terminal_states(self, booking: Booking, terminal: BookingStatus) -> None:
        if terminal == BookingStatus.COMPLETED:
            booking.transition(BookingStatus.CONFIRMED, actor="staff")
        booking.transition(terminal, actor="staff")
        before = booking.status_history

        for target in BookingStatus:
            with pytest.raises(InvalidTransitionError):
                booking.transition(target, actor="staff")

        assert booking.status == terminal
        assert booking.status_history == before

    @pytest.mark.unit
    def test_self_transition_rejected(self, booking: Booking) -> None:
        with pytest.raises(InvalidTransitionError) as exc_info:
            booking.transition(BookingStatus.PENDING, actor="staff")

        assert exc_info.value.current == "pending"
        assert exc_info.value.target == "pending"
        assert booking.status_history == ()

    @pytest.mark.unit
    def test_disallowed_move_rejected(self, booking: Booking) -> None:
        with pytest.raises(InvalidTransitionError):
            booking.transition(BookingStatus.COMPLETED, actor="staff")
        assert booking.status == BookingStatus.PENDING

    @pytest.mark.unit
    def test_milestone_not_overwritten_on_reentry(self, booking: Booking) -> None:
        booking.transition(BookingStatus.PROCESSING, actor="staff", now=T0)
        booking.transition(BookingStatus.ON_HOLD, actor="staff", now=T0 + timedelta(days=1))
        booking.transition(BookingStatus.PROCESSING, actor="staff", now=T0 + timedelta(days=2))

        assert booking.processed_at == T0
        assert len(booking.status_history) == 3

    @pytest.mark.unit
    def test_status_is_read_only(self, booking: Booking) -> None:
        with pytest.raises(AttributeError):
            booking.status = BookingStatus.COMPLETED  # type: ignore[misc]

    @pytest.mark.unit
    def test_every_non_terminal_state_can_be_cancelled(self) -> None:
        for status, targets in ALLOWED_TRANSITIONS.items():
            if status in TERMINAL_STATUSES:
                assert targets == frozenset()
            else:
                assert BookingStatus.CANCELLED in targets
                assert status not in targets


class TestSnapshot:

    @pytest.mark.unit
    def test_snapshot_restores_history_ledger_and_milestones(self, booking: Booking) -> None:
        booking.transition(BookingStatus.PROCESSING, actor="staff", now=T0)
        booking.update_metadata(tags=["vip"], assigned_to="staff:ada")
        booking.mark_persisted(3)

        restored = Booking.from_snapshot(booking.to_snapshot())

        assert restored.status == BookingStatus.PROCESSING
        assert restored.status_history == booking.status_history
        assert restored.processed_at == T0
        assert restored.payment.total_cents == 1000
        assert restored.tags == ["vip"]
        assert restored.assigned_to == "staff:ada"
        assert restored.version == 3

    @pytest.mark.unit
    def test_payload_must_match_service_type(self, booking: Booking, customer_data: dict) -> None:
        with pytest.raises(BookingValidationError):
            Booking.submit(
                reference_number="NJ-FLT-250114-0002",
                service_type=ServiceType.FLIGHT_BOOKING,
                payload=booking.payload,
                customer=Customer.model_validate(customer_data),
                currency="USD",
            )
