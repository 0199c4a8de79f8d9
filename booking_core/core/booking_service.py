"""
Booking service - the application operations on bookings.

Every mutation follows the same cycle:
1. Load the booking (remember its version)
2. Apply the change through the aggregate
3. Save with the remembered version as the expected version
4. On ConcurrencyError, start again from step 1 (bounded, jittered backoff)

No locks are held across awaits; two writers that race on one booking both
land, one of them after a re-read. Duplicate deliveries change nothing and
are not saved at all.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from booking_core.config import Settings, get_settings
from booking_core.core.reference import ReferenceGenerator
from booking_core.database.repository import BookingRepository
from booking_core.domain.aggregates import Booking
from booking_core.domain.errors import (
    BookingNotFoundError,
    BookingValidationError,
    ConcurrencyError,
    CurrencyMismatchError,
)
from booking_core.domain.payloads import confirmation_message, parse_payload
from booking_core.domain.value_objects import (
    BookingStatus,
    Customer,
    PaymentStatus,
    Priority,
    ServiceType,
    StatusChange,
    Transaction,
    TransactionKind,
    TransactionStatus,
    normalize_currency,
    to_major_units,
    to_minor_units,
    utcnow,
)
from booking_core.integrations.notifications import NotificationSender
from booking_core.monitoring.logging import booking_context
from booking_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SYSTEM_PAYMENTS_ACTOR = "system:payments"
METADATA_FIELDS = frozenset({"priority", "assigned_to", "tags", "internal_notes"})
AUTO_CONFIRM_FROM = frozenset({BookingStatus.PENDING, BookingStatus.PROCESSING})


@dataclass(frozen=True)
class TransactionOutcome:
    """Result of submitting a transaction to a booking's ledger."""

    booking: Booking
    transaction: Transaction
    recorded: bool

    @property
    def duplicate(self) -> bool:
        return not self.recorded


def _field_errors(error: ValidationError, prefix: str) -> List[Dict[str, Any]]:
    errors = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        errors.append(
            {
                "field": f"{prefix}.{location}" if location else prefix,
                "message": item["msg"],
            }
        )
    return errors


def payment_confirmation_data(booking: Booking, transaction: Transaction) -> Dict[str, Any]:
    return {
        "customer_name": booking.customer.name,
        "reference_number": booking.reference_number,
        "amount": str(to_major_units(transaction.amount_cents, transaction.currency)),
        "currency": transaction.currency,
        "transaction_id": transaction.transaction_id,
        "payment_status": booking.payment.status.value,
    }


class BookingService:
    """
    Creates bookings and applies every later change to them.

    Collaborators are injected: the repository, the reference generator and
    the notification sender.
    """

    def __init__(
        self,
        repository: BookingRepository,
        reference_generator: ReferenceGenerator,
        notifier: NotificationSender,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.reference_generator = reference_generator
        self.notifier = notifier
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, booking_id: str) -> Booking:
        booking = await self.repository.get(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    async def _mutate(
        self, booking_id: str, operation: str, mutate: Callable[[Booking], bool]
    ) -> Tuple[Booking, bool]:
        """
        Run load → mutate → versioned save, retrying the cycle on conflicts.

        ``mutate`` returns False when the aggregate did not change; nothing is
        saved in that case.

        Raises:
            ConcurrencyError: still conflicting after the configured attempts
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyError),
            stop=stop_after_attempt(self.settings.concurrency_max_attempts),
            wait=wait_random_exponential(
                multiplier=self.settings.concurrency_retry_base_delay, max=2.0
            ),
            reraise=True,
        ):
            with attempt, booking_context(booking_id, operation):
                booking = await self._load(booking_id)
                expected_version = booking.version
                changed = mutate(booking)
                if not changed:
                    return booking, False
                try:
                    await self.repository.save(booking, expected_version)
                except ConcurrencyError as e:
                    metrics.record_concurrency_conflict(operation)
                    logger.warning(
                        "booking_save_conflict",
                        expected_version=e.expected_version,
                        current_version=e.current_version,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise
                return booking, True
        raise AssertionError("unreachable")

    def _auto_confirm(
        self, booking: Booking, now: Optional[datetime], changes: List[StatusChange]
    ) -> None:
        if booking.payment.status == PaymentStatus.PAID and booking.status in AUTO_CONFIRM_FROM:
            changes.append(
                booking.transition(
                    BookingStatus.CONFIRMED,
                    actor=SYSTEM_PAYMENTS_ACTOR,
                    reason="Payment received in full",
                    now=now,
                )
            )

    @staticmethod
    def _record_transitions(changes: Iterable[StatusChange]) -> None:
        for change in changes:
            metrics.record_transition(change.previous_status.value, change.new_status.value)

    async def _notify(self, to: str, template_name: str, data: Dict[str, Any]) -> bool:
        """Best-effort send; failures are logged and reported as False."""
        try:
            result = await self.notifier.send(to, template_name, data)
        except Exception as e:
            logger.error(
                "notification_failed",
                to=to,
                template=template_name,
                error=str(e),
            )
            return False
        if not result.success:
            logger.warning(
                "notification_not_delivered",
                to=to,
                template=template_name,
                error=result.error,
            )
        return result.success

    @staticmethod
    def _currency_code(currency: str) -> str:
        try:
            code = normalize_currency(currency)
        except ValueError as e:
            raise BookingValidationError(
                str(e), field_errors=[{"field": "currency", "message": str(e)}]
            ) from e
        return code

    @staticmethod
    def _amount_to_cents(amount: Decimal | int | float | str, currency: str, field: str) -> int:
        try:
            cents = to_minor_units(amount, currency)
        except ValueError as e:
            raise BookingValidationError(
                str(e), field_errors=[{"field": field, "message": str(e)}]
            ) from e
        return cents

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        service_type: ServiceType | str,
        payload: Mapping[str, Any] | BaseModel,
        customer: Mapping[str, Any] | Customer,
        total_amount: Optional[Decimal | int | float | str] = None,
        currency: Optional[str] = None,
        priority: Priority | str = Priority.NORMAL,
        tags: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Validate and persist a new booking, then send the submission email.

        Args:
            service_type: one of the ServiceType values
            payload: service-specific fields (validated as that service's variant)
            customer: contact details
            total_amount: optional quote in major units
            currency: ledger currency (settings default when omitted)

        Returns:
            Booking: the persisted booking (status pending, version 1)

        Raises:
            BookingValidationError: any field failed validation; nothing persisted
            ReferenceAllocationError: no reference could be allocated; nothing persisted
        """
        now = now or utcnow()
        field_errors: List[Dict[str, Any]] = []

        try:
            service = ServiceType(service_type)
        except ValueError:
            raise BookingValidationError(
                f"Unknown service type: {service_type!r}",
                field_errors=[{"field": "service_type", "message": "unknown service type"}],
            )

        parsed_payload = None
        try:
            parsed_payload = parse_payload(service, dict(payload) if isinstance(payload, Mapping) else payload)
        except ValidationError as e:
            field_errors.extend(_field_errors(e, "payload"))
        except ValueError as e:
            field_errors.append({"field": "payload.service_type", "message": str(e)})

        parsed_customer = None
        try:
            parsed_customer = (
                customer if isinstance(customer, Customer) else Customer.model_validate(customer)
            )
        except ValidationError as e:
            field_errors.extend(_field_errors(e, "customer"))

        ledger_currency = currency or self.settings.default_currency
        total_cents = 0
        try:
            ledger_currency = normalize_currency(ledger_currency)
        except ValueError as e:
            field_errors.append({"field": "currency", "message": str(e)})
        else:
            try:
                if total_amount is not None:
                    total_cents = to_minor_units(total_amount, ledger_currency)
            except ValueError as e:
                field_errors.append({"field": "total_amount", "message": str(e)})

        try:
            booking_priority = Priority(priority)
        except ValueError:
            field_errors.append({"field": "priority", "message": f"invalid priority {priority!r}"})

        if field_errors:
            logger.warning(
                "booking_validation_failed",
                service_type=service.value,
                field_errors=field_errors,
            )
            raise BookingValidationError(
                f"Invalid {service.value} booking", field_errors=field_errors
            )

        reference_number = await self.reference_generator.allocate(service, now)
        booking = Booking.submit(
            reference_number=reference_number,
            service_type=service,
            payload=parsed_payload,
            customer=parsed_customer,
            currency=ledger_currency,
            total_cents=total_cents,
            priority=booking_priority,
            tags=tags,
            now=now,
        )
        await self.repository.add(booking)

        metrics.record_booking_created(service.value)
        logger.info(
            "booking_created",
            booking_id=booking.id,
            reference_number=reference_number,
            service_type=service.value,
            total_cents=total_cents,
            currency=ledger_currency,
        )

        template_name, data = confirmation_message(booking.payload)
        await self._notify(
            booking.customer.email,
            template_name,
            {
                **data,
                "customer_name": booking.customer.name,
                "reference_number": reference_number,
                "service_type": service.value,
            },
        )
        return booking

    async def get_booking(self, booking_id: str) -> Booking:
        return await self._load(booking_id)

    async def get_booking_by_reference(self, reference_number: str) -> Booking:
        booking = await self.repository.get_by_reference(reference_number)
        if booking is None:
            raise BookingNotFoundError(reference_number)
        return booking

    async def get_payment_history(self, booking_id: str) -> Dict[str, Any]:
        """Totals, derived status and the full transaction list of a booking."""
        booking = await self._load(booking_id)
        ledger = booking.payment
        return {
            "booking_id": booking.id,
            "reference_number": booking.reference_number,
            "currency": ledger.currency,
            "total_amount_cents": ledger.total_cents,
            "paid_amount_cents": ledger.paid_cents,
            "balance_cents": ledger.balance_cents,
            "status": ledger.status.value,
            "transactions": [t.model_dump(mode="json") for t in ledger.transactions],
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def transition(
        self,
        booking_id: str,
        new_status: BookingStatus | str,
        actor: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        notify: bool = False,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Move a booking to ``new_status``.

        Raises:
            InvalidTransitionError: the state machine does not allow the move
            BookingNotFoundError: unknown booking
        """
        if not actor:
            raise BookingValidationError(
                "actor is required", field_errors=[{"field": "actor", "message": "required"}]
            )
        changes: List[StatusChange] = []

        def apply(booking: Booking) -> bool:
            changes.clear()
            changes.append(booking.transition(new_status, actor, reason, notes, now))
            return True

        booking, _ = await self._mutate(booking_id, "transition", apply)
        self._record_transitions(changes)

        if notify:
            await self._notify(
                booking.customer.email,
                "status-update",
                {
                    "customer_name": booking.customer.name,
                    "reference_number": booking.reference_number,
                    "status": booking.status.value,
                    "reason": reason,
                },
            )
        return booking

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def record_transaction(
        self,
        booking_id: str,
        transaction: Transaction,
        now: Optional[datetime] = None,
    ) -> TransactionOutcome:
        """
        Apply a transaction to a booking's ledger exactly once.

        A transaction id already in the ledger is a no-op (``recorded`` False).
        When the ledger becomes fully paid, a pending or processing booking is
        confirmed automatically.

        Raises:
            CurrencyMismatchError: currency differs from the ledger currency
            BookingValidationError: refund exceeds the paid amount
            BookingNotFoundError: unknown booking
        """
        changes: List[StatusChange] = []

        def apply(booking: Booking) -> bool:
            changes.clear()
            if not booking.record_transaction(transaction, now):
                return False
            self._auto_confirm(booking, now, changes)
            return True

        try:
            booking, recorded = await self._mutate(booking_id, "record_transaction", apply)
        except BookingValidationError as e:
            outcome = "currency_mismatch" if isinstance(e, CurrencyMismatchError) else "rejected"
            metrics.record_ledger_transaction(transaction.method, outcome)
            logger.error(
                "ledger_transaction_rejected",
                booking_id=booking_id,
                transaction_id=transaction.transaction_id,
                error=str(e),
            )
            raise

        self._record_transitions(changes)
        outcome = "recorded" if recorded else "duplicate"
        metrics.record_ledger_transaction(transaction.method, outcome, transaction.amount_cents)
        logger.info(
            "ledger_transaction_applied",
            booking_id=booking_id,
            transaction_id=transaction.transaction_id,
            kind=transaction.kind.value,
            method=transaction.method,
            amount_cents=transaction.amount_cents,
            outcome=outcome,
            paid_cents=booking.payment.paid_cents,
            payment_status=booking.payment.status.value,
        )
        stored = booking.payment.get_transaction(transaction.transaction_id) or transaction
        return TransactionOutcome(booking=booking, transaction=stored, recorded=recorded)

    async def record_manual_payment(
        self,
        booking_id: str,
        amount: Decimal | int | float | str,
        currency: Optional[str] = None,
        method: str = "bank-transfer",
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransactionOutcome:
        """
        Record an off-gateway payment (bank transfer, cash, ...).

        The entry is pending and does not count toward the paid amount until
        ``verify_transaction`` is called for it.
        """
        booking = await self._load(booking_id)
        ledger_currency = self._currency_code(currency or booking.payment.currency)
        amount_cents = self._amount_to_cents(amount, ledger_currency, "amount")
        if amount_cents <= 0:
            raise BookingValidationError(
                "Amount must be positive",
                field_errors=[{"field": "amount", "message": "must be > 0"}],
                booking_id=booking_id,
            )
        transaction = Transaction(
            transaction_id=reference or f"MANUAL-{uuid.uuid4().hex[:12].upper()}",
            kind=TransactionKind.PAYMENT,
            amount_cents=amount_cents,
            currency=ledger_currency,
            method=method,
            status=TransactionStatus.PENDING,
            occurred_at=now or utcnow(),
            notes=notes or "Manual payment entry",
        )
        return await self.record_transaction(booking_id, transaction, now)

    async def verify_transaction(
        self,
        booking_id: str,
        transaction_id: str,
        verified_by: str,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Count a pending manual entry toward the paid amount.

        Verifying an entry that is already completed changes nothing.

        Raises:
            TransactionNotFoundError: no such transaction on this booking
            BookingValidationError: the entry was rejected
        """
        changes: List[StatusChange] = []

        def apply(booking: Booking) -> bool:
            changes.clear()
            if not booking.verify_transaction(transaction_id, verified_by, now):
                return False
            self._auto_confirm(booking, now, changes)
            return True

        booking, changed = await self._mutate(booking_id, "verify_transaction", apply)
        self._record_transitions(changes)
        if changed:
            transaction = booking.payment.get_transaction(transaction_id)
            logger.info(
                "manual_transaction_verified",
                booking_id=booking_id,
                transaction_id=transaction_id,
                verified_by=verified_by,
                payment_status=booking.payment.status.value,
            )
            await self._notify(
                booking.customer.email,
                "payment-confirmation",
                payment_confirmation_data(booking, transaction),
            )
        return booking

    async def reject_transaction(
        self,
        booking_id: str,
        transaction_id: str,
        rejected_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        def apply(booking: Booking) -> bool:
            return booking.reject_transaction(transaction_id, rejected_by, reason, now)

        booking, changed = await self._mutate(booking_id, "reject_transaction", apply)
        if changed:
            logger.info(
                "manual_transaction_rejected",
                booking_id=booking_id,
                transaction_id=transaction_id,
                rejected_by=rejected_by,
                reason=reason,
            )
        return booking

    async def record_refund(
        self,
        booking_id: str,
        amount: Decimal | int | float | str,
        refunded_by: str,
        currency: Optional[str] = None,
        reference: Optional[str] = None,
        reason: Optional[str] = None,
        method: str = "refund",
        now: Optional[datetime] = None,
    ) -> TransactionOutcome:
        """
        Record money returned to the customer.

        Raises:
            BookingValidationError: amount not positive or above the paid amount
        """
        booking = await self._load(booking_id)
        ledger_currency = self._currency_code(currency or booking.payment.currency)
        amount_cents = self._amount_to_cents(amount, ledger_currency, "amount")
        if amount_cents <= 0:
            raise BookingValidationError(
                "Refund amount must be positive",
                field_errors=[{"field": "amount", "message": "must be > 0"}],
                booking_id=booking_id,
            )
        transaction = Transaction(
            transaction_id=reference or f"REFUND-{uuid.uuid4().hex[:12].upper()}",
            kind=TransactionKind.REFUND,
            amount_cents=amount_cents,
            currency=ledger_currency,
            method=method,
            status=TransactionStatus.COMPLETED,
            occurred_at=now or utcnow(),
            notes=reason,
            verified_by=refunded_by,
            verified_at=now or utcnow(),
        )
        return await self.record_transaction(booking_id, transaction, now)

    async def set_total(
        self,
        booking_id: str,
        total_amount: Decimal | int | float | str,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Set the quoted total (major units); the currency may change only on an empty ledger."""
        changes: List[StatusChange] = []

        def apply(booking: Booking) -> bool:
            changes.clear()
            code = self._currency_code(currency or booking.payment.currency)
            booking.set_total(self._amount_to_cents(total_amount, code, "total_amount"), code, now)
            self._auto_confirm(booking, now, changes)
            return True

        booking, _ = await self._mutate(booking_id, "set_total", apply)
        self._record_transitions(changes)
        logger.info(
            "booking_total_set",
            booking_id=booking_id,
            total_cents=booking.payment.total_cents,
            currency=booking.payment.currency,
            payment_status=booking.payment.status.value,
        )
        return booking

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def update_metadata(
        self, booking_id: str, now: Optional[datetime] = None, **changes: Any
    ) -> Booking:
        """
        Update priority, assigned_to, tags and/or internal_notes.

        Only the fields passed are changed; passing ``assigned_to=None``
        clears the assignee.
        """
        unknown = sorted(set(changes) - METADATA_FIELDS)
        if unknown:
            raise BookingValidationError(
                f"Cannot update fields: {', '.join(unknown)}",
                field_errors=[{"field": name, "message": "not updatable"} for name in unknown],
                booking_id=booking_id,
            )
        if "priority" in changes:
            try:
                changes["priority"] = Priority(changes["priority"])
            except ValueError as e:
                raise BookingValidationError(
                    str(e),
                    field_errors=[{"field": "priority", "message": "invalid priority"}],
                    booking_id=booking_id,
                ) from e

        def apply(booking: Booking) -> bool:
            booking.update_metadata(now=now, **changes)
            return True

        booking, _ = await self._mutate(booking_id, "update_metadata", apply)
        logger.info("booking_metadata_updated", booking_id=booking_id, fields=sorted(changes))
        return booking
