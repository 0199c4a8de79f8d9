"""
Aggregates - Consistency Boundaries

A Booking is the aggregate root: header fields, one service payload, the
status state machine with its audit trail, and the embedded PaymentLedger.
One booking = one optimistic-concurrency boundary; the repository saves the
whole aggregate against the version it was loaded at.

Invariants enforced here:
1. payload tag == service_type
2. status only changes through ``Booking.transition`` (status and history
   are private, exposed read-only)
3. status history is append-only
4. ledger paid amount == sum of counted transactions, recomputed from the
   full set on every change
5. a gateway transaction id is recorded at most once
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog

from booking_core.domain.errors import (
    BookingValidationError,
    CurrencyMismatchError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from booking_core.domain.payloads import ServicePayload, parse_payload
from booking_core.domain.state_machine import MILESTONES, can_transition, is_terminal
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
    utcnow,
)

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


def derive_payment_status(
    paid_cents: int, total_cents: int, refunded: bool = False, cancelled: bool = False
) -> PaymentStatus:
    """
    Ledger status as a pure function of the amounts.

    paid == 0          → pending (refunded if money came back, cancelled if the
                         booking was cancelled)
    0 < paid < total   → partial
    paid >= total      → paid
    """
    if paid_cents <= 0:
        if cancelled:
            return PaymentStatus.CANCELLED
        if refunded:
            return PaymentStatus.REFUNDED
        return PaymentStatus.PENDING
    if paid_cents < total_cents:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PAID


class PaymentLedger:
    """
    What was charged, what was paid, and the transactions that prove it.

    Transactions are never removed or reordered. A pending (manual) entry
    may move once to completed or rejected; nothing else changes in place.
    """

    def __init__(
        self,
        currency: str,
        total_cents: int = 0,
        transactions: Iterable[Transaction] = (),
        cancelled: bool = False,
    ):
        if total_cents < 0:
            raise BookingValidationError(
                "Total amount must not be negative",
                field_errors=[{"field": "total_amount", "message": "must be >= 0"}],
            )
        self._currency = normalize_currency(currency)
        self._total_cents = total_cents
        self._transactions: list[Transaction] = list(transactions)
        self._cancelled = cancelled
        self._paid_cents = 0
        self._status = PaymentStatus.PENDING
        self._recompute()

    @property
    def currency(self) -> str:
        return self._currency

    @property
    def total_cents(self) -> int:
        return self._total_cents

    @property
    def paid_cents(self) -> int:
        return self._paid_cents

    @property
    def balance_cents(self) -> int:
        return max(self._total_cents - self._paid_cents, 0)

    @property
    def status(self) -> PaymentStatus:
        return self._status

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return tuple(self._transactions)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        for transaction in self._transactions:
            if transaction.transaction_id == transaction_id:
                return transaction
        return None

    def _recompute(self) -> None:
        # Always from the full set, never incremented from a cached value.
        self._paid_cents = sum(t.signed_amount_cents for t in self._transactions)
        refunded = any(
            t.kind == TransactionKind.REFUND and t.counts_toward_paid
            for t in self._transactions
        )
        self._status = derive_payment_status(
            self._paid_cents, self._total_cents, refunded, self._cancelled
        )

    def record_transaction(
        self, transaction: Transaction, now: Optional[datetime] = None
    ) -> bool:
        """
        Append a transaction unless its id is already in the ledger.

        Returns:
            bool: True if the ledger changed, False for a duplicate delivery

        Raises:
            CurrencyMismatchError: transaction currency != ledger currency
            BookingValidationError: refund larger than the paid amount
        """
        if self.get_transaction(transaction.transaction_id) is not None:
            return False

        if transaction.currency != self._currency:
            if self._transactions or self._total_cents:
                raise CurrencyMismatchError(self._currency, transaction.currency)
            # Nothing quoted or paid yet: the first payment fixes the currency.
            self._currency = transaction.currency

        if (
            transaction.kind == TransactionKind.REFUND
            and transaction.counts_toward_paid
            and transaction.amount_cents > self._paid_cents
        ):
            raise BookingValidationError(
                f"Refund of {transaction.amount_cents} exceeds paid amount {self._paid_cents}",
                field_errors=[{"field": "amount", "message": "exceeds paid amount"}],
            )

        if transaction.recorded_at is None:
            transaction = transaction.model_copy(update={"recorded_at": now or utcnow()})
        self._transactions.append(transaction)
        self._recompute()
        return True

    def _replace(self, transaction_id: str, **changes: Any) -> Transaction:
        for index, existing in enumerate(self._transactions):
            if existing.transaction_id == transaction_id:
                updated = existing.model_copy(update=changes)
                self._transactions[index] = updated
                self._recompute()
                return updated
        raise TransactionNotFoundError(transaction_id)

    def verify_transaction(
        self, transaction_id: str, verified_by: str, now: Optional[datetime] = None
    ) -> bool:
        """Count a pending manual entry. Returns False if it was already verified."""
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        if transaction.status == TransactionStatus.COMPLETED:
            return False
        if transaction.status != TransactionStatus.PENDING:
            raise BookingValidationError(
                f"Transaction {transaction_id} is {transaction.status.value}, not pending",
                field_errors=[{"field": "transaction_id", "message": "not pending"}],
            )
        if transaction.kind == TransactionKind.REFUND and transaction.amount_cents > self._paid_cents:
            raise BookingValidationError(
                "Refund exceeds paid amount",
                field_errors=[{"field": "amount", "message": "exceeds paid amount"}],
            )
        self._replace(
            transaction_id,
            status=TransactionStatus.COMPLETED,
            verified_by=verified_by,
            verified_at=now or utcnow(),
        )
        return True

    def reject_transaction(
        self,
        transaction_id: str,
        rejected_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Mark a pending manual entry as rejected; it never counts."""
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        if transaction.status == TransactionStatus.REJECTED:
            return False
        if transaction.status != TransactionStatus.PENDING:
            raise BookingValidationError(
                f"Transaction {transaction_id} is {transaction.status.value}, not pending",
                field_errors=[{"field": "transaction_id", "message": "not pending"}],
            )
        notes = transaction.notes
        if reason:
            notes = f"{notes}; rejected: {reason}" if notes else f"rejected: {reason}"
        self._replace(
            transaction_id,
            status=TransactionStatus.REJECTED,
            verified_by=rejected_by,
            verified_at=now or utcnow(),
            notes=notes,
        )
        return True

    def set_total(self, total_cents: int, currency: Optional[str] = None) -> None:
        if total_cents < 0:
            raise BookingValidationError(
                "Total amount must not be negative",
                field_errors=[{"field": "total_amount", "message": "must be >= 0"}],
            )
        if currency is not None:
            code = normalize_currency(currency)
            if code != self._currency:
                if self._transactions:
                    raise CurrencyMismatchError(self._currency, code)
                self._currency = code
        self._total_cents = total_cents
        self._recompute()

    def mark_cancelled(self) -> None:
        self._cancelled = True
        self._recompute()

    def to_dict(self) -> dict[str, Any]:
        return {
            "currency": self._currency,
            "total_cents": self._total_cents,
            "paid_cents": self._paid_cents,
            "status": self._status.value,
            "cancelled": self._cancelled,
            "transactions": [t.model_dump(mode="json") for t in self._transactions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PaymentLedger:
        # paid_cents and status are derived, so they are recomputed, not read.
        return cls(
            currency=data["currency"],
            total_cents=data.get("total_cents", 0),
            transactions=[Transaction.model_validate(t) for t in data.get("transactions", [])],
            cancelled=data.get("cancelled", False),
        )

    def __repr__(self) -> str:
        return (
            f"<PaymentLedger(total={self._total_cents}, paid={self._paid_cents}, "
            f"currency={self._currency}, status={self._status.value})>"
        )


class Booking:
    """
    Booking Aggregate Root.

    Created by ``Booking.submit`` and mutated only through its methods;
    the service layer persists it with an optimistic version check after
    every mutation.
    """

    def __init__(
        self,
        *,
        booking_id: str,
        reference_number: str,
        service_type: ServiceType,
        payload: ServicePayload,
        customer: Customer,
        payment: PaymentLedger,
        submitted_at: datetime,
        status: BookingStatus = BookingStatus.PENDING,
        status_history: Iterable[StatusChange] = (),
        priority: Priority = Priority.NORMAL,
        assigned_to: Optional[str] = None,
        tags: Iterable[str] = (),
        internal_notes: Optional[str] = None,
        updated_at: Optional[datetime] = None,
        milestones: Optional[dict[str, Optional[datetime]]] = None,
        version: int = 0,
    ):
        service_type = ServiceType(service_type)
        if payload.service_type != service_type.value:
            raise BookingValidationError(
                f"Payload variant {payload.service_type} does not match service type "
                f"{service_type.value}",
                field_errors=[{"field": "payload.service_type", "message": "mismatch"}],
                booking_id=booking_id,
            )
        self._id = booking_id
        self._reference_number = reference_number
        self._service_type = service_type
        self._payload = payload
        self._customer = customer
        self._payment = payment
        self._status = BookingStatus(status)
        self._status_history: list[StatusChange] = list(status_history)
        self._submitted_at = submitted_at
        self._updated_at = updated_at or submitted_at
        self._milestones: dict[str, Optional[datetime]] = {
            name: None for name in MILESTONES.values()
        }
        self._milestones.update(milestones or {})
        self._version = version
        self.priority = Priority(priority)
        self.assigned_to = assigned_to
        self.tags = list(tags)
        self.internal_notes = internal_notes

    @classmethod
    def submit(
        cls,
        *,
        reference_number: str,
        service_type: ServiceType,
        payload: ServicePayload,
        customer: Customer,
        currency: str,
        total_cents: int = 0,
        priority: Priority = Priority.NORMAL,
        tags: Iterable[str] = (),
        now: Optional[datetime] = None,
        booking_id: Optional[str] = None,
    ) -> Booking:
        """
        Factory method: a freshly submitted service request.

        This is the only way a new booking comes into existence; it always
        starts ``pending`` with an empty history and an unpaid ledger.
        """
        now = now or utcnow()
        return cls(
            booking_id=booking_id or str(uuid.uuid4()),
            reference_number=reference_number,
            service_type=service_type,
            payload=payload,
            customer=customer,
            payment=PaymentLedger(currency=currency, total_cents=total_cents),
            submitted_at=now,
            priority=priority,
            tags=tags,
        )

    # Read-only state

    @property
    def id(self) -> str:
        return self._id

    @property
    def reference_number(self) -> str:
        return self._reference_number

    @property
    def service_type(self) -> ServiceType:
        return self._service_type

    @property
    def payload(self) -> ServicePayload:
        return self._payload

    @property
    def customer(self) -> Customer:
        return self._customer

    @property
    def status(self) -> BookingStatus:
        return self._status

    @property
    def status_history(self) -> tuple[StatusChange, ...]:
        return tuple(self._status_history)

    @property
    def payment(self) -> PaymentLedger:
        return self._payment

    @property
    def submitted_at(self) -> datetime:
        return self._submitted_at

    @property
    def updated_at(self) -> datetime:
        return self._updated_at

    @property
    def processed_at(self) -> Optional[datetime]:
        return self._milestones["processed_at"]

    @property
    def confirmed_at(self) -> Optional[datetime]:
        return self._milestones["confirmed_at"]

    @property
    def completed_at(self) -> Optional[datetime]:
        return self._milestones["completed_at"]

    @property
    def cancelled_at(self) -> Optional[datetime]:
        return self._milestones["cancelled_at"]

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self._status)

    def mark_persisted(self, version: int) -> None:
        """Called by repositories after a successful versioned save."""
        self._version = version

    def _touch(self, now: Optional[datetime]) -> None:
        self._updated_at = now or utcnow()

    # State machine

    def transition(
        self,
        new_status: BookingStatus | str,
        actor: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StatusChange:
        """
        Move the booking to ``new_status``.

        The history entry is appended before the status changes; the
        milestone for the target status is stamped only on first entry.

        Raises:
            InvalidTransitionError: terminal source, self-transition or a move
                the state machine does not allow
        """
        target = BookingStatus(new_status)
        current = self._status
        if is_terminal(current) or not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value, booking_id=self._id)

        now = now or utcnow()
        change = StatusChange(
            previous_status=current,
            new_status=target,
            changed_by=actor,
            changed_at=now,
            reason=reason,
            notes=notes,
        )
        self._status_history.append(change)
        self._status = target

        milestone = MILESTONES.get(target)
        if milestone is not None and self._milestones[milestone] is None:
            self._milestones[milestone] = now
        if target == BookingStatus.CANCELLED:
            self._payment.mark_cancelled()
        self._touch(now)

        logger.info(
            "booking_status_changed",
            booking_id=self._id,
            reference_number=self._reference_number,
            previous_status=current.value,
            new_status=target.value,
            changed_by=actor,
        )
        return change

    # Ledger

    def record_transaction(
        self, transaction: Transaction, now: Optional[datetime] = None
    ) -> bool:
        try:
            changed = self._payment.record_transaction(transaction, now)
        except BookingValidationError as e:
            e.booking_id = self._id
            raise
        if changed:
            self._touch(now)
        return changed

    def verify_transaction(
        self, transaction_id: str, verified_by: str, now: Optional[datetime] = None
    ) -> bool:
        changed = self._payment.verify_transaction(transaction_id, verified_by, now)
        if changed:
            self._touch(now)
        return changed

    def reject_transaction(
        self,
        transaction_id: str,
        rejected_by: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        changed = self._payment.reject_transaction(transaction_id, rejected_by, reason, now)
        if changed:
            self._touch(now)
        return changed

    def set_total(
        self, total_cents: int, currency: Optional[str] = None, now: Optional[datetime] = None
    ) -> None:
        self._payment.set_total(total_cents, currency)
        self._touch(now)

    # Metadata

    def update_metadata(
        self,
        *,
        priority: Any = _UNSET,
        assigned_to: Any = _UNSET,
        tags: Any = _UNSET,
        internal_notes: Any = _UNSET,
        now: Optional[datetime] = None,
    ) -> None:
        if priority is not _UNSET:
            self.priority = Priority(priority)
        if assigned_to is not _UNSET:
            self.assigned_to = assigned_to
        if tags is not _UNSET:
            self.tags = list(tags)
        if internal_notes is not _UNSET:
            self.internal_notes = internal_notes
        self._touch(now)

    # Persistence

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-serialisable document of the whole aggregate."""
        return {
            "id": self._id,
            "reference_number": self._reference_number,
            "service_type": self._service_type.value,
            "payload": self._payload.model_dump(mode="json"),
            "customer": self._customer.model_dump(mode="json"),
            "status": self._status.value,
            "status_history": [c.model_dump(mode="json") for c in self._status_history],
            "payment": self._payment.to_dict(),
            "priority": self.priority.value,
            "assigned_to": self.assigned_to,
            "tags": list(self.tags),
            "internal_notes": self.internal_notes,
            "submitted_at": self._submitted_at.isoformat(),
            "updated_at": self._updated_at.isoformat(),
            "milestones": {
                name: value.isoformat() if value else None
                for name, value in self._milestones.items()
            },
            "version": self._version,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> Booking:
        service_type = ServiceType(data["service_type"])
        return cls(
            booking_id=data["id"],
            reference_number=data["reference_number"],
            service_type=service_type,
            payload=parse_payload(service_type, data["payload"]),
            customer=Customer.model_validate(data["customer"]),
            payment=PaymentLedger.from_dict(data["payment"]),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            status=BookingStatus(data["status"]),
            status_history=[StatusChange.model_validate(c) for c in data["status_history"]],
            priority=Priority(data.get("priority", Priority.NORMAL.value)),
            assigned_to=data.get("assigned_to"),
            tags=data.get("tags", []),
            internal_notes=data.get("internal_notes"),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            milestones={
                name: datetime.fromisoformat(value) if value else None
                for name, value in data.get("milestones", {}).items()
            },
            version=data.get("version", 0),
        )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self._id}, reference={self._reference_number}, "
            f"service_type={self._service_type.value}, status={self._status.value}, "
            f"version={self._version})>"
        )
