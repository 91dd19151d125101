"""
Allocation ledger: the single gate for allocation state changes.

States::

    PLANNED -> LOCKING -> LOCKED -> RELEASING -> RELEASED
    LOCKED -> ON_HOLD
    PLANNED | LOCKED | ON_HOLD -> CANCELLED

RELEASED and CANCELLED are terminal. Every transition is one conditional
write guarded on the current status; re-applying a transition to an
allocation that is already in the target state is a no-op success. The
ledger flushes but never commits, so callers decide the unit of work.
"""

from dataclasses import dataclass
from datetime import date as Date
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from mealfund.config.settings import settings
from mealfund.core.exceptions import (
    ConflictError,
    EntityAlreadyExistsError,
    ErrorCode,
    IllegalTransition,
    ResourceNotFoundError,
    ValidationError,
)
from mealfund.core.logging import get_logger
from mealfund.models.allocation import (
    Allocation,
    AllocationStatus,
    derive_allocation_id,
)
from mealfund.models.base import utcnow
from mealfund.models.delivery import Delivery
from mealfund.models.directory import Catering, School
from mealfund.models.payment import PaymentLedgerEntry, PaymentStatus
from mealfund.repositories.allocation_repository import AllocationRepository
from mealfund.repositories.payment_repository import PaymentRepository

logger = get_logger(__name__)

S = AllocationStatus

LOCK_SOURCES: FrozenSet[AllocationStatus] = frozenset({S.PLANNED, S.LOCKING})
RELEASE_SOURCES: FrozenSet[AllocationStatus] = frozenset({S.LOCKED, S.RELEASING})
RELAXED_RELEASE_SOURCES: FrozenSet[AllocationStatus] = frozenset(s for s in S if not s.is_terminal)
HOLD_SOURCES: FrozenSet[AllocationStatus] = frozenset({S.LOCKED})
CANCEL_SOURCES: FrozenSet[AllocationStatus] = frozenset({S.PLANNED, S.LOCKED, S.ON_HOLD})


@dataclass(frozen=True)
class TransitionResult:
    allocation: Allocation
    applied: bool
    previous_status: AllocationStatus


class AllocationLedger:
    """Guarded lifecycle operations over allocations."""

    def __init__(self, db: Session):
        self.db = db
        self.repository = AllocationRepository(db)
        self.payments = PaymentRepository(db)

    # ==================== Lookup ====================

    def get(self, allocation_ref: str, refresh: bool = False) -> Allocation:
        allocation = self.repository.get_by_ref(allocation_ref, refresh=refresh)
        if allocation is None:
            raise ResourceNotFoundError("Allocation", allocation_ref)
        return allocation

    def find(self, allocation_ref: str) -> Optional[Allocation]:
        return self.repository.get_by_ref(allocation_ref)

    # ==================== Creation ====================

    def create(
        self,
        school_id: int,
        catering_id: int,
        amount: Decimal,
        delivery_date: Date,
        delivery_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        currency: Optional[str] = None,
    ) -> Allocation:
        """
        Create a PLANNED allocation and its PENDING payment entry.

        Args:
            school_id: Funded school
            catering_id: Caterer to be paid
            amount: Allocation amount, must be positive
            delivery_date: Delivery date; with school and caterer it fixes the on-chain reference
            delivery_id: Delivery the allocation pays for, if already scheduled
            metadata: Free-form details (portions, notes)
            currency: Defaults to the configured currency

        Raises:
            ValidationError: Bad amount or inconsistent delivery
            ResourceNotFoundError: Unknown school, caterer or delivery
            ConflictError: A live allocation already exists for the triple
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Allocation amount must be positive", {"amount": ["must be > 0"]})
        if self.db.get(School, school_id) is None:
            raise ResourceNotFoundError("School", school_id)
        if self.db.get(Catering, catering_id) is None:
            raise ResourceNotFoundError("Catering", catering_id)

        if delivery_id is not None:
            delivery = self.db.get(Delivery, delivery_id)
            if delivery is None:
                raise ResourceNotFoundError("Delivery", delivery_id)
            if (
                delivery.school_id != school_id
                or delivery.catering_id != catering_id
                or delivery.delivery_date != delivery_date
            ):
                raise ValidationError(
                    "Delivery does not match the allocation's school, caterer and date",
                    {"delivery_id": ["mismatch"]},
                )

        existing = self.repository.find_for_triple(school_id, catering_id, delivery_date)
        live = [a for a in existing if a.status != S.CANCELLED]
        if live:
            raise ConflictError(
                "An allocation already exists for this school, caterer and date",
                ErrorCode.DUPLICATE_ENTRY,
                {"allocation_id": live[0].allocation_id},
            )

        allocation_ref = derive_allocation_id(school_id, catering_id, delivery_date)
        for cancelled in existing:
            if cancelled.allocation_id == allocation_ref:
                # Superseded: the new allocation takes over the canonical reference
                self.repository.rename_reference(
                    cancelled.id, f"{allocation_ref}-superseded-{cancelled.id}"
                )
                self.db.expire(cancelled)

        allocation = Allocation(
            allocation_id=allocation_ref,
            school_id=school_id,
            catering_id=catering_id,
            delivery_id=delivery_id,
            delivery_date=delivery_date,
            amount=amount,
            currency=currency or settings.CURRENCY,
            status=S.PLANNED,
            version=1,
            extra_metadata={"delivery_date": delivery_date.isoformat(), **(metadata or {})},
        )
        try:
            self.repository.create(allocation)
        except EntityAlreadyExistsError as e:
            raise ConflictError(
                "An allocation already exists for this school, caterer and date",
                ErrorCode.DUPLICATE_ENTRY,
                {"allocation_id": allocation_ref},
            ) from e

        self.payments.create(
            PaymentLedgerEntry(
                allocation_id=allocation.id,
                school_id=school_id,
                catering_id=catering_id,
                amount=amount,
                currency=allocation.currency,
                status=PaymentStatus.PENDING,
            )
        )
        logger.info(
            f"Allocation {allocation_ref} created",
            extra={"allocation_id": allocation_ref, "amount": str(amount)},
        )
        return allocation

    # ==================== Transitions ====================

    def mark_locking(self, allocation_ref: str) -> TransitionResult:
        return self._transition(allocation_ref, S.LOCKING, LOCK_SOURCES, {})

    def mark_locked(
        self,
        allocation_ref: str,
        tx_ref: str,
        block_ref: Optional[int] = None,
    ) -> TransitionResult:
        return self._transition(
            allocation_ref,
            S.LOCKED,
            LOCK_SOURCES,
            {
                "tx_hash_lock": tx_ref,
                "lock_block_number": block_ref,
                "locked_at": utcnow(),
                "blockchain_confirmed": True,
            },
        )

    def mark_releasing(self, allocation_ref: str) -> TransitionResult:
        return self._transition(allocation_ref, S.RELEASING, RELEASE_SOURCES, {})

    def mark_released(
        self,
        allocation_ref: str,
        tx_ref: str,
        block_ref: Optional[int] = None,
        relaxed: bool = False,
    ) -> TransitionResult:
        """
        Move an allocation to RELEASED.

        Args:
            relaxed: Accept any non-terminal state. The ledger has already
                released the funds, so the record follows it even if the
                lock was never observed.
        """
        allowed = RELAXED_RELEASE_SOURCES if relaxed else RELEASE_SOURCES
        return self._transition(
            allocation_ref,
            S.RELEASED,
            allowed,
            {
                "tx_hash_release": tx_ref,
                "release_block_number": block_ref,
                "released_at": utcnow(),
                "blockchain_confirmed": True,
            },
        )

    def hold(self, allocation_ref: str, reason: str) -> TransitionResult:
        return self._transition(allocation_ref, S.ON_HOLD, HOLD_SOURCES, {"hold_reason": reason})

    def cancel(self, allocation_ref: str, reason: str) -> TransitionResult:
        return self._transition(
            allocation_ref,
            S.CANCELLED,
            CANCEL_SOURCES,
            {"cancelled_reason": reason, "cancelled_at": utcnow()},
        )

    def record_lock_reference(
        self,
        allocation_ref: str,
        tx_ref: str,
        block_ref: Optional[int] = None,
    ) -> bool:
        """
        Back-fill the lock reference of an allocation that moved on without it.

        Returns:
            True if the reference was missing and has been set
        """
        allocation = self.get(allocation_ref)
        filled = self.repository.fill_missing(allocation.id, "tx_hash_lock", tx_ref)
        if block_ref is not None:
            self.repository.fill_missing(allocation.id, "lock_block_number", block_ref)
        self.repository.fill_missing(allocation.id, "locked_at", utcnow())
        self.repository.reload(allocation.id)
        if filled:
            logger.info(f"Lock reference back-filled for {allocation_ref}", extra={"tx_hash": tx_ref})
        return filled

    def observe_block(self, allocation: Allocation, block_number: Optional[int]) -> None:
        """Record that ledger events up to ``block_number`` were applied."""
        if block_number is None:
            return
        self.repository.raise_last_event_block(allocation.id, block_number)
        self.repository.reload(allocation.id)

    def _transition(
        self,
        allocation_ref: str,
        target: AllocationStatus,
        allowed: FrozenSet[AllocationStatus],
        values: Dict[str, Any],
    ) -> TransitionResult:
        allocation = self.get(allocation_ref)
        previous = allocation.status

        applied = self.repository.conditional_update(allocation.id, allowed, {**values, "status": target})
        current = self.repository.reload(allocation.id)

        if applied:
            logger.info(
                f"Allocation {allocation_ref}: {previous.value} -> {target.value}",
                extra={"allocation_id": allocation_ref, "version": current.version},
            )
            return TransitionResult(current, True, previous)

        if current.status == target:
            logger.debug(f"Allocation {allocation_ref} already {target.value}")
            return TransitionResult(current, False, current.status)

        raise IllegalTransition(allocation_ref, current.status.value, target.value)


__all__ = [
    "AllocationLedger",
    "TransitionResult",
    "LOCK_SOURCES",
    "RELEASE_SOURCES",
    "RELAXED_RELEASE_SOURCES",
    "HOLD_SOURCES",
    "CANCEL_SOURCES",
]
