"""
Tests for the allocation ledger state machine and the admin lock flow.
"""

from datetime import date
from decimal import Decimal

import pytest

from mealfund.core.exceptions import (
    ConflictError,
    ErrorCode,
    ExternalCallFailure,
    IllegalTransition,
    ResourceNotFoundError,
    ValidationError,
)
from mealfund.models import (
    Allocation,
    AllocationStatus,
    EscrowTransactionKind,
    EscrowTransactionRecord,
    PaymentEvent,
    PaymentEventType,
    PaymentLedgerEntry,
    PaymentStatus,
)
from mealfund.models.allocation import derive_allocation_id
from mealfund.services.allocation import AllocationLedger, AllocationService

from tests.conftest import AMOUNT, DELIVERY_DATE


class TestCreate:
    def test_reference_is_derived_from_triple(self, planned_allocation, seed):
        expected = derive_allocation_id(seed["school"].id, seed["catering"].id, DELIVERY_DATE)
        assert planned_allocation.allocation_id == expected
        assert expected.startswith("0x") and len(expected) == 66
        assert planned_allocation.status == AllocationStatus.PLANNED
        assert planned_allocation.version == 1

    def test_creates_pending_payment_entry(self, db, planned_allocation):
        entry = db.query(PaymentLedgerEntry).filter_by(allocation_id=planned_allocation.id).one()
        assert entry.status == PaymentStatus.PENDING
        assert entry.amount == AMOUNT

    def test_rejects_non_positive_amount(self, db, seed):
        ledger = AllocationLedger(db)
        with pytest.raises(ValidationError):
            ledger.create(seed["school"].id, seed["catering"].id, Decimal("0"), DELIVERY_DATE)

    def test_rejects_unknown_school(self, db, seed):
        with pytest.raises(ResourceNotFoundError):
            AllocationLedger(db).create(9999, seed["catering"].id, AMOUNT, DELIVERY_DATE)

    def test_rejects_mismatching_delivery(self, db, seed):
        with pytest.raises(ValidationError):
            AllocationLedger(db).create(
                seed["school"].id,
                seed["catering"].id,
                AMOUNT,
                date(2025, 2, 1),
                delivery_id=seed["delivery"].id,
            )

    def test_duplicate_triple_conflicts(self, db, seed, planned_allocation, ledger):
        with pytest.raises(ConflictError) as exc_info:
            AllocationService(db, ledger).create(
                seed["school"].id, seed["catering"].id, AMOUNT, DELIVERY_DATE
            )
        assert exc_info.value.error_code == ErrorCode.DUPLICATE_ENTRY

    def test_cancelled_allocation_is_superseded(self, db, seed, planned_allocation, ledger):
        """A new allocation may take over the reference of a cancelled one."""
        service = AllocationService(db, ledger)
        service.cancel(planned_allocation.allocation_id, "budget revised")

        replacement = service.create(seed["school"].id, seed["catering"].id, AMOUNT, DELIVERY_DATE)

        assert replacement.allocation_id == planned_allocation.allocation_id
        assert replacement.id != planned_allocation.id
        db.expire_all()
        old = db.get(Allocation, planned_allocation.id)
        assert old.allocation_id.endswith(f"-superseded-{old.id}")
        assert old.status == AllocationStatus.CANCELLED


class TestTransitions:
    def test_happy_path_bumps_version(self, db, planned_allocation):
        ledger = AllocationLedger(db)
        ref = planned_allocation.allocation_id

        ledger.mark_locking(ref)
        locked = ledger.mark_locked(ref, "0xlock", 10)
        assert locked.applied
        assert locked.allocation.tx_hash_lock == "0xlock"
        assert locked.allocation.locked_at is not None

        ledger.mark_releasing(ref)
        released = ledger.mark_released(ref, "0xrelease", 11)
        assert released.previous_status == AllocationStatus.RELEASING
        assert released.allocation.status == AllocationStatus.RELEASED
        assert released.allocation.version == 5

    def test_reapplying_target_state_is_noop(self, db, planned_allocation):
        ledger = AllocationLedger(db)
        ref = planned_allocation.allocation_id
        ledger.mark_locked(ref, "0xlock", 10)

        again = ledger.mark_locked(ref, "0xother", 12)

        assert not again.applied
        assert again.allocation.tx_hash_lock == "0xlock"
        assert again.allocation.version == 2

    def test_release_from_planned_is_illegal(self, db, planned_allocation):
        with pytest.raises(IllegalTransition) as exc_info:
            AllocationLedger(db).mark_released(planned_allocation.allocation_id, "0xrelease", 11)
        assert exc_info.value.error_code == ErrorCode.ILLEGAL_TRANSITION
        assert exc_info.value.details["current_status"] == "PLANNED"

    def test_relaxed_release_accepts_planned(self, db, planned_allocation):
        result = AllocationLedger(db).mark_released(
            planned_allocation.allocation_id, "0xrelease", 11, relaxed=True
        )
        assert result.applied
        assert result.allocation.status == AllocationStatus.RELEASED

    @pytest.mark.parametrize("terminal", ["release", "cancel"])
    def test_terminal_states_are_final(self, db, planned_allocation, terminal):
        ledger = AllocationLedger(db)
        ref = planned_allocation.allocation_id
        if terminal == "release":
            ledger.mark_released(ref, "0xrelease", 11, relaxed=True)
        else:
            ledger.cancel(ref, "no longer funded")

        with pytest.raises(IllegalTransition):
            ledger.mark_locking(ref)
        with pytest.raises(IllegalTransition):
            ledger.hold(ref, "audit")

    def test_hold_from_locked(self, db, planned_allocation, locked_allocation):
        result = AllocationLedger(db).hold(locked_allocation.allocation_id, "quality audit")
        assert result.allocation.status == AllocationStatus.ON_HOLD
        assert result.allocation.hold_reason == "quality audit"

    def test_cancel_from_hold(self, db, locked_allocation):
        ledger = AllocationLedger(db)
        ledger.hold(locked_allocation.allocation_id, "quality audit")
        result = ledger.cancel(locked_allocation.allocation_id, "caterer suspended")
        assert result.allocation.status == AllocationStatus.CANCELLED
        assert result.allocation.cancelled_reason == "caterer suspended"

    def test_lock_reference_backfill_keeps_existing(self, db, planned_allocation):
        ledger = AllocationLedger(db)
        ref = planned_allocation.allocation_id
        ledger.mark_released(ref, "0xrelease", 11, relaxed=True)

        assert ledger.record_lock_reference(ref, "0xlock", 9)
        assert not ledger.record_lock_reference(ref, "0xlate", 10)
        assert ledger.get(ref).tx_hash_lock == "0xlock"

    def test_unknown_reference(self, db, seed):
        with pytest.raises(ResourceNotFoundError):
            AllocationLedger(db).get("0xmissing")


class TestLockFlow:
    def test_lock_records_escrow_history(self, db, locked_allocation, ledger):
        assert locked_allocation.status == AllocationStatus.LOCKED
        assert ledger.lock_calls == [locked_allocation.allocation_id]

        db.expire_all()
        payment = db.query(PaymentLedgerEntry).filter_by(allocation_id=locked_allocation.id).one()
        assert payment.status == PaymentStatus.LOCKED
        records = db.query(EscrowTransactionRecord).filter_by(allocation_id=locked_allocation.id).all()
        assert [r.kind for r in records] == [EscrowTransactionKind.LOCK]
        events = db.query(PaymentEvent).filter_by(allocation_id=locked_allocation.id).all()
        assert [e.event_type for e in events] == [PaymentEventType.FUND_LOCKED]

    def test_lock_is_idempotent(self, db, locked_allocation, ledger):
        again = AllocationService(db, ledger).lock(locked_allocation.allocation_id)
        assert again.status == AllocationStatus.LOCKED
        assert len(ledger.lock_calls) == 1

    def test_failed_lock_stays_retryable(self, db, planned_allocation, ledger):
        ledger.fail_lock = "failed"
        service = AllocationService(db, ledger)

        with pytest.raises(ExternalCallFailure) as exc_info:
            service.lock(planned_allocation.allocation_id)
        assert exc_info.value.status_code == 502
        assert exc_info.value.details["retry_count"] == 1

        assert service.get(planned_allocation.allocation_id).status == AllocationStatus.LOCKING

        ledger.fail_lock = None
        assert service.lock(planned_allocation.allocation_id).status == AllocationStatus.LOCKED

    def test_lock_timeout_reports_unknown_outcome(self, db, planned_allocation, ledger):
        ledger.fail_lock = "timeout"
        with pytest.raises(ExternalCallFailure) as exc_info:
            AllocationService(db, ledger).lock(planned_allocation.allocation_id)
        assert exc_info.value.status_code == 504
        assert exc_info.value.error_code == ErrorCode.ESCROW_OUTCOME_UNKNOWN
