"""
Tests for delivery confirmation and escrow release.
"""

import pytest

from mealfund.core.exceptions import (
    AuthorizationError,
    ConflictError,
    ErrorCode,
    ExternalCallFailure,
    ResourceNotFoundError,
    ValidationError,
)
from mealfund.core.security import CurrentUser, UserRole
from mealfund.models import (
    Allocation,
    AllocationStatus,
    ConfirmationStatus,
    Delivery,
    DeliveryConfirmation,
    DeliveryStatus,
    EscrowTransactionKind,
    EscrowTransactionRecord,
    Issue,
    PaymentLedgerEntry,
    PaymentStatus,
    PublicFeedEntry,
)
from mealfund.services.escrow import EscrowCallFailed, EscrowTimeout, LedgerEventKind
from mealfund.services.settlement.settlement_orchestrator import ConfirmationInput, SettlementOrchestrator

APPROVE = ConfirmationInput(accepted=True, portions_received=500, quality_rating=5, notes="Fresh and warm")
REJECT = ConfirmationInput(accepted=False, portions_received=420, quality_rating=2, notes="Rice undercooked")


@pytest.fixture
def school_user(seed):
    return CurrentUser(user_id="school-user-1", role=UserRole.SCHOOL, school_id=seed["school"].id)


@pytest.fixture
def orchestrator(db, ledger):
    return SettlementOrchestrator(db, ledger)


class TestApproval:
    def test_releases_escrow_and_projects_feed(self, db, seed, locked_allocation, orchestrator, school_user, ledger):
        delivery_id = seed["delivery"].id

        result = orchestrator.confirm_delivery(delivery_id, school_user, APPROVE)

        assert result.confirmation_status == ConfirmationStatus.APPROVED
        assert result.allocation_id == locked_allocation.allocation_id
        assert result.released_amount == locked_allocation.amount
        assert result.tx_hash == ledger.events_for(LedgerEventKind.FUNDS_RELEASED)[0]["transactionHash"]
        assert not result.reconciliation_pending
        assert ledger.release_calls == [locked_allocation.allocation_id]

        db.expire_all()
        allocation = db.get(Allocation, locked_allocation.id)
        assert allocation.status == AllocationStatus.RELEASED
        assert allocation.tx_hash_release == result.tx_hash
        assert db.get(Delivery, delivery_id).status == DeliveryStatus.CONFIRMED

        payment = db.query(PaymentLedgerEntry).filter_by(allocation_id=allocation.id).one()
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.blockchain_tx_hash == result.tx_hash

        feed = db.query(PublicFeedEntry).all()
        assert len(feed) == 1
        assert feed[0].allocation_ref == allocation.allocation_id
        assert feed[0].school_region == "Bandung"
        assert feed[0].portions == 500

    def test_second_confirmation_conflicts_without_escrow_call(
        self, seed, locked_allocation, orchestrator, school_user, ledger
    ):
        orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        with pytest.raises(ConflictError) as exc_info:
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        assert exc_info.value.error_code == ErrorCode.ALREADY_CONFIRMED
        assert len(ledger.release_calls) == 1

    def test_failed_release_is_compensated(self, db, seed, locked_allocation, orchestrator, school_user, ledger):
        ledger.fail_release = "failed"

        with pytest.raises(ExternalCallFailure) as exc_info:
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        error = exc_info.value
        assert error.status_code == 502
        assert error.retry_safe and not error.outcome_unknown

        db.expire_all()
        assert db.query(DeliveryConfirmation).count() == 0
        assert db.get(Delivery, seed["delivery"].id).status == DeliveryStatus.DELIVERED
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.LOCKED
        failures = db.query(EscrowTransactionRecord).filter_by(kind=EscrowTransactionKind.FAILED).all()
        assert len(failures) == 1
        assert failures[0].extra_metadata["operation"] == "release"

    def test_retry_after_failure_succeeds(self, seed, locked_allocation, orchestrator, school_user, ledger):
        ledger.fail_release = "failed"
        with pytest.raises(ExternalCallFailure):
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        ledger.fail_release = None
        result = orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        assert result.confirmation_status == ConfirmationStatus.APPROVED
        assert len(ledger.release_calls) == 2

    def test_timeout_reports_unknown_outcome(self, db, seed, locked_allocation, orchestrator, school_user, ledger):
        ledger.fail_release = "timeout"

        with pytest.raises(ExternalCallFailure) as exc_info:
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        assert exc_info.value.status_code == 504
        assert exc_info.value.error_code == ErrorCode.ESCROW_OUTCOME_UNKNOWN
        assert exc_info.value.details["outcome_unknown"] is True

        db.expire_all()
        failure = db.query(EscrowTransactionRecord).filter_by(kind=EscrowTransactionKind.FAILED).one()
        assert failure.extra_metadata["outcome_unknown"] is True
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.LOCKED

    def test_transport_error_is_compensated_and_retryable(
        self, db, seed, locked_allocation, orchestrator, school_user, ledger
    ):
        ledger.fail_release = "unreachable"

        with pytest.raises(ExternalCallFailure) as exc_info:
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        error = exc_info.value
        assert error.status_code == 504
        assert error.outcome_unknown
        assert error.details["error_type"] == "ConnectionError"
        assert isinstance(error.__cause__, ConnectionError)

        db.expire_all()
        assert db.query(DeliveryConfirmation).count() == 0
        assert db.get(Delivery, seed["delivery"].id).status == DeliveryStatus.DELIVERED
        failure = db.query(EscrowTransactionRecord).filter_by(kind=EscrowTransactionKind.FAILED).one()
        assert failure.error_message == "rpc node unreachable"
        assert failure.extra_metadata["outcome_unknown"] is True

        ledger.fail_release = None
        result = orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)
        assert result.confirmation_status == ConfirmationStatus.APPROVED
        assert len(ledger.release_calls) == 2


class TestReleaseRace:
    """The reconciler may observe the release event before the release call returns."""

    def test_timeout_after_reconciled_release_keeps_confirmation(
        self, db, seed, locked_allocation, orchestrator, school_user, ledger, reconciler, monkeypatch
    ):
        def release_then_time_out(allocation_ref):
            ledger.release_calls.append(allocation_ref)
            assert reconciler.process(ledger.record(LedgerEventKind.FUNDS_RELEASED, allocation_ref))
            raise EscrowTimeout("no receipt after 60s")

        monkeypatch.setattr(ledger, "release", release_then_time_out)

        result = orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        released = ledger.events_for(LedgerEventKind.FUNDS_RELEASED)[0]
        assert result.confirmation_status == ConfirmationStatus.APPROVED
        assert result.tx_hash == released["transactionHash"]
        assert result.block_number == released["blockNumber"]
        assert not result.reconciliation_pending

        db.expire_all()
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.RELEASED
        assert db.get(Delivery, seed["delivery"].id).status == DeliveryStatus.VERIFIED
        assert db.query(DeliveryConfirmation).count() == 1
        assert db.query(EscrowTransactionRecord).filter_by(kind=EscrowTransactionKind.FAILED).count() == 0
        assert db.query(PublicFeedEntry).count() == 1

    def test_compensation_leaves_reconciled_delivery_status(
        self, db, seed, locked_allocation, orchestrator, school_user, ledger, reconciler, monkeypatch
    ):
        def cancel_then_fail(allocation_ref):
            ledger.release_calls.append(allocation_ref)
            cancelled = ledger.record(LedgerEventKind.FUNDS_CANCELLED, allocation_ref, reason="School closed")
            assert reconciler.process(cancelled)
            raise EscrowCallFailed("execution reverted")

        monkeypatch.setattr(ledger, "release", cancel_then_fail)

        with pytest.raises(ExternalCallFailure):
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

        db.expire_all()
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.CANCELLED
        assert db.get(Delivery, seed["delivery"].id).status == DeliveryStatus.CANCELLED


class TestRejection:
    def test_rejection_opens_issue_and_keeps_funds_locked(
        self, db, seed, locked_allocation, orchestrator, school_user, ledger
    ):
        result = orchestrator.confirm_delivery(seed["delivery"].id, school_user, REJECT)

        assert result.confirmation_status == ConfirmationStatus.REJECTED
        assert result.tx_hash is None
        assert ledger.release_calls == []

        db.expire_all()
        assert db.get(Delivery, seed["delivery"].id).status == DeliveryStatus.REJECTED
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.LOCKED
        issue = db.query(Issue).one()
        assert issue.description == "Rice undercooked"
        assert issue.reported_by == "school-user-1"
        assert db.query(PublicFeedEntry).count() == 0


class TestPreconditions:
    def test_invalid_rating(self, seed, locked_allocation, orchestrator, school_user):
        bad = ConfirmationInput(accepted=True, portions_received=500, quality_rating=6)
        with pytest.raises(ValidationError):
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, bad)

    def test_unknown_delivery(self, seed, orchestrator, school_user):
        with pytest.raises(ResourceNotFoundError):
            orchestrator.confirm_delivery(9999, school_user, APPROVE)

    def test_other_school_is_forbidden(self, seed, locked_allocation, orchestrator, ledger):
        outsider = CurrentUser(user_id="school-user-2", role=UserRole.SCHOOL, school_id=seed["school"].id + 1)
        with pytest.raises(AuthorizationError):
            orchestrator.confirm_delivery(seed["delivery"].id, outsider, APPROVE)
        assert ledger.release_calls == []

    def test_admin_may_confirm(self, seed, locked_allocation, orchestrator):
        admin = CurrentUser(user_id="admin-1", role=UserRole.ADMIN)
        result = orchestrator.confirm_delivery(seed["delivery"].id, admin, APPROVE)
        assert result.confirmation_status == ConfirmationStatus.APPROVED

    def test_delivery_without_allocation(self, seed, orchestrator, school_user):
        with pytest.raises(ResourceNotFoundError):
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)

    def test_allocation_must_be_locked(self, seed, planned_allocation, orchestrator, school_user, ledger):
        with pytest.raises(ConflictError) as exc_info:
            orchestrator.confirm_delivery(seed["delivery"].id, school_user, APPROVE)
        assert exc_info.value.error_code == ErrorCode.ILLEGAL_TRANSITION
        assert ledger.release_calls == []
