"""
Tests for ledger event decoding and reconciliation.
"""

import asyncio
import threading

import pytest

from mealfund.models import (
    Allocation,
    AllocationStatus,
    Delivery,
    DeliveryStatus,
    EscrowTransactionKind,
    EscrowTransactionRecord,
    PaymentEvent,
    PaymentEventType,
    PaymentLedgerEntry,
    PaymentStatus,
    PublicFeedEntry,
)
from mealfund.core.exceptions import ExternalCallFailure
from mealfund.core.security import CurrentUser, UserRole
from mealfund.services.allocation import AllocationService
from mealfund.services.escrow import LedgerEventKind
from mealfund.services.notification.notification_dispatcher import NotificationChannel, NotificationDispatcher
from mealfund.services.reconciliation import (
    EventReconciler,
    FundsCancelled,
    FundsLocked,
    FundsReleased,
    UndecodableEvent,
    decode_event,
)
from mealfund.services.settlement.settlement_orchestrator import ConfirmationInput, SettlementOrchestrator

from tests.conftest import make_event


class RecordingChannel(NotificationChannel):
    name = "recording"

    def __init__(self):
        self.delivered = []

    def deliver(self, notification):
        self.delivered.append(notification)


def _approve(db, ledger, delivery_id):
    admin = CurrentUser(user_id="admin-1", role=UserRole.ADMIN)
    return SettlementOrchestrator(db, ledger).confirm_delivery(
        delivery_id,
        admin,
        ConfirmationInput(accepted=True, portions_received=500, quality_rating=4),
    )


class TestDecoding:
    def test_contract_event_names(self):
        event = decode_event(make_event(LedgerEventKind.FUNDS_LOCKED, "0xabc", "0x01", 7, amount="1500"))
        assert isinstance(event, FundsLocked)
        assert event.amount == 1500
        assert event.block_number == 7

    def test_kind_values_and_aliases(self):
        raw = {"event": "funds-released", "args": {"escrowId": "0xabc"}, "txHash": "0x02", "blockNumber": "9"}
        event = decode_event(raw)
        assert isinstance(event, FundsReleased)
        assert event.allocation_ref == "0xabc"
        assert event.block_number == 9

    def test_cancel_reason_defaults(self):
        event = decode_event(make_event(LedgerEventKind.FUNDS_CANCELLED, "0xabc", "0x03", 9))
        assert isinstance(event, FundsCancelled)
        assert event.reason == "Cancelled on ledger"

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            {"event": "Transfer", "args": {}, "transactionHash": "0x1", "blockNumber": 1},
            {"event": ["FundLocked"], "args": {}, "transactionHash": "0x1", "blockNumber": 1},
            {"event": "FundLocked", "args": {}, "transactionHash": "0x1", "blockNumber": 1},
            {"event": "FundLocked", "args": {"allocationId": "0xabc"}, "blockNumber": 1},
            {"event": "FundLocked", "args": {"allocationId": "0xabc"}, "transactionHash": "0x1"},
            {"event": "FundLocked", "args": {"allocationId": "0xabc"}, "transactionHash": "0x1", "blockNumber": "x"},
        ],
    )
    def test_malformed_payloads(self, raw):
        with pytest.raises(UndecodableEvent):
            decode_event(raw)


class TestApply:
    def test_duplicate_release_converges_to_one_feed_entry(self, db, seed, locked_allocation, ledger, reconciler):
        _approve(db, ledger, seed["delivery"].id)
        released = ledger.events_for(LedgerEventKind.FUNDS_RELEASED)[0]

        assert reconciler.process(released)
        assert reconciler.process(dict(released))

        db.expire_all()
        allocation = db.get(Allocation, locked_allocation.id)
        assert allocation.status == AllocationStatus.RELEASED
        assert allocation.last_event_block == released["blockNumber"]
        assert db.get(Delivery, seed["delivery"].id).status == DeliveryStatus.VERIFIED
        assert db.query(PublicFeedEntry).count() == 1
        assert db.query(EscrowTransactionRecord).filter_by(kind=EscrowTransactionKind.RELEASE).count() == 1
        assert db.query(PaymentEvent).filter_by(event_type=PaymentEventType.PAYMENT_RELEASED).count() == 1

    def test_release_observed_before_lock(self, db, planned_allocation, ledger, reconciler):
        ref = planned_allocation.allocation_id
        lock = make_event(LedgerEventKind.FUNDS_LOCKED, ref, "0xlock", 50)
        release = make_event(LedgerEventKind.FUNDS_RELEASED, ref, "0xrelease", 51)

        assert reconciler.process(release)
        assert reconciler.process(lock)

        db.expire_all()
        allocation = db.get(Allocation, planned_allocation.id)
        assert allocation.status == AllocationStatus.RELEASED
        assert allocation.tx_hash_release == "0xrelease"
        assert allocation.tx_hash_lock == "0xlock"
        assert allocation.locked_at is not None
        payment = db.query(PaymentLedgerEntry).filter_by(allocation_id=allocation.id).one()
        assert payment.status == PaymentStatus.COMPLETED
        assert reconciler.last_processed_block == 51

    def test_lock_event_converges_stuck_lock(self, db, planned_allocation, ledger, reconciler):
        """A lock whose receipt never arrived is completed by its event."""
        ledger.fail_lock = "timeout"
        ref = planned_allocation.allocation_id

        with pytest.raises(ExternalCallFailure):
            AllocationService(db, ledger).lock(ref)

        assert reconciler.process(make_event(LedgerEventKind.FUNDS_LOCKED, ref, "0xlock", 60))

        db.expire_all()
        allocation = db.get(Allocation, planned_allocation.id)
        assert allocation.status == AllocationStatus.LOCKED
        assert allocation.lock_block_number == 60

    def test_cancel_event(self, db, seed, locked_allocation, ledger, reconciler):
        ref = locked_allocation.allocation_id
        raw = ledger.record(LedgerEventKind.FUNDS_CANCELLED, ref, reason="School closed")

        assert reconciler.process(raw)
        assert reconciler.process(raw)

        db.expire_all()
        allocation = db.get(Allocation, locked_allocation.id)
        assert allocation.status == AllocationStatus.CANCELLED
        assert allocation.cancelled_reason == "School closed"
        delivery = db.get(Delivery, seed["delivery"].id)
        assert delivery.status == DeliveryStatus.CANCELLED
        assert delivery.status_reason == "School closed"
        assert db.query(PaymentEvent).filter_by(event_type=PaymentEventType.FUND_CANCELLED).count() == 1

    def test_unknown_allocation_is_a_mismatch(self, seed, reconciler):
        raw = make_event(LedgerEventKind.FUNDS_RELEASED, "0xnot-ours", "0xrelease", 70)

        assert not reconciler.process(raw)
        assert reconciler.status()["mismatched"] == 1
        assert reconciler.status()["processed"] == 0

    def test_undecodable_event_is_dropped(self, reconciler):
        assert not reconciler.process({"event": "Approval"})
        assert reconciler.status()["dropped"] == 1

    def test_counters_survive_concurrent_writers(self, reconciler):
        """Worker thread and catch-up threadpool share the same counters."""
        rounds = 200

        def drop_many():
            for _ in range(rounds):
                reconciler.process({"event": "Approval"})

        threads = [threading.Thread(target=drop_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert reconciler.status()["dropped"] == 4 * rounds

    def test_illegal_event_is_counted_as_failure(self, db, planned_allocation, ledger, reconciler):
        ref = planned_allocation.allocation_id
        reconciler.process(make_event(LedgerEventKind.FUNDS_RELEASED, ref, "0xrelease", 80))

        assert not reconciler.process(make_event(LedgerEventKind.FUNDS_CANCELLED, ref, "0xcancel", 81))
        assert reconciler.status()["failed"] == 1

        db.expire_all()
        assert db.get(Allocation, planned_allocation.id).status == AllocationStatus.RELEASED

    def test_release_notifies_once(self, db, seed, locked_allocation, ledger, session_factory):
        channel = RecordingChannel()
        reconciler = EventReconciler(session_factory, ledger, dispatcher=NotificationDispatcher([channel]))
        _approve(db, ledger, seed["delivery"].id)
        released = ledger.events_for(LedgerEventKind.FUNDS_RELEASED)[0]

        reconciler.process(released)
        reconciler.process(released)

        assert len(channel.delivered) == 3
        assert {n.recipient_type.value for n in channel.delivered} == {"catering", "school", "admin"}


class TestCatchUp:
    def test_replays_missed_events_in_block_order(self, db, locked_allocation, ledger, reconciler):
        ref = locked_allocation.allocation_id
        ledger.record(LedgerEventKind.FUNDS_RELEASED, ref)

        result = reconciler.catch_up(0)

        assert result == {
            "locked": 1,
            "released": 1,
            "cancelled": 0,
            "failed": 0,
            "from_block": 0,
            "to_block": ledger.block,
        }
        db.expire_all()
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.RELEASED
        assert db.query(PublicFeedEntry).count() == 1
        assert reconciler.last_processed_block == ledger.block

    def test_range_is_respected(self, locked_allocation, ledger, reconciler):
        lock_block = ledger.events_for(LedgerEventKind.FUNDS_LOCKED)[0]["blockNumber"]
        ledger.record(LedgerEventKind.FUNDS_RELEASED, locked_allocation.allocation_id)

        result = reconciler.catch_up(lock_block, lock_block)

        assert result["locked"] == 1
        assert result["released"] == 0


class TestSubscriptionLoop:
    def test_events_pushed_by_subscription_are_applied(self, db, locked_allocation, ledger, reconciler):
        raw = ledger.record(LedgerEventKind.FUNDS_RELEASED, locked_allocation.allocation_id)

        async def scenario():
            await reconciler.start()
            assert reconciler.running
            await ledger.callback(raw)
            await reconciler.join()
            status = reconciler.status()
            await reconciler.stop()
            return status

        status = asyncio.run(scenario())

        assert status["processed"] == 1
        assert status["queue_size"] == 0
        assert not reconciler.running
        assert ledger.callback is None
        db.expire_all()
        assert db.get(Allocation, locked_allocation.id).status == AllocationStatus.RELEASED

    def test_bad_event_does_not_stop_the_loop(self, locked_allocation, ledger, reconciler):
        raw = ledger.record(LedgerEventKind.FUNDS_RELEASED, locked_allocation.allocation_id)

        async def scenario():
            await reconciler.start()
            await ledger.callback({"event": "garbage"})
            await ledger.callback(raw)
            await reconciler.stop()
            return reconciler.status()

        status = asyncio.run(scenario())

        assert status["dropped"] == 1
        assert status["processed"] == 1
