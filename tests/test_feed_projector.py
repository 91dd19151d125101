"""
Tests for the public payment feed projection.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from mealfund.core.exceptions import ResourceNotFoundError, ValidationError
from mealfund.models import EscrowTransactionKind, PublicFeedEntry, School
from mealfund.services.allocation import AllocationLedger, AllocationService
from mealfund.services.escrow import LedgerEventKind
from mealfund.services.escrow.escrow_bookkeeping import EscrowBookkeeping
from mealfund.services.transparency.feed_projector import FeedProjector

from tests.conftest import DELIVERY_DATE


def _released(db, ledger, school, catering, delivery_date, amount="1000000.00", tx="0xrelease"):
    service = AllocationService(db, ledger)
    allocation = service.create(school.id, catering.id, Decimal(amount), delivery_date)
    service.lock(allocation.allocation_id)
    result = AllocationLedger(db).mark_released(allocation.allocation_id, tx, ledger.block)
    db.commit()
    return result.allocation


class TestProject:
    def test_only_released_allocations(self, db, locked_allocation):
        with pytest.raises(ValidationError):
            FeedProjector(db).project(locked_allocation)
        assert db.query(PublicFeedEntry).count() == 0

    def test_projection_is_denormalised(self, db, seed, ledger, locked_allocation):
        released = AllocationLedger(db).mark_released(locked_allocation.allocation_id, "0xrelease", 200).allocation
        FeedProjector(db).project(released)
        db.commit()

        entry = FeedProjector(db).get(locked_allocation.allocation_id)
        assert entry.school_name == "SDN 1 Bandung"
        assert entry.school_region == "Bandung"
        assert entry.catering_name == "Dapur Sehat"
        assert entry.amount == Decimal("15000000.00")
        assert entry.portions == 500
        assert entry.delivery_date == DELIVERY_DATE
        assert entry.blockchain_tx_hash == "0xrelease"
        assert entry.blockchain_block_number == 200
        assert entry.status == "COMPLETED"

    def test_projecting_twice_updates_in_place(self, db, ledger, locked_allocation):
        released = AllocationLedger(db).mark_released(locked_allocation.allocation_id, "0xrelease", 200).allocation
        projector = FeedProjector(db)
        projector.project(released)
        projector.project(released)
        db.commit()

        assert db.query(PublicFeedEntry).count() == 1


class TestRead:
    @pytest.fixture
    def feed(self, db, seed, ledger):
        bogor = School(name="SDN 3 Bogor", npsn="20219003", city="Bogor", province="Jawa Barat")
        db.add(bogor)
        db.commit()
        projector = FeedProjector(db)
        for offset, school in enumerate([seed["school"], bogor, seed["school"]]):
            allocation = _released(
                db, ledger, school, seed["catering"], DELIVERY_DATE + timedelta(days=offset + 1), tx=f"0x{offset}"
            )
            projector.project(allocation)
            db.commit()
        return projector

    def test_newest_release_first(self, feed):
        entries, total = feed.list()
        assert total == 3
        assert [e.blockchain_tx_hash for e in entries] == ["0x2", "0x1", "0x0"]

    def test_region_filter(self, feed):
        entries, total = feed.list(region="Bogor")
        assert total == 1
        assert entries[0].school_name == "SDN 3 Bogor"

    def test_pagination(self, feed):
        entries, total = feed.list(page=2, limit=2)
        assert total == 3
        assert len(entries) == 1

    @pytest.mark.parametrize("page,limit", [(0, 10), (1, 0), (1, 1000)])
    def test_invalid_pagination(self, db, page, limit):
        with pytest.raises(ValidationError):
            FeedProjector(db).list(page=page, limit=limit)

    def test_unknown_entry(self, db):
        with pytest.raises(ResourceNotFoundError):
            FeedProjector(db).get("0xmissing")

    def test_regions_summarise_the_feed(self, feed):
        regions = feed.regions()

        assert [r["region"] for r in regions] == ["Bandung", "Bogor"]
        bandung = regions[0]
        assert bandung["payment_count"] == 2
        assert bandung["schools_count"] == 1
        assert bandung["caterings_count"] == 1
        assert Decimal(str(bandung["total_amount"])) == Decimal("2000000.00")
        assert bandung["total_portions"] == 0
        assert bandung["last_payment_date"] is not None


class TestEscrowTransactions:
    @pytest.fixture
    def projector(self, db, seed, ledger):
        for offset in range(3):
            _released(db, ledger, seed["school"], seed["catering"], DELIVERY_DATE + timedelta(days=offset + 1))
        return FeedProjector(db)

    def test_lists_confirmed_on_chain_records(self, projector, ledger):
        records, total = projector.escrow_transactions()

        assert total == 3
        assert {r.kind for r in records} == {EscrowTransactionKind.LOCK}
        locks = ledger.events_for(LedgerEventKind.FUNDS_LOCKED)
        assert {r.tx_hash for r in records} == {raw["transactionHash"] for raw in locks}
        assert all(r.allocation.allocation_id for r in records)

    def test_failed_attempts_are_not_listed(self, db, projector):
        records, _ = projector.escrow_transactions()
        EscrowBookkeeping(db).record_failure(records[0].allocation, "release", "execution reverted", False)
        db.commit()

        _, total = projector.escrow_transactions()
        assert total == 3

    def test_kind_filter_and_pagination(self, projector):
        assert projector.escrow_transactions(kind=EscrowTransactionKind.RELEASE) == ([], 0)

        records, total = projector.escrow_transactions(page=2, limit=2)
        assert total == 3
        assert len(records) == 1

    def test_failed_kind_is_not_public(self, projector):
        with pytest.raises(ValidationError):
            projector.escrow_transactions(kind=EscrowTransactionKind.FAILED)
