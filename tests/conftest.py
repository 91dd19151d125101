"""
Shared fixtures: an in-memory database, seeded reference data, a fake
escrow ledger and an HTTP client wired to both.
"""

import itertools
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from mealfund.config.settings import settings
from mealfund.core.security import JWTManager, UserRole
from mealfund.db.init_db import drop_db
from mealfund.db.session import create_session_factory
from mealfund.main import create_app
from mealfund.models import Base, Catering, Delivery, DeliveryStatus, School
from mealfund.services.allocation.allocation_service import AllocationService
from mealfund.services.escrow.escrow_gateway import (
    EscrowCallFailed,
    EscrowGateway,
    EscrowTimeout,
    LedgerEventKind,
    LedgerEventSource,
    LockReceipt,
    ReleaseReceipt,
)
from mealfund.services.reconciliation.event_reconciler import EventReconciler

DELIVERY_DATE = date(2025, 1, 15)
AMOUNT = Decimal("15000000.00")

_EVENT_NAMES = {
    LedgerEventKind.FUNDS_LOCKED: "FundLocked",
    LedgerEventKind.FUNDS_RELEASED: "FundReleased",
    LedgerEventKind.FUNDS_CANCELLED: "FundCancelled",
}


class FakeEscrowLedger(EscrowGateway, LedgerEventSource):
    """
    In-process stand-in for the escrow contract.

    Successful lock/release calls are recorded as ledger events, so a test
    can replay them through the reconciler the way the real subscription
    would deliver them.
    """

    def __init__(self):
        self.block = 100
        self._tx = itertools.count(1)
        self.history: List[Dict[str, Any]] = []
        self.lock_calls: List[str] = []
        self.release_calls: List[str] = []
        self.fail_lock: Optional[str] = None
        self.fail_release: Optional[str] = None
        self.callback: Optional[Callable] = None

    @property
    def contract_address(self) -> Optional[str]:
        return "0x" + "c" * 40

    # --- gateway --------------------------------------------------------------

    def lock(self, allocation_ref, amount, payee=None):
        self.lock_calls.append(allocation_ref)
        self._maybe_fail(self.fail_lock)
        raw = self.record(LedgerEventKind.FUNDS_LOCKED, allocation_ref, amount=int(amount), payee=payee)
        return LockReceipt(tx_hash=raw["transactionHash"], block_number=raw["blockNumber"], gas_used=21000)

    def release(self, allocation_ref):
        self.release_calls.append(allocation_ref)
        self._maybe_fail(self.fail_release)
        raw = self.record(LedgerEventKind.FUNDS_RELEASED, allocation_ref)
        return ReleaseReceipt(tx_hash=raw["transactionHash"], block_number=raw["blockNumber"], gas_used=21000)

    @staticmethod
    def _maybe_fail(mode: Optional[str]) -> None:
        if mode == "failed":
            raise EscrowCallFailed("execution reverted")
        if mode == "timeout":
            raise EscrowTimeout("no receipt after 60s")
        if mode == "unreachable":
            raise ConnectionError("rpc node unreachable")

    # --- event source ---------------------------------------------------------

    def subscribe(self, callback):
        self.callback = callback

    def unsubscribe(self):
        self.callback = None

    def current_block(self) -> int:
        return self.block

    def fetch_events(self, kind, from_block, to_block=None):
        upper = self.block if to_block is None else to_block
        return [
            raw for raw in self.history
            if raw["event"] == _EVENT_NAMES[kind] and from_block <= raw["blockNumber"] <= upper
        ]

    # --- helpers --------------------------------------------------------------

    def record(self, kind: LedgerEventKind, allocation_ref: str, **args) -> Dict[str, Any]:
        """Mine an event in a new block and return its raw payload."""
        self.block += 1
        raw = make_event(kind, allocation_ref, f"0x{next(self._tx):064x}", self.block, **args)
        self.history.append(raw)
        return raw

    def events_for(self, kind: LedgerEventKind) -> List[Dict[str, Any]]:
        return [raw for raw in self.history if raw["event"] == _EVENT_NAMES[kind]]


def make_event(kind: LedgerEventKind, allocation_ref: str, tx_hash: str, block: int, **args) -> Dict[str, Any]:
    return {
        "event": _EVENT_NAMES[kind],
        "args": {"allocationId": allocation_ref, **{k: v for k, v in args.items() if v is not None}},
        "transactionHash": tx_hash,
        "blockNumber": block,
    }


# ==================== Database ====================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    drop_db(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    school = School(name="SDN 1 Bandung", npsn="20219001", city="Bandung", province="Jawa Barat")
    catering = Catering(name="Dapur Sehat", phone="0812000111", wallet_address="0x" + "a" * 40)
    db.add_all([school, catering])
    db.flush()
    delivery = Delivery(
        school_id=school.id,
        catering_id=catering.id,
        delivery_date=DELIVERY_DATE,
        portions=500,
        amount=AMOUNT,
        status=DeliveryStatus.DELIVERED,
    )
    db.add(delivery)
    db.commit()
    return {"school": school, "catering": catering, "delivery": delivery}


# ==================== Escrow ====================

@pytest.fixture
def ledger():
    return FakeEscrowLedger()


@pytest.fixture
def planned_allocation(db, seed, ledger):
    return AllocationService(db, ledger).create(
        school_id=seed["school"].id,
        catering_id=seed["catering"].id,
        amount=AMOUNT,
        delivery_date=DELIVERY_DATE,
        delivery_id=seed["delivery"].id,
        metadata={"portions": 500},
    )


@pytest.fixture
def locked_allocation(db, planned_allocation, ledger):
    return AllocationService(db, ledger).lock(planned_allocation.allocation_id)


@pytest.fixture
def reconciler(session_factory, ledger):
    return EventReconciler(session_factory, ledger, contract_address=ledger.contract_address)


# ==================== HTTP ====================

@pytest.fixture
def app(session_factory, ledger):
    return create_app(escrow_gateway=ledger, event_source=ledger, session_factory=session_factory)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def token_for(app):
    manager: JWTManager = app.state.jwt_manager

    def _token(role: UserRole, school_id: Optional[int] = None, user_id: str = "user-1") -> Dict[str, str]:
        token = manager.create_access_token(user_id=user_id, role=role, school_id=school_id)
        return {"Authorization": f"Bearer {token}"}

    return _token


@pytest.fixture
def admin_headers(token_for):
    return token_for(UserRole.ADMIN, user_id="admin-1")


@pytest.fixture
def school_headers(token_for, seed):
    return token_for(UserRole.SCHOOL, school_id=seed["school"].id, user_id="school-user-1")


@pytest.fixture
def webhook_secret():
    return settings.PAYMENT_WEBHOOK_SECRET
