"""
Escrow gateway abstraction.

The ledger contract and its client transport live outside this service.
Everything the settlement core needs from them is captured here: lock and
release calls with receipts, and a source of the three escrow event kinds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mealfund.config.settings import settings


class LedgerEventKind(str, Enum):
    FUNDS_LOCKED = "funds-locked"
    FUNDS_RELEASED = "funds-released"
    FUNDS_CANCELLED = "funds-cancelled"


@dataclass(frozen=True)
class LockReceipt:
    tx_hash: str
    block_number: int
    gas_used: Optional[int] = None
    gas_price_gwei: Optional[Decimal] = None


@dataclass(frozen=True)
class ReleaseReceipt:
    tx_hash: str
    block_number: int
    gas_used: Optional[int] = None
    gas_price_gwei: Optional[Decimal] = None


class EscrowCallFailed(Exception):
    """The ledger definitely did not apply the call."""


class EscrowTimeout(Exception):
    """No answer in time. The call may or may not have been applied."""


# Raw event payloads as delivered by the ledger client; decoded by the reconciler.
RawLedgerEvent = Dict[str, Any]
EventCallback = Callable[[RawLedgerEvent], Awaitable[None]]


class EscrowGateway(ABC):
    """Lock and release calls against the escrow contract."""

    @abstractmethod
    def lock(self, allocation_ref: str, amount: Decimal, payee: Optional[str] = None) -> LockReceipt:
        """
        Lock ``amount`` for an allocation.

        Raises:
            EscrowCallFailed: The call was rejected
            EscrowTimeout: The outcome is unknown
        """

    @abstractmethod
    def release(self, allocation_ref: str) -> ReleaseReceipt:
        """
        Release a locked allocation to its payee.

        Raises:
            EscrowCallFailed: The call was rejected
            EscrowTimeout: The outcome is unknown
        """

    @property
    def contract_address(self) -> Optional[str]:
        return None

    @property
    def timeout_seconds(self) -> float:
        """Calls still unanswered after this long raise ``EscrowTimeout``."""
        return settings.ESCROW_RELEASE_TIMEOUT_SECONDS


class LedgerEventSource(ABC):
    """Push and pull access to the contract's event stream."""

    @abstractmethod
    def subscribe(self, callback: EventCallback) -> None:
        """Deliver every new event of the three kinds to ``callback``."""

    @abstractmethod
    def unsubscribe(self) -> None:
        ...

    @abstractmethod
    def current_block(self) -> int:
        ...

    @abstractmethod
    def fetch_events(
        self,
        kind: LedgerEventKind,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> List[RawLedgerEvent]:
        """Historical events of ``kind`` in ``[from_block, to_block]``."""


class UnconfiguredEscrowGateway(EscrowGateway):
    """
    Stand-in used when no ledger client is wired into the application.

    Every call fails before reaching any ledger, so retrying is safe.
    """

    def _fail(self, operation: str):
        raise EscrowCallFailed(f"Escrow {operation} unavailable: no ledger client configured")

    def lock(self, allocation_ref: str, amount: Decimal, payee: Optional[str] = None) -> LockReceipt:
        self._fail("lock")

    def release(self, allocation_ref: str) -> ReleaseReceipt:
        self._fail("release")


__all__ = [
    "EscrowCallFailed",
    "EscrowGateway",
    "EscrowTimeout",
    "EventCallback",
    "LedgerEventKind",
    "LedgerEventSource",
    "LockReceipt",
    "RawLedgerEvent",
    "ReleaseReceipt",
    "UnconfiguredEscrowGateway",
]
