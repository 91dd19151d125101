"""
Ledger event decoding.

Raw payloads from the ledger client are decoded here, at the boundary, into
a closed set of immutable variants. Nothing past this module looks at raw
payloads.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from mealfund.services.escrow.escrow_gateway import LedgerEventKind, RawLedgerEvent

_EVENT_NAMES = {
    "FundLocked": LedgerEventKind.FUNDS_LOCKED,
    "FundReleased": LedgerEventKind.FUNDS_RELEASED,
    "FundCancelled": LedgerEventKind.FUNDS_CANCELLED,
    LedgerEventKind.FUNDS_LOCKED.value: LedgerEventKind.FUNDS_LOCKED,
    LedgerEventKind.FUNDS_RELEASED.value: LedgerEventKind.FUNDS_RELEASED,
    LedgerEventKind.FUNDS_CANCELLED.value: LedgerEventKind.FUNDS_CANCELLED,
}


class UndecodableEvent(ValueError):
    """Payload is not one of the three escrow events."""


@dataclass(frozen=True)
class FundsLocked:
    allocation_ref: str
    tx_hash: str
    block_number: int
    amount: Optional[int] = None
    payer: Optional[str] = None
    payee: Optional[str] = None
    kind = LedgerEventKind.FUNDS_LOCKED


@dataclass(frozen=True)
class FundsReleased:
    allocation_ref: str
    tx_hash: str
    block_number: int
    amount: Optional[int] = None
    payee: Optional[str] = None
    kind = LedgerEventKind.FUNDS_RELEASED


@dataclass(frozen=True)
class FundsCancelled:
    allocation_ref: str
    tx_hash: str
    block_number: int
    reason: str = "Cancelled on ledger"
    kind = LedgerEventKind.FUNDS_CANCELLED


LedgerEvent = Union[FundsLocked, FundsReleased, FundsCancelled]


def _required_str(source: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value:
            return value
    raise UndecodableEvent(f"missing {keys[0]}")


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise UndecodableEvent(f"not an integer: {value!r}") from e


def decode_event(raw: RawLedgerEvent) -> LedgerEvent:
    """
    Decode a raw ledger payload.

    Accepted shape::

        {"event": "FundReleased", "args": {"allocationId": "0x..", ...},
         "transactionHash": "0x..", "blockNumber": 123}

    Raises:
        UndecodableEvent: Unknown event name or missing fields
    """
    if not isinstance(raw, Mapping):
        raise UndecodableEvent("payload is not a mapping")

    name = raw.get("event")
    kind = _EVENT_NAMES.get(name) if isinstance(name, str) else None
    if kind is None:
        raise UndecodableEvent(f"unknown event {name!r}")

    args = raw.get("args") or {}
    if not isinstance(args, Mapping):
        raise UndecodableEvent("args is not a mapping")

    allocation_ref = _required_str(args, "allocationId", "escrowId")
    tx_hash = _required_str(raw, "transactionHash", "txHash")
    block_number = _optional_int(raw.get("blockNumber"))
    if block_number is None:
        raise UndecodableEvent("missing blockNumber")

    if kind is LedgerEventKind.FUNDS_LOCKED:
        return FundsLocked(
            allocation_ref=allocation_ref,
            tx_hash=tx_hash,
            block_number=block_number,
            amount=_optional_int(args.get("amount")),
            payer=args.get("payer"),
            payee=args.get("payee"),
        )
    if kind is LedgerEventKind.FUNDS_RELEASED:
        return FundsReleased(
            allocation_ref=allocation_ref,
            tx_hash=tx_hash,
            block_number=block_number,
            amount=_optional_int(args.get("amount")),
            payee=args.get("payee"),
        )
    return FundsCancelled(
        allocation_ref=allocation_ref,
        tx_hash=tx_hash,
        block_number=block_number,
        reason=args.get("reason") or "Cancelled on ledger",
    )


__all__ = [
    "FundsCancelled",
    "FundsLocked",
    "FundsReleased",
    "LedgerEvent",
    "UndecodableEvent",
    "decode_event",
]
