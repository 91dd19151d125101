from mealfund.services.escrow.escrow_gateway import (
    EscrowCallFailed,
    EscrowGateway,
    EscrowTimeout,
    LedgerEventKind,
    LedgerEventSource,
    LockReceipt,
    ReleaseReceipt,
    UnconfiguredEscrowGateway,
)

__all__ = [
    "EscrowCallFailed",
    "EscrowGateway",
    "EscrowTimeout",
    "LedgerEventKind",
    "LedgerEventSource",
    "LockReceipt",
    "ReleaseReceipt",
    "UnconfiguredEscrowGateway",
]
