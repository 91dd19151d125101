from mealfund.services.reconciliation.event_decoder import (
    FundsCancelled,
    FundsLocked,
    FundsReleased,
    LedgerEvent,
    UndecodableEvent,
    decode_event,
)
from mealfund.services.reconciliation.event_reconciler import EventReconciler

__all__ = [
    "EventReconciler",
    "FundsCancelled",
    "FundsLocked",
    "FundsReleased",
    "LedgerEvent",
    "UndecodableEvent",
    "decode_event",
]
