"""
SQLAlchemy models for the settlement core.

Importing this package registers every table on ``Base.metadata``.
"""

from mealfund.models.base import Base, TimestampMixin
from mealfund.models.directory import Catering, School
from mealfund.models.allocation import (
    TERMINAL_STATUSES,
    Allocation,
    AllocationStatus,
    derive_allocation_id,
)
from mealfund.models.delivery import (
    ConfirmationStatus,
    Delivery,
    DeliveryConfirmation,
    DeliveryStatus,
    Issue,
    IssueSeverity,
    IssueStatus,
)
from mealfund.models.escrow import (
    EscrowTransactionKind,
    EscrowTransactionRecord,
    EscrowTransactionStatus,
)
from mealfund.models.payment import (
    PaymentEvent,
    PaymentEventType,
    PaymentLedgerEntry,
    PaymentStatus,
)
from mealfund.models.feed import PublicFeedEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "School",
    "Catering",
    "Allocation",
    "AllocationStatus",
    "TERMINAL_STATUSES",
    "derive_allocation_id",
    "Delivery",
    "DeliveryConfirmation",
    "DeliveryStatus",
    "ConfirmationStatus",
    "Issue",
    "IssueSeverity",
    "IssueStatus",
    "EscrowTransactionRecord",
    "EscrowTransactionKind",
    "EscrowTransactionStatus",
    "PaymentLedgerEntry",
    "PaymentEvent",
    "PaymentEventType",
    "PaymentStatus",
    "PublicFeedEntry",
]
