"""
Payment ledger entries and the append-only payment event log.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealfund.models.base import Base, TimestampMixin, enum_column_type, utcnow

if TYPE_CHECKING:
    from mealfund.models.allocation import Allocation


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    LOCKED = "LOCKED"
    COMPLETED = "COMPLETED"

    @property
    def rank(self) -> int:
        return _PAYMENT_STATUS_RANK[self]


_PAYMENT_STATUS_RANK = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.LOCKED: 1,
    PaymentStatus.COMPLETED: 2,
}


class PaymentEventType(str, Enum):
    FUND_LOCKED = "FUND_LOCKED"
    PAYMENT_RELEASED = "PAYMENT_RELEASED"
    FUND_CANCELLED = "FUND_CANCELLED"


class PaymentLedgerEntry(TimestampMixin, Base):
    """
    Payment view of an allocation.

    Advanced by the settlement flow, the event reconciler and the payment
    gateway webhook. Status only moves forward.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    allocation_id: Mapped[int] = mapped_column(
        ForeignKey("allocations.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id"), nullable=False, index=True)
    catering_id: Mapped[int] = mapped_column(ForeignKey("caterings.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    status: Mapped[PaymentStatus] = mapped_column(
        enum_column_type(PaymentStatus, "payment_status_enum"),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )

    # ==================== Gateway References ====================
    gateway_invoice_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_payout_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # ==================== Ledger References ====================
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    blockchain_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    released_to_catering_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    allocation: Mapped["Allocation"] = relationship(back_populates="payment")
    events: Mapped[List["PaymentEvent"]] = relationship(
        back_populates="payment",
        order_by="PaymentEvent.id",
    )


class PaymentEvent(Base):
    """Immutable record of a ledger event applied to a payment."""

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    allocation_id: Mapped[int] = mapped_column(
        ForeignKey("allocations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[PaymentEventType] = mapped_column(
        enum_column_type(PaymentEventType, "payment_event_type_enum"),
        nullable=False,
        index=True,
    )
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    blockchain_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    event_signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    event_data: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    payment: Mapped["PaymentLedgerEntry"] = relationship(back_populates="events")


__all__ = ["PaymentEvent", "PaymentEventType", "PaymentLedgerEntry", "PaymentStatus"]
