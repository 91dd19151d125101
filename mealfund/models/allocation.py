"""
Allocation model.

A budget allocation funding one school's meal delivery from one caterer on
one date. Its lifecycle is driven exclusively by the allocation ledger.
"""

import hashlib
from datetime import date as Date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date as SQLDate,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealfund.models.base import Base, TimestampMixin, enum_column_type

if TYPE_CHECKING:
    from mealfund.models.delivery import Delivery
    from mealfund.models.directory import Catering, School
    from mealfund.models.escrow import EscrowTransactionRecord
    from mealfund.models.payment import PaymentLedgerEntry


class AllocationStatus(str, Enum):
    PLANNED = "PLANNED"
    LOCKING = "LOCKING"
    LOCKED = "LOCKED"
    RELEASING = "RELEASING"
    RELEASED = "RELEASED"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[AllocationStatus] = frozenset(
    {AllocationStatus.RELEASED, AllocationStatus.CANCELLED}
)


def derive_allocation_id(school_id: int, catering_id: int, delivery_date: Date) -> str:
    """
    Deterministic on-chain reference for a (school, caterer, date) triple.

    Returns:
        ``0x``-prefixed hex SHA-256 of ``"{school}-{caterer}-{date}"``
    """
    raw = f"{school_id}-{catering_id}-{delivery_date.isoformat()}"
    return "0x" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


class Allocation(TimestampMixin, Base):
    """
    Allocation of meal budget locked in escrow until delivery is confirmed.
    """

    __tablename__ = "allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ==================== References ====================
    allocation_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
        comment="Deterministic on-chain allocation reference",
    )
    school_id: Mapped[int] = mapped_column(
        ForeignKey("schools.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    catering_id: Mapped[int] = mapped_column(
        ForeignKey("caterings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    delivery_id: Mapped[int | None] = mapped_column(
        ForeignKey("deliveries.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )
    delivery_date: Mapped[Date] = mapped_column(SQLDate, nullable=False)

    # ==================== Amount ====================
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")

    # ==================== Lifecycle ====================
    status: Mapped[AllocationStatus] = mapped_column(
        enum_column_type(AllocationStatus, "allocation_status_enum"),
        nullable=False,
        default=AllocationStatus.PLANNED,
        index=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Bumped by every applied transition",
    )
    tx_hash_lock: Mapped[str | None] = mapped_column(String(66), nullable=True)
    tx_hash_release: Mapped[str | None] = mapped_column(String(66), nullable=True)
    lock_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    release_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    blockchain_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_event_block: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
        comment="Highest ledger block applied by the reconciler",
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    hold_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    extra_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        comment="Delivery date, portions and notes as submitted",
    )

    # ==================== Relationships ====================
    school: Mapped["School"] = relationship(back_populates="allocations")
    catering: Mapped["Catering"] = relationship(back_populates="allocations")
    delivery: Mapped[Optional["Delivery"]] = relationship(back_populates="allocation")
    payment: Mapped[Optional["PaymentLedgerEntry"]] = relationship(
        back_populates="allocation",
        uselist=False,
    )
    escrow_transactions: Mapped[List["EscrowTransactionRecord"]] = relationship(
        back_populates="allocation",
        order_by="EscrowTransactionRecord.id",
    )

    __table_args__ = (
        Index("ix_allocations_triple", "school_id", "catering_id", "delivery_date"),
    )

    @property
    def portions(self) -> Optional[int]:
        if self.extra_metadata and self.extra_metadata.get("portions") is not None:
            return int(self.extra_metadata["portions"])
        if self.delivery is not None:
            return self.delivery.portions
        return None

    def __repr__(self) -> str:
        return f"<Allocation(allocation_id={self.allocation_id}, status={self.status.value})>"


__all__ = ["Allocation", "AllocationStatus", "TERMINAL_STATUSES", "derive_allocation_id"]
