"""
Escrow transaction audit trail.

One row per attempted or observed escrow call. Rows are appended, never
edited once confirmed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealfund.models.base import Base, TimestampMixin, enum_column_type

if TYPE_CHECKING:
    from mealfund.models.allocation import Allocation


class EscrowTransactionKind(str, Enum):
    LOCK = "LOCK"
    RELEASE = "RELEASE"
    FAILED = "FAILED"


class EscrowTransactionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class EscrowTransactionRecord(TimestampMixin, Base):
    __tablename__ = "escrow_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    allocation_id: Mapped[int] = mapped_column(
        ForeignKey("allocations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    kind: Mapped[EscrowTransactionKind] = mapped_column(
        enum_column_type(EscrowTransactionKind, "escrow_tx_kind_enum"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")

    # ==================== Ledger Details ====================
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, index=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gas_price_gwei: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=9), nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    status: Mapped[EscrowTransactionStatus] = mapped_column(
        enum_column_type(EscrowTransactionStatus, "escrow_tx_status_enum"),
        nullable=False,
        default=EscrowTransactionStatus.PENDING,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    extra_metadata: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    allocation: Mapped["Allocation"] = relationship(back_populates="escrow_transactions")


__all__ = ["EscrowTransactionKind", "EscrowTransactionRecord", "EscrowTransactionStatus"]
