"""
Public transparency feed entry.

Denormalised projection of a released allocation, keyed by allocation so
that concurrent projectors converge on a single row.
"""

from datetime import date as Date, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Date as SQLDate, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from mealfund.models.base import Base, TimestampMixin


class PublicFeedEntry(TimestampMixin, Base):
    __tablename__ = "public_payment_feed"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    allocation_id: Mapped[int] = mapped_column(
        ForeignKey("allocations.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    allocation_ref: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    school_name: Mapped[str] = mapped_column(String(255), nullable=False)
    school_region: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    catering_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    portions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delivery_date: Mapped[Date | None] = mapped_column(SQLDate, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="COMPLETED")
    blockchain_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    blockchain_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )


__all__ = ["PublicFeedEntry"]
