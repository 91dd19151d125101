"""
School and caterer reference entities.

Only the attributes the settlement flow and the public feed need; the
directory itself is managed elsewhere.
"""

from typing import TYPE_CHECKING, List

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealfund.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from mealfund.models.allocation import Allocation
    from mealfund.models.delivery import Delivery


class School(TimestampMixin, Base):
    """School receiving meal deliveries."""

    __tablename__ = "schools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    npsn: Mapped[str | None] = mapped_column(
        String(20),
        unique=True,
        nullable=True,
        comment="National school registry number",
    )
    city: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Region shown on the public payment feed",
    )
    province: Mapped[str | None] = mapped_column(String(100), nullable=True)
    wallet_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    allocations: Mapped[List["Allocation"]] = relationship(back_populates="school")
    deliveries: Mapped[List["Delivery"]] = relationship(back_populates="school")


class Catering(TimestampMixin, Base):
    """Catering vendor paid out of released allocations."""

    __tablename__ = "caterings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    wallet_address: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="Payee address for escrow releases",
    )

    allocations: Mapped[List["Allocation"]] = relationship(back_populates="catering")
    deliveries: Mapped[List["Delivery"]] = relationship(back_populates="catering")


__all__ = ["School", "Catering"]
