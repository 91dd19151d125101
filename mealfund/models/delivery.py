"""
Delivery, confirmation and issue models.
"""

from datetime import date as Date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date as SQLDate,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealfund.models.base import Base, TimestampMixin, enum_column_type, utcnow

if TYPE_CHECKING:
    from mealfund.models.allocation import Allocation
    from mealfund.models.directory import Catering, School


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    DELIVERED = "DELIVERED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    VERIFIED = "VERIFIED"
    CANCELLED = "CANCELLED"


class ConfirmationStatus(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    CLOSED = "closed"


class Delivery(TimestampMixin, Base):
    """Scheduled meal delivery from a caterer to a school."""

    __tablename__ = "deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
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
    delivery_date: Mapped[Date] = mapped_column(SQLDate, nullable=False, index=True)
    portions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        enum_column_type(DeliveryStatus, "delivery_status_enum"),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True,
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    school: Mapped["School"] = relationship(back_populates="deliveries")
    catering: Mapped["Catering"] = relationship(back_populates="deliveries")
    allocation: Mapped[Optional["Allocation"]] = relationship(
        back_populates="delivery",
        uselist=False,
    )
    confirmation: Mapped[Optional["DeliveryConfirmation"]] = relationship(
        back_populates="delivery",
        uselist=False,
    )
    issues: Mapped[List["Issue"]] = relationship(back_populates="delivery")


class DeliveryConfirmation(Base):
    """
    School's verdict on a delivery.

    At most one per delivery; the unique constraint is what turns a racing
    second confirmation into a conflict.
    """

    __tablename__ = "delivery_confirmations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delivery_id: Mapped[int] = mapped_column(
        ForeignKey("deliveries.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    allocation_id: Mapped[int | None] = mapped_column(
        ForeignKey("allocations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    school_id: Mapped[int] = mapped_column(ForeignKey("schools.id"), nullable=False)
    verified_by: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[ConfirmationStatus] = mapped_column(
        enum_column_type(ConfirmationStatus, "confirmation_status_enum"),
        nullable=False,
    )
    portions_received: Mapped[int] = mapped_column(Integer, nullable=False)
    quality_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence: Mapped[Dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="Photo URLs or other proof supplied by the school",
    )
    confirmed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    delivery: Mapped["Delivery"] = relationship(back_populates="confirmation")

    __table_args__ = (
        CheckConstraint("quality_rating BETWEEN 1 AND 5", name="ck_confirmation_quality_rating"),
    )


class Issue(TimestampMixin, Base):
    """Quality problem reported against a delivery."""

    __tablename__ = "issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delivery_id: Mapped[int] = mapped_column(
        ForeignKey("deliveries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reported_by: Mapped[str] = mapped_column(String(64), nullable=False)
    issue_type: Mapped[str] = mapped_column(String(50), nullable=False, default="quality_issue")
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[IssueSeverity] = mapped_column(
        enum_column_type(IssueSeverity, "issue_severity_enum"),
        nullable=False,
        default=IssueSeverity.MEDIUM,
    )
    status: Mapped[IssueStatus] = mapped_column(
        enum_column_type(IssueStatus, "issue_status_enum"),
        nullable=False,
        default=IssueStatus.OPEN,
    )

    delivery: Mapped["Delivery"] = relationship(back_populates="issues")


__all__ = [
    "ConfirmationStatus",
    "Delivery",
    "DeliveryConfirmation",
    "DeliveryStatus",
    "Issue",
    "IssueSeverity",
    "IssueStatus",
]
