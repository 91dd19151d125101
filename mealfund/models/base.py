"""
Base model configuration for SQLAlchemy ORM.

Provides the declarative base, the timestamp mixin and small helpers
shared by every settlement model.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import DateTime, Enum as SQLEnum, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def enum_column_type(enum_cls: Type[Enum], name: str) -> SQLEnum:
    """
    Enum column type persisting member values.

    Stored as a constrained VARCHAR so the same schema works on PostgreSQL
    and SQLite.
    """
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """Declarative base for all models."""

    def to_dict(self, exclude: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Convert model instance to dictionary.

        Args:
            exclude: List of attribute names to exclude

        Returns:
            Dictionary keyed by mapped attribute name
        """
        exclude = exclude or []
        result = {}
        for attr in self.__mapper__.column_attrs:
            if attr.key in exclude:
                continue
            value = getattr(self, attr.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            result[attr.key] = value
        return result

    def __repr__(self) -> str:
        pk = getattr(self, "id", None)
        return f"<{self.__class__.__name__}(id={pk})>"


class TimestampMixin:
    """
    Mixin for automatic timestamp tracking.

    Provides created_at and updated_at fields with
    automatic timezone-aware timestamp management.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Record creation timestamp (UTC)",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Record last update timestamp (UTC)",
    )


__all__ = ["Base", "TimestampMixin", "enum_column_type", "utcnow"]
