"""
Base schema classes with common configuration.
"""

from __future__ import annotations

from typing import Generic, List, TypeVar

from pydantic import BaseModel, ConfigDict, Field

__all__ = ["BaseSchema", "PaginatedResponse"]

T = TypeVar("T")


class BaseSchema(BaseModel):
    """
    Base schema with common Pydantic configuration.

    All application-facing schemas inherit from this so ORM objects can be
    returned directly from endpoints.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=False,
        str_strip_whitespace=True,
    )


class PaginatedResponse(BaseSchema, Generic[T]):
    items: List[T] = Field(default_factory=list)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total: int = Field(..., ge=0)
    total_pages: int = Field(..., ge=0)
