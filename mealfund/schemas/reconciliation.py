"""
Reconciliation admin schemas.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field, model_validator

from mealfund.schemas.base import BaseSchema

__all__ = ["CatchUpRequest", "CatchUpResponse", "ReconcilerStatus"]


class CatchUpRequest(BaseSchema):
    from_block: int = Field(..., ge=0)
    to_block: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_range(self) -> "CatchUpRequest":
        if self.to_block is not None and self.to_block < self.from_block:
            raise ValueError("to_block must not be lower than from_block")
        return self


class CatchUpResponse(BaseSchema):
    locked: int
    released: int
    cancelled: int
    failed: int
    from_block: int
    to_block: int


class ReconcilerStatus(BaseSchema):
    running: bool
    queue_size: int
    last_processed_block: int
    processed: int
    failed: int
    dropped: int
    mismatched: int
