"""
Delivery confirmation request and response schemas.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from mealfund.models.delivery import ConfirmationStatus
from mealfund.schemas.base import BaseSchema

__all__ = ["DeliveryConfirmationRequest", "DeliveryConfirmationResponse"]


class DeliveryConfirmationRequest(BaseSchema):
    """School's verdict on a delivery."""

    accepted: bool = Field(..., description="True to approve and release payment")
    portions_received: int = Field(..., ge=0, description="Portions actually received")
    quality_rating: int = Field(..., ge=1, le=5, description="Food quality, 1 to 5")
    notes: Optional[str] = Field(None, max_length=2000)
    evidence: Optional[Dict[str, Any]] = Field(
        None,
        description="Photo URLs or other proof, e.g. {\"photo_urls\": [...]}",
    )

    @field_validator("notes")
    @classmethod
    def empty_notes_to_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class DeliveryConfirmationResponse(BaseSchema):
    delivery_id: int
    allocation_id: str
    confirmation_status: ConfirmationStatus
    confirmed_at: datetime
    released_amount: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    reconciliation_pending: bool = False
