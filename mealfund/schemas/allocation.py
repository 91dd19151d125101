"""
Administrative allocation schemas.
"""

from __future__ import annotations

from datetime import date as Date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import Field

from mealfund.models.allocation import Allocation, AllocationStatus
from mealfund.models.escrow import EscrowTransactionKind, EscrowTransactionStatus
from mealfund.schemas.base import BaseSchema

__all__ = [
    "AllocationCreate",
    "AllocationReason",
    "AllocationResponse",
    "AllocationDetail",
    "EscrowTransactionResponse",
]


class AllocationCreate(BaseSchema):
    school_id: int = Field(..., gt=0)
    catering_id: int = Field(..., gt=0)
    delivery_id: Optional[int] = Field(None, gt=0)
    delivery_date: Date
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    portions: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=2000)


class AllocationReason(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=1000)


class AllocationResponse(BaseSchema):
    allocation_id: str
    school_id: int
    catering_id: int
    delivery_id: Optional[int] = None
    delivery_date: Date
    amount: Decimal
    currency: str
    status: AllocationStatus
    version: int
    tx_hash_lock: Optional[str] = None
    tx_hash_release: Optional[str] = None
    release_block_number: Optional[int] = None
    blockchain_confirmed: bool
    locked_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    hold_reason: Optional[str] = None
    last_event_block: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_allocation(cls, allocation: Allocation, **extra: Any):
        fields = {
            name: getattr(allocation, name)
            for name in AllocationResponse.model_fields
            if name != "metadata"
        }
        return cls(**fields, metadata=allocation.extra_metadata, **extra)


class EscrowTransactionResponse(BaseSchema):
    kind: EscrowTransactionKind
    status: EscrowTransactionStatus
    amount: Decimal
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    retry_count: int
    error_message: Optional[str] = None
    executed_at: Optional[datetime] = None


class AllocationDetail(AllocationResponse):
    escrow_transactions: List[EscrowTransactionResponse] = Field(default_factory=list)
