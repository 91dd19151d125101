"""
Public payment feed schemas.
"""

from __future__ import annotations

from datetime import date as Date, datetime
from decimal import Decimal
from typing import Optional

from mealfund.models.escrow import EscrowTransactionKind, EscrowTransactionRecord
from mealfund.models.feed import PublicFeedEntry
from mealfund.schemas.base import BaseSchema, PaginatedResponse

__all__ = [
    "EscrowTransactionPage",
    "FeedEntryResponse",
    "FeedPage",
    "PublicEscrowTransactionResponse",
    "RegionSummaryResponse",
]


class FeedEntryResponse(BaseSchema):
    """One released allocation as shown to the public."""

    allocation_id: str
    school_name: str
    school_region: Optional[str] = None
    catering_name: str
    amount: Decimal
    currency: str
    portions: Optional[int] = None
    delivery_date: Optional[Date] = None
    status: str
    blockchain_tx_hash: Optional[str] = None
    blockchain_block_number: Optional[int] = None
    locked_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: PublicFeedEntry) -> "FeedEntryResponse":
        return cls(
            allocation_id=entry.allocation_ref,
            school_name=entry.school_name,
            school_region=entry.school_region,
            catering_name=entry.catering_name,
            amount=entry.amount,
            currency=entry.currency,
            portions=entry.portions,
            delivery_date=entry.delivery_date,
            status=entry.status,
            blockchain_tx_hash=entry.blockchain_tx_hash,
            blockchain_block_number=entry.blockchain_block_number,
            locked_at=entry.locked_at,
            released_at=entry.released_at,
        )


FeedPage = PaginatedResponse[FeedEntryResponse]


class PublicEscrowTransactionResponse(BaseSchema):
    """A confirmed escrow lock or release, for ledger explorers."""

    allocation_id: str
    kind: EscrowTransactionKind
    tx_hash: str
    block_number: Optional[int] = None
    amount: Decimal
    currency: str
    contract_address: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: EscrowTransactionRecord) -> "PublicEscrowTransactionResponse":
        return cls(
            allocation_id=record.allocation.allocation_id,
            kind=record.kind,
            tx_hash=record.tx_hash,
            block_number=record.block_number,
            amount=record.amount,
            currency=record.currency,
            contract_address=record.contract_address,
            confirmed_at=record.confirmed_at,
        )


EscrowTransactionPage = PaginatedResponse[PublicEscrowTransactionResponse]


class RegionSummaryResponse(BaseSchema):
    region: str
    payment_count: int
    schools_count: int
    caterings_count: int
    total_amount: Decimal
    total_portions: int
    last_payment_date: Optional[datetime] = None
