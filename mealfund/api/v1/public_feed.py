"""
Public transparency endpoints. Unauthenticated.
"""

import math
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from mealfund.api import deps
from mealfund.config.settings import settings
from mealfund.models.escrow import EscrowTransactionKind
from mealfund.schemas.feed import (
    EscrowTransactionPage,
    FeedEntryResponse,
    FeedPage,
    PublicEscrowTransactionResponse,
    RegionSummaryResponse,
)
from mealfund.services.transparency.feed_projector import FeedProjector

router = APIRouter(prefix="/public", tags=["Public Feed"])


def _total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


# --- Payment Feed -------------------------------------------------------------

@router.get("/payment-feed", response_model=FeedPage)
def list_feed(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.FEED_DEFAULT_PAGE_SIZE, ge=1, le=settings.FEED_MAX_PAGE_SIZE),
    region: Optional[str] = Query(None, max_length=100),
    projector: FeedProjector = Depends(deps.get_feed_projector),
) -> FeedPage:
    entries, total = projector.list(page=page, limit=limit, region=region)
    return FeedPage(
        items=[FeedEntryResponse.from_entry(e) for e in entries],
        page=page,
        limit=limit,
        total=total,
        total_pages=_total_pages(total, limit),
    )


@router.get("/payment-feed/{allocation_id}", response_model=FeedEntryResponse)
def get_feed_entry(
    allocation_id: str,
    projector: FeedProjector = Depends(deps.get_feed_projector),
) -> FeedEntryResponse:
    return FeedEntryResponse.from_entry(projector.get(allocation_id))


# --- Regions ------------------------------------------------------------------

@router.get("/regions", response_model=List[RegionSummaryResponse])
def list_regions(
    projector: FeedProjector = Depends(deps.get_feed_projector),
) -> List[RegionSummaryResponse]:
    """Regions with released payments, for the feed's region filter."""
    return [RegionSummaryResponse(**row) for row in projector.regions()]


# --- Escrow Transactions ------------------------------------------------------

@router.get("/blockchain-transactions", response_model=EscrowTransactionPage)
def list_escrow_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.FEED_DEFAULT_PAGE_SIZE, ge=1, le=settings.FEED_MAX_PAGE_SIZE),
    kind: Optional[EscrowTransactionKind] = Query(None),
    projector: FeedProjector = Depends(deps.get_feed_projector),
) -> EscrowTransactionPage:
    records, total = projector.escrow_transactions(page=page, limit=limit, kind=kind)
    return EscrowTransactionPage(
        items=[PublicEscrowTransactionResponse.from_record(r) for r in records],
        page=page,
        limit=limit,
        total=total,
        total_pages=_total_pages(total, limit),
    )
