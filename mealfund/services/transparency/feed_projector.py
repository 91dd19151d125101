"""
Transparency feed projector.

Turns a released allocation into its public, denormalised feed entry and
serves the read side of the feed.
"""

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from mealfund.config.settings import settings
from mealfund.core.exceptions import ResourceNotFoundError, ValidationError
from mealfund.core.logging import get_logger
from mealfund.models.allocation import Allocation, AllocationStatus
from mealfund.models.base import utcnow
from mealfund.models.escrow import EscrowTransactionKind, EscrowTransactionRecord
from mealfund.models.feed import PublicFeedEntry
from mealfund.repositories.escrow_repository import EscrowTransactionRepository
from mealfund.repositories.feed_repository import FeedRepository
from mealfund.repositories.payment_repository import PaymentRepository

logger = get_logger(__name__)

PUBLIC_ESCROW_KINDS = (EscrowTransactionKind.LOCK, EscrowTransactionKind.RELEASE)


class FeedProjector:
    def __init__(self, db: Session):
        self.db = db
        self.repository = FeedRepository(db)
        self.payments = PaymentRepository(db)
        self.escrow_records = EscrowTransactionRepository(db)

    def project(self, allocation: Allocation) -> None:
        """
        Upsert the feed entry for a released allocation.

        Safe to call from several writers: the entry is keyed by allocation.

        Raises:
            ValidationError: The allocation has not been released
        """
        if allocation.status != AllocationStatus.RELEASED:
            raise ValidationError(
                "Only released allocations appear on the public feed",
                {"status": [allocation.status.value]},
            )

        payment = self.payments.get_by_allocation(allocation.id)
        school = allocation.school
        delivery = allocation.delivery

        self.repository.upsert(
            {
                "allocation_id": allocation.id,
                "allocation_ref": allocation.allocation_id,
                "payment_id": payment.id if payment else None,
                "school_name": school.name,
                "school_region": school.city,
                "catering_name": allocation.catering.name,
                "amount": allocation.amount,
                "currency": allocation.currency,
                "portions": allocation.portions,
                "delivery_date": delivery.delivery_date if delivery else allocation.delivery_date,
                "status": "COMPLETED",
                "blockchain_tx_hash": allocation.tx_hash_release,
                "blockchain_block_number": allocation.release_block_number,
                "locked_at": allocation.locked_at,
                "released_at": allocation.released_at or utcnow(),
            }
        )
        logger.info(
            f"Feed entry projected for {allocation.allocation_id}",
            extra={"allocation_id": allocation.allocation_id},
        )

    def list(
        self,
        page: int = 1,
        limit: Optional[int] = None,
        region: Optional[str] = None,
    ) -> Tuple[List[PublicFeedEntry], int]:
        limit = self._check_page(page, limit)
        return self.repository.list_entries(page, limit, region)

    def get(self, allocation_ref: str) -> PublicFeedEntry:
        entry = self.repository.get_by_ref(allocation_ref)
        if entry is None:
            raise ResourceNotFoundError("Feed entry", allocation_ref)
        return entry

    def regions(self) -> List[Dict[str, Any]]:
        return self.repository.region_summaries()

    def escrow_transactions(
        self,
        page: int = 1,
        limit: Optional[int] = None,
        kind: Optional[EscrowTransactionKind] = None,
    ) -> Tuple[List[EscrowTransactionRecord], int]:
        """
        Page through confirmed escrow locks and releases.

        Failed attempts stay internal and are never listed.

        Raises:
            ValidationError: Bad pagination or a kind that is not public
        """
        limit = self._check_page(page, limit)
        if kind is not None and kind not in PUBLIC_ESCROW_KINDS:
            raise ValidationError(
                "Only lock and release transactions are public",
                {"kind": [k.value for k in PUBLIC_ESCROW_KINDS]},
            )
        kinds = (kind,) if kind is not None else PUBLIC_ESCROW_KINDS
        return self.escrow_records.list_public(page, limit, kinds)

    @staticmethod
    def _check_page(page: int, limit: Optional[int]) -> int:
        limit = limit or settings.FEED_DEFAULT_PAGE_SIZE
        if page < 1 or limit < 1 or limit > settings.FEED_MAX_PAGE_SIZE:
            raise ValidationError(
                "Invalid pagination parameters",
                {"page": ["must be >= 1"], "limit": [f"must be 1..{settings.FEED_MAX_PAGE_SIZE}"]},
            )
        return limit


__all__ = ["FeedProjector"]
