"""
Public payment feed persistence.

``upsert`` is a single ``INSERT ... ON CONFLICT (allocation_id) DO UPDATE`` so
the settlement flow and the reconciler can both project the same allocation
and only one row is ever visible.
"""

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mealfund.core.exceptions import RepositoryError
from mealfund.core.logging import get_logger
from mealfund.models.base import utcnow
from mealfund.models.feed import PublicFeedEntry
from mealfund.repositories.base import BaseRepository

logger = get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class FeedRepository(BaseRepository[PublicFeedEntry]):
    def __init__(self, db: Session):
        super().__init__(PublicFeedEntry, db)

    def upsert(self, values: Dict[str, Any]) -> None:
        """
        Insert or update the feed row keyed by ``values["allocation_id"]``.

        Raises:
            RepositoryError: The dialect has no upsert support or the write failed
        """
        dialect = self.db.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise RepositoryError(f"Feed upsert is not supported on {dialect}")

        stmt = insert(PublicFeedEntry).values(**values)
        changes = {key: stmt.excluded[key] for key in values if key != "allocation_id"}
        changes["updated_at"] = utcnow()
        stmt = stmt.on_conflict_do_update(
            index_elements=[PublicFeedEntry.allocation_id],
            set_=changes,
        )
        try:
            self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Feed upsert failed: {str(e)}") from e

    def get_by_ref(self, allocation_ref: str) -> Optional[PublicFeedEntry]:
        return self.find_one_by(allocation_ref=allocation_ref)

    def list_entries(
        self,
        page: int,
        limit: int,
        region: Optional[str] = None,
    ) -> Tuple[List[PublicFeedEntry], int]:
        """
        Page through the feed, newest release first.

        Returns:
            (entries on the page, total matching entries)
        """
        stmt = select(PublicFeedEntry)
        count_stmt = select(func.count(PublicFeedEntry.id))
        if region:
            stmt = stmt.where(PublicFeedEntry.school_region == region)
            count_stmt = count_stmt.where(PublicFeedEntry.school_region == region)

        stmt = (
            stmt.order_by(PublicFeedEntry.released_at.desc(), PublicFeedEntry.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        try:
            total = int(self.db.scalar(count_stmt) or 0)
            return list(self.db.scalars(stmt)), total
        except SQLAlchemyError as e:
            raise RepositoryError(f"Feed query failed: {str(e)}") from e

    def region_summaries(self) -> List[Dict[str, Any]]:
        """
        Aggregate the feed per school region, largest total first.

        Entries without a region are left out.
        """
        stmt = (
            select(
                PublicFeedEntry.school_region.label("region"),
                func.count(PublicFeedEntry.id).label("payment_count"),
                func.count(PublicFeedEntry.school_name.distinct()).label("schools_count"),
                func.count(PublicFeedEntry.catering_name.distinct()).label("caterings_count"),
                func.sum(PublicFeedEntry.amount).label("total_amount"),
                func.coalesce(func.sum(PublicFeedEntry.portions), 0).label("total_portions"),
                func.max(PublicFeedEntry.released_at).label("last_payment_date"),
            )
            .where(
                PublicFeedEntry.school_region.is_not(None),
                PublicFeedEntry.status == "COMPLETED",
            )
            .group_by(PublicFeedEntry.school_region)
            .order_by(func.sum(PublicFeedEntry.amount).desc(), PublicFeedEntry.school_region)
        )
        try:
            return [dict(row._mapping) for row in self.db.execute(stmt)]
        except SQLAlchemyError as e:
            raise RepositoryError(f"Feed region query failed: {str(e)}") from e


__all__ = ["FeedRepository"]
