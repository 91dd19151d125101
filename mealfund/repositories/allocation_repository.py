"""
Allocation repository.

All status changes go through ``conditional_update``: a single
``UPDATE ... WHERE id = :id AND status IN (:allowed)`` that also bumps the
version. It is the only concurrency control between the settlement flow and
the event reconciler.
"""

from datetime import date as Date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from mealfund.core.exceptions import RepositoryError
from mealfund.core.logging import get_logger
from mealfund.models.allocation import Allocation, AllocationStatus
from mealfund.repositories.base import BaseRepository

logger = get_logger(__name__)


class AllocationRepository(BaseRepository[Allocation]):
    def __init__(self, db: Session):
        super().__init__(Allocation, db)

    def get_by_ref(self, allocation_ref: str, refresh: bool = False) -> Optional[Allocation]:
        """Look up an allocation by its on-chain reference."""
        stmt = (
            select(Allocation)
            .where(Allocation.allocation_id == allocation_ref)
            .options(selectinload(Allocation.school), selectinload(Allocation.catering))
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        try:
            return self.db.scalars(stmt).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Allocation lookup failed: {str(e)}") from e

    def get_by_delivery(self, delivery_id: int) -> Optional[Allocation]:
        return self.find_one_by(delivery_id=delivery_id)

    def find_for_triple(
        self,
        school_id: int,
        catering_id: int,
        delivery_date: Date,
    ) -> List[Allocation]:
        return self.find_by(
            school_id=school_id,
            catering_id=catering_id,
            delivery_date=delivery_date,
        )

    def conditional_update(
        self,
        pk: int,
        allowed: Iterable[AllocationStatus],
        values: Dict[str, Any],
    ) -> bool:
        """
        Apply ``values`` only if the allocation is currently in ``allowed``.

        Args:
            pk: Allocation surrogate id
            allowed: Statuses the row must be in for the write to apply
            values: Column values to set

        Returns:
            True when exactly one row was updated
        """
        stmt = (
            update(Allocation)
            .where(Allocation.id == pk, Allocation.status.in_(list(allowed)))
            .values(**values, version=Allocation.version + 1)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Allocation update failed: {str(e)}") from e
        return result.rowcount == 1

    def fill_missing(self, pk: int, column: str, value: Any) -> bool:
        """Set ``column`` only where it is still NULL. Does not bump the version."""
        attr = getattr(Allocation, column)
        stmt = (
            update(Allocation)
            .where(Allocation.id == pk, attr.is_(None))
            .values({column: value})
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Allocation update failed: {str(e)}") from e

    def raise_last_event_block(self, pk: int, block_number: int) -> None:
        """Move the per-allocation event watermark forward, never back."""
        stmt = (
            update(Allocation)
            .where(
                Allocation.id == pk,
                or_(
                    Allocation.last_event_block.is_(None),
                    Allocation.last_event_block < block_number,
                ),
            )
            .values(last_event_block=block_number)
            .execution_options(synchronize_session=False)
        )
        try:
            self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Allocation update failed: {str(e)}") from e

    def rename_reference(self, pk: int, new_ref: str) -> None:
        """Move a cancelled allocation off its canonical on-chain reference."""
        stmt = (
            update(Allocation)
            .where(Allocation.id == pk, Allocation.status == AllocationStatus.CANCELLED)
            .values(allocation_id=new_ref)
            .execution_options(synchronize_session=False)
        )
        try:
            self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Allocation update failed: {str(e)}") from e

    def reload(self, pk: int) -> Optional[Allocation]:
        """Re-read the row after a conditional write."""
        return self.get_by_id(pk, refresh=True)


__all__ = ["AllocationRepository"]
