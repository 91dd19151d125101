"""
Payment ledger entry and payment event persistence.
"""

from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mealfund.core.exceptions import RepositoryError
from mealfund.core.logging import get_logger
from mealfund.models.payment import PaymentEvent, PaymentEventType, PaymentLedgerEntry, PaymentStatus
from mealfund.repositories.base import BaseRepository

logger = get_logger(__name__)


class PaymentRepository(BaseRepository[PaymentLedgerEntry]):
    def __init__(self, db: Session):
        super().__init__(PaymentLedgerEntry, db)

    def get_by_allocation(self, allocation_pk: int) -> Optional[PaymentLedgerEntry]:
        return self.find_one_by(allocation_id=allocation_pk)

    def advance_status(self, allocation_pk: int, target: PaymentStatus, **references: Any) -> bool:
        """
        Move the entry's status forward to ``target``.

        The write applies only while the current status ranks below the
        target, so replays and late callbacks never move it back. Reference
        columns in ``references`` are filled wherever they are still empty,
        whether or not the status moved.

        Returns:
            True if the status changed
        """
        lower = [s for s in PaymentStatus if s.rank < target.rank]
        stmt = (
            update(PaymentLedgerEntry)
            .where(
                PaymentLedgerEntry.allocation_id == allocation_pk,
                PaymentLedgerEntry.status.in_(lower),
            )
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        try:
            advanced = self.db.execute(stmt).rowcount == 1
            for column, value in references.items():
                if value is None:
                    continue
                attr = getattr(PaymentLedgerEntry, column)
                self.db.execute(
                    update(PaymentLedgerEntry)
                    .where(PaymentLedgerEntry.allocation_id == allocation_pk, attr.is_(None))
                    .values({column: value})
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Payment update failed: {str(e)}") from e

        entry = self.get_by_allocation(allocation_pk)
        if entry is not None:
            self.db.refresh(entry)
        return advanced

    # ==================== Event Log ====================

    def has_event(
        self,
        allocation_pk: int,
        event_type: PaymentEventType,
        tx_hash: Optional[str] = None,
    ) -> bool:
        stmt = select(PaymentEvent.id).where(
            PaymentEvent.allocation_id == allocation_pk,
            PaymentEvent.event_type == event_type,
        )
        if tx_hash is not None:
            stmt = stmt.where(PaymentEvent.blockchain_tx_hash == tx_hash)
        try:
            return self.db.scalar(stmt.limit(1)) is not None
        except SQLAlchemyError as e:
            raise RepositoryError(f"Payment event lookup failed: {str(e)}") from e

    def append_event(self, event: PaymentEvent) -> PaymentEvent:
        return BaseRepository(PaymentEvent, self.db).create(event)

    def append_event_once(self, event: PaymentEvent) -> bool:
        """Append unless an event of the same type already exists for this tx."""
        if self.has_event(event.allocation_id, event.event_type, event.blockchain_tx_hash):
            return False
        self.append_event(event)
        return True


__all__ = ["PaymentRepository"]
