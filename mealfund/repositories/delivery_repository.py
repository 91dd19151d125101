"""
Delivery, confirmation and issue persistence.
"""

from typing import Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mealfund.core.exceptions import ConflictError, ErrorCode, RepositoryError
from mealfund.core.logging import get_logger
from mealfund.models.delivery import Delivery, DeliveryConfirmation, DeliveryStatus, Issue
from mealfund.repositories.base import BaseRepository

logger = get_logger(__name__)


class DeliveryRepository(BaseRepository[Delivery]):
    def __init__(self, db: Session):
        super().__init__(Delivery, db)

    # ==================== Delivery Status ====================

    def set_status(
        self,
        delivery_id: int,
        status: DeliveryStatus,
        reason: Optional[str] = None,
        only_from: Optional[Iterable[DeliveryStatus]] = None,
    ) -> bool:
        """
        Set a delivery's status.

        Args:
            delivery_id: Delivery id
            status: New status
            reason: Optional status reason (cancellation reason)
            only_from: When given, apply only if the current status is one of these

        Returns:
            True if the row was updated
        """
        values = {"status": status}
        if reason is not None:
            values["status_reason"] = reason
        stmt = update(Delivery).where(Delivery.id == delivery_id)
        if only_from is not None:
            stmt = stmt.where(Delivery.status.in_(list(only_from)))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        try:
            updated = self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Delivery update failed: {str(e)}") from e

        delivery = self.db.get(Delivery, delivery_id)
        if delivery is not None:
            self.db.refresh(delivery)
        return updated

    # ==================== Confirmations ====================

    def get_confirmation(self, delivery_id: int) -> Optional[DeliveryConfirmation]:
        try:
            return self.db.query(DeliveryConfirmation).filter_by(delivery_id=delivery_id).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Confirmation lookup failed: {str(e)}") from e

    def add_confirmation(self, confirmation: DeliveryConfirmation) -> DeliveryConfirmation:
        """
        Insert a confirmation.

        Raises:
            ConflictError: The delivery already has a confirmation
        """
        try:
            self.db.add(confirmation)
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                "Delivery already confirmed",
                ErrorCode.ALREADY_CONFIRMED,
                {"delivery_id": confirmation.delivery_id},
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Confirmation insert failed: {str(e)}") from e
        return confirmation

    def delete_confirmation(self, delivery_id: int) -> int:
        stmt = (
            delete(DeliveryConfirmation)
            .where(DeliveryConfirmation.delivery_id == delivery_id)
            .execution_options(synchronize_session=False)
        )
        try:
            removed = self.db.execute(stmt).rowcount
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Confirmation delete failed: {str(e)}") from e
        self.db.expire_all()
        return removed

    # ==================== Issues ====================

    def open_issue(self, issue: Issue) -> Issue:
        return BaseRepository(Issue, self.db).create(issue)


__all__ = ["DeliveryRepository"]
