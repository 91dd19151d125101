"""
Base service class providing common functionality for all services.
"""

from contextlib import contextmanager

from sqlalchemy.orm import Session

from mealfund.core.logging import get_logger


class BaseService:
    """
    Base service with common behaviors:
    - Shared logger and db session
    - Transaction management utilities
    """

    def __init__(self, db_session: Session):
        """
        Initialize base service.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db: Session = db_session
        self._logger = get_logger(self.__class__.__name__)

    # -------------------------------------------------------------------------
    # Transaction Management
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self, auto_commit: bool = True):
        """
        Context manager for database transactions with automatic rollback.

        Args:
            auto_commit: Whether to commit automatically on success

        Yields:
            The database session

        Example:
            with self.transaction():
                self.repository.create(entity)
                # automatic commit on success, rollback on exception
        """
        try:
            yield self.db
            if auto_commit:
                self._commit()
        except Exception as e:
            self._rollback()
            self._logger.debug(f"Transaction rolled back: {e}")
            raise

    def _commit(self) -> None:
        """Commit the current transaction with error handling."""
        try:
            self.db.commit()
            self._logger.debug("Transaction committed successfully")
        except Exception as e:
            self._logger.error(f"Commit failed: {e}", exc_info=True)
            self._rollback()
            raise

    def _rollback(self) -> None:
        """Rollback the current transaction, suppressing rollback errors."""
        try:
            self.db.rollback()
            self._logger.debug("Transaction rolled back")
        except Exception as e:
            # Rollback errors must not mask the original error
            self._logger.warning(f"Rollback failed: {e}")


__all__ = ["BaseService"]
