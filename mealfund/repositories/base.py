"""
Base repository with standardized CRUD operations, transaction management, and error handling.

Repositories flush; services decide where a unit of work ends and commit
through ``transaction()`` or ``commit()``.
"""

from contextlib import contextmanager
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mealfund.core.exceptions import BaseAppException, EntityAlreadyExistsError, RepositoryError
from mealfund.core.logging import get_logger
from mealfund.models.base import Base

logger = get_logger(__name__)

# Type variable for model classes
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with standardized operations.

    Provides CRUD operations, transaction management, and error handling
    for all domain repositories.
    """

    def __init__(self, model: Type[ModelType], db: Session):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            db: Database session
        """
        self.model = model
        self.db = db

    # ==================== Transaction Management ====================

    @contextmanager
    def transaction(self):
        """
        Transaction context manager with automatic rollback.

        Usage:
            with repository.transaction():
                repository.create(entity)
                repository.delete(other)
        """
        try:
            yield self.db
            self.db.commit()
        except BaseAppException:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transaction rollback: {str(e)}", exc_info=True)
            raise RepositoryError(f"Transaction failed: {str(e)}") from e
        except Exception:
            self.db.rollback()
            raise

    def commit(self):
        """Commit current transaction."""
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Commit failed: {str(e)}") from e

    def rollback(self):
        """Rollback current transaction."""
        self.db.rollback()

    # ==================== Create Operations ====================

    def create(self, entity: ModelType, commit: bool = False) -> ModelType:
        """
        Add a new entity.

        Args:
            entity: Entity to create
            commit: Whether to commit immediately (flush otherwise)

        Returns:
            Created entity

        Raises:
            EntityAlreadyExistsError: If a unique constraint is violated
        """
        try:
            self.db.add(entity)
            if commit:
                self.db.commit()
                self.db.refresh(entity)
            else:
                self.db.flush()
            logger.debug(f"Created {self.model.__name__} with id: {entity.id}")
            return entity
        except IntegrityError as e:
            self.db.rollback()
            raise EntityAlreadyExistsError(f"{self.model.__name__} already exists") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Create failed: {str(e)}") from e

    # ==================== Read Operations ====================

    def get_by_id(self, entity_id: Any, refresh: bool = False) -> Optional[ModelType]:
        """
        Get entity by primary key.

        Args:
            entity_id: Primary key value
            refresh: Reload from the database even if the entity is in the session
        """
        try:
            return self.db.get(self.model, entity_id, populate_existing=refresh)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Get failed: {str(e)}") from e

    def find_by(self, **filters) -> List[ModelType]:
        try:
            stmt = select(self.model).filter_by(**filters).order_by(self.model.id)
            return list(self.db.scalars(stmt))
        except SQLAlchemyError as e:
            raise RepositoryError(f"Find failed: {str(e)}") from e

    def find_one_by(self, **filters) -> Optional[ModelType]:
        try:
            stmt = select(self.model).filter_by(**filters).limit(1)
            return self.db.scalars(stmt).first()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Find failed: {str(e)}") from e

    def count(self, **filters) -> int:
        try:
            stmt = select(func.count()).select_from(self.model).filter_by(**filters)
            return int(self.db.scalar(stmt) or 0)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Count failed: {str(e)}") from e

    # ==================== Delete Operations ====================

    def delete(self, entity: ModelType, commit: bool = False) -> None:
        """Hard delete an entity. Allocations are never passed here."""
        try:
            self.db.delete(entity)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RepositoryError(f"Delete failed: {str(e)}") from e


__all__ = ["BaseRepository", "ModelType"]
