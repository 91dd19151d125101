"""Database initialization utilities."""
import logging
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from mealfund.db.session import get_engine
from mealfund.models import Base

logger = logging.getLogger(__name__)


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Initialize the database by creating all tables.

    Note: This is suitable for development/testing only.
    For production, use migrations instead.
    """
    engine = engine or get_engine()
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing_tables]

    if not missing:
        logger.info(f"Database already initialized with {len(existing_tables)} tables")
        return

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database tables created: {', '.join(t.name for t in missing)}")


def drop_db(engine: Optional[Engine] = None) -> None:
    """
    Drop all database tables.

    WARNING: This will delete all data! Only for development/testing purposes.
    """
    Base.metadata.drop_all(bind=engine or get_engine())
    logger.warning("All database tables dropped")
