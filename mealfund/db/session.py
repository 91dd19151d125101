"""Database session management."""
from functools import lru_cache
from typing import Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from mealfund.config.settings import settings


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create a database engine for the given URL (defaults to settings).

    SQLite is accepted for local runs and tests; it needs cross-thread access
    because the reconciler works in a worker thread.
    """
    url = database_url or settings.get_database_url()
    kwargs = {
        "pool_pre_ping": True,
        "echo": settings.LOG_SQL_QUERIES,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_POOL_OVERFLOW
    return create_engine(url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    # Objects stay readable after commit; settlement code reads them back
    # between the durability checkpoint and the escrow call.
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@lru_cache()
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache()
def get_session_factory() -> sessionmaker:
    return create_session_factory(get_engine())


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency function that yields a database session.

    Uses the session factory installed on the application state so tests and
    alternative deployments can point the app at another database.

    Usage in FastAPI endpoints:
        @router.get("/items/")
        def read_items(db: Session = Depends(get_db)):
            ...
    """
    factory = getattr(request.app.state, "session_factory", None) or get_session_factory()
    db = factory()
    try:
        yield db
    finally:
        db.close()
