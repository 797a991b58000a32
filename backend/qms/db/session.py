"""Database engine and request-scoped sessions."""

from collections.abc import Generator
from typing import Annotated, Any, Dict

from fastapi import Depends
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from qms.core.config import settings


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pooling and driver options per backend.

    Token numbering and lifecycle transitions are single conditional UPDATE
    statements, so the pool only has to cope with many short transactions.
    """
    if database_url.startswith("sqlite"):
        return {
            "connect_args": {"check_same_thread": False},
            "pool_pre_ping": True,
        }
    return {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def build_engine(database_url: str) -> Engine:
    engine = create_engine(
        database_url,
        echo=settings.debug and settings.log_level == "DEBUG",
        **engine_options(database_url),
    )
    if database_url.startswith("sqlite"):
        # Tokens reference organizations, counters and users
        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """One session per request; services commit their own units of work."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


DbSession = Annotated[Session, Depends(get_db)]
