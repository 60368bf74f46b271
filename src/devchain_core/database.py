"""Database connection and session management."""
import logging
import sqlite3
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from .config import get_settings
from .errors import StorageError

logger = logging.getLogger("devchain-core.database")

settings = get_settings()


@event.listens_for(Engine, "connect")
def _enable_sqlite_fk(dbapi_connection, connection_record):
    """Enable foreign key enforcement on every SQLite connection."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Create database engine
engine = create_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,          # Verify connections before using
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class ImmediateTransaction:
    """
    Explicit BEGIN IMMEDIATE / COMMIT / ROLLBACK on the session's raw SQLite connection.

    Used only for multi-entity writes that must leave zero trace on failure
    (template import, review comment with targets). The write lock is taken
    up front so concurrent writers queue on the store instead of failing
    halfway through.

    Usage:
        with ImmediateTransaction(db):
            db.add(...)
            db.flush()

    The block commits on normal exit. On any exception the raw connection
    is rolled back, the session is rolled back and the exception propagates.
    """

    def __init__(self, db: Session):
        self.db = db
        self._raw: Optional[sqlite3.Connection] = None

    def begin(self) -> None:
        try:
            raw = self.db.connection().connection.driver_connection
        except SQLAlchemyError as exc:
            raise StorageError("Unable to access underlying SQLite connection", cause=str(exc)) from exc

        if raw is None or not hasattr(raw, "execute"):
            raise StorageError("Unable to access underlying SQLite connection for transaction control")

        if raw.in_transaction or self.db.new or self.db.dirty or self.db.deleted:
            raise StorageError("Cannot start an immediate transaction while another one is open")

        try:
            raw.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StorageError("Failed to acquire write lock", cause=str(exc)) from exc
        self._raw = raw

    def commit(self) -> None:
        self.db.flush()
        self._raw.execute("COMMIT")
        self.db.commit()

    def rollback(self) -> None:
        try:
            # A failed flush already rolled the connection back
            if self._raw.in_transaction:
                self._raw.execute("ROLLBACK")
            logger.info("Transaction rolled back successfully")
        except sqlite3.Error as rollback_error:
            logger.error(f"Failed to rollback transaction: {rollback_error}")
        finally:
            self.db.rollback()

    def __enter__(self) -> "ImmediateTransaction":
        self.begin()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            try:
                self.commit()
            except Exception:
                self.rollback()
                raise
            return False
        self.rollback()
        return False
