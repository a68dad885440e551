"""
Persistence Gateway

Handles engine creation, the per-run connection, statement execution and
schema bootstrap. Designed for PostgreSQL in production and SQLite for
local development and tests.

Every statement runs in its own transaction; there is no run-wide
transaction, so an interrupted run leaves whatever was already written.
"""

import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import Table, create_engine, event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import Executable

from metrics_collector.errors import PersistenceError

from .models import Base

logger = logging.getLogger(__name__)

# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def get_database_url(url: Optional[str] = None, sqlite_path: Optional[str] = None) -> str:
    """
    Resolve the database URL.

    Priority:
    1. Explicit url argument
    2. DATABASE_URL environment variable
    3. SQLite fallback for local development
    """
    url = url or os.getenv("DATABASE_URL")

    if url:
        # Hosted PostgreSQL URLs use postgres:// but SQLAlchemy needs postgresql://
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        return url

    sqlite_path = sqlite_path or os.getenv("SQLITE_PATH", "metrics_dev.db")
    logger.warning(f"No DATABASE_URL found, using SQLite: {sqlite_path}")
    return f"sqlite:///{sqlite_path}"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create database engine with appropriate settings.

    PostgreSQL: Connection pooling
    SQLite: Simpler settings, foreign key support
    """
    if url.startswith("postgresql"):
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=2,
            max_overflow=2,
            pool_timeout=30,
            pool_pre_ping=True,
            echo=echo,
        )
        logger.info("Created PostgreSQL engine")
    else:
        engine = create_engine(url, echo=echo)

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        logger.info("Created SQLite engine")

    return engine


def _safe_url(url: str) -> str:
    """Mask password in URL for logging."""
    if "@" not in url:
        return url
    head, tail = url.split("@", 1)
    return head.rsplit(":", 1)[0] + ":***@" + tail


# =============================================================================
# GATEWAY
# =============================================================================

Statement = Union[str, Executable]


class PersistenceGateway:
    """
    One database connection for the lifetime of a collection run.

    Usage:
        gateway = PersistenceGateway("postgresql://...")
        gateway.connect()
        try:
            rows = gateway.execute("SELECT 1")
        finally:
            gateway.disconnect()
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = get_database_url(url)
        self.echo = echo
        self._engine: Optional[Engine] = None
        self._connection: Optional[Connection] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def dialect(self) -> str:
        if self._engine is not None:
            return self._engine.dialect.name
        return "postgresql" if self.url.startswith("postgresql") else "sqlite"

    def connect(self) -> None:
        """Open the connection and verify it with a trivial query."""
        if self._connection is not None:
            return
        try:
            self._engine = create_db_engine(self.url, echo=self.echo)
            self._connection = self._engine.connect()
            with self._connection.begin():
                self._connection.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            self.disconnect()
            raise PersistenceError(f"Database connection failed ({_safe_url(self.url)}): {e}") from e
        logger.info(f"Connected to {self.dialect} database")

    def disconnect(self) -> None:
        """Close the connection and dispose the engine. Safe to call repeatedly."""
        if self._connection is not None:
            try:
                self._connection.close()
            except SQLAlchemyError as e:
                logger.warning(f"Error closing connection: {e}")
            self._connection = None
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Disconnected from database")

    def _require_connection(self) -> Connection:
        if self._connection is None:
            raise PersistenceError("Database not connected")
        return self._connection

    def execute(self, statement: Statement, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        """Run one statement in its own transaction and return any rows."""
        conn = self._require_connection()
        if isinstance(statement, str):
            statement = text(statement)
        try:
            with conn.begin():
                result = conn.execute(statement, params or {})
                return result.fetchall() if result.returns_rows else []
        except SQLAlchemyError as e:
            raise PersistenceError(f"Statement failed: {e}") from e

    def scalar(self, statement: Statement, params: Optional[Dict[str, Any]] = None) -> Any:
        rows = self.execute(statement, params)
        return rows[0][0] if rows else None

    def ensure_tables(self, tables: Iterable[Table]) -> None:
        """Create the given tables if they do not exist."""
        conn = self._require_connection()
        try:
            with conn.begin():
                Base.metadata.create_all(bind=conn, tables=list(tables), checkfirst=True)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create tables: {e}") from e

    def apply_schema(self, script: str) -> None:
        """
        Execute a multi-statement SQL script.

        The script must be idempotent (CREATE ... IF NOT EXISTS etc.).
        """
        self._require_connection()
        # Use raw DBAPI cursor to execute multi-statement SQL
        raw_conn = self._engine.raw_connection()
        try:
            cursor = raw_conn.cursor()
            if self.dialect == "sqlite":
                cursor.executescript(script)
            else:
                cursor.execute(script)
            raw_conn.commit()
            cursor.close()
        except Exception as e:
            raw_conn.rollback()
            raise PersistenceError(f"Schema script failed: {e}") from e
        finally:
            raw_conn.close()

    def insert(self, table: Table):
        """Dialect-specific INSERT supporting ON CONFLICT clauses."""
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)
