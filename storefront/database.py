"""
Replica store connection and session management.
Uses SQLAlchemy for Postgres (production) and SQLite (local/tests) connections.

The store handle is constructed explicitly by the process entry point and
passed to every component; nothing in this module holds a global connection.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.logger import get_logger

logger = get_logger("database")

# Base class for all replica models
Base = declarative_base()


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # Share one connection so every session sees the same in-memory DB
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class ReplicaStore:
    """
    Handle on the relational replica.

    Owns the engine and session factory. Statements run in autocommit-style
    short sessions: each ``session()`` scope commits on success and rolls back
    on error. No transaction spans more than one scope.
    """

    def __init__(self, database_url: str, engine: Optional[Engine] = None):
        self.database_url = database_url
        self._engine: Optional[Engine] = engine
        self._sessionmaker: Optional[sessionmaker] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "ReplicaStore":
        if self._engine is None:
            self._engine = _build_engine(self.database_url)
        self._sessionmaker = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        logger.info("Replica store opened (%s)", self._engine.dialect.name)
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Replica store closed")
        self._engine = None
        self._sessionmaker = None

    def create_schema(self) -> None:
        """Create replica tables if they don't exist (use migrations in production)."""
        from storefront import models  # noqa: F401  register tables on Base

        Base.metadata.create_all(bind=self.engine)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Replica store is not open. Call open() first.")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    # ------------------------------------------------------------------
    # Sessions and statements
    # ------------------------------------------------------------------

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        if self._sessionmaker is None:
            raise RuntimeError("Replica store is not open. Call open() first.")
        db = self._sessionmaker()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def insert(self, table):
        """
        Dialect-specific INSERT supporting ``on_conflict_do_update``.

        Both the PostgreSQL and SQLite dialects expose the same
        ``on_conflict_do_update(index_elements=..., set_=...)`` API.
        """
        if self.dialect_name == "postgresql":
            return postgresql.insert(table)
        if self.dialect_name == "sqlite":
            return sqlite.insert(table)
        raise NotImplementedError(f"Upserts are not supported on {self.dialect_name}")


def count_statements(store: ReplicaStore) -> list:
    """
    Attach a statement recorder to the store's engine.

    Returns the list that every executed SQL string is appended to. Used by
    tests and debug tooling to verify batching.
    """
    statements: list = []

    @event.listens_for(store.engine, "before_cursor_execute")
    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    return statements
