"""Database integration for the reference token store."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from oidcrp.core.config import DEFAULT_DATABASE_URL


class DatabaseError(Exception):
    """Base exception for database errors."""


def create_database_engine(database_url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy database URL.
        echo: Whether to echo SQL statements (for debugging).

    Returns:
        Configured SQLAlchemy Engine.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # One shared connection, or every session sees an empty database
            return create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        # Ensure parent directory exists
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})

    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory for the given engine.

    Args:
        engine: SQLAlchemy engine.

    Returns:
        Session factory.
    """
    return sessionmaker(bind=engine, expire_on_commit=False)


class Database:
    """Database manager for the token store."""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, echo: bool = False) -> None:
        """Initialize database manager.

        Args:
            database_url: SQLAlchemy database URL.
            echo: Whether to echo SQL statements.
        """
        self._database_url = database_url
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None
        self._echo = echo

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = create_database_engine(self._database_url, self._echo)
        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = create_session_factory(self.engine)
        return self._session_factory

    def get_session(self) -> Session:
        """Create a new database session.

        Returns:
            A new SQLAlchemy Session.
        """
        return self.session_factory()

    def init_db(self) -> None:
        """Initialize database schema.

        Creates all tables defined in the models.
        """
        from oidcrp.storage.models import Base

        Base.metadata.create_all(self.engine)

    def verify_connection(self) -> bool:
        """Verify the database connection.

        Returns:
            True if connection is successful.

        Raises:
            DatabaseError: If the connection fails.
        """
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text("SELECT 1"))
                result.fetchone()
            return True
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database connection failed: {e}") from e

    def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
