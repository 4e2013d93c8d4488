"""Storage module for oidcrp.

Provides the SQL-backed reference implementation of the token store.
"""

from oidcrp.storage.database import (
    Database,
    DatabaseError,
    create_database_engine,
    create_session_factory,
)
from oidcrp.storage.models import Base, OAuthTokenRecord
from oidcrp.storage.token_store import SqlTokenStore

__all__ = [
    # Database management
    "Database",
    "DatabaseError",
    "create_database_engine",
    "create_session_factory",
    # Models
    "Base",
    "OAuthTokenRecord",
    # Token store
    "SqlTokenStore",
]
