"""SQL-backed token store for the access-token lifecycle manager."""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from oidcrp.core.oidc.lifecycle import StoredToken, TokenState
from oidcrp.storage.models import OAuthTokenRecord

if TYPE_CHECKING:
    from oidcrp.core.oidc.client import TokenResponse
    from oidcrp.storage.database import Database

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_LEEWAY_SECONDS = 30


class SqlTokenStore:
    """Stores tokens per (connection, identity) in a SQL database.

    Refresh serialisation uses in-process locks, so it only holds within a
    single process.
    """

    def __init__(self, database: Database, expiry_leeway_seconds: int = DEFAULT_EXPIRY_LEEWAY_SECONDS) -> None:
        """Initialize the store.

        Args:
            database: Database holding the ``oauth_tokens`` table.
            expiry_leeway_seconds: Access tokens this close to expiry are
                reported as expired.
        """
        self.database = database
        self.expiry_leeway_seconds = expiry_leeway_seconds
        # Entries disappear once no request holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _find(self, connection: str, identity: str) -> OAuthTokenRecord | None:
        with self.database.get_session() as session:
            return session.scalars(
                select(OAuthTokenRecord).where(
                    OAuthTokenRecord.connection == connection,
                    OAuthTokenRecord.identity == identity,
                )
            ).first()

    def get_access_token(self, connection: str, identity: str) -> StoredToken:
        record = self._find(connection, identity)
        if record is None or not record.access_token:
            return StoredToken.missing()
        if record.is_expired(self.expiry_leeway_seconds):
            return StoredToken(TokenState.EXPIRED, record.access_token)
        return StoredToken(TokenState.VALID, record.access_token)

    def get_refresh_token(self, connection: str, identity: str) -> StoredToken:
        record = self._find(connection, identity)
        if record is None or not record.refresh_token:
            return StoredToken.missing()
        return StoredToken(TokenState.VALID, record.refresh_token)

    def persist_tokens(self, connection: str, identity: str, tokens: TokenResponse) -> None:
        """Insert or update the tokens of a user.

        A response without a refresh token keeps the stored one; providers
        are not required to rotate refresh tokens.
        """
        expires_at = datetime.fromtimestamp(tokens.expires_at, UTC) if tokens.expires_at is not None else None

        with self.database.get_session() as session:
            record = session.scalars(
                select(OAuthTokenRecord).where(
                    OAuthTokenRecord.connection == connection,
                    OAuthTokenRecord.identity == identity,
                )
            ).first()
            if record is None:
                record = OAuthTokenRecord(connection=connection, identity=identity)
                session.add(record)

            record.access_token = tokens.access_token
            record.token_type = tokens.token_type
            record.scope = tokens.scope
            record.expires_at = expires_at
            if tokens.refresh_token:
                record.refresh_token = tokens.refresh_token
            session.commit()

        logger.debug(f"Stored tokens for '{identity}' on connection '{connection}'")

    def delete_tokens(self, connection: str, identity: str) -> bool:
        """Forget the tokens of a user.

        Returns:
            True if a record was deleted.
        """
        with self.database.get_session() as session:
            record = session.scalars(
                select(OAuthTokenRecord).where(
                    OAuthTokenRecord.connection == connection,
                    OAuthTokenRecord.identity == identity,
                )
            ).first()
            if record is None:
                return False
            session.delete(record)
            session.commit()
        return True

    @contextmanager
    def lock(self, connection: str, identity: str) -> Iterator[None]:
        """Hold the refresh lock of one (connection, identity) pair."""
        with self._locks_guard:
            key_lock = self._locks.get((connection, identity))
            if key_lock is None:
                key_lock = threading.Lock()
                self._locks[(connection, identity)] = key_lock
        with key_lock:
            yield
