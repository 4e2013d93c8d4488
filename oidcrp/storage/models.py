"""SQLAlchemy 2.x ORM models for stored OAuth tokens."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class OAuthTokenRecord(Base):
    """Access and refresh token of one user on one connection."""

    __tablename__ = "oauth_tokens"
    __table_args__ = (UniqueConstraint("connection", "identity", name="uq_oauth_tokens_connection_identity"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    connection: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    identity: Mapped[str] = mapped_column(String(500), nullable=False)

    access_token: Mapped[str | None] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    token_type: Mapped[str | None] = mapped_column(String(50))
    scope: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<OAuthTokenRecord(connection='{self.connection}', identity='{self.identity}')>"

    def is_expired(self, leeway_seconds: int = 0, now: datetime | None = None) -> bool:
        """Check whether the access token expires within ``leeway_seconds``.

        Tokens without a known expiry never count as expired.
        """
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        # SQLite drops the timezone on the way back
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        now = now or datetime.now(UTC)
        return now >= expires_at - timedelta(seconds=leeway_seconds)
