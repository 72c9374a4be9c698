"""SQLAlchemy 2.x ORM models for relying party persistence."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from oidcrp.core.oidc.state import AuthRequestState


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def to_db_time(value: datetime) -> datetime:
    """Normalize to naive UTC, the form stored in every DateTime column."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def from_db_time(value: datetime) -> datetime:
    """Attach UTC to a stored naive datetime."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class AuthStateRecord(Base):
    """A pending authorization request.

    Rows are deleted when the state is consumed; expired rows stay until
    they are purged.
    """

    __tablename__ = "oidc_auth_states"

    value: Mapped[str] = mapped_column(String(128), primary_key=True)
    nonce: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    ttl: Mapped[int] = mapped_column(Integer, nullable=False)
    redirect_to: Mapped[str | None] = mapped_column(Text)
    code_verifier: Mapped[str | None] = mapped_column(String(128))

    def __repr__(self) -> str:
        return f"<AuthStateRecord(expires_at={self.expires_at!r})>"

    @classmethod
    def from_state(cls, state: AuthRequestState) -> AuthStateRecord:
        """Build a row for a freshly issued state."""
        created_at = to_db_time(state.created_at)
        return cls(
            value=state.value,
            nonce=state.nonce,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=state.ttl),
            ttl=state.ttl,
            redirect_to=state.redirect_to,
            code_verifier=state.code_verifier,
        )

    def to_state(self) -> AuthRequestState:
        """Convert the row back to an AuthRequestState."""
        return AuthRequestState(
            value=self.value,
            nonce=self.nonce,
            created_at=from_db_time(self.created_at),
            ttl=self.ttl,
            redirect_to=self.redirect_to,
            code_verifier=self.code_verifier,
        )
