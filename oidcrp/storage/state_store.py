"""SQL-backed authorization state store.

Shares pending states between worker processes. Redeeming a state is a
single ``DELETE ... WHERE value = ?``; the row count tells the one caller
that removed the row apart from every concurrent loser.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, func, select

from oidcrp.core.oidc.state import (
    AuthRequestState,
    Clock,
    log_state_expired,
    log_state_not_found,
    new_state,
    utc_now,
)
from oidcrp.storage.database import Database
from oidcrp.storage.models import AuthStateRecord, to_db_time

logger = logging.getLogger(__name__)


class SQLStateStore:
    """StateStore persisted in the ``oidc_auth_states`` table."""

    def __init__(self, database: Database, clock: Clock = utc_now) -> None:
        """Initialize the store.

        Args:
            database: Database holding the state table; created if missing.
            clock: Source of the current time.
        """
        self.database = database
        self._clock = clock
        database.init_db()

    def __len__(self) -> int:
        with self.database.get_session() as session:
            return session.scalar(select(func.count()).select_from(AuthStateRecord)) or 0

    def issue(
        self,
        ttl: int,
        redirect_to: str | None = None,
        code_verifier: str | None = None,
    ) -> AuthRequestState:
        state = new_state(ttl, self._clock(), redirect_to, code_verifier)
        with self.database.get_session() as session:
            session.add(AuthStateRecord.from_state(state))
            session.commit()
        logger.debug(f"Issued state (correlation_id={state.correlation_id}, ttl={ttl}s)")
        return state

    def consume(self, value: str) -> AuthRequestState:
        with self.database.get_session() as session:
            record = session.scalar(select(AuthStateRecord).where(AuthStateRecord.value == value))
            if record is None:
                raise log_state_not_found(value)

            state = record.to_state()
            if state.is_expired(self._clock()):
                raise log_state_expired(state)

            result = session.execute(
                delete(AuthStateRecord).where(AuthStateRecord.value == value),
                execution_options={"synchronize_session": False},
            )
            session.commit()

        # Another worker deleted the row between our select and delete
        if result.rowcount != 1:
            raise log_state_not_found(value)

        logger.debug(f"Consumed state (correlation_id={state.correlation_id})")
        return state

    def purge_expired(self) -> int:
        now = to_db_time(self._clock())
        with self.database.get_session() as session:
            result = session.execute(
                delete(AuthStateRecord).where(AuthStateRecord.expires_at < now),
                execution_options={"synchronize_session": False},
            )
            session.commit()
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} expired states")
        return result.rowcount
