"""Authorization request state storage.

A state is a single-use, time-bound value that ties an authorization
redirect to its callback. It carries the nonce that the ID token must echo,
and optionally a PKCE verifier and the URL to send the user back to.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from oidcrp.core.errors import StateError, StateErrorReason
from oidcrp.core.logging import fingerprint

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def generate_token() -> str:
    """URL-safe random string with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class AuthRequestState:
    """A pending authorization request."""

    value: str
    nonce: str
    created_at: datetime
    ttl: int
    redirect_to: str | None = None
    code_verifier: str | None = None

    @property
    def expires_at(self) -> datetime:
        """Moment after which the state is no longer accepted."""
        return self.created_at + timedelta(seconds=self.ttl)

    @property
    def correlation_id(self) -> str:
        """Loggable identifier that does not reveal the state value."""
        return fingerprint(self.value)

    def is_expired(self, now: datetime) -> bool:
        """Check if the state has outlived its TTL."""
        return now > self.expires_at


@runtime_checkable
class StateStore(Protocol):
    """Storage for authorization request states.

    ``consume`` must be atomic: when several callers redeem the same value
    concurrently, exactly one receives the state and the rest get
    ``StateError(NOT_FOUND)``.
    """

    def issue(
        self,
        ttl: int,
        redirect_to: str | None = None,
        code_verifier: str | None = None,
    ) -> AuthRequestState:
        """Generate, persist and return a new state."""
        ...

    def consume(self, value: str) -> AuthRequestState:
        """Redeem a state exactly once.

        Raises:
            StateError: NOT_FOUND if unknown or already used, EXPIRED if past its TTL.
        """
        ...

    def purge_expired(self) -> int:
        """Delete expired states and return how many were removed."""
        ...


def new_state(
    ttl: int,
    now: datetime,
    redirect_to: str | None = None,
    code_verifier: str | None = None,
) -> AuthRequestState:
    """Build a fresh state with random value and nonce."""
    if ttl <= 0:
        raise ValueError("State TTL must be positive")
    return AuthRequestState(
        value=generate_token(),
        nonce=generate_token(),
        created_at=now,
        ttl=ttl,
        redirect_to=redirect_to,
        code_verifier=code_verifier,
    )


def log_state_not_found(value: str) -> StateError:
    """Record an unknown state for audit and build the error to raise."""
    correlation_id = fingerprint(value)
    logger.warning(f"State not found (correlation_id={correlation_id}); forged, replayed or already used")
    return StateError(StateErrorReason.NOT_FOUND, correlation_id)


def log_state_expired(state: AuthRequestState) -> StateError:
    """Record a late callback for audit and build the error to raise."""
    logger.warning(
        f"State expired (correlation_id={state.correlation_id}, "
        f"expired_at={state.expires_at.isoformat()})"
    )
    return StateError(StateErrorReason.EXPIRED, state.correlation_id)


class InMemoryStateStore:
    """In-process StateStore backed by a dict and a lock.

    Suitable for single-process deployments and tests. Use
    ``oidcrp.storage.SQLStateStore`` when several workers share callbacks.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._states: dict[str, AuthRequestState] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._states)

    def issue(
        self,
        ttl: int,
        redirect_to: str | None = None,
        code_verifier: str | None = None,
    ) -> AuthRequestState:
        state = new_state(ttl, self._clock(), redirect_to, code_verifier)
        with self._lock:
            self._states[state.value] = state
        logger.debug(f"Issued state (correlation_id={state.correlation_id}, ttl={ttl}s)")
        return state

    def consume(self, value: str) -> AuthRequestState:
        with self._lock:
            state = self._states.get(value)
            if state is None:
                raise log_state_not_found(value)
            if state.is_expired(self._clock()):
                raise log_state_expired(state)
            del self._states[value]
        logger.debug(f"Consumed state (correlation_id={state.correlation_id})")
        return state

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [value for value, state in self._states.items() if state.is_expired(now)]
            for value in expired:
                del self._states[value]
        if expired:
            logger.info(f"Purged {len(expired)} expired states")
        return len(expired)
