from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

Profile = dict[str, Any]


@dataclass(frozen=True)
class Credential:
    access_token: str
    expires_at: float
    refresh_token: str | None = None
    token_type: str = "Bearer"

    def is_expired(self, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at

    def seconds_remaining(self, *, now: float | None = None) -> float:
        current = time.time() if now is None else now
        return max(0.0, self.expires_at - current)

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"


@dataclass(frozen=True)
class PendingAuthorization:
    state: str
    code_verifier: str
    created_at: float = field(default_factory=time.time)

    def is_expired(self, ttl_seconds: int, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current - self.created_at > ttl_seconds


class SessionStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


class AuthPhase(str, Enum):
    CHECKING_STORED = "checking_stored"
    EXCHANGING_CODE = "exchanging_code"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class SessionSnapshot:
    status: SessionStatus
    user: Profile | None = None
    error: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

    @property
    def is_busy(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATING

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "user": self.user,
            "error": self.error,
        }


def derive_snapshot(
    *,
    credential: Credential | None,
    profile: Profile | None,
    phase: AuthPhase | None,
    error: str | None,
    error_is_terminal: bool,
) -> SessionSnapshot:
    """Compute the observable state from credential and in-flight operation state.

    ``error_is_terminal`` distinguishes ``Error(reason)`` from a sign-out that
    still reports why it happened (``Unauthenticated`` with ``error`` set).
    """
    if phase is not None:
        return SessionSnapshot(SessionStatus.AUTHENTICATING, user=profile)
    if credential is not None and profile is not None:
        return SessionSnapshot(SessionStatus.AUTHENTICATED, user=profile)
    if error is not None and error_is_terminal:
        return SessionSnapshot(SessionStatus.ERROR, error=error)
    return SessionSnapshot(SessionStatus.UNAUTHENTICATED, error=error)
