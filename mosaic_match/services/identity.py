"""Explicit user-session context threaded through every gateway call."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserSession:
    user_id: str
    token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


class IdentityProvider(Protocol):
    def current_session(self) -> Optional[UserSession]:
        ...


class StaticIdentityProvider:
    """Identity provider holding a fixed session (or none at all)."""

    def __init__(self, session: Optional[UserSession] = None) -> None:
        self._session = session

    def current_session(self) -> Optional[UserSession]:
        return self._session

    def update(self, session: Optional[UserSession]) -> None:
        self._session = session

    def sign_out(self) -> None:
        self._session = None


def resolve_session(
    identity: Optional[IdentityProvider],
    now: Optional[datetime] = None,
) -> Optional[UserSession]:
    """Return the active session, or None when absent, blank or expired."""
    if identity is None:
        return None
    session = identity.current_session()
    if session is None or not session.user_id or session.is_expired(now):
        return None
    return session
