"""Server-side session storage for authenticated browsers.

The browser only ever holds a signed session id. Credentials, custom
display names and pending commands stay in this process.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .const import SESSION_MAX_AGE
from .models import Credential, PendingCommand, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable

_LOGGER = logging.getLogger(__name__)


@dataclass
class Session:
    """State kept for one browser session."""

    session_id: str
    created_at: datetime
    credential: Credential | None = None
    custom_names: dict[str, str] = field(default_factory=dict)
    oauth_state: str | None = None
    pending_commands: dict[str, PendingCommand] = field(default_factory=dict)
    destroyed: bool = False
    is_new: bool = False

    @property
    def is_authenticated(self) -> bool:
        """Return True if the session holds a usable credential."""
        return (
            self.credential is not None
            and bool(self.credential.access_token)
            and self.credential.error is None
        )

    def clear_credential(self) -> None:
        """Drop the credential so the next request must log in again."""
        self.credential = None


class SessionStore:
    """In-memory session store with HMAC-signed cookie values."""

    def __init__(
        self,
        secret: str,
        max_age: timedelta = SESSION_MAX_AGE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the store.

        Args:
            secret: Key used to sign session ids.
            max_age: Lifetime of a session from its creation.
            clock: Source of the current time.

        """
        self._secret = secret.encode()
        self._max_age = max_age
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        """Return the number of live sessions."""
        return len(self._sessions)

    def create(self) -> Session:
        """Create and store a new anonymous session."""
        self.purge_expired()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            created_at=self._clock(),
            is_new=True,
        )
        self._sessions[session.session_id] = session
        _LOGGER.debug("Created session %s", session.session_id[:8])
        return session

    def get(self, session_id: str) -> Session | None:
        """Return the session, or None if unknown or older than max_age."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._clock() - session.created_at >= self._max_age:
            _LOGGER.debug("Session %s expired", session_id[:8])
            self._sessions.pop(session_id, None)
            return None
        return session

    def save(self, session: Session) -> None:
        """Persist a session. Destroyed sessions are not stored again."""
        if session.destroyed:
            return
        self._sessions[session.session_id] = session

    def rotate(self, session: Session) -> Session:
        """Move a session's state to a fresh id and destroy the old one."""
        rotated = self.create()
        rotated.credential = session.credential
        rotated.custom_names = dict(session.custom_names)
        rotated.pending_commands = dict(session.pending_commands)
        self.destroy(session.session_id)
        return rotated

    def purge_expired(self) -> None:
        """Forget every session older than max_age."""
        now = self._clock()
        for session_id, session in list(self._sessions.items()):
            if now - session.created_at >= self._max_age:
                del self._sessions[session_id]

    def destroy(self, session_id: str) -> None:
        """Forget a session and mark it destroyed."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.destroyed = True
            session.credential = None
            _LOGGER.debug("Destroyed session %s", session_id[:8])

    def _signature(self, session_id: str) -> str:
        return hmac.new(self._secret, session_id.encode(), hashlib.sha256).hexdigest()

    def sign(self, session_id: str) -> str:
        """Return the cookie value for a session id."""
        return f"{session_id}.{self._signature(session_id)}"

    def unsign(self, cookie_value: str | None) -> str | None:
        """Return the session id of a cookie value, None if it was tampered."""
        if not cookie_value:
            return None
        session_id, _, signature = cookie_value.rpartition(".")
        if not session_id or not signature:
            return None
        if not hmac.compare_digest(signature, self._signature(session_id)):
            _LOGGER.warning("Rejected session cookie with a bad signature")
            return None
        return session_id

    def load(self, cookie_value: str | None) -> Session | None:
        """Resolve a signed cookie value to its live session."""
        session_id = self.unsign(cookie_value)
        if session_id is None:
            return None
        return self.get(session_id)
