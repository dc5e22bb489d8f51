"""Sign-in and role checks for staff sessions.

Callers hold an explicit ``SessionContext`` instead of reaching for a
process-wide current user.  Passwords are kept as bcrypt hashes in memory;
credential storage belongs to the external auth provider in production.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

import bcrypt

from circulation.directory import DirectoryStore
from circulation.models import User, UserRole, utcnow
from exceptions.exceptions import (
    AuthenticationError,
    AuthorizationError,
    UserNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ROLE_RANK = {UserRole.LIBRARIAN: 1, UserRole.ADMIN: 2}

# bcrypt only looks at the first 72 bytes and newer releases refuse longer input
MAX_PASSWORD_BYTES = 72


@dataclass
class SessionContext:
    token: str
    user: User
    issued_at: datetime = field(default_factory=utcnow)

    @property
    def role(self) -> UserRole:
        return self.user.role


class SessionProvider:
    def __init__(self, directory: DirectoryStore):
        self.directory = directory
        self.loading = True
        self._lock = threading.Lock()
        self._password_hashes: dict[str, bytes] = {}
        self._sessions: dict[str, SessionContext] = {}

    def initialize(self) -> None:
        self.loading = False
        logger.info("Session provider ready")

    def close(self) -> None:
        with self._lock:
            self._sessions.clear()
        self.loading = True
        logger.info("Session provider closed")

    @staticmethod
    def check_password(password: str) -> None:
        if not password:
            raise ValidationError("password must not be empty")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"password must not be longer than {MAX_PASSWORD_BYTES} bytes")

    def set_password(self, user_id: str, password: str) -> None:
        self.directory.get_user(user_id)
        self.check_password(password)
        hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        with self._lock:
            self._password_hashes[user_id] = hashed

    def forget(self, user_id: str) -> None:
        """Drop the credentials and sessions of a removed user."""
        with self._lock:
            self._password_hashes.pop(user_id, None)
            for token in [t for t, s in self._sessions.items() if s.user.id == user_id]:
                del self._sessions[token]

    def sign_in(self, email: str, password: str) -> Tuple[Optional[SessionContext], Optional[str]]:
        """Return (session, error); exactly one of them is None."""
        if self.loading:
            return None, "Session provider is still initializing"
        user = self.directory.find_by_email(email)
        hashed = self._password_hashes.get(user.id) if user else None
        too_long = len(password.encode("utf-8")) > MAX_PASSWORD_BYTES
        if hashed is None or too_long or not bcrypt.checkpw(password.encode("utf-8"), hashed):
            logger.info(f"Failed sign-in for {email}")
            return None, "Invalid email or password"

        session = SessionContext(token=secrets.token_hex(16), user=user)
        with self._lock:
            self._sessions[session.token] = session
        logger.info(f"{user.email} signed in as {user.role.value}")
        return session, None

    def sign_out(self, token: str) -> bool:
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def resolve(self, token: Optional[str]) -> SessionContext:
        with self._lock:
            session = self._sessions.get(token) if token else None
        if session is None:
            raise AuthenticationError("Authentication required")
        # roles may change while a session is alive
        try:
            user = self.directory.get_user(session.user.id)
        except UserNotFoundError:
            self.sign_out(session.token)
            raise AuthenticationError("Session user no longer exists")
        return SessionContext(token=session.token, user=user, issued_at=session.issued_at)


def require_role(session: Optional[SessionContext], required: UserRole) -> SessionContext:
    if session is None:
        raise AuthenticationError("Authentication required")
    if ROLE_RANK[session.role] < ROLE_RANK[required]:
        raise AuthorizationError(session.role.value, required.value)
    return session
