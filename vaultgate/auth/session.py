"""Cookie-based session issuance, minted only after every factor passed."""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from typing import Any

import structlog
from fastapi import HTTPException, Request

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "session"


class SessionAuth:
    """Signed opaque session tokens held server-side."""

    def __init__(self, secret_key: str, max_age: int = 7200) -> None:
        self._secret = secret_key.encode()
        self._max_age = max_age
        self._sessions: dict[str, dict[str, Any]] = {}

    @property
    def max_age(self) -> int:
        return self._max_age

    def create_session(self, email: str, *, user_id: str, role: str) -> str:
        """Create a new session and return the token."""
        token = secrets.token_urlsafe(32)
        signature = self._sign(token)
        signed_token = f"{token}.{signature}"

        self._sessions[signed_token] = {
            "email": email,
            "user_id": user_id,
            "role": role,
            "created_at": time.time(),
        }
        logger.info("session_created", user_id=user_id)
        return signed_token

    def validate_session(self, token: str) -> dict[str, Any] | None:
        """Validate a session token and return user data."""
        if not token or "." not in token:
            return None

        raw_token, signature = token.rsplit(".", 1)
        expected_sig = self._sign(raw_token)

        if not hmac.compare_digest(signature, expected_sig):
            return None

        session = self._sessions.get(token)
        if not session:
            return None

        # Check expiry
        if time.time() - session["created_at"] > self._max_age:
            self.destroy_session(token)
            return None

        return session

    def destroy_session(self, token: str) -> None:
        """Remove a session."""
        self._sessions.pop(token, None)
        logger.info("session_destroyed")

    def _sign(self, data: str) -> str:
        """Create HMAC signature for a token."""
        return hmac.new(self._secret, data.encode(), hashlib.sha256).hexdigest()[:32]


def session_token_from(request: Request) -> str:
    """Read the session token from the cookie or a Bearer header."""
    token = request.cookies.get(SESSION_COOKIE, "")
    if not token:
        header = request.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            token = header[7:].strip()
    return token


async def require_auth(request: Request) -> dict[str, Any]:
    """FastAPI dependency: the current session, or 401."""
    auth: SessionAuth = request.app.state.services.sessions
    session = auth.validate_session(session_token_from(request))
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session
