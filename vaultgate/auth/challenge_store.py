"""Short-lived challenge storage for WebAuthn ceremonies."""

from __future__ import annotations

import time
from dataclasses import dataclass

from vaultgate.types import CeremonyKind


@dataclass(frozen=True)
class AuthChallenge:
    """A server-issued challenge bound to one ceremony attempt for one user."""

    challenge: bytes
    user_id: str
    kind: CeremonyKind
    expires_at: float

    def matches(self, user_id: str, kind: CeremonyKind) -> bool:
        return self.user_id == user_id and self.kind == kind


class InMemoryChallengeStore:
    """Stores WebAuthn challenges with TTL expiry.

    Challenges are one-time-use: ``pop`` retrieves and deletes, whether or not
    the caller's verification later succeeds. ``pop`` contains no await point,
    so two concurrent verifications on the event loop cannot both consume one
    challenge. Expired entries are lazily cleaned on ``set`` and ``pop``.
    """

    def __init__(self, ttl_seconds: int = 300) -> None:
        self._ttl = ttl_seconds
        self._store: dict[str, AuthChallenge] = {}

    def set(
        self,
        key: str,
        challenge: bytes,
        user_id: str,
        kind: CeremonyKind,
        ttl_seconds: int | None = None,
    ) -> AuthChallenge:
        """Store a challenge with a TTL."""
        self._cleanup()
        entry = AuthChallenge(
            challenge=challenge,
            user_id=user_id,
            kind=kind,
            expires_at=time.time() + (ttl_seconds if ttl_seconds is not None else self._ttl),
        )
        self._store[key] = entry
        return entry

    def pop(self, key: str) -> AuthChallenge | None:
        """Retrieve and delete a challenge. Returns None if missing or expired."""
        self._cleanup()
        entry = self._store.pop(key, None)
        if entry is None:
            return None
        if time.time() > entry.expires_at:
            return None
        return entry

    def discard_for_user(self, user_id: str, kind: CeremonyKind) -> int:
        """Drop a user's outstanding challenges of one kind; a restarted ceremony supersedes them."""
        keys = [k for k, entry in self._store.items() if entry.matches(user_id, kind)]
        for k in keys:
            del self._store[k]
        return len(keys)

    def _cleanup(self) -> None:
        """Remove expired entries."""
        now = time.time()
        expired = [k for k, entry in self._store.items() if now > entry.expires_at]
        for k in expired:
            del self._store[k]
