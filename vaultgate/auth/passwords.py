"""bcrypt helpers for account passwords and the vault PIN."""

from __future__ import annotations

from functools import lru_cache

import bcrypt

# bcrypt only uses the first 72 bytes of the input
_MAX_SECRET_BYTES = 72


def hash_secret(secret: str, rounds: int = 12) -> str:
    """Return a bcrypt hash for ``secret``."""
    encoded = secret.encode("utf-8")[:_MAX_SECRET_BYTES]
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str, hashed: str) -> bool:
    """Check ``secret`` against a bcrypt hash. Malformed hashes never match."""
    if not secret or not hashed:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8")[:_MAX_SECRET_BYTES], hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def dummy_hash() -> str:
    """A throwaway hash checked when the account is unknown, so both paths cost one bcrypt."""
    return hash_secret("vaultgate-timing-equalizer")
