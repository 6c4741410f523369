"""Stage 3: vault PIN verification with bounded-attempt lockout."""

from __future__ import annotations

import asyncio
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from vaultgate.auth.passwords import verify_secret
from vaultgate.exceptions import ConfigError
from vaultgate.models.database import VaultPinState, _utc_now
from vaultgate.storage.repositories.vault_pin import PinStateMutator
from vaultgate.types import PinVerdict

logger = structlog.get_logger(__name__)

PIN_PATTERN = re.compile(r"\d{3}")


class PinStateStore(Protocol):
    async def get(self, user_id: str) -> VaultPinState | None: ...

    async def apply(self, user_id: str, mutate: PinStateMutator) -> VaultPinState: ...


@dataclass(frozen=True)
class PinCheckResult:
    verdict: PinVerdict
    remaining_attempts: int = 0
    remaining_seconds: int = 0


class VaultPinVerifier:
    """Validates the 3-digit vault PIN for one user.

    State lives in the store, not in the caller, so a page reload cannot clear
    a lockout. Reaching ``max_attempts`` consecutive failures locks the user
    for ``lockout_seconds``; the lock is checked against the clock on every
    attempt, and a locked attempt never consumes another try.
    """

    def __init__(
        self,
        state_repo: PinStateStore,
        *,
        max_attempts: int = 3,
        lockout_seconds: int = 300,
        attempt_window_seconds: int = 600,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._states = state_repo
        self._max_attempts = max_attempts
        self._lockout = timedelta(seconds=lockout_seconds)
        self._window = timedelta(seconds=attempt_window_seconds)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    @staticmethod
    def _is_locked(state: VaultPinState, now: datetime) -> bool:
        return state.locked_until is not None and now < state.locked_until

    @staticmethod
    def _remaining_seconds(state: VaultPinState, now: datetime) -> int:
        if state.locked_until is None:
            return 0
        return max(0, math.ceil((state.locked_until - now).total_seconds()))

    async def verify(self, user_id: str, pin: str, pin_hash: str | None) -> PinCheckResult:
        """Check ``pin`` and update the user's lockout state atomically."""
        if not pin_hash:
            logger.error("vault_pin_hash_missing")
            msg = "Vault PIN hash is not configured"
            raise ConfigError(msg)

        async with self._lock_for(user_id):
            now = self._clock()
            state = await self._states.get(user_id)
            if state is not None and self._is_locked(state, now):
                remaining = self._remaining_seconds(state, now)
                logger.info("vault_pin_rejected_locked", user_id=user_id, remaining_seconds=remaining)
                return PinCheckResult(PinVerdict.LOCKED, remaining_seconds=remaining)

            # Malformed input counts as a failed attempt but skips the hash check
            matched = bool(PIN_PATTERN.fullmatch(pin)) and await asyncio.to_thread(
                verify_secret, pin, pin_hash
            )

            def record(current: VaultPinState) -> None:
                if self._is_locked(current, now):
                    # Locked by a concurrent attempt elsewhere; leave it untouched
                    return
                if current.locked_until is not None:
                    current.locked_until = None
                    current.failed_attempts = 0
                if matched:
                    current.failed_attempts = 0
                    current.last_failed_at = None
                    return
                if current.last_failed_at and now - current.last_failed_at > self._window:
                    current.failed_attempts = 0
                current.failed_attempts += 1
                current.last_failed_at = now
                if current.failed_attempts >= self._max_attempts:
                    current.locked_until = now + self._lockout

            updated = await self._states.apply(user_id, record)

        if self._is_locked(updated, now):
            remaining = self._remaining_seconds(updated, now)
            logger.warning("vault_pin_locked", user_id=user_id, remaining_seconds=remaining)
            return PinCheckResult(PinVerdict.LOCKED, remaining_seconds=remaining)
        if matched:
            logger.info("vault_pin_verified", user_id=user_id)
            return PinCheckResult(PinVerdict.VALID)

        remaining_attempts = self._max_attempts - updated.failed_attempts
        logger.info("vault_pin_invalid", user_id=user_id, remaining_attempts=remaining_attempts)
        return PinCheckResult(PinVerdict.INVALID, remaining_attempts=remaining_attempts)
