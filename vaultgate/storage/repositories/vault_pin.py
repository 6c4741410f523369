"""Vault PIN lockout state repositories.

Both stores expose ``apply``: an atomic read-modify-write of one user's row,
so concurrent attempts from two tabs cannot lose a failure increment.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from vaultgate.exceptions import StorageError
from vaultgate.models.database import VaultPinState, _utc_now

logger = structlog.get_logger(__name__)

PinStateMutator = Callable[[VaultPinState], None]


class InMemoryVaultPinStateRepository:
    """Process-local PIN state. ``apply`` never awaits, so it is atomic on the event loop."""

    def __init__(self) -> None:
        self._states: dict[str, VaultPinState] = {}

    async def get(self, user_id: str) -> VaultPinState | None:
        return self._states.get(user_id)

    async def apply(self, user_id: str, mutate: PinStateMutator) -> VaultPinState:
        state = self._states.get(user_id) or VaultPinState(user_id=user_id)
        mutate(state)
        state.updated_at = _utc_now()
        self._states[user_id] = state
        return state


class DatabaseVaultPinStateRepository:
    """Database-backed PIN state using a row lock for the read-modify-write."""

    def __init__(self, engine: Any) -> None:
        self._engine = engine

    async def get(self, user_id: str) -> VaultPinState | None:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = select(VaultPinState).where(col(VaultPinState.user_id) == user_id)
            result = await session.execute(stmt)
            return result.scalars().first()

    async def apply(self, user_id: str, mutate: PinStateMutator) -> VaultPinState:
        from sqlalchemy.exc import IntegrityError

        # A first-ever row can race with another insert; the loser retries against the winner's row
        for _ in range(2):
            try:
                return await self._apply_once(user_id, mutate)
            except IntegrityError:
                logger.warning("vault_pin_state_insert_race", user_id=user_id)
        msg = f"Could not update PIN state for {user_id}"
        raise StorageError(msg)

    async def _apply_once(self, user_id: str, mutate: PinStateMutator) -> VaultPinState:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine, expire_on_commit=False) as session:
            stmt = (
                select(VaultPinState)
                .where(col(VaultPinState.user_id) == user_id)
                .with_for_update()
            )
            result = await session.execute(stmt)
            state = result.scalars().first() or VaultPinState(user_id=user_id)
            mutate(state)
            state.updated_at = _utc_now()
            session.add(state)
            await session.commit()
            return state
