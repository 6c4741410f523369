"""Lockout countdown shown while the PIN stage is locked.

Display only: the server re-checks the lock on the next PIN attempt no matter
what this ticker says.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable

import structlog

from vaultgate.client.sequencer import AuthSequencer, Locked, SequencerState

logger = structlog.get_logger(__name__)


class LockoutCountdown:
    """Ticks a locked sequencer down once per second until the PIN challenge re-opens."""

    def __init__(
        self,
        sequencer: AuthSequencer,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_tick: Callable[[SequencerState], None] | None = None,
    ) -> None:
        self._sequencer = sequencer
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._on_tick = on_tick
        self._task: asyncio.Task[SequencerState] | None = None

    async def run(self) -> SequencerState:
        """Tick until the sequencer leaves ``Locked``; return the state it lands in."""
        state = self._sequencer.state
        if not isinstance(state, Locked):
            return state

        deadline = self._clock() + state.remaining_seconds
        while isinstance(self._sequencer.state, Locked):
            await self._sleep(self._interval)
            if not isinstance(self._sequencer.state, Locked):
                break
            remaining = max(0, math.ceil(deadline - self._clock()))
            state = self._sequencer.tick(remaining)
            if self._on_tick is not None:
                self._on_tick(state)

        logger.debug("lockout_countdown_finished", stage=str(self._sequencer.state.stage))
        return self._sequencer.state

    def start(self) -> asyncio.Task[SequencerState]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
