"""One WebAuthn ceremony, run as sequential awaited steps.

Idle -> OptionsRequested -> ClientCeremonyInFlight -> Verifying -> Succeeded | Failed.
A failed ceremony is terminal; the caller starts a new one, which fetches a
fresh challenge.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from vaultgate.exceptions import AuthFlowError
from vaultgate.types import CeremonyKind, CeremonyPhase

if TYPE_CHECKING:
    from vaultgate.client.backend import AuthBackend, CeremonyOptions
    from vaultgate.client.platform import PlatformAuthenticator

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CeremonyResult:
    kind: CeremonyKind
    phase: CeremonyPhase
    error: AuthFlowError | None = None

    @property
    def succeeded(self) -> bool:
        return self.phase is CeremonyPhase.SUCCEEDED


class CeremonyRunner:
    """Drives registration and authentication ceremonies for one login flow."""

    def __init__(self, backend: AuthBackend, platform: PlatformAuthenticator) -> None:
        self._backend = backend
        self._platform = platform
        self.phase = CeremonyPhase.IDLE

    async def register(self, flow_token: str, device_name: str) -> CeremonyResult:
        async def finish(challenge_key: str, credential: dict[str, Any]) -> None:
            await self._backend.registration_verify(
                flow_token, challenge_key, credential, device_name
            )

        return await self._run(
            CeremonyKind.REGISTRATION,
            lambda: self._backend.registration_options(flow_token, device_name),
            self._platform.create,
            finish,
        )

    async def authenticate(self, flow_token: str) -> CeremonyResult:
        async def finish(challenge_key: str, credential: dict[str, Any]) -> None:
            await self._backend.authentication_verify(flow_token, challenge_key, credential)

        return await self._run(
            CeremonyKind.AUTHENTICATION,
            lambda: self._backend.authentication_options(flow_token),
            self._platform.get,
            finish,
        )

    async def _run(
        self,
        kind: CeremonyKind,
        begin: Callable[[], Awaitable[CeremonyOptions]],
        prompt: Callable[[dict[str, Any]], Awaitable[dict[str, Any]]],
        finish: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> CeremonyResult:
        self.phase = CeremonyPhase.OPTIONS_REQUESTED
        try:
            options = await begin()
            self.phase = CeremonyPhase.CLIENT_CEREMONY_IN_FLIGHT
            credential = await prompt(options.options)
            self.phase = CeremonyPhase.VERIFYING
            await finish(options.challenge_key, credential)
        except AuthFlowError as exc:
            failed_in = self.phase
            self.phase = CeremonyPhase.FAILED
            logger.info("ceremony_failed", kind=str(kind), phase=str(failed_in), code=exc.code)
            return CeremonyResult(kind, CeremonyPhase.FAILED, exc)

        self.phase = CeremonyPhase.SUCCEEDED
        logger.info("ceremony_succeeded", kind=str(kind))
        return CeremonyResult(kind, CeremonyPhase.SUCCEEDED)
