"""Authentication sequencer: password -> biometric -> vault PIN -> session.

The whole login attempt is one ``SequencerState`` value. States are frozen
dataclasses and only ``transition(state, event)`` produces the next one, so
combinations such as "biometric verified without a password" cannot be built.
``AuthSequencer`` performs the I/O for each step and feeds the outcome to the
reducer.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, TypeVar

import structlog

from vaultgate.client.ceremony import CeremonyRunner
from vaultgate.exceptions import (
    AuthFlowError,
    FlowError,
    InvalidPinError,
    InvalidTransitionError,
    LockedError,
    NoCredentialsError,
)
from vaultgate.types import SequencerStage

if TYPE_CHECKING:
    from vaultgate.client.backend import AuthBackend
    from vaultgate.client.platform import PlatformAuthenticator

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SequencerState:
    stage: ClassVar[SequencerStage]


@dataclass(frozen=True)
class Unauthenticated(SequencerState):
    stage = SequencerStage.UNAUTHENTICATED
    error: str | None = None


@dataclass(frozen=True)
class _InFlow(SequencerState):
    """Any state reached after the password matched."""

    email: str
    flow_token: str


@dataclass(frozen=True)
class PasswordVerified(_InFlow):
    stage = SequencerStage.PASSWORD_VERIFIED
    error: str | None = None


@dataclass(frozen=True)
class BiometricAvailableCheck(_InFlow):
    stage = SequencerStage.BIOMETRIC_AVAILABLE_CHECK


@dataclass(frozen=True)
class EnrollmentOffered(_InFlow):
    stage = SequencerStage.ENROLLMENT_OFFERED
    error: str | None = None


@dataclass(frozen=True)
class BiometricPrompt(_InFlow):
    stage = SequencerStage.BIOMETRIC_PROMPT
    allow_enrollment: bool = False
    error: str | None = None


@dataclass(frozen=True)
class BiometricVerified(_InFlow):
    stage = SequencerStage.BIOMETRIC_VERIFIED


@dataclass(frozen=True)
class PinChallenge(_InFlow):
    stage = SequencerStage.PIN_CHALLENGE
    error: str | None = None
    remaining_attempts: int | None = None


@dataclass(frozen=True)
class Locked(_InFlow):
    stage = SequencerStage.LOCKED
    remaining_seconds: int = 0


@dataclass(frozen=True)
class SessionIssued(SequencerState):
    stage = SequencerStage.SESSION_ISSUED
    email: str
    token: str


@dataclass(frozen=True)
class Unavailable(SequencerState):
    stage = SequencerStage.UNAVAILABLE
    reason: str


@dataclass(frozen=True)
class Failed(SequencerState):
    stage = SequencerStage.FAILED
    reason: str


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAccepted:
    email: str
    flow_token: str


@dataclass(frozen=True)
class PasswordRejected:
    message: str


@dataclass(frozen=True)
class AvailabilityCheckStarted:
    pass


@dataclass(frozen=True)
class AvailabilityCheckFailed:
    message: str


@dataclass(frozen=True)
class EnrollmentChecked:
    enrolled: bool
    biometric_available: bool
    allow_enrollment: bool


@dataclass(frozen=True)
class EnrollmentSucceeded:
    pass


@dataclass(frozen=True)
class EnrollmentFailed:
    message: str


@dataclass(frozen=True)
class NoCredentials:
    pass


@dataclass(frozen=True)
class BiometricSucceeded:
    pass


@dataclass(frozen=True)
class BiometricFailed:
    message: str


@dataclass(frozen=True)
class PinChallengeStarted:
    pass


@dataclass(frozen=True)
class PinRejected:
    message: str
    remaining_attempts: int | None = None


@dataclass(frozen=True)
class PinLocked:
    remaining_seconds: int


@dataclass(frozen=True)
class LockoutTick:
    remaining_seconds: int


@dataclass(frozen=True)
class SessionMinted:
    token: str


@dataclass(frozen=True)
class SessionFailed:
    message: str


@dataclass(frozen=True)
class FlowExpired:
    message: str


@dataclass(frozen=True)
class Restart:
    pass


Event = (
    PasswordAccepted
    | PasswordRejected
    | AvailabilityCheckStarted
    | AvailabilityCheckFailed
    | EnrollmentChecked
    | EnrollmentSucceeded
    | EnrollmentFailed
    | NoCredentials
    | BiometricSucceeded
    | BiometricFailed
    | PinChallengeStarted
    | PinRejected
    | PinLocked
    | LockoutTick
    | SessionMinted
    | SessionFailed
    | FlowExpired
    | Restart
)


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def _after_check(state: BiometricAvailableCheck, event: EnrollmentChecked) -> SequencerState:
    if not event.biometric_available:
        return Unavailable("Biometric authentication is required but not available on this device")
    if event.enrolled:
        return BiometricPrompt(state.email, state.flow_token, allow_enrollment=event.allow_enrollment)
    if not event.allow_enrollment:
        return Unavailable("Biometric enrollment is disabled. Contact an administrator.")
    return EnrollmentOffered(state.email, state.flow_token)


def _after_no_credentials(state: BiometricPrompt, event: NoCredentials) -> SequencerState:
    if not state.allow_enrollment:
        return Unavailable("Biometric enrollment is disabled. Contact an administrator.")
    return EnrollmentOffered(state.email, state.flow_token)


def _after_tick(state: Locked, event: LockoutTick) -> SequencerState:
    if event.remaining_seconds <= 0:
        return PinChallenge(state.email, state.flow_token)
    return Locked(state.email, state.flow_token, remaining_seconds=event.remaining_seconds)


_S = TypeVar("_S", bound=SequencerState)

_Handler = Callable[[SequencerState, Event], SequencerState]

_TRANSITIONS: dict[tuple[type, type], _Handler] = {
    (Unauthenticated, PasswordAccepted): lambda s, e: PasswordVerified(e.email, e.flow_token),
    (Unauthenticated, PasswordRejected): lambda s, e: Unauthenticated(error=e.message),
    (PasswordVerified, AvailabilityCheckStarted): lambda s, e: BiometricAvailableCheck(
        s.email, s.flow_token
    ),
    (BiometricAvailableCheck, EnrollmentChecked): _after_check,
    (BiometricAvailableCheck, AvailabilityCheckFailed): lambda s, e: PasswordVerified(
        s.email, s.flow_token, error=e.message
    ),
    # Enrollment chains straight into an assertion with the new credential
    (EnrollmentOffered, EnrollmentSucceeded): lambda s, e: BiometricPrompt(
        s.email, s.flow_token, allow_enrollment=True
    ),
    (EnrollmentOffered, EnrollmentFailed): lambda s, e: EnrollmentOffered(
        s.email, s.flow_token, error=e.message
    ),
    (BiometricPrompt, BiometricSucceeded): lambda s, e: BiometricVerified(s.email, s.flow_token),
    (BiometricPrompt, BiometricFailed): lambda s, e: BiometricPrompt(
        s.email, s.flow_token, allow_enrollment=s.allow_enrollment, error=e.message
    ),
    (BiometricPrompt, NoCredentials): _after_no_credentials,
    (BiometricVerified, PinChallengeStarted): lambda s, e: PinChallenge(s.email, s.flow_token),
    (PinChallenge, PinRejected): lambda s, e: PinChallenge(
        s.email, s.flow_token, error=e.message, remaining_attempts=e.remaining_attempts
    ),
    (PinChallenge, PinLocked): lambda s, e: Locked(
        s.email, s.flow_token, remaining_seconds=e.remaining_seconds
    ),
    (PinChallenge, SessionMinted): lambda s, e: SessionIssued(s.email, e.token),
    (PinChallenge, SessionFailed): lambda s, e: Failed(e.message),
    (Locked, LockoutTick): _after_tick,
}

_IN_FLOW_STATES = (
    PasswordVerified,
    BiometricAvailableCheck,
    EnrollmentOffered,
    BiometricPrompt,
    BiometricVerified,
    PinChallenge,
    Locked,
)


def transition(state: SequencerState, event: Event) -> SequencerState:
    """Return the state that follows ``state`` on ``event``.

    Pure: no I/O, no mutation. Raises ``InvalidTransitionError`` for any pair
    not in the table.
    """
    if isinstance(event, Restart):
        return Unauthenticated()
    if isinstance(event, FlowExpired) and isinstance(state, _IN_FLOW_STATES):
        return Unauthenticated(error=event.message)

    handler = _TRANSITIONS.get((type(state), type(event)))
    if handler is None:
        msg = f"{type(event).__name__} is not valid in state {state.stage}"
        raise InvalidTransitionError(msg)
    return handler(state, event)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class AuthSequencer:
    """Runs one login attempt against an ``AuthBackend`` and a platform authenticator.

    Every public coroutine performs exactly one stage's I/O, then feeds the
    outcome through ``transition``. Stage errors become state (an ``error``
    field or ``Locked``), never exceptions, except calls made in the wrong
    state, which raise ``InvalidTransitionError``.
    """

    def __init__(
        self,
        backend: AuthBackend,
        platform: PlatformAuthenticator,
        *,
        device_name: str = "Biometric Device",
    ) -> None:
        self._backend = backend
        self._platform = platform
        self._device_name = device_name
        self._ceremonies = CeremonyRunner(backend, platform)
        self._state: SequencerState = Unauthenticated()
        # Held only until the session is minted, for the final re-confirmation
        self._password: str | None = None
        self._busy = False

    @property
    def state(self) -> SequencerState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def ceremonies(self) -> CeremonyRunner:
        return self._ceremonies

    def _dispatch(self, event: Event) -> SequencerState:
        previous = self._state
        self._state = transition(previous, event)
        logger.debug(
            "sequencer_transition",
            source=str(previous.stage),
            trigger=type(event).__name__,
            target=str(self._state.stage),
        )
        if isinstance(self._state, (Unauthenticated, SessionIssued, Failed, Unavailable)):
            self._password = None
        return self._state

    def _expect(self, expected: type[_S]) -> _S:
        if self._busy:
            msg = "Another step is still in progress"
            raise InvalidTransitionError(msg)
        if not isinstance(self._state, expected):
            msg = f"Expected state {expected.stage}, got {self._state.stage}"
            raise InvalidTransitionError(msg)
        return self._state

    @contextmanager
    def _step(self) -> Iterator[None]:
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    # Stage 1 ------------------------------------------------------------

    async def submit_password(self, email: str, password: str) -> SequencerState:
        self._expect(Unauthenticated)
        with self._step():
            try:
                check = await self._backend.verify_credentials(email, password)
            except AuthFlowError as exc:
                return self._dispatch(PasswordRejected(exc.message))
            self._password = password
            self._dispatch(PasswordAccepted(check.email, check.flow_token))
        return await self.check_biometrics()

    # Stage 2 ------------------------------------------------------------

    async def check_biometrics(self) -> SequencerState:
        """Decide between the enrollment offer, the biometric prompt and Unavailable."""
        state = self._expect(PasswordVerified)
        with self._step():
            self._dispatch(AvailabilityCheckStarted())
            try:
                status = await self._backend.check_enrollment(state.email)
            except AuthFlowError as exc:
                return self._dispatch(AvailabilityCheckFailed(exc.message))
            self._dispatch(
                EnrollmentChecked(
                    enrolled=status.enrolled,
                    biometric_available=status.biometric_available
                    and self._platform.is_available(),
                    allow_enrollment=status.allow_enrollment,
                )
            )
        return self._state

    async def enroll(self, device_name: str | None = None) -> SequencerState:
        """Register a new credential, then authenticate with it in the same step."""
        state = self._expect(EnrollmentOffered)
        with self._step():
            result = await self._ceremonies.register(
                state.flow_token, device_name or self._device_name
            )
            if result.error is not None:
                if isinstance(result.error, FlowError):
                    return self._dispatch(FlowExpired(result.error.message))
                return self._dispatch(EnrollmentFailed(result.error.message))
            self._dispatch(EnrollmentSucceeded())
        return await self.authenticate_biometric()

    async def authenticate_biometric(self) -> SequencerState:
        state = self._expect(BiometricPrompt)
        with self._step():
            result = await self._ceremonies.authenticate(state.flow_token)
            error = result.error
            if isinstance(error, NoCredentialsError):
                return self._dispatch(NoCredentials())
            if isinstance(error, FlowError):
                return self._dispatch(FlowExpired(error.message))
            if error is not None:
                return self._dispatch(BiometricFailed(error.message))
            self._dispatch(BiometricSucceeded())
            return self._dispatch(PinChallengeStarted())

    # Stage 3 ------------------------------------------------------------

    async def submit_pin(self, pin: str) -> SequencerState:
        """Verify the vault PIN; on success mint the session in the same step."""
        state = self._expect(PinChallenge)
        with self._step():
            try:
                await self._backend.verify_vault_pin(state.flow_token, pin)
            except LockedError as exc:
                return self._dispatch(PinLocked(exc.remaining_seconds))
            except InvalidPinError as exc:
                return self._dispatch(PinRejected(exc.message, exc.remaining_attempts))
            except FlowError as exc:
                return self._dispatch(FlowExpired(exc.message))
            except AuthFlowError as exc:
                return self._dispatch(PinRejected(exc.message, state.remaining_attempts))

            try:
                token = await self._backend.issue_session(
                    state.flow_token, state.email, self._password or ""
                )
            except AuthFlowError as exc:
                logger.warning("session_mint_failed", code=exc.code)
                return self._dispatch(SessionFailed(exc.message))
            return self._dispatch(SessionMinted(token))

    def tick(self, remaining_seconds: int) -> SequencerState:
        """Countdown update while locked; reaching zero re-opens the PIN challenge."""
        return self._dispatch(LockoutTick(remaining_seconds))

    def restart(self) -> SequencerState:
        return self._dispatch(Restart())
