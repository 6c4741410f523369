"""Unit tests for the sequencer reducer and the AuthSequencer driver."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

import pytest
import structlog
from structlog.testing import LogCapture

from vaultgate.client import sequencer as sequencer_module
from vaultgate.client.backend import CeremonyOptions, CredentialCheck, EnrollmentStatus
from vaultgate.client.ceremony import CeremonyRunner
from vaultgate.client.countdown import LockoutCountdown
from vaultgate.client.sequencer import (
    AuthSequencer,
    BiometricAvailableCheck,
    BiometricPrompt,
    BiometricVerified,
    EnrollmentChecked,
    EnrollmentOffered,
    Failed,
    FlowExpired,
    Locked,
    LockoutTick,
    PasswordAccepted,
    PasswordVerified,
    PinChallenge,
    PinLocked,
    Restart,
    SessionIssued,
    SessionMinted,
    Unauthenticated,
    Unavailable,
    transition,
)
from vaultgate.exceptions import (
    CeremonyCancelledError,
    FlowError,
    InvalidCredentialsError,
    InvalidPinError,
    InvalidTransitionError,
    LockedError,
    NoCredentialsError,
    SessionCreationError,
)
from vaultgate.types import CeremonyKind, CeremonyPhase

EMAIL = "admin@example.com"
PASSWORD = "pw-123456"
PIN = "482"


class FakeBackend:
    """Scripted AuthBackend recording every call in order."""

    def __init__(self, *, enrolled: bool = True, available: bool = True) -> None:
        self.enrolled = enrolled
        self.available = available
        self.allow_enrollment = True
        self.calls: list[str] = []
        self.pin_failures = 0
        self.pin_error: Exception | None = None
        self.session_error: Exception | None = None
        self.session_password: str | None = None
        self.pin_gate: asyncio.Event | None = None

    async def verify_credentials(self, email: str, password: str) -> CredentialCheck:
        self.calls.append("verify_credentials")
        if password != PASSWORD:
            raise InvalidCredentialsError
        return CredentialCheck(flow_token="flow-1", email=email, name="Admin")

    async def check_enrollment(self, email: str) -> EnrollmentStatus:
        self.calls.append("check_enrollment")
        return EnrollmentStatus(self.enrolled, self.available, self.allow_enrollment)

    async def registration_options(self, flow_token: str, device_name: str) -> CeremonyOptions:
        self.calls.append("registration_options")
        return CeremonyOptions(options={"ceremony": "create"}, challenge_key="reg-key")

    async def registration_verify(
        self, flow_token: str, challenge_key: str, credential: dict[str, Any], device_name: str
    ) -> None:
        self.calls.append("registration_verify")
        self.enrolled = True

    async def authentication_options(self, flow_token: str) -> CeremonyOptions:
        self.calls.append("authentication_options")
        if not self.enrolled:
            raise NoCredentialsError
        return CeremonyOptions(options={"ceremony": "get"}, challenge_key="auth-key")

    async def authentication_verify(
        self, flow_token: str, challenge_key: str, credential: dict[str, Any]
    ) -> None:
        self.calls.append("authentication_verify")

    async def verify_vault_pin(self, flow_token: str, pin: str) -> None:
        self.calls.append("verify_vault_pin")
        if self.pin_gate is not None:
            await self.pin_gate.wait()
        if self.pin_error is not None:
            raise self.pin_error
        if pin != PIN:
            self.pin_failures += 1
            if self.pin_failures >= 3:
                raise LockedError(remaining_seconds=300)
            raise InvalidPinError(remaining_attempts=3 - self.pin_failures)
        self.pin_failures = 0

    async def issue_session(self, flow_token: str, email: str, password: str) -> str:
        self.calls.append("issue_session")
        if self.session_error is not None:
            raise self.session_error
        self.session_password = password
        return "session-token"


class FakePlatform:
    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.cancel_next = 0

    def is_available(self) -> bool:
        return self.available

    async def create(self, options: dict[str, Any]) -> dict[str, Any]:
        return self._respond(options)

    async def get(self, options: dict[str, Any]) -> dict[str, Any]:
        return self._respond(options)

    def _respond(self, options: dict[str, Any]) -> dict[str, Any]:
        if self.cancel_next:
            self.cancel_next -= 1
            raise CeremonyCancelledError
        return {"answered": options["ceremony"]}


def _sequencer(**backend_kwargs) -> tuple[AuthSequencer, FakeBackend, FakePlatform]:
    backend = FakeBackend(**backend_kwargs)
    platform = FakePlatform()
    return AuthSequencer(backend, platform), backend, platform


IN_FLOW = ("admin@example.com", "flow-1")


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestTransition:
    def test_password_accepted(self) -> None:
        state = transition(Unauthenticated(), PasswordAccepted(EMAIL, "flow-1"))
        assert state == PasswordVerified(EMAIL, "flow-1")

    @pytest.mark.parametrize(
        ("event", "expected"),
        [
            (EnrollmentChecked(True, True, True), BiometricPrompt),
            (EnrollmentChecked(False, True, True), EnrollmentOffered),
            (EnrollmentChecked(False, True, False), Unavailable),
            (EnrollmentChecked(True, False, True), Unavailable),
            (EnrollmentChecked(False, False, True), Unavailable),
        ],
    )
    def test_enrollment_branch(self, event: EnrollmentChecked, expected: type) -> None:
        assert isinstance(transition(BiometricAvailableCheck(*IN_FLOW), event), expected)

    @pytest.mark.parametrize(
        "state",
        [
            Unauthenticated(),
            PasswordVerified(*IN_FLOW),
            EnrollmentOffered(*IN_FLOW),
            BiometricPrompt(*IN_FLOW),
            BiometricVerified(*IN_FLOW),
            Locked(*IN_FLOW, remaining_seconds=10),
            Failed("x"),
        ],
    )
    def test_session_only_minted_from_pin_challenge(self, state) -> None:
        with pytest.raises(InvalidTransitionError):
            transition(state, SessionMinted("token"))

    def test_invalid_pair_raises(self) -> None:
        with pytest.raises(InvalidTransitionError):
            transition(Unauthenticated(), PinLocked(300))

    def test_lockout_tick(self) -> None:
        locked = Locked(*IN_FLOW, remaining_seconds=300)
        assert transition(locked, LockoutTick(5)) == Locked(*IN_FLOW, remaining_seconds=5)
        assert transition(locked, LockoutTick(0)) == PinChallenge(*IN_FLOW)

    def test_restart_from_anywhere(self) -> None:
        for state in (Locked(*IN_FLOW), Failed("x"), SessionIssued(EMAIL, "t"), Unavailable("r")):
            assert transition(state, Restart()) == Unauthenticated()

    def test_flow_expiry_returns_to_password_stage(self) -> None:
        state = transition(PinChallenge(*IN_FLOW), FlowExpired("expired"))
        assert state == Unauthenticated(error="expired")
        with pytest.raises(InvalidTransitionError):
            transition(Unauthenticated(), FlowExpired("expired"))

    def test_states_are_immutable(self) -> None:
        state = PinChallenge(*IN_FLOW)
        with pytest.raises(dataclasses.FrozenInstanceError):
            state.flow_token = "other"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestAuthSequencer:
    async def test_returning_user_happy_path(self) -> None:
        sequencer, backend, _ = _sequencer()
        assert isinstance(await sequencer.submit_password(EMAIL, PASSWORD), BiometricPrompt)
        assert isinstance(await sequencer.authenticate_biometric(), PinChallenge)

        state = await sequencer.submit_pin(PIN)
        assert state == SessionIssued(EMAIL, "session-token")
        assert backend.calls[-1] == "issue_session"
        assert backend.calls.count("issue_session") == 1
        assert backend.session_password == PASSWORD

    async def test_transitions_are_logged(self, monkeypatch) -> None:
        capture = LogCapture()
        bound = structlog.wrap_logger(
            structlog.testing.ReturnLogger(),
            processors=[capture],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        )
        monkeypatch.setattr(sequencer_module, "logger", bound)
        sequencer, _, _ = _sequencer()

        await sequencer.submit_password(EMAIL, PASSWORD)

        transitions = [e for e in capture.entries if e["event"] == "sequencer_transition"]
        assert [e["trigger"] for e in transitions] == [
            "PasswordAccepted",
            "AvailabilityCheckStarted",
            "EnrollmentChecked",
        ]
        assert transitions[-1]["target"] == "biometric_prompt"

    async def test_wrong_password_stays_unauthenticated(self) -> None:
        sequencer, backend, _ = _sequencer()
        state = await sequencer.submit_password(EMAIL, "nope")
        assert state == Unauthenticated(error="Invalid credentials")
        assert backend.calls == ["verify_credentials"]

    async def test_new_user_enrolls_then_authenticates(self) -> None:
        sequencer, backend, _ = _sequencer(enrolled=False)
        assert isinstance(await sequencer.submit_password(EMAIL, PASSWORD), EnrollmentOffered)

        assert isinstance(await sequencer.enroll("Laptop"), PinChallenge)
        assert backend.calls[-4:] == [
            "registration_options",
            "registration_verify",
            "authentication_options",
            "authentication_verify",
        ]

    async def test_cancelled_enrollment_is_retryable(self) -> None:
        sequencer, _, platform = _sequencer(enrolled=False)
        await sequencer.submit_password(EMAIL, PASSWORD)
        platform.cancel_next = 1

        state = await sequencer.enroll()
        assert isinstance(state, EnrollmentOffered)
        assert state.error
        assert isinstance(await sequencer.enroll(), PinChallenge)

    async def test_cancelled_biometric_prompt_keeps_password_stage(self) -> None:
        sequencer, backend, platform = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        platform.cancel_next = 1

        state = await sequencer.authenticate_biometric()
        assert isinstance(state, BiometricPrompt)
        assert state.error
        assert isinstance(await sequencer.authenticate_biometric(), PinChallenge)
        assert backend.calls.count("verify_credentials") == 1

    async def test_platform_without_authenticator_is_unavailable(self) -> None:
        backend = FakeBackend()
        sequencer = AuthSequencer(backend, FakePlatform(available=False))
        state = await sequencer.submit_password(EMAIL, PASSWORD)
        assert isinstance(state, Unavailable)
        assert "issue_session" not in backend.calls

    async def test_disabled_biometrics_is_unavailable(self) -> None:
        sequencer, _, _ = _sequencer(available=False)
        assert isinstance(await sequencer.submit_password(EMAIL, PASSWORD), Unavailable)

    async def test_no_credentials_offers_enrollment(self) -> None:
        sequencer, backend, _ = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        backend.enrolled = False  # device removed after the check
        assert isinstance(await sequencer.authenticate_biometric(), EnrollmentOffered)

    async def test_wrong_pins_then_correct(self) -> None:
        sequencer, _, _ = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        await sequencer.authenticate_biometric()

        first = await sequencer.submit_pin("000")
        assert isinstance(first, PinChallenge)
        assert first.remaining_attempts == 2
        second = await sequencer.submit_pin("000")
        assert isinstance(second, PinChallenge)
        assert second.remaining_attempts == 1
        assert isinstance(await sequencer.submit_pin(PIN), SessionIssued)

    async def test_lockout_blocks_input_until_countdown_ends(self) -> None:
        sequencer, _, _ = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        await sequencer.authenticate_biometric()
        for _ in range(3):
            state = await sequencer.submit_pin("000")

        assert state == Locked(EMAIL, "flow-1", remaining_seconds=300)
        with pytest.raises(InvalidTransitionError):
            await sequencer.submit_pin(PIN)
        assert isinstance(sequencer.tick(0), PinChallenge)

    async def test_session_failure_is_terminal(self) -> None:
        sequencer, backend, _ = _sequencer()
        backend.session_error = SessionCreationError()
        await sequencer.submit_password(EMAIL, PASSWORD)
        await sequencer.authenticate_biometric()

        state = await sequencer.submit_pin(PIN)
        assert isinstance(state, Failed)
        assert sequencer._password is None
        assert isinstance(sequencer.restart(), Unauthenticated)

    async def test_expired_flow_returns_to_password(self) -> None:
        sequencer, backend, _ = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        await sequencer.authenticate_biometric()
        backend.pin_error = FlowError()

        state = await sequencer.submit_pin(PIN)
        assert isinstance(state, Unauthenticated)
        assert state.error

    async def test_calls_out_of_order_raise(self) -> None:
        sequencer, _, _ = _sequencer()
        with pytest.raises(InvalidTransitionError):
            await sequencer.submit_pin(PIN)
        with pytest.raises(InvalidTransitionError):
            await sequencer.authenticate_biometric()

    async def test_one_step_at_a_time(self) -> None:
        sequencer, backend, _ = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        await sequencer.authenticate_biometric()
        backend.pin_gate = asyncio.Event()

        pending = asyncio.create_task(sequencer.submit_pin(PIN))
        await asyncio.sleep(0)
        assert sequencer.busy
        with pytest.raises(InvalidTransitionError):
            await sequencer.submit_pin(PIN)

        backend.pin_gate.set()
        assert isinstance(await pending, SessionIssued)
        assert not sequencer.busy


# ---------------------------------------------------------------------------
# Ceremony runner and countdown
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestCeremonyRunner:
    async def test_success_phases(self) -> None:
        runner = CeremonyRunner(FakeBackend(), FakePlatform())
        assert runner.phase is CeremonyPhase.IDLE
        result = await runner.authenticate("flow-1")
        assert result.succeeded
        assert result.kind is CeremonyKind.AUTHENTICATION
        assert runner.phase is CeremonyPhase.SUCCEEDED

    async def test_cancel_fails_ceremony(self) -> None:
        platform = FakePlatform()
        platform.cancel_next = 1
        runner = CeremonyRunner(FakeBackend(), platform)
        result = await runner.register("flow-1", "Laptop")
        assert not result.succeeded
        assert isinstance(result.error, CeremonyCancelledError)
        assert runner.phase is CeremonyPhase.FAILED

    async def test_options_failure_reported(self) -> None:
        runner = CeremonyRunner(FakeBackend(enrolled=False), FakePlatform())
        result = await runner.authenticate("flow-1")
        assert isinstance(result.error, NoCredentialsError)


@pytest.mark.unit
class TestLockoutCountdown:
    async def test_counts_down_to_pin_challenge(self) -> None:
        sequencer, _, _ = _sequencer()
        await sequencer.submit_password(EMAIL, PASSWORD)
        await sequencer.authenticate_biometric()
        for _ in range(3):
            await sequencer.submit_pin("000")

        now = [0.0]
        ticks: list[int] = []

        async def fake_sleep(seconds: float) -> None:
            now[0] += seconds

        countdown = LockoutCountdown(
            sequencer,
            interval=60.0,
            clock=lambda: now[0],
            sleep=fake_sleep,
            on_tick=lambda s: ticks.append(getattr(s, "remaining_seconds", 0)),
        )
        final = await countdown.run()
        assert isinstance(final, PinChallenge)
        assert ticks == [240, 180, 120, 60, 0]

    async def test_not_locked_returns_immediately(self) -> None:
        sequencer, _, _ = _sequencer()
        assert isinstance(await LockoutCountdown(sequencer).run(), Unauthenticated)
