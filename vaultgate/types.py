"""Enums and type aliases for VaultGate."""

from enum import StrEnum


class AdminRole(StrEnum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    VIEWER = "VIEWER"


class PinVerdict(StrEnum):
    VALID = "valid"
    INVALID = "invalid"
    LOCKED = "locked"


class LoginStage(StrEnum):
    """Server-side progress of one login attempt."""

    PASSWORD_VERIFIED = "password_verified"
    BIOMETRIC_VERIFIED = "biometric_verified"
    PIN_VERIFIED = "pin_verified"


class CeremonyKind(StrEnum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class CeremonyPhase(StrEnum):
    IDLE = "idle"
    OPTIONS_REQUESTED = "options_requested"
    CLIENT_CEREMONY_IN_FLIGHT = "client_ceremony_in_flight"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SequencerStage(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    PASSWORD_VERIFIED = "password_verified"
    BIOMETRIC_AVAILABLE_CHECK = "biometric_available_check"
    ENROLLMENT_OFFERED = "enrollment_offered"
    BIOMETRIC_PROMPT = "biometric_prompt"
    BIOMETRIC_VERIFIED = "biometric_verified"
    PIN_CHALLENGE = "pin_challenge"
    LOCKED = "locked"
    SESSION_ISSUED = "session_issued"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


class AttemptType(StrEnum):
    PASSWORD = "password"
    BIOMETRIC = "biometric"
    SESSION = "session"
