"""Exception hierarchy for VaultGate."""

from __future__ import annotations

from typing import Any


class VaultGateError(Exception):
    """Base exception for all VaultGate errors."""


class ConfigError(VaultGateError):
    """Raised when configuration is invalid."""


class StorageError(VaultGateError):
    """Raised when storage operations fail."""


class InvalidTransitionError(VaultGateError):
    """Raised when the sequencer receives an event its current state does not accept."""


class AuthFlowError(VaultGateError):
    """Base for errors surfaced to the user at one stage of the login flow.

    ``code`` is stable across the wire so the HTTP client can rebuild the
    same exception type from a response body.
    """

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def extras(self) -> dict[str, Any]:
        """Additional fields rendered alongside ``detail`` and ``code``."""
        return {}


# Stage 1: password


class InvalidCredentialsError(AuthFlowError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class MalformedRequestError(AuthFlowError):
    status_code = 400
    code = "malformed_request"
    default_message = "Email and password required"


class AccountLockedError(AuthFlowError):
    status_code = 403
    code = "account_locked"
    default_message = "Account is locked"


class PermissionDeniedError(AuthFlowError):
    status_code = 403
    code = "permission_denied"
    default_message = "Insufficient permissions to access admin panel"


# Stage 2: WebAuthn


class NoCredentialsError(AuthFlowError):
    status_code = 409
    code = "no_credentials"
    default_message = "No biometric credentials enrolled"


class EnrollmentError(AuthFlowError):
    status_code = 400
    code = "enrollment_failed"
    default_message = "Enrollment failed"


class AssertionVerificationError(AuthFlowError):
    status_code = 400
    code = "assertion_failed"
    default_message = "Biometric verification failed"


class CeremonyCancelledError(AuthFlowError):
    """The user dismissed the platform prompt. Raised on the client only."""

    status_code = 400
    code = "ceremony_cancelled"
    default_message = "Biometric prompt was cancelled"


class BiometricUnavailableError(AuthFlowError):
    status_code = 403
    code = "biometric_unavailable"
    default_message = "Biometric authentication is not available"


# Stage 3: vault PIN


class InvalidPinError(AuthFlowError):
    status_code = 401
    code = "invalid_pin"
    default_message = "Invalid PIN"

    def __init__(self, message: str | None = None, remaining_attempts: int = 0) -> None:
        super().__init__(message)
        self.remaining_attempts = remaining_attempts

    def extras(self) -> dict[str, Any]:
        return {"valid": False, "remaining_attempts": self.remaining_attempts}


class LockedError(AuthFlowError):
    status_code = 429
    code = "pin_locked"
    default_message = "Security lockout active"

    def __init__(self, message: str | None = None, remaining_seconds: int = 0) -> None:
        super().__init__(message)
        self.remaining_seconds = remaining_seconds

    def extras(self) -> dict[str, Any]:
        return {"valid": False, "locked": True, "remaining_seconds": self.remaining_seconds}


# Flow and session


class FlowError(AuthFlowError):
    status_code = 401
    code = "flow_invalid"
    default_message = "Login flow expired or out of order. Start again."


class SessionCreationError(AuthFlowError):
    status_code = 401
    code = "session_failed"
    default_message = "Could not create session. Start again."


_BY_CODE: dict[str, type[AuthFlowError]] = {
    cls.code: cls
    for cls in (
        InvalidCredentialsError,
        MalformedRequestError,
        AccountLockedError,
        PermissionDeniedError,
        NoCredentialsError,
        EnrollmentError,
        AssertionVerificationError,
        CeremonyCancelledError,
        BiometricUnavailableError,
        InvalidPinError,
        LockedError,
        FlowError,
        SessionCreationError,
    )
}


def error_from_payload(payload: dict[str, Any], status_code: int) -> AuthFlowError:
    """Rebuild an ``AuthFlowError`` from a rendered error body."""
    message = str(payload.get("detail") or "")
    cls = _BY_CODE.get(str(payload.get("code", "")))
    if cls is InvalidPinError:
        return InvalidPinError(message, remaining_attempts=int(payload.get("remaining_attempts", 0)))
    if cls is LockedError:
        return LockedError(message, remaining_seconds=int(payload.get("remaining_seconds", 0)))
    if cls is not None:
        return cls(message or None)
    err = AuthFlowError(message or None)
    err.status_code = status_code
    return err
