"""Client side of the login API: one coroutine per boundary operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from vaultgate.exceptions import AuthFlowError, error_from_payload

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CredentialCheck:
    flow_token: str
    email: str
    name: str


@dataclass(frozen=True)
class EnrollmentStatus:
    enrolled: bool
    biometric_available: bool
    allow_enrollment: bool


@dataclass(frozen=True)
class CeremonyOptions:
    options: dict[str, Any]
    challenge_key: str


class AuthBackend(Protocol):
    """Server operations the sequencer drives. Failures raise ``AuthFlowError`` subclasses."""

    async def verify_credentials(self, email: str, password: str) -> CredentialCheck: ...

    async def check_enrollment(self, email: str) -> EnrollmentStatus: ...

    async def registration_options(self, flow_token: str, device_name: str) -> CeremonyOptions: ...

    async def registration_verify(
        self, flow_token: str, challenge_key: str, credential: dict[str, Any], device_name: str
    ) -> None: ...

    async def authentication_options(self, flow_token: str) -> CeremonyOptions: ...

    async def authentication_verify(
        self, flow_token: str, challenge_key: str, credential: dict[str, Any]
    ) -> None: ...

    async def verify_vault_pin(self, flow_token: str, pin: str) -> None: ...

    async def issue_session(self, flow_token: str, email: str, password: str) -> str: ...


class HttpAuthBackend:
    """``AuthBackend`` over HTTP.

    Error bodies are mapped back to the exception classes the server raised, so
    callers handle ``InvalidPinError`` or ``LockedError`` the same way whether
    the verifier runs in-process or behind the API.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("auth_backend_unreachable", path=path, error=str(exc))
            msg = "Authentication service unreachable"
            raise AuthFlowError(msg) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            if not isinstance(body, dict):
                body = {}
            raise error_from_payload(body, response.status_code)
        return body

    async def verify_credentials(self, email: str, password: str) -> CredentialCheck:
        body = await self._post(
            "/api/auth/verify-credentials", {"email": email, "password": password}
        )
        return CredentialCheck(flow_token=body["flow_token"], email=body["email"], name=body["name"])

    async def check_enrollment(self, email: str) -> EnrollmentStatus:
        body = await self._post("/api/webauthn/check-enrollment", {"email": email})
        return EnrollmentStatus(
            enrolled=bool(body["enrolled"]),
            biometric_available=bool(body["biometric_available"]),
            allow_enrollment=bool(body["allow_enrollment"]),
        )

    async def registration_options(self, flow_token: str, device_name: str) -> CeremonyOptions:
        body = await self._post(
            "/api/webauthn/register/options",
            {"flow_token": flow_token, "device_name": device_name},
        )
        return CeremonyOptions(options=body["options"], challenge_key=body["challenge_key"])

    async def registration_verify(
        self, flow_token: str, challenge_key: str, credential: dict[str, Any], device_name: str
    ) -> None:
        await self._post(
            "/api/webauthn/register/verify",
            {
                "flow_token": flow_token,
                "challenge_key": challenge_key,
                "credential": credential,
                "device_name": device_name,
            },
        )

    async def authentication_options(self, flow_token: str) -> CeremonyOptions:
        body = await self._post("/api/webauthn/authenticate/options", {"flow_token": flow_token})
        return CeremonyOptions(options=body["options"], challenge_key=body["challenge_key"])

    async def authentication_verify(
        self, flow_token: str, challenge_key: str, credential: dict[str, Any]
    ) -> None:
        await self._post(
            "/api/webauthn/authenticate/verify",
            {"flow_token": flow_token, "challenge_key": challenge_key, "credential": credential},
        )

    async def verify_vault_pin(self, flow_token: str, pin: str) -> None:
        await self._post("/api/auth/verify-vault-pin", {"flow_token": flow_token, "pin": pin})

    async def issue_session(self, flow_token: str, email: str, password: str) -> str:
        body = await self._post(
            "/api/auth/session",
            {"flow_token": flow_token, "email": email, "password": password},
        )
        return str(body["token"])
