"""WebAuthn routes: enrollment check, registration, assertion, devices."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from vaultgate.auth.passkey_service import credential_id_to_text
from vaultgate.auth.session import require_auth, session_token_from
from vaultgate.exceptions import (
    AuthFlowError,
    BiometricUnavailableError,
    EnrollmentError,
    FlowError,
)
from vaultgate.models.api import (
    AuthenticationOptionsRequest,
    AuthenticationVerifyRequest,
    AuthenticationVerifyResponse,
    BiometricConfigResponse,
    CeremonyOptionsResponse,
    CheckEnrollmentRequest,
    CheckEnrollmentResponse,
    DeviceResponse,
    RegistrationOptionsRequest,
    RegistrationVerifyRequest,
    RegistrationVerifyResponse,
    RemoveDeviceRequest,
)
from vaultgate.types import AttemptType, LoginStage
from vaultgate.web.middleware import client_ip, user_agent

if TYPE_CHECKING:
    from vaultgate.models.database import AdminUser
    from vaultgate.web.dependencies import Services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/webauthn", tags=["webauthn"])


def _services(request: Request) -> Services:
    return request.app.state.services


def _ip(services: Services, request: Request) -> str:
    return client_ip(request, trust_proxy_headers=services.settings.trust_proxy_headers)


async def _require_biometrics(services: Services) -> tuple[bool, bool]:
    enabled, allow_enrollment = await services.biometric_switches()
    if not enabled:
        raise BiometricUnavailableError("Biometric authentication is disabled")
    return enabled, allow_enrollment


async def _flow_user(services: Services, flow_token: str | None) -> AdminUser:
    flow = services.flows.require(flow_token, LoginStage.PASSWORD_VERIFIED)
    user = await services.users.get_by_id(flow.user_id)
    if user is None:
        services.flows.discard(flow_token)
        raise FlowError
    return user


async def _enrolling_user(services: Services, request: Request, flow_token: str | None) -> AdminUser:
    """Who may enroll: a signed-in admin, or a login flow with nothing enrolled yet.

    A password alone never adds a second authenticator; otherwise it could be
    used to bypass the biometric factor of an already-enrolled account.
    """
    if flow_token:
        user = await _flow_user(services, flow_token)
        if await services.passkeys.is_enrolled(user):
            logger.warning("enrollment_refused_already_enrolled", user_id=user.id)
            raise EnrollmentError("Sign in to add another device")
        return user

    session = services.sessions.validate_session(session_token_from(request))
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = await services.users.get_by_id(session["user_id"])
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


# ---------------------------------------------------------------------------
# Enrollment status and configuration
# ---------------------------------------------------------------------------


@router.post("/check-enrollment")
async def check_enrollment(body: CheckEnrollmentRequest, request: Request) -> CheckEnrollmentResponse:
    """Report whether the user has a usable biometric credential. Read-only."""
    services = _services(request)
    enabled, allow_enrollment = await services.biometric_switches()
    user = await services.users.get_by_email(body.email) if body.email else None
    enrolled = user is not None and await services.passkeys.is_enrolled(user)
    return CheckEnrollmentResponse(
        enrolled=enrolled,
        biometric_available=enabled,
        allow_enrollment=enabled and allow_enrollment,
    )


@router.get("/config")
async def biometric_config(request: Request) -> BiometricConfigResponse:
    services = _services(request)
    row = await services.biometric_config.get()
    enabled, allow_enrollment = await services.biometric_switches()
    return BiometricConfigResponse(
        biometric_enabled=enabled,
        allow_enrollment=allow_enrollment,
        notes=row.notes if row and row.notes else "",
    )


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/register/options")
async def registration_options(
    body: RegistrationOptionsRequest, request: Request
) -> CeremonyOptionsResponse:
    services = _services(request)
    _, allow_enrollment = await _require_biometrics(services)
    if not allow_enrollment:
        raise BiometricUnavailableError("Biometric enrollment is currently disabled")

    user = await _enrolling_user(services, request, body.flow_token)
    result = await services.passkeys.begin_registration(user)
    return CeremonyOptionsResponse(**result)


@router.post("/register/verify")
async def registration_verify(
    body: RegistrationVerifyRequest, request: Request
) -> RegistrationVerifyResponse:
    services = _services(request)
    _, allow_enrollment = await _require_biometrics(services)
    if not allow_enrollment:
        raise BiometricUnavailableError("Biometric enrollment is currently disabled")

    user = await _enrolling_user(services, request, body.flow_token)
    stored = await services.passkeys.complete_registration(
        user, body.credential, body.challenge_key, body.device_name
    )
    await services.activity.log(
        admin_user_id=user.id,
        action="webauthn.enroll",
        description=f"Enrolled biometric device: {stored.device_name}",
        details={"device_type": stored.device_type},
        ip_address=_ip(services, request),
        user_agent=user_agent(request),
        request_id=request.headers.get("x-request-id", ""),
    )
    return RegistrationVerifyResponse(
        success=True,
        credential_id=credential_id_to_text(stored.credential_id),
        device_name=stored.device_name,
        message="Biometric enrollment successful",
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@router.post("/authenticate/options")
async def authentication_options(
    body: AuthenticationOptionsRequest, request: Request
) -> CeremonyOptionsResponse:
    services = _services(request)
    await _require_biometrics(services)
    user = await _flow_user(services, body.flow_token)
    result = await services.passkeys.begin_authentication(user)
    return CeremonyOptionsResponse(**result)


@router.post("/authenticate/verify")
async def authentication_verify(
    body: AuthenticationVerifyRequest, request: Request
) -> AuthenticationVerifyResponse:
    """Verify the assertion and move the flow on to the vault PIN stage."""
    services = _services(request)
    await _require_biometrics(services)
    user = await _flow_user(services, body.flow_token)
    ip = _ip(services, request)
    agent = user_agent(request)

    try:
        await services.passkeys.complete_authentication(user, body.credential, body.challenge_key)
    except AuthFlowError as exc:
        await services.activity.record_login_attempt(
            email=user.email,
            attempt_type=AttemptType.BIOMETRIC,
            success=False,
            admin_user_id=user.id,
            failure_reason=exc.code,
            ip_address=ip,
            user_agent=agent,
        )
        raise

    services.flows.advance(body.flow_token, LoginStage.PASSWORD_VERIFIED)
    await services.activity.record_login_attempt(
        email=user.email,
        attempt_type=AttemptType.BIOMETRIC,
        success=True,
        admin_user_id=user.id,
        ip_address=ip,
        user_agent=agent,
    )
    await services.activity.log(
        admin_user_id=user.id,
        action="auth.biometric",
        description="Biometric verification succeeded",
        ip_address=ip,
        user_agent=agent,
        request_id=request.headers.get("x-request-id", ""),
    )
    return AuthenticationVerifyResponse(success=True, message="Biometric verification successful")


# ---------------------------------------------------------------------------
# Device management (signed-in admins only)
# ---------------------------------------------------------------------------


@router.get("/devices")
async def list_devices(
    request: Request, session: dict[str, Any] = Depends(require_auth)
) -> list[DeviceResponse]:
    services = _services(request)
    creds = await services.passkeys.list_devices(session["user_id"])
    return [
        DeviceResponse(
            id=c.id,
            device_name=c.device_name,
            device_type=c.device_type,
            created_at=c.created_at,
            last_used_at=c.last_used_at,
        )
        for c in creds
    ]


@router.delete("/devices")
async def remove_device(
    body: RemoveDeviceRequest,
    request: Request,
    session: dict[str, Any] = Depends(require_auth),
) -> dict[str, str]:
    services = _services(request)
    removed = await services.passkeys.remove_device(session["user_id"], body.credential_id)
    if not removed:
        raise HTTPException(status_code=404, detail="Device not found")

    await services.activity.log(
        admin_user_id=session["user_id"],
        action="webauthn.remove_device",
        severity="warning",
        details={"device_id": body.credential_id},
        ip_address=_ip(services, request),
        user_agent=user_agent(request),
        request_id=request.headers.get("x-request-id", ""),
    )
    return {"status": "ok"}
