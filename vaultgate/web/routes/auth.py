"""Authentication routes: password stage, vault PIN, session issue, logout."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, Request, Response

from vaultgate.auth.session import SESSION_COOKIE, session_token_from
from vaultgate.exceptions import (
    AuthFlowError,
    FlowError,
    InvalidPinError,
    LockedError,
    SessionCreationError,
)
from vaultgate.models.api import (
    SessionRequest,
    SessionResponse,
    VerifyCredentialsRequest,
    VerifyCredentialsResponse,
    VerifyVaultPinRequest,
    VerifyVaultPinResponse,
)
from vaultgate.types import AttemptType, LoginStage, PinVerdict
from vaultgate.web.middleware import client_ip, user_agent

if TYPE_CHECKING:
    from vaultgate.web.dependencies import Services

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["auth"])


def _services(request: Request) -> Services:
    return request.app.state.services


def _ip(services: Services, request: Request) -> str:
    return client_ip(request, trust_proxy_headers=services.settings.trust_proxy_headers)


# ---------------------------------------------------------------------------
# Stage 1: password
# ---------------------------------------------------------------------------


@router.post("/api/auth/verify-credentials")
async def verify_credentials(
    body: VerifyCredentialsRequest, request: Request
) -> VerifyCredentialsResponse:
    """Check email/password and open a login flow. No session is created here."""
    services = _services(request)
    user = await services.credentials.verify(
        body.email,
        body.password,
        ip_address=_ip(services, request),
        user_agent=user_agent(request),
    )
    flow_token = services.flows.start(user.id, user.email)
    return VerifyCredentialsResponse(
        valid=True, flow_token=flow_token, email=user.email, name=user.name
    )


# ---------------------------------------------------------------------------
# Stage 3: vault PIN
# ---------------------------------------------------------------------------


@router.post("/api/auth/verify-vault-pin")
async def verify_vault_pin(body: VerifyVaultPinRequest, request: Request) -> VerifyVaultPinResponse:
    """Check the vault PIN. Only reachable once the biometric stage passed."""
    services = _services(request)
    flow = services.flows.require(body.flow_token, LoginStage.BIOMETRIC_VERIFIED)
    user = await services.users.get_by_id(flow.user_id)
    if user is None:
        services.flows.discard(body.flow_token)
        raise FlowError

    result = await services.pins.verify(user.id, body.pin, services.pin_hash_for(user))
    if result.verdict is PinVerdict.LOCKED:
        raise LockedError(
            f"Too many failed attempts. Try again in {result.remaining_seconds} seconds.",
            remaining_seconds=result.remaining_seconds,
        )
    if result.verdict is PinVerdict.INVALID:
        raise InvalidPinError(remaining_attempts=result.remaining_attempts)

    services.flows.advance(body.flow_token, LoginStage.BIOMETRIC_VERIFIED)
    return VerifyVaultPinResponse(valid=True)


# ---------------------------------------------------------------------------
# Session issue
# ---------------------------------------------------------------------------


@router.post("/api/auth/session")
async def create_session(
    body: SessionRequest, request: Request, response: Response
) -> SessionResponse:
    """Mint the session, once every factor passed in order.

    The flow is consumed before anything else, so a failed mint cannot be
    retried with the same flow; the caller restarts from the password stage.
    """
    services = _services(request)
    flow = services.flows.consume(body.flow_token, LoginStage.PIN_VERIFIED)
    ip = _ip(services, request)
    agent = user_agent(request)

    if body.email.strip().lower() != flow.email:
        logger.warning("session_email_mismatch", user_id=flow.user_id)
        raise SessionCreationError

    # Password is re-confirmed at mint time
    try:
        user = await services.credentials.verify(
            body.email, body.password, ip_address=ip, user_agent=agent, record_failures=False
        )
    except AuthFlowError as exc:
        await services.activity.record_login_attempt(
            email=flow.email,
            attempt_type=AttemptType.SESSION,
            success=False,
            admin_user_id=flow.user_id,
            failure_reason=exc.code,
            ip_address=ip,
            user_agent=agent,
        )
        raise SessionCreationError from exc

    if user.id != flow.user_id:
        raise SessionCreationError

    await services.users.record_login(user.id, ip)
    token = services.sessions.create_session(user.email, user_id=user.id, role=user.role)
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        secure=not services.settings.debug,
        samesite="lax",
        max_age=services.sessions.max_age,
    )

    await services.activity.record_login_attempt(
        email=user.email,
        attempt_type=AttemptType.SESSION,
        success=True,
        admin_user_id=user.id,
        ip_address=ip,
        user_agent=agent,
    )
    await services.activity.log(
        admin_user_id=user.id,
        action="auth.login",
        description="Signed in with password, biometric and vault PIN",
        ip_address=ip,
        user_agent=agent,
        request_id=request.headers.get("x-request-id", ""),
    )
    logger.info("user_logged_in", user_id=user.id)
    return SessionResponse(
        status="ok", email=user.email, token=token, expires_in=services.sessions.max_age
    )


@router.post("/api/auth/logout")
async def logout(request: Request, response: Response) -> dict[str, str]:
    """Destroy the current session."""
    services = _services(request)
    token = session_token_from(request)
    session = services.sessions.validate_session(token) if token else None
    if token:
        services.sessions.destroy_session(token)
    response.delete_cookie(SESSION_COOKIE)

    if session:
        await services.activity.log(
            admin_user_id=session["user_id"],
            action="auth.logout",
            ip_address=_ip(services, request),
            user_agent=user_agent(request),
            request_id=request.headers.get("x-request-id", ""),
        )
    return {"status": "ok"}
