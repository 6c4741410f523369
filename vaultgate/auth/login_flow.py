"""Server-side tracking of one login attempt across the three factors."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass

import structlog

from vaultgate.exceptions import FlowError
from vaultgate.types import LoginStage

logger = structlog.get_logger(__name__)

_ORDER = (
    LoginStage.PASSWORD_VERIFIED,
    LoginStage.BIOMETRIC_VERIFIED,
    LoginStage.PIN_VERIFIED,
)


@dataclass
class LoginFlow:
    user_id: str
    email: str
    stage: LoginStage
    expires_at: float


class LoginFlowStore:
    """Maps opaque flow tokens to the stage a login attempt has reached.

    A flow only moves one step forward at a time, and only from the stage the
    caller expects, so no endpoint can be reached out of order. None of the
    methods await, which makes each check-and-advance atomic on the event loop.
    """

    def __init__(self, ttl_seconds: int = 600) -> None:
        self._ttl = ttl_seconds
        self._flows: dict[str, LoginFlow] = {}

    def start(self, user_id: str, email: str) -> str:
        """Open a flow after the password matched and return its token."""
        self._cleanup()
        token = secrets.token_urlsafe(32)
        self._flows[token] = LoginFlow(
            user_id=user_id,
            email=email,
            stage=LoginStage.PASSWORD_VERIFIED,
            expires_at=time.time() + self._ttl,
        )
        logger.info("login_flow_started", user_id=user_id)
        return token

    def require(self, token: str | None, stage: LoginStage) -> LoginFlow:
        """Return the flow if it exists, is live and sits exactly at ``stage``."""
        flow = self._flows.get(token or "")
        if flow is None:
            raise FlowError
        if time.time() > flow.expires_at:
            self._flows.pop(token or "", None)
            raise FlowError
        if flow.stage != stage:
            logger.warning(
                "login_flow_out_of_order",
                user_id=flow.user_id,
                stage=str(flow.stage),
                expected=str(stage),
            )
            raise FlowError
        return flow

    def advance(self, token: str, from_stage: LoginStage) -> LoginFlow:
        """Move the flow from ``from_stage`` to the next stage."""
        flow = self.require(token, from_stage)
        index = _ORDER.index(from_stage)
        if index + 1 >= len(_ORDER):
            raise FlowError
        flow.stage = _ORDER[index + 1]
        logger.info("login_flow_advanced", user_id=flow.user_id, stage=str(flow.stage))
        return flow

    def consume(self, token: str, stage: LoginStage) -> LoginFlow:
        """Remove a flow sitting at ``stage``; it cannot be used again."""
        flow = self.require(token, stage)
        del self._flows[token]
        return flow

    def discard(self, token: str | None) -> None:
        self._flows.pop(token or "", None)

    def _cleanup(self) -> None:
        now = time.time()
        expired = [k for k, flow in self._flows.items() if now > flow.expires_at]
        for k in expired:
            del self._flows[k]
