"""Stage 1: email/password verification without creating a session."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

import structlog

from vaultgate.auth.passwords import dummy_hash, verify_secret
from vaultgate.exceptions import (
    AccountLockedError,
    InvalidCredentialsError,
    MalformedRequestError,
    PermissionDeniedError,
)
from vaultgate.models.database import AdminUser, _utc_now
from vaultgate.types import AdminRole, AttemptType

if TYPE_CHECKING:
    from vaultgate.audit.logger import ActivityLogger

logger = structlog.get_logger(__name__)

_ADMIN_ROLES = frozenset({AdminRole.ADMIN.value, AdminRole.SUPER_ADMIN.value})


class UserLookup(Protocol):
    async def get_by_email(self, email: str) -> AdminUser | None: ...


class CredentialVerifier:
    """Checks an email/password pair and reports validity only.

    An unknown email and a wrong password take the same path: one bcrypt
    comparison, the same exception, the same message. Account-level states
    (locked, insufficient role) are reported only after the password matched,
    so they never reveal whether an address exists.
    """

    def __init__(
        self,
        user_repo: UserLookup,
        activity: ActivityLogger,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._users = user_repo
        self._activity = activity
        self._clock = clock

    async def verify(
        self,
        email: str,
        password: str,
        *,
        ip_address: str = "",
        user_agent: str = "",
        record_failures: bool = True,
    ) -> AdminUser:
        """Return the account if the pair is valid, else raise an ``AuthFlowError``.

        With ``record_failures=False`` nothing is written to the login-attempt
        log; the caller records the outcome under its own attempt type.
        """
        email = email.strip().lower()
        if not email or not password:
            raise MalformedRequestError

        user = await self._users.get_by_email(email)
        hashed = user.password_hash if user and user.password_hash else dummy_hash()
        # bcrypt is CPU-bound; keep the event loop responsive
        matched = await asyncio.to_thread(verify_secret, password, hashed)

        if user is None or not matched:
            if record_failures:
                await self._activity.record_login_attempt(
                    email=email,
                    attempt_type=AttemptType.PASSWORD,
                    success=False,
                    admin_user_id=None,
                    failure_reason="Invalid credentials",
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            raise InvalidCredentialsError

        if user.is_locked and user.locked_until and user.locked_until > self._clock():
            if record_failures:
                await self._record_failure(user, "Account locked", ip_address, user_agent)
            raise AccountLockedError(
                f"Account is locked until {user.locked_until.isoformat(timespec='minutes')} UTC"
            )

        if user.role not in _ADMIN_ROLES:
            if record_failures:
                await self._record_failure(user, "Insufficient permissions", ip_address, user_agent)
            raise PermissionDeniedError

        logger.info("credentials_verified", user_id=user.id)
        return user

    async def _record_failure(
        self, user: AdminUser, reason: str, ip_address: str, user_agent: str
    ) -> None:
        await self._activity.record_login_attempt(
            email=user.email,
            attempt_type=AttemptType.PASSWORD,
            success=False,
            admin_user_id=user.id,
            failure_reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
        )
