"""Activity logger: insert-only audit trail for the admin login flow.

Uses its own DB session so audit entries survive request failures.
Details JSON is sanitized (sensitive fields stripped, 10KB max).
Vault PIN attempts are deliberately never written here.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog

from vaultgate.models.database import ActivityLog, LoginAttempt

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

# Fields to strip from details_json
_SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "pin",
        "secret",
        "token",
        "flow_token",
        "credential",
        "authorization",
        "cookie",
        "session",
    }
)

_MAX_DETAILS_BYTES = 10_240  # 10KB


def _sanitize_details(details: dict[str, Any]) -> str:
    """Strip sensitive fields and enforce size limit."""
    sanitized = {k: v for k, v in details.items() if k.lower() not in _SENSITIVE_FIELDS}
    encoded = json.dumps(sanitized, default=str)
    if len(encoded) > _MAX_DETAILS_BYTES:
        encoded = encoded[:_MAX_DETAILS_BYTES]
    return encoded


class ActivityLogger:
    """Records login attempts and admin activity.

    With no engine (in-memory mode) entries only go to the structured log.
    """

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine

    async def record_login_attempt(
        self,
        *,
        email: str,
        attempt_type: str,
        success: bool,
        admin_user_id: str | None = None,
        failure_reason: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> None:
        """Write one login-attempt row."""
        logger.info(
            "login_attempt",
            email=email,
            attempt_type=attempt_type,
            success=success,
            failure_reason=failure_reason,
            ip=ip_address,
        )
        await self._insert(
            LoginAttempt(
                email=email,
                admin_user_id=admin_user_id,
                attempt_type=attempt_type,
                success=success,
                failure_reason=failure_reason,
                ip_address=ip_address,
                user_agent=user_agent[:512],
            ),
            action=f"login_attempt.{attempt_type}",
        )

    async def log(
        self,
        *,
        admin_user_id: str | None,
        action: str,
        resource_type: str = "authentication",
        description: str = "",
        severity: str = "info",
        details: dict[str, Any] | None = None,
        ip_address: str = "",
        user_agent: str = "",
        request_id: str = "",
    ) -> None:
        """Write an activity log entry."""
        logger.info("activity", action=action, admin_user_id=admin_user_id)
        await self._insert(
            ActivityLog(
                admin_user_id=admin_user_id,
                action=action,
                resource_type=resource_type,
                description=description,
                severity=severity,
                details_json=_sanitize_details(details or {}),
                ip_address=ip_address,
                user_agent=user_agent[:512],
                request_id=request_id,
            ),
            action=action,
        )

    async def _insert(self, row: LoginAttempt | ActivityLog, action: str) -> None:
        if self._engine is None:
            return

        from sqlmodel.ext.asyncio.session import AsyncSession

        try:
            async with AsyncSession(self._engine) as session:
                session.add(row)
                await session.commit()
        except Exception:
            # Audit must never break the request; log and continue
            logger.exception("audit_log_failed", action=action)
