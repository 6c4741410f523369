"""SQLModel database table models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from vaultgate.types import AdminRole


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns.

    Columns are declared with ``sa_type=DateTime`` so SQLModel keeps them naive
    instead of mapping ``datetime`` to its timezone-aware type.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Accounts and factors
# ---------------------------------------------------------------------------


class AdminUser(SQLModel, table=True):
    __tablename__ = "admin_users"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str = ""
    password_hash: str
    role: str = Field(default=AdminRole.ADMIN.value)
    is_active: bool = Field(default=True)
    is_locked: bool = Field(default=False)
    locked_until: datetime | None = Field(default=None, sa_type=DateTime)
    biometric_enabled: bool = Field(default=False)
    vault_pin_hash: str | None = None  # overrides the global vault PIN when set
    last_login_at: datetime | None = Field(default=None, sa_type=DateTime)
    last_login_ip: str | None = None
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)

    @property
    def webauthn_user_handle(self) -> bytes:
        """Stable WebAuthn user handle derived from the account id."""
        return self.id.encode("utf-8")


class WebAuthnCredential(SQLModel, table=True):
    __tablename__ = "webauthn_credentials"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    user_id: str = Field(foreign_key="admin_users.id", index=True)
    credential_id: bytes = Field(unique=True)
    public_key: bytes
    sign_count: int = Field(default=0)
    device_name: str = Field(default="Biometric Device")
    device_type: str = Field(default="platform")  # platform | cross-platform
    transports: str = Field(default="[]")  # JSON list of transport hints
    aaguid: str = ""
    backed_up: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)
    last_used_at: datetime | None = Field(default=None, sa_type=DateTime)


class VaultPinState(SQLModel, table=True):
    __tablename__ = "vault_pin_states"

    user_id: str = Field(primary_key=True)
    failed_attempts: int = Field(default=0)
    last_failed_at: datetime | None = Field(default=None, sa_type=DateTime)
    locked_until: datetime | None = Field(default=None, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)


class BiometricConfig(SQLModel, table=True):
    __tablename__ = "biometric_config"

    id: str = Field(default="global", primary_key=True)
    biometric_enabled: bool = Field(default=True)
    allow_enrollment: bool = Field(default=True)
    notes: str = ""
    updated_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)


# ---------------------------------------------------------------------------
# Audit trail (insert-only)
# ---------------------------------------------------------------------------


class LoginAttempt(SQLModel, table=True):
    __tablename__ = "admin_login_attempts"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    email: str = Field(index=True)
    admin_user_id: str | None = Field(default=None, index=True)
    attempt_type: str  # password | biometric | session
    success: bool
    failure_reason: str | None = None
    ip_address: str = ""
    user_agent: str = ""
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)


class ActivityLog(SQLModel, table=True):
    __tablename__ = "admin_activity_log"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    admin_user_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource_type: str = ""
    description: str = ""
    severity: str = Field(default="info")
    details_json: str = "{}"
    ip_address: str = ""
    user_agent: str = ""
    request_id: str = ""
    created_at: datetime = Field(default_factory=_utc_now, sa_type=DateTime)
