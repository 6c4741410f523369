"""Shared service container wired once per application."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from vaultgate.audit.logger import ActivityLogger
from vaultgate.auth.challenge_store import InMemoryChallengeStore
from vaultgate.auth.credentials import CredentialVerifier
from vaultgate.auth.login_flow import LoginFlowStore
from vaultgate.auth.passkey_service import PasskeyService
from vaultgate.auth.session import SessionAuth
from vaultgate.auth.vault_pin import VaultPinVerifier
from vaultgate.config.settings import Settings
from vaultgate.models.database import AdminUser
from vaultgate.storage.repositories.biometric_config import (
    DatabaseBiometricConfigRepository,
    InMemoryBiometricConfigRepository,
)
from vaultgate.storage.repositories.users import DatabaseUserRepository, InMemoryUserRepository
from vaultgate.storage.repositories.vault_pin import (
    DatabaseVaultPinStateRepository,
    InMemoryVaultPinStateRepository,
)
from vaultgate.storage.repositories.webauthn import (
    DatabaseWebAuthnCredentialRepository,
    InMemoryWebAuthnCredentialRepository,
)

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Any
    users: Any
    credentials_repo: Any
    pin_states: Any
    biometric_config: Any
    activity: ActivityLogger
    sessions: SessionAuth
    flows: LoginFlowStore
    challenges: InMemoryChallengeStore
    credentials: CredentialVerifier
    passkeys: PasskeyService
    pins: VaultPinVerifier

    async def biometric_switches(self) -> tuple[bool, bool]:
        """Return ``(biometric_enabled, allow_enrollment)``; the stored row wins over settings."""
        row = await self.biometric_config.get()
        if row is None:
            return self.settings.biometric_enabled, self.settings.allow_enrollment
        return row.biometric_enabled, row.allow_enrollment

    def pin_hash_for(self, user: AdminUser) -> str | None:
        """A per-user vault PIN hash overrides the global one."""
        return user.vault_pin_hash or self.settings.vault_pin_hash


def build_services(settings: Settings, engine: Any = None) -> Services:
    """Create the appropriate repositories and services based on settings."""
    if settings.use_database:
        if engine is None:
            from vaultgate.storage.database import get_engine

            engine = get_engine()
        users: Any = DatabaseUserRepository(engine)
        credentials_repo: Any = DatabaseWebAuthnCredentialRepository(engine)
        pin_states: Any = DatabaseVaultPinStateRepository(engine)
        biometric_config: Any = DatabaseBiometricConfigRepository(engine)
    else:
        engine = None
        users = InMemoryUserRepository()
        credentials_repo = InMemoryWebAuthnCredentialRepository()
        pin_states = InMemoryVaultPinStateRepository()
        biometric_config = InMemoryBiometricConfigRepository()

    activity = ActivityLogger(engine)
    challenges = InMemoryChallengeStore(ttl_seconds=settings.challenge_ttl_seconds)

    services = Services(
        settings=settings,
        engine=engine,
        users=users,
        credentials_repo=credentials_repo,
        pin_states=pin_states,
        biometric_config=biometric_config,
        activity=activity,
        sessions=SessionAuth(settings.secret_key, max_age=settings.session_max_age),
        flows=LoginFlowStore(ttl_seconds=settings.login_flow_ttl_seconds),
        challenges=challenges,
        credentials=CredentialVerifier(users, activity),
        passkeys=PasskeyService(
            credentials_repo,
            users,
            rp_id=settings.rp_id,
            rp_name=settings.rp_name,
            origin=settings.expected_origin,
            timeout_ms=settings.webauthn_timeout_ms,
            challenges=challenges,
        ),
        pins=VaultPinVerifier(
            pin_states,
            max_attempts=settings.pin_max_attempts,
            lockout_seconds=settings.pin_lockout_seconds,
            attempt_window_seconds=settings.pin_attempt_window_seconds,
        ),
    )
    logger.info("services_built", use_database=settings.use_database)
    return services


async def bootstrap_admin(services: Services) -> AdminUser | None:
    """Create the configured admin account on first start."""
    settings = services.settings
    if not settings.admin_email or not settings.admin_password:
        return None
    existing = await services.users.get_by_email(settings.admin_email)
    if existing is not None:
        return existing
    user = await services.users.create(
        email=settings.admin_email,
        password=settings.admin_password,
        name=settings.admin_name,
    )
    logger.info("admin_bootstrapped", user_id=user.id)
    return user
