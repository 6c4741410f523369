"""Global biometric kill switch storage."""

from __future__ import annotations

from typing import Any

import structlog

from vaultgate.models.database import BiometricConfig, _utc_now

logger = structlog.get_logger(__name__)


class InMemoryBiometricConfigRepository:
    def __init__(self, config: BiometricConfig | None = None) -> None:
        self._config = config

    async def get(self) -> BiometricConfig | None:
        return self._config

    async def set(self, biometric_enabled: bool, allow_enrollment: bool, notes: str = "") -> None:
        self._config = BiometricConfig(
            biometric_enabled=biometric_enabled,
            allow_enrollment=allow_enrollment,
            notes=notes,
        )
        logger.info(
            "biometric_config_updated",
            biometric_enabled=biometric_enabled,
            allow_enrollment=allow_enrollment,
        )


class DatabaseBiometricConfigRepository:
    def __init__(self, engine: Any) -> None:
        self._engine = engine

    async def get(self) -> BiometricConfig | None:
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            return await session.get(BiometricConfig, "global")

    async def set(self, biometric_enabled: bool, allow_enrollment: bool, notes: str = "") -> None:
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            config = await session.get(BiometricConfig, "global") or BiometricConfig()
            config.biometric_enabled = biometric_enabled
            config.allow_enrollment = allow_enrollment
            config.notes = notes
            config.updated_at = _utc_now()
            session.add(config)
            await session.commit()
        logger.info(
            "biometric_config_updated",
            biometric_enabled=biometric_enabled,
            allow_enrollment=allow_enrollment,
        )
