"""Admin user repositories: in-memory and database-backed."""

from __future__ import annotations

from typing import Any

import structlog

from vaultgate.auth.passwords import hash_secret
from vaultgate.models.database import AdminUser, _utc_now
from vaultgate.types import AdminRole

logger = structlog.get_logger(__name__)


class InMemoryUserRepository:
    """Process-local user store for single-node dev mode."""

    def __init__(self) -> None:
        self._users: dict[str, AdminUser] = {}

    async def create(
        self,
        email: str,
        password: str,
        name: str = "",
        role: str = AdminRole.ADMIN,
        vault_pin_hash: str | None = None,
    ) -> AdminUser:
        email = email.strip().lower()
        user = AdminUser(
            email=email,
            name=name or email,
            password_hash=hash_secret(password),
            role=str(role),
            vault_pin_hash=vault_pin_hash,
        )
        self._users[user.id] = user
        logger.info("user_created", user_id=user.id, email=email, role=str(role))
        return user

    async def get_by_id(self, user_id: str) -> AdminUser | None:
        user = self._users.get(user_id)
        return user if user and user.is_active else None

    async def get_by_email(self, email: str) -> AdminUser | None:
        email = email.strip().lower()
        for user in self._users.values():
            if user.email == email and user.is_active:
                return user
        return None

    async def set_biometric_enabled(self, user_id: str, enabled: bool) -> None:
        user = self._users.get(user_id)
        if user:
            user.biometric_enabled = enabled
            user.updated_at = _utc_now()

    async def record_login(self, user_id: str, ip_address: str) -> None:
        user = self._users.get(user_id)
        if user:
            user.last_login_at = _utc_now()
            user.last_login_ip = ip_address


class DatabaseUserRepository:
    """Database-backed user store."""

    def __init__(self, engine: Any) -> None:
        self._engine = engine

    async def create(
        self,
        email: str,
        password: str,
        name: str = "",
        role: str = AdminRole.ADMIN,
        vault_pin_hash: str | None = None,
    ) -> AdminUser:
        from sqlmodel.ext.asyncio.session import AsyncSession

        email = email.strip().lower()
        async with AsyncSession(self._engine) as session:
            user = AdminUser(
                email=email,
                name=name or email,
                password_hash=hash_secret(password),
                role=str(role),
                vault_pin_hash=vault_pin_hash,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            logger.info("user_created", user_id=user.id, email=email, role=str(role))
            return user

    async def get_by_id(self, user_id: str) -> AdminUser | None:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = select(AdminUser).where(
                col(AdminUser.id) == user_id, col(AdminUser.is_active).is_(True)
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def get_by_email(self, email: str) -> AdminUser | None:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        email = email.strip().lower()
        async with AsyncSession(self._engine) as session:
            stmt = select(AdminUser).where(
                col(AdminUser.email) == email, col(AdminUser.is_active).is_(True)
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def set_biometric_enabled(self, user_id: str, enabled: bool) -> None:
        from sqlalchemy import update
        from sqlmodel import col
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = (
                update(AdminUser)
                .where(col(AdminUser.id) == user_id)
                .values(biometric_enabled=enabled, updated_at=_utc_now())
            )
            await session.execute(stmt)
            await session.commit()

    async def record_login(self, user_id: str, ip_address: str) -> None:
        from sqlalchemy import update
        from sqlmodel import col
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = (
                update(AdminUser)
                .where(col(AdminUser.id) == user_id)
                .values(last_login_at=_utc_now(), last_login_ip=ip_address)
            )
            await session.execute(stmt)
            await session.commit()
