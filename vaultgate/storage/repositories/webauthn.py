"""WebAuthn credential repositories: in-memory and database-backed."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from vaultgate.models.database import WebAuthnCredential, _utc_now

if TYPE_CHECKING:
    from datetime import datetime

logger = structlog.get_logger(__name__)


def _detached(credential: WebAuthnCredential) -> WebAuthnCredential:
    """A copy, so callers cannot change stored rows without going through the repository."""
    return WebAuthnCredential(**credential.model_dump())


class InMemoryWebAuthnCredentialRepository:
    """Process-local credential store."""

    def __init__(self) -> None:
        self._by_id: dict[str, WebAuthnCredential] = {}

    async def create(self, credential: WebAuthnCredential) -> WebAuthnCredential:
        if any(c.credential_id == credential.credential_id for c in self._by_id.values()):
            msg = "Credential already registered"
            raise ValueError(msg)
        self._by_id[credential.id] = _detached(credential)
        logger.info("webauthn_credential_created", user_id=credential.user_id)
        return credential

    def _find(self, credential_id: bytes) -> WebAuthnCredential | None:
        for cred in self._by_id.values():
            if cred.credential_id == credential_id:
                return cred
        return None

    async def get_by_credential_id(self, credential_id: bytes) -> WebAuthnCredential | None:
        cred = self._find(credential_id)
        return _detached(cred) if cred else None

    async def list_for_user(self, user_id: str) -> list[WebAuthnCredential]:
        creds = [_detached(c) for c in self._by_id.values() if c.user_id == user_id]
        return sorted(creds, key=lambda c: c.created_at, reverse=True)

    async def update_sign_count(
        self,
        credential_id: bytes,
        new_count: int,
        last_used_at: datetime | None = None,
    ) -> bool:
        """Advance the counter only if ``new_count`` is strictly greater."""
        cred = self._find(credential_id)
        if cred is None or new_count <= cred.sign_count:
            return False
        cred.sign_count = new_count
        cred.last_used_at = last_used_at or _utc_now()
        return True

    async def delete_for_user(self, user_id: str, device_id: str) -> bool:
        cred = self._by_id.get(device_id)
        if cred is None or cred.user_id != user_id:
            return False
        del self._by_id[device_id]
        return True


class DatabaseWebAuthnCredentialRepository:
    """Database-backed credential store."""

    def __init__(self, engine: Any) -> None:
        self._engine = engine

    async def create(self, credential: WebAuthnCredential) -> WebAuthnCredential:
        from sqlalchemy.exc import IntegrityError
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            session.add(credential)
            try:
                await session.commit()
            except IntegrityError as exc:
                msg = "Credential already registered"
                raise ValueError(msg) from exc
            await session.refresh(credential)
            logger.info("webauthn_credential_created", user_id=credential.user_id)
            return credential

    async def get_by_credential_id(self, credential_id: bytes) -> WebAuthnCredential | None:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = select(WebAuthnCredential).where(
                col(WebAuthnCredential.credential_id) == credential_id
            )
            result = await session.execute(stmt)
            return result.scalars().first()

    async def list_for_user(self, user_id: str) -> list[WebAuthnCredential]:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = (
                select(WebAuthnCredential)
                .where(col(WebAuthnCredential.user_id) == user_id)
                .order_by(col(WebAuthnCredential.created_at).desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_sign_count(
        self,
        credential_id: bytes,
        new_count: int,
        last_used_at: datetime | None = None,
    ) -> bool:
        """Compare-and-set the counter; concurrent or replayed counters lose."""
        from sqlalchemy import update
        from sqlmodel import col
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = (
                update(WebAuthnCredential)
                .where(
                    col(WebAuthnCredential.credential_id) == credential_id,
                    col(WebAuthnCredential.sign_count) < new_count,
                )
                .values(sign_count=new_count, last_used_at=last_used_at or _utc_now())
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def delete_for_user(self, user_id: str, device_id: str) -> bool:
        from sqlmodel import col, select
        from sqlmodel.ext.asyncio.session import AsyncSession

        async with AsyncSession(self._engine) as session:
            stmt = select(WebAuthnCredential).where(
                col(WebAuthnCredential.id) == device_id,
                col(WebAuthnCredential.user_id) == user_id,
            )
            result = await session.execute(stmt)
            cred = result.scalars().first()
            if not cred:
                return False
            await session.delete(cred)
            await session.commit()
            return True
