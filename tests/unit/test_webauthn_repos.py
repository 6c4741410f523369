"""Unit tests for the user, credential and configuration repositories."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import DateTime

from vaultgate.auth.passwords import verify_secret
from vaultgate.models.database import AdminUser, VaultPinState, WebAuthnCredential
from vaultgate.storage.repositories.biometric_config import (
    DatabaseBiometricConfigRepository,
    InMemoryBiometricConfigRepository,
)
from vaultgate.storage.repositories.users import DatabaseUserRepository, InMemoryUserRepository
from vaultgate.storage.repositories.webauthn import (
    DatabaseWebAuthnCredentialRepository,
    InMemoryWebAuthnCredentialRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture(params=["memory", "database"])
def repos(request, async_engine: AsyncEngine):
    """Run each test against both repository implementations."""
    if request.param == "memory":
        return InMemoryUserRepository(), InMemoryWebAuthnCredentialRepository()
    return DatabaseUserRepository(async_engine), DatabaseWebAuthnCredentialRepository(async_engine)


def _cred(user_id: str, credential_id: bytes, sign_count: int = 0) -> WebAuthnCredential:
    return WebAuthnCredential(
        user_id=user_id,
        credential_id=credential_id,
        public_key=b"pub-key",
        sign_count=sign_count,
    )


@pytest.mark.unit
class TestTimestampColumns:
    @pytest.mark.parametrize(
        "column",
        [
            AdminUser.__table__.c.locked_until,
            AdminUser.__table__.c.created_at,
            WebAuthnCredential.__table__.c.last_used_at,
            VaultPinState.__table__.c.locked_until,
        ],
    )
    def test_stored_naive(self, column) -> None:
        assert type(column.type) is DateTime
        assert column.type.timezone is False

    async def test_round_trip_through_database(self, async_engine: AsyncEngine) -> None:
        users = DatabaseUserRepository(async_engine)
        creds = DatabaseWebAuthnCredentialRepository(async_engine)
        user = await users.create(email="a@example.com", password="pw")
        await creds.create(_cred(user.id, b"c"))
        await users.record_login(user.id, "203.0.113.9")
        assert await creds.update_sign_count(b"c", 1) is True

        found = await creds.get_by_credential_id(b"c")
        reloaded = await users.get_by_id(user.id)
        assert found.last_used_at.tzinfo is None
        assert reloaded.last_login_at.tzinfo is None


@pytest.mark.unit
class TestUserRepository:
    async def test_create_hashes_password_and_lowercases_email(self, repos) -> None:
        users, _ = repos
        user = await users.create(email="Cred-Test@Example.com", password="pw-123456")
        assert user.email == "cred-test@example.com"
        assert user.password_hash != "pw-123456"
        assert verify_secret("pw-123456", user.password_hash)
        assert user.biometric_enabled is False

    async def test_get_by_email_and_id(self, repos) -> None:
        users, _ = repos
        user = await users.create(email="a@example.com", password="pw")
        by_email = await users.get_by_email("A@EXAMPLE.COM")
        by_id = await users.get_by_id(user.id)
        assert by_email is not None and by_email.id == user.id
        assert by_id is not None and by_id.email == "a@example.com"

    async def test_missing_user(self, repos) -> None:
        users, _ = repos
        assert await users.get_by_email("nobody@example.com") is None
        assert await users.get_by_id("missing") is None

    async def test_set_biometric_enabled(self, repos) -> None:
        users, _ = repos
        user = await users.create(email="a@example.com", password="pw")
        await users.set_biometric_enabled(user.id, True)
        reloaded = await users.get_by_id(user.id)
        assert reloaded is not None
        assert reloaded.biometric_enabled is True

    async def test_record_login(self, repos) -> None:
        users, _ = repos
        user = await users.create(email="a@example.com", password="pw")
        await users.record_login(user.id, "203.0.113.9")
        reloaded = await users.get_by_id(user.id)
        assert reloaded is not None
        assert reloaded.last_login_ip == "203.0.113.9"
        assert reloaded.last_login_at is not None


@pytest.mark.unit
class TestWebAuthnCredentialRepository:
    async def test_create_and_get(self, repos) -> None:
        users, creds = repos
        user = await users.create(email="a@example.com", password="pw")
        await creds.create(_cred(user.id, b"cred-id-123"))
        found = await creds.get_by_credential_id(b"cred-id-123")
        assert found is not None
        assert found.user_id == user.id
        assert found.public_key == b"pub-key"

    async def test_get_missing(self, repos) -> None:
        _, creds = repos
        assert await creds.get_by_credential_id(b"nonexistent") is None

    async def test_duplicate_credential_id_rejected(self, repos) -> None:
        users, creds = repos
        user = await users.create(email="a@example.com", password="pw")
        await creds.create(_cred(user.id, b"same"))
        with pytest.raises(ValueError, match="already registered"):
            await creds.create(_cred(user.id, b"same"))

    async def test_list_for_user(self, repos) -> None:
        users, creds = repos
        alice = await users.create(email="alice@example.com", password="pw")
        bob = await users.create(email="bob@example.com", password="pw")
        await creds.create(_cred(alice.id, b"a1"))
        await creds.create(_cred(alice.id, b"a2"))
        await creds.create(_cred(bob.id, b"b1"))
        assert {c.credential_id for c in await creds.list_for_user(alice.id)} == {b"a1", b"a2"}
        assert len(await creds.list_for_user(bob.id)) == 1

    async def test_update_sign_count_is_strictly_increasing(self, repos) -> None:
        users, creds = repos
        user = await users.create(email="a@example.com", password="pw")
        await creds.create(_cred(user.id, b"c", sign_count=5))

        assert await creds.update_sign_count(b"c", 6) is True
        assert await creds.update_sign_count(b"c", 6) is False
        assert await creds.update_sign_count(b"c", 3) is False

        found = await creds.get_by_credential_id(b"c")
        assert found is not None
        assert found.sign_count == 6
        assert found.last_used_at is not None

    async def test_update_sign_count_unknown_credential(self, repos) -> None:
        _, creds = repos
        assert await creds.update_sign_count(b"missing", 1) is False

    async def test_delete_only_own_device(self, repos) -> None:
        users, creds = repos
        alice = await users.create(email="alice@example.com", password="pw")
        bob = await users.create(email="bob@example.com", password="pw")
        cred = await creds.create(_cred(alice.id, b"a1"))

        assert await creds.delete_for_user(bob.id, cred.id) is False
        assert await creds.delete_for_user(alice.id, cred.id) is True
        assert await creds.get_by_credential_id(b"a1") is None


@pytest.mark.unit
class TestBiometricConfigRepository:
    async def test_in_memory_defaults_to_none(self) -> None:
        repo = InMemoryBiometricConfigRepository()
        assert await repo.get() is None
        await repo.set(biometric_enabled=False, allow_enrollment=False, notes="maintenance")
        config = await repo.get()
        assert config is not None
        assert config.biometric_enabled is False
        assert config.notes == "maintenance"

    async def test_database_upsert(self, async_engine: AsyncEngine) -> None:
        repo = DatabaseBiometricConfigRepository(async_engine)
        assert await repo.get() is None
        await repo.set(biometric_enabled=True, allow_enrollment=False)
        await repo.set(biometric_enabled=True, allow_enrollment=True, notes="reopened")
        config = await repo.get()
        assert config is not None
        assert config.allow_enrollment is True
        assert config.notes == "reopened"
