"""Unit tests for PasskeyService, driven by the software platform authenticator."""

from __future__ import annotations

import pytest
from webauthn.helpers import base64url_to_bytes

from vaultgate.auth.challenge_store import InMemoryChallengeStore
from vaultgate.auth.passkey_service import PasskeyService
from vaultgate.client.platform import SoftwareAuthenticator
from vaultgate.exceptions import AssertionVerificationError, EnrollmentError, NoCredentialsError
from vaultgate.storage.repositories.users import InMemoryUserRepository
from vaultgate.storage.repositories.webauthn import InMemoryWebAuthnCredentialRepository

ORIGIN = "http://localhost:8000"


@pytest.fixture()
async def env():
    """Service, repositories, an admin user and a platform authenticator."""
    users = InMemoryUserRepository()
    creds = InMemoryWebAuthnCredentialRepository()
    service = PasskeyService(
        credential_repo=creds,
        user_repo=users,
        rp_id="localhost",
        rp_name="TestApp",
        origin=ORIGIN,
        challenges=InMemoryChallengeStore(),
    )
    user = await users.create(email="test@example.com", password="pw", name="Test")
    return service, creds, users, user, SoftwareAuthenticator(ORIGIN)


async def _enroll(service, user, authenticator, device_name="Laptop"):
    begun = await service.begin_registration(user)
    credential = await authenticator.create(begun["options"])
    return await service.complete_registration(
        user, credential, begun["challenge_key"], device_name
    )


async def _assert(service, user, authenticator):
    begun = await service.begin_authentication(user)
    credential = await authenticator.get(begun["options"])
    return await service.complete_authentication(user, credential, begun["challenge_key"])


@pytest.mark.unit
class TestPasskeyServiceRegistration:
    async def test_begin_registration_returns_options(self, env) -> None:
        service, _, _, user, _ = env
        result = await service.begin_registration(user)
        options = result["options"]
        assert result["challenge_key"]
        assert options["rp"]["id"] == "localhost"
        assert options["user"]["name"] == "test@example.com"
        assert base64url_to_bytes(options["user"]["id"]) == user.id.encode()
        assert options["authenticatorSelection"]["userVerification"] == "required"
        assert options["authenticatorSelection"]["authenticatorAttachment"] == "platform"
        assert {p["alg"] for p in options["pubKeyCredParams"]} == {-7, -257}
        assert options.get("excludeCredentials", []) == []

    async def test_complete_registration_persists_credential(self, env) -> None:
        service, creds, users, user, authenticator = env
        stored = await _enroll(service, user, authenticator)

        assert stored.device_name == "Laptop"
        assert stored.sign_count == 0
        assert stored.credential_id == authenticator.credential_ids[0]
        assert stored.device_type == "platform"
        assert [c.id for c in await creds.list_for_user(user.id)] == [stored.id]

        reloaded = await users.get_by_id(user.id)
        assert reloaded is not None
        assert reloaded.biometric_enabled is True

    async def test_begin_registration_excludes_existing_credentials(self, env) -> None:
        service, _, _, user, authenticator = env
        await _enroll(service, user, authenticator)

        result = await service.begin_registration(user)
        excluded = result["options"]["excludeCredentials"]
        assert len(excluded) == 1
        assert base64url_to_bytes(excluded[0]["id"]) == authenticator.credential_ids[0]

        # The same device refuses to enroll a second time
        with pytest.raises(EnrollmentError):
            await authenticator.create(result["options"])

    async def test_complete_registration_unknown_challenge(self, env) -> None:
        service, _, _, user, _ = env
        with pytest.raises(EnrollmentError, match="Challenge expired"):
            await service.complete_registration(user, {}, "nonexistent-key")

    async def test_challenge_is_single_use(self, env) -> None:
        service, _, _, user, authenticator = env
        begun = await service.begin_registration(user)
        credential = await authenticator.create(begun["options"])
        tampered = {**credential, "response": {**credential["response"], "clientDataJSON": "e30"}}

        with pytest.raises(EnrollmentError):
            await service.complete_registration(user, tampered, begun["challenge_key"])
        # The failed attempt consumed the challenge; the genuine response cannot reuse it
        with pytest.raises(EnrollmentError):
            await service.complete_registration(user, credential, begun["challenge_key"])

    async def test_restarted_ceremony_supersedes_old_challenge(self, env) -> None:
        service, _, _, user, authenticator = env
        first = await service.begin_registration(user)
        await service.begin_registration(user)
        credential = await authenticator.create(first["options"])
        with pytest.raises(EnrollmentError):
            await service.complete_registration(user, credential, first["challenge_key"])

    async def test_challenge_bound_to_user(self, env) -> None:
        service, _, users, user, authenticator = env
        other = await users.create(email="other@example.com", password="pw")
        begun = await service.begin_registration(user)
        credential = await authenticator.create(begun["options"])
        with pytest.raises(EnrollmentError):
            await service.complete_registration(other, credential, begun["challenge_key"])

    async def test_wrong_origin_rejected(self, env) -> None:
        service, _, _, user, _ = env
        phishing = SoftwareAuthenticator("http://login.localhost:8000")
        begun = await service.begin_registration(user)
        credential = await phishing.create(begun["options"])
        with pytest.raises(EnrollmentError):
            await service.complete_registration(user, credential, begun["challenge_key"])


@pytest.mark.unit
class TestPasskeyServiceAuthentication:
    async def test_no_credentials_fails_fast(self, env) -> None:
        service, _, _, user, _ = env
        with pytest.raises(NoCredentialsError):
            await service.begin_authentication(user)

    async def test_begin_authentication_lists_allowed_credentials(self, env) -> None:
        service, _, _, user, authenticator = env
        await _enroll(service, user, authenticator)
        result = await service.begin_authentication(user)
        allowed = result["options"]["allowCredentials"]
        assert len(allowed) == 1
        assert allowed[0]["transports"] == ["internal"]
        assert result["options"]["userVerification"] == "required"

    async def test_full_assertion_advances_counter(self, env) -> None:
        service, creds, _, user, authenticator = env
        await _enroll(service, user, authenticator)

        first = await _assert(service, user, authenticator)
        second = await _assert(service, user, authenticator)
        assert first is not second
        assert first.sign_count == 1
        assert second.sign_count == 2

        stored = await creds.get_by_credential_id(authenticator.credential_ids[0])
        assert stored is not None
        assert stored.sign_count == 2
        assert stored.last_used_at is not None

    async def test_device_reloaded_from_file_still_verifies(self, env, tmp_path) -> None:
        service, _, _, user, authenticator = env
        await _enroll(service, user, authenticator)
        await _assert(service, user, authenticator)
        authenticator.save(tmp_path / "device.json")

        restored = SoftwareAuthenticator.load(tmp_path / "device.json", ORIGIN)
        stored = await _assert(service, user, restored)
        assert stored.sign_count == 2

    async def test_replayed_assertion_fails(self, env) -> None:
        service, _, _, user, authenticator = env
        await _enroll(service, user, authenticator)
        begun = await service.begin_authentication(user)
        credential = await authenticator.get(begun["options"])
        await service.complete_authentication(user, credential, begun["challenge_key"])

        fresh = await service.begin_authentication(user)
        with pytest.raises(AssertionVerificationError):
            await service.complete_authentication(user, credential, fresh["challenge_key"])

    async def test_non_increasing_counter_fails(self, env) -> None:
        service, _, _, user, authenticator = env
        await _enroll(service, user, authenticator)
        await _assert(service, user, authenticator)

        # A cloned key replays an old counter value
        authenticator._keys[authenticator.credential_ids[0]].sign_count = 0
        with pytest.raises(AssertionVerificationError):
            await _assert(service, user, authenticator)

    async def test_registration_challenge_cannot_authenticate(self, env) -> None:
        service, _, _, user, authenticator = env
        await _enroll(service, user, authenticator)
        reg = await service.begin_registration(user)
        auth = await service.begin_authentication(user)
        credential = await authenticator.get(auth["options"])
        with pytest.raises(AssertionVerificationError):
            await service.complete_authentication(user, credential, reg["challenge_key"])

    async def test_credential_of_another_user_rejected(self, env) -> None:
        service, _, users, user, authenticator = env
        other = await users.create(email="other@example.com", password="pw")
        await _enroll(service, other, authenticator)
        other_device = SoftwareAuthenticator(ORIGIN)
        await _enroll(service, user, other_device)

        begun = await service.begin_authentication(user)
        # Answer the user's challenge with the other account's key
        options = {**begun["options"], "allowCredentials": []}
        credential = await authenticator.get(options)
        with pytest.raises(AssertionVerificationError):
            await service.complete_authentication(user, credential, begun["challenge_key"])


@pytest.mark.unit
class TestPasskeyServiceDevices:
    async def test_is_enrolled(self, env) -> None:
        service, _, users, user, authenticator = env
        assert await service.is_enrolled(user) is False
        await _enroll(service, user, authenticator)
        reloaded = await users.get_by_id(user.id)
        assert await service.is_enrolled(reloaded) is True

    async def test_credential_counts_even_when_flag_lags(self, env) -> None:
        service, _, users, user, authenticator = env
        await _enroll(service, user, authenticator)
        await users.set_biometric_enabled(user.id, False)
        reloaded = await users.get_by_id(user.id)
        assert await service.is_enrolled(reloaded) is True

        await _assert(service, reloaded, authenticator)
        repaired = await users.get_by_id(user.id)
        assert repaired.biometric_enabled is True

    async def test_removing_last_device_disables_biometrics(self, env) -> None:
        service, _, users, user, authenticator = env
        stored = await _enroll(service, user, authenticator)

        assert await service.remove_device(user.id, stored.id) is True
        assert await service.list_devices(user.id) == []
        reloaded = await users.get_by_id(user.id)
        assert reloaded is not None
        assert reloaded.biometric_enabled is False

    async def test_remove_unknown_device(self, env) -> None:
        service, _, _, user, _ = env
        assert await service.remove_device(user.id, "missing") is False
