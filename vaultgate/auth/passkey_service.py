"""WebAuthn ceremony engine: registration (enrollment) and assertion."""

from __future__ import annotations

import json
import secrets
from typing import TYPE_CHECKING, Any

import structlog
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    bytes_to_base64url,
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from vaultgate.auth.challenge_store import InMemoryChallengeStore
from vaultgate.exceptions import AssertionVerificationError, EnrollmentError, NoCredentialsError
from vaultgate.models.database import WebAuthnCredential, _utc_now
from vaultgate.types import CeremonyKind

if TYPE_CHECKING:
    from vaultgate.models.database import AdminUser
    from vaultgate.storage.repositories.users import DatabaseUserRepository
    from vaultgate.storage.repositories.webauthn import DatabaseWebAuthnCredentialRepository

logger = structlog.get_logger(__name__)

# ES256 and RS256, the algorithms platform authenticators actually use
SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

# Failures raised while parsing or verifying a client response
_CEREMONY_FAILURES = (WebAuthnException, ValueError, TypeError, KeyError)

_MAX_DEVICE_NAME = 64


class PasskeyService:
    """Orchestrates WebAuthn registration and authentication ceremonies.

    Each ceremony is options -> client ceremony -> verification. The
    challenge issued with the options is bound to the user and ceremony kind
    and is consumed by the first verification attempt, successful or not.
    """

    def __init__(
        self,
        credential_repo: DatabaseWebAuthnCredentialRepository,
        user_repo: DatabaseUserRepository,
        rp_id: str,
        rp_name: str,
        origin: str,
        timeout_ms: int = 60_000,
        challenges: InMemoryChallengeStore | None = None,
    ) -> None:
        self._credential_repo = credential_repo
        self._user_repo = user_repo
        self._rp_id = rp_id
        self._rp_name = rp_name
        self._origin = origin
        self._timeout_ms = timeout_ms
        self._challenges = challenges or InMemoryChallengeStore()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def begin_registration(self, user: AdminUser) -> dict[str, Any]:
        """Generate registration options for a user.

        Returns a JSON-serializable dict of PublicKeyCredentialCreationOptions
        plus a ``challenge_key`` for the client to echo back.
        """
        existing = await self._credential_repo.list_for_user(user.id)
        exclude_credentials = [
            PublicKeyCredentialDescriptor(id=c.credential_id, transports=_parse_transports(c.transports))
            for c in existing
        ]

        options = generate_registration_options(
            rp_id=self._rp_id,
            rp_name=self._rp_name,
            user_id=user.webauthn_user_handle,
            user_name=user.email,
            user_display_name=user.name or user.email,
            timeout=self._timeout_ms,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.DISCOURAGED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=exclude_credentials,
            supported_pub_key_algs=SUPPORTED_ALGORITHMS,
        )

        challenge_key = self._issue_challenge(options.challenge, user.id, CeremonyKind.REGISTRATION)
        logger.info("passkey_registration_started", user_id=user.id, excluded=len(existing))
        return {
            "options": json.loads(options_to_json(options)),
            "challenge_key": challenge_key,
        }

    async def complete_registration(
        self,
        user: AdminUser,
        credential: dict[str, Any] | str,
        challenge_key: str,
        device_name: str = "",
    ) -> WebAuthnCredential:
        """Verify attestation and persist the new credential."""
        entry = self._challenges.pop(challenge_key)
        if entry is None or not entry.matches(user.id, CeremonyKind.REGISTRATION):
            logger.warning("passkey_registration_challenge_invalid", user_id=user.id)
            msg = "Challenge expired or already used"
            raise EnrollmentError(msg)

        try:
            parsed = parse_registration_credential_json(credential)
            verified = verify_registration_response(
                credential=parsed,
                expected_challenge=entry.challenge,
                expected_rp_id=self._rp_id,
                expected_origin=self._origin,
                require_user_verification=True,
                supported_pub_key_algs=SUPPORTED_ALGORITHMS,
            )
        except _CEREMONY_FAILURES as exc:
            logger.warning("passkey_registration_rejected", user_id=user.id, error=str(exc))
            raise EnrollmentError from exc

        transports = [t.value for t in (parsed.response.transports or [])] or ["internal"]
        attachment = parsed.authenticator_attachment
        stored = WebAuthnCredential(
            user_id=user.id,
            credential_id=verified.credential_id,
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            device_name=(device_name.strip() or "Biometric Device")[:_MAX_DEVICE_NAME],
            device_type=attachment.value if attachment else "platform",
            transports=json.dumps(transports),
            aaguid=str(verified.aaguid or ""),
            backed_up=bool(verified.credential_backed_up),
        )

        try:
            await self._credential_repo.create(stored)
        except ValueError as exc:
            logger.warning("passkey_registration_duplicate", user_id=user.id)
            msg = "This authenticator is already enrolled"
            raise EnrollmentError(msg) from exc

        await self._user_repo.set_biometric_enabled(user.id, True)
        logger.info("passkey_registered", user_id=user.id, device_name=stored.device_name)
        return stored

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def begin_authentication(self, user: AdminUser) -> dict[str, Any]:
        """Generate authentication options scoped to the user's credentials."""
        creds = await self._credential_repo.list_for_user(user.id)
        if not creds:
            logger.info("passkey_authentication_no_credentials", user_id=user.id)
            raise NoCredentialsError

        options = generate_authentication_options(
            rp_id=self._rp_id,
            timeout=self._timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(
                    id=c.credential_id,
                    transports=_parse_transports(c.transports) or [AuthenticatorTransport.INTERNAL],
                )
                for c in creds
            ],
            user_verification=UserVerificationRequirement.REQUIRED,
        )

        challenge_key = self._issue_challenge(options.challenge, user.id, CeremonyKind.AUTHENTICATION)
        return {
            "options": json.loads(options_to_json(options)),
            "challenge_key": challenge_key,
        }

    async def complete_authentication(
        self,
        user: AdminUser,
        credential: dict[str, Any] | str,
        challenge_key: str,
    ) -> WebAuthnCredential:
        """Verify an assertion and advance the stored signature counter."""
        entry = self._challenges.pop(challenge_key)
        if entry is None or not entry.matches(user.id, CeremonyKind.AUTHENTICATION):
            logger.warning("passkey_authentication_challenge_invalid", user_id=user.id)
            msg = "Challenge expired or already used"
            raise AssertionVerificationError(msg)

        try:
            parsed = parse_authentication_credential_json(credential)
        except _CEREMONY_FAILURES as exc:
            raise AssertionVerificationError from exc

        stored = await self._credential_repo.get_by_credential_id(parsed.raw_id)
        if stored is None or stored.user_id != user.id:
            logger.warning("passkey_authentication_unknown_credential", user_id=user.id)
            raise AssertionVerificationError

        try:
            verified = verify_authentication_response(
                credential=parsed,
                expected_challenge=entry.challenge,
                expected_rp_id=self._rp_id,
                expected_origin=self._origin,
                credential_public_key=stored.public_key,
                credential_current_sign_count=stored.sign_count,
                require_user_verification=True,
            )
        except _CEREMONY_FAILURES as exc:
            logger.warning("passkey_authentication_rejected", user_id=user.id, error=str(exc))
            raise AssertionVerificationError from exc

        # Strictly increasing; a counter that did not move means replay or a cloned key
        advanced = await self._credential_repo.update_sign_count(
            credential_id=stored.credential_id,
            new_count=verified.new_sign_count,
            last_used_at=_utc_now(),
        )
        if not advanced:
            logger.warning(
                "passkey_sign_count_not_increasing",
                user_id=user.id,
                stored=stored.sign_count,
                received=verified.new_sign_count,
            )
            msg = "Signature counter did not increase"
            raise AssertionVerificationError(msg)

        stored.sign_count = verified.new_sign_count
        if not user.biometric_enabled:
            await self._user_repo.set_biometric_enabled(user.id, True)
            user.biometric_enabled = True
        logger.info("passkey_authenticated", user_id=user.id)
        return stored

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def is_enrolled(self, user: AdminUser) -> bool:
        """A user is enrolled when at least one credential is stored.

        ``AdminUser.biometric_enabled`` only mirrors this; it is written
        separately from the credential row and may lag behind it.
        """
        return bool(await self._credential_repo.list_for_user(user.id))

    async def list_devices(self, user_id: str) -> list[WebAuthnCredential]:
        return await self._credential_repo.list_for_user(user_id)

    async def remove_device(self, user_id: str, device_id: str) -> bool:
        """Delete one credential; turning biometrics off once none remain."""
        removed = await self._credential_repo.delete_for_user(user_id, device_id)
        if removed and not await self._credential_repo.list_for_user(user_id):
            await self._user_repo.set_biometric_enabled(user_id, False)
        logger.info("passkey_device_removed", user_id=user_id, removed=removed)
        return removed

    def _issue_challenge(self, challenge: bytes, user_id: str, kind: CeremonyKind) -> str:
        self._challenges.discard_for_user(user_id, kind)
        challenge_key = secrets.token_urlsafe(16)
        self._challenges.set(challenge_key, challenge, user_id, kind)
        return challenge_key


def credential_id_to_text(credential_id: bytes) -> str:
    """Unpadded base64url form of a credential id, as used on the wire."""
    return bytes_to_base64url(credential_id)


def _parse_transports(transports_json: str) -> list[AuthenticatorTransport]:
    """Parse JSON transport strings into AuthenticatorTransport enums."""
    if not transports_json or transports_json == "[]":
        return []
    raw = json.loads(transports_json)
    result: list[AuthenticatorTransport] = []
    for t in raw:
        try:
            result.append(AuthenticatorTransport(t))
        except ValueError:
            continue
    return result
