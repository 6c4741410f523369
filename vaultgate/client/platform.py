"""Platform authenticators: the browser/OS side of a WebAuthn ceremony.

``SoftwareAuthenticator`` is a minimal ES256 authenticator used by the CLI and
the end-to-end tests. It behaves like a platform authenticator:

- private keys never leave the object; only the COSE public key is returned
- RP ID binding: it refuses to act for an RP ID the origin does not belong to
- ``excludeCredentials`` is honoured, so the same device cannot enroll twice
- a monotonic sign counter per credential (replay / clone detection)

Keys can be written to a JSON file with ``save`` and read back with ``load``,
so a CLI device stays enrolled between runs. The file holds unencrypted
private keys and is created with owner-only permissions.
"""

from __future__ import annotations

import hashlib
import json
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import cbor2
import structlog
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from vaultgate.exceptions import AssertionVerificationError, CeremonyCancelledError, EnrollmentError

logger = structlog.get_logger(__name__)

# authData flags
FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40

_COSE_KTY_EC2 = 2
_COSE_ALG_ES256 = -7
_COSE_CRV_P256 = 1


class PlatformAuthenticator(Protocol):
    """What a WebAuthn-capable client platform offers the ceremony runner."""

    def is_available(self) -> bool: ...

    async def create(self, options: dict[str, Any]) -> dict[str, Any]: ...

    async def get(self, options: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class _StoredKey:
    private_key: ec.EllipticCurvePrivateKey
    rp_id: str
    user_handle: bytes
    sign_count: int = 0


class SoftwareAuthenticator:
    """In-process ES256 platform authenticator with "none" attestation."""

    def __init__(self, origin: str, *, available: bool = True) -> None:
        self._origin = origin
        self._host = urlparse(origin).hostname or ""
        self._available = available
        self._keys: dict[bytes, _StoredKey] = {}
        self._declined = 0

    def is_available(self) -> bool:
        return self._available

    def decline_next_prompt(self, times: int = 1) -> None:
        """Make the next prompt(s) behave as if the user dismissed them."""
        self._declined += times

    @property
    def credential_ids(self) -> list[bytes]:
        return list(self._keys)

    def sign_count(self, credential_id: bytes) -> int:
        return self._keys[credential_id].sign_count

    # ------------------------------------------------------------------
    # navigator.credentials.create()
    # ------------------------------------------------------------------

    async def create(self, options: dict[str, Any]) -> dict[str, Any]:
        """Run a registration ceremony against PublicKeyCredentialCreationOptions JSON."""
        self._prompt()
        rp_id = options.get("rp", {}).get("id") or self._host
        if not self._rp_id_allowed(rp_id):
            msg = f"RP ID {rp_id!r} is not valid for origin {self._origin}"
            raise EnrollmentError(msg)

        algs = {p.get("alg") for p in options.get("pubKeyCredParams", [])}
        if algs and _COSE_ALG_ES256 not in algs:
            msg = "No supported algorithm offered"
            raise EnrollmentError(msg)

        for descriptor in options.get("excludeCredentials", []):
            if base64url_to_bytes(descriptor["id"]) in self._keys:
                msg = "This authenticator is already registered"
                raise EnrollmentError(msg)

        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = os.urandom(32)
        user_handle = base64url_to_bytes(options["user"]["id"])
        self._keys[credential_id] = _StoredKey(private_key, rp_id, user_handle)

        numbers = private_key.public_key().public_numbers()
        cose_key = cbor2.dumps(
            {
                1: _COSE_KTY_EC2,
                3: _COSE_ALG_ES256,
                -1: _COSE_CRV_P256,
                -2: numbers.x.to_bytes(32, "big"),
                -3: numbers.y.to_bytes(32, "big"),
            }
        )
        attested = bytes(16) + struct.pack(">H", len(credential_id)) + credential_id + cose_key
        auth_data = _auth_data(rp_id, FLAG_UP | FLAG_UV | FLAG_AT, 0) + attested
        attestation_object = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})

        encoded_id = bytes_to_base64url(credential_id)
        logger.info("platform_credential_created", rp_id=rp_id)
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(
                    self._client_data("webauthn.create", options["challenge"])
                ),
                "attestationObject": bytes_to_base64url(attestation_object),
                "transports": ["internal"],
            },
            "clientExtensionResults": {},
            "authenticatorAttachment": "platform",
        }

    # ------------------------------------------------------------------
    # navigator.credentials.get()
    # ------------------------------------------------------------------

    async def get(self, options: dict[str, Any]) -> dict[str, Any]:
        """Run an assertion ceremony against PublicKeyCredentialRequestOptions JSON."""
        self._prompt()
        rp_id = options.get("rpId") or self._host
        if not self._rp_id_allowed(rp_id):
            msg = f"RP ID {rp_id!r} is not valid for origin {self._origin}"
            raise AssertionVerificationError(msg)

        allowed = [base64url_to_bytes(d["id"]) for d in options.get("allowCredentials", [])]
        candidates = [
            cid
            for cid, key in self._keys.items()
            if key.rp_id == rp_id and (not allowed or cid in allowed)
        ]
        if not candidates:
            # Browsers report "no matching credential" the same way as a dismissed prompt
            raise CeremonyCancelledError("No matching credential on this device")

        credential_id = candidates[0]
        key = self._keys[credential_id]
        key.sign_count += 1

        auth_data = _auth_data(rp_id, FLAG_UP | FLAG_UV, key.sign_count)
        client_data = self._client_data("webauthn.get", options["challenge"])
        signature = key.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256())
        )

        encoded_id = bytes_to_base64url(credential_id)
        return {
            "id": encoded_id,
            "rawId": encoded_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "authenticatorData": bytes_to_base64url(auth_data),
                "signature": bytes_to_base64url(signature),
                "userHandle": bytes_to_base64url(key.user_handle),
            },
            "clientExtensionResults": {},
            "authenticatorAttachment": "platform",
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> None:
        """Write every key, its RP ID, user handle and counter to ``path``."""
        entries = [
            {
                "credential_id": bytes_to_base64url(credential_id),
                "private_key": key.private_key.private_bytes(
                    serialization.Encoding.PEM,
                    serialization.PrivateFormat.PKCS8,
                    serialization.NoEncryption(),
                ).decode("ascii"),
                "rp_id": key.rp_id,
                "user_handle": bytes_to_base64url(key.user_handle),
                "sign_count": key.sign_count,
            }
            for credential_id, key in self._keys.items()
        ]
        path = Path(path)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"credentials": entries}, f, indent=2, sort_keys=True)
        logger.debug("platform_keys_saved", path=str(path), count=len(entries))

    @classmethod
    def load(
        cls, path: str | Path, origin: str, *, available: bool = True
    ) -> SoftwareAuthenticator:
        """Build an authenticator from a file written by ``save``.

        A missing file gives an empty authenticator.
        """
        authenticator = cls(origin, available=available)
        path = Path(path)
        if not path.exists():
            return authenticator

        with path.open(encoding="utf-8") as f:
            data = json.load(f)
        for entry in data.get("credentials", []):
            private_key = serialization.load_pem_private_key(
                entry["private_key"].encode("ascii"), password=None
            )
            if not isinstance(private_key, ec.EllipticCurvePrivateKey):
                msg = f"Unsupported key type in {path}"
                raise ValueError(msg)
            authenticator._keys[base64url_to_bytes(entry["credential_id"])] = _StoredKey(
                private_key,
                entry["rp_id"],
                base64url_to_bytes(entry["user_handle"]),
                int(entry.get("sign_count", 0)),
            )
        logger.debug("platform_keys_loaded", path=str(path), count=len(authenticator._keys))
        return authenticator

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prompt(self) -> None:
        if not self._available:
            msg = "No platform authenticator on this device"
            raise CeremonyCancelledError(msg)
        if self._declined:
            self._declined -= 1
            raise CeremonyCancelledError

    def _rp_id_allowed(self, rp_id: str) -> bool:
        return self._host == rp_id or self._host.endswith("." + rp_id)

    def _client_data(self, ceremony_type: str, challenge: str) -> bytes:
        return json.dumps(
            {
                "type": ceremony_type,
                "challenge": challenge,
                "origin": self._origin,
                "crossOrigin": False,
            },
            separators=(",", ":"),
        ).encode("utf-8")


def _auth_data(rp_id: str, flags: int, sign_count: int) -> bytes:
    """rpIdHash || flags || signCount, the fixed 37-byte authenticator data prefix."""
    rp_id_hash = hashlib.sha256(rp_id.encode("utf-8")).digest()
    return rp_id_hash + bytes([flags]) + struct.pack(">I", sign_count)
