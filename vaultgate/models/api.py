"""API request/response schemas for FastAPI endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Stage 1: password
# ---------------------------------------------------------------------------


class VerifyCredentialsRequest(BaseModel):
    email: str = ""
    password: str = ""


class VerifyCredentialsResponse(BaseModel):
    valid: bool
    flow_token: str
    email: str
    name: str


# ---------------------------------------------------------------------------
# Stage 2: WebAuthn
# ---------------------------------------------------------------------------


class CheckEnrollmentRequest(BaseModel):
    email: str = ""


class CheckEnrollmentResponse(BaseModel):
    enrolled: bool
    biometric_available: bool
    allow_enrollment: bool


class RegistrationOptionsRequest(BaseModel):
    flow_token: str | None = None  # omitted when enrolling from an issued session
    device_name: str = "Biometric Device"


class CeremonyOptionsResponse(BaseModel):
    options: dict[str, Any]
    challenge_key: str


class RegistrationVerifyRequest(BaseModel):
    flow_token: str | None = None
    challenge_key: str
    credential: dict[str, Any]  # PublicKeyCredential JSON (base64url fields)
    device_name: str = "Biometric Device"


class RegistrationVerifyResponse(BaseModel):
    success: bool
    credential_id: str
    device_name: str
    message: str


class AuthenticationOptionsRequest(BaseModel):
    flow_token: str


class AuthenticationVerifyRequest(BaseModel):
    flow_token: str
    challenge_key: str
    credential: dict[str, Any]


class AuthenticationVerifyResponse(BaseModel):
    success: bool
    message: str


class DeviceResponse(BaseModel):
    id: str
    device_name: str
    device_type: str
    created_at: datetime
    last_used_at: datetime | None


class RemoveDeviceRequest(BaseModel):
    credential_id: str


class BiometricConfigResponse(BaseModel):
    biometric_enabled: bool
    allow_enrollment: bool
    notes: str = ""


# ---------------------------------------------------------------------------
# Stage 3: vault PIN and session
# ---------------------------------------------------------------------------


class VerifyVaultPinRequest(BaseModel):
    flow_token: str
    pin: str = Field(default="", max_length=16)


class VerifyVaultPinResponse(BaseModel):
    valid: bool


class SessionRequest(BaseModel):
    flow_token: str
    email: str
    password: str


class SessionResponse(BaseModel):
    status: str
    email: str
    token: str
    expires_in: int
