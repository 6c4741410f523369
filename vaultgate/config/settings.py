"""Application settings via Pydantic BaseSettings."""

from __future__ import annotations

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Database
    database_url: str = "sqlite+aiosqlite:///./vaultgate.db"
    use_database: bool = False  # Set True in production to use database-backed repos

    # App
    secret_key: str = "change-me-in-production"
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: list[str] = ["http://localhost:8000"]

    # Relying party
    rp_id: str = "localhost"
    rp_name: str = "VaultGate Admin"
    expected_origin: str = "http://localhost:8000"
    webauthn_timeout_ms: int = 60_000

    # Biometric kill switch (overridden by the biometric_config row when present)
    biometric_enabled: bool = True
    allow_enrollment: bool = True

    # Vault PIN (bcrypt hash only, never the PIN itself)
    vault_pin_hash: str | None = None
    pin_max_attempts: int = 3
    pin_lockout_seconds: int = 300
    pin_attempt_window_seconds: int = 600

    # Lifetimes
    challenge_ttl_seconds: int = 300
    login_flow_ttl_seconds: int = 600
    session_max_age: int = 7200

    # Rate limiting for /api/auth/ and /api/webauthn/
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60
    # Read cf-connecting-ip / x-forwarded-for only behind a proxy that sets them
    trust_proxy_headers: bool = False

    # Bootstrap admin (created at startup when both are set)
    admin_email: str | None = None
    admin_password: str | None = None
    admin_name: str = "Administrator"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    settings = Settings()
    if settings.secret_key == "change-me-in-production":  # nosec B105
        warnings.warn(
            "SECRET_KEY is using the insecure default. "
            "Set SECRET_KEY environment variable for production.",
            UserWarning,
            stacklevel=2,
        )
    if settings.pin_max_attempts < 1:
        msg = "PIN_MAX_ATTEMPTS must be at least 1"
        raise ValueError(msg)
    return settings
