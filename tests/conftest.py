"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from vaultgate.auth.passwords import hash_secret
from vaultgate.config.settings import Settings
from vaultgate.web.app import create_app

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "correct horse battery"
VAULT_PIN = "482"
ORIGIN = "http://localhost:8000"


class FakeClock:
    """Settable naive-UTC clock for lockout tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def pin_hash() -> str:
    return hash_secret(VAULT_PIN, rounds=4)


@pytest.fixture()
def settings(pin_hash: str) -> Settings:
    """Test settings: in-memory repositories, permissive rate limit, plain-HTTP cookies."""
    return Settings(
        _env_file=None,
        secret_key="test-secret",
        debug=True,
        rp_id="localhost",
        expected_origin=ORIGIN,
        vault_pin_hash=pin_hash,
        rate_limit_requests=1000,
    )


@pytest.fixture()
def app(settings: Settings):
    """Create a fresh app instance for tests."""
    return create_app(settings)


@pytest.fixture()
async def admin(app):
    """The admin account every login test signs in as."""
    return await app.state.services.users.create(
        email=ADMIN_EMAIL, password=ADMIN_PASSWORD, name="Test Admin"
    )


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    import vaultgate.models.database  # noqa: F401

    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine
    await engine.dispose()
