"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vaultgate.config.logging import setup_logging
from vaultgate.config.settings import get_settings
from vaultgate.exceptions import AuthFlowError, ConfigError
from vaultgate.web.dependencies import bootstrap_admin, build_services
from vaultgate.web.health import check_health
from vaultgate.web.middleware import RateLimitMiddleware, RequestIDMiddleware
from vaultgate.web.routes.auth import router as auth_router
from vaultgate.web.routes.webauthn import router as webauthn_router

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from vaultgate.config.settings import Settings

logger = structlog.get_logger(__name__)


def create_app(settings: Settings | None = None, engine: AsyncEngine | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)
    services = build_services(settings, engine=engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services.engine is not None:
            from vaultgate.storage.database import init_db

            await init_db(services.engine)
        await bootstrap_admin(services)
        yield

    app = FastAPI(
        title="VaultGate",
        description="Admin sign-in: password, biometric and vault PIN",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(AuthFlowError)
    async def auth_flow_error_handler(request: Request, exc: AuthFlowError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code, **exc.extras()},
        )

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
        logger.error("security_misconfigured", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Security system misconfigured", "code": "misconfigured"},
        )

    # Middleware (order matters: last added runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        trust_proxy_headers=settings.trust_proxy_headers,
    )
    app.add_middleware(RequestIDMiddleware)

    app.include_router(auth_router)
    app.include_router(webauthn_router)

    # Health check (public)
    @app.get("/api/health")
    async def health_check() -> dict[str, object]:
        return await check_health(services)

    logger.info("app_created", rp_id=settings.rp_id)
    return app
