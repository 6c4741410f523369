"""Health check endpoint logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from vaultgate.web.dependencies import Services

logger = structlog.get_logger(__name__)


async def check_health(services: Services) -> dict[str, object]:
    """Return application health status with DB probe."""
    result: dict[str, object] = {
        "status": "healthy",
        "version": "0.1.0",
        "database": "disabled",
    }
    if services.engine is None:
        return result

    result["database"] = "connected"
    try:
        from sqlalchemy import text

        async with services.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_check_db_failed", error=str(exc))
        result["database"] = "unavailable"
        result["status"] = "degraded"

    return result
