"""
Status API routes - Health check for the entitlement service.

Public endpoint (no auth). Clients read the auto-confirm timings from here
to size their payment polling budget.
"""

import asyncio
import time
from datetime import UTC, datetime

from fastapi import APIRouter
from sqlalchemy import text

from app.config import settings
from app.db.session import get_session
from app.models.api import AutoConfirmConfig, HealthResponse
from app.observability import get_logger
from app.services.rate_limiter import get_rate_limiter

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for the database health check
CHECK_TIMEOUT = 2.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms


async def check_database() -> str:
    """Check the database: "connected", "degraded" (slow) or "disconnected"."""
    start = time.perf_counter()
    try:
        async with asyncio.timeout(CHECK_TIMEOUT):
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("health_check_database_failed", error=str(e))
        return "disconnected"

    latency_ms = int((time.perf_counter() - start) * 1000)
    return "degraded" if latency_ms > DEGRADED_LATENCY_THRESHOLD else "connected"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Service liveness plus database connectivity."""
    database = await check_database()
    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        database=database,
        timestamp=datetime.now(UTC),
        version=settings.api_version,
        auto_confirm=AutoConfirmConfig(
            enabled=settings.pix_auto_confirm_enabled,
            interval_ms=settings.pix_auto_confirm_interval_ms,
            threshold_ms=settings.pix_auto_confirm_threshold_ms,
        ),
        rate_limit_backend=get_rate_limiter().backend_name,
    )
