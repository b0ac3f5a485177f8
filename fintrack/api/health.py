"""
Health endpoints: liveness (no deps) and database connectivity.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from fintrack.core.database import check_connection
from fintrack.core.logging import get_request_id, latency_bucket_ms

logger = logging.getLogger("fintrack")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    ok: bool
    db_connected: bool
    latency_ms: Optional[float] = None  # None for determinism in tests
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("", response_model=HealthResponse)
def health(now: Optional[str] = Query(None)):
    """
    Database connectivity check.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": connected,
            "latency_bucket": latency_bucket_ms(latency_ms if now is None else None),
        },
    )
    return HealthResponse(
        ok=connected,
        db_connected=connected,
        latency_ms=None if now else latency_ms,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
