"""Health and readiness endpoints."""

from importlib import metadata
from typing import Any

import anyio
import sqlalchemy as sa
from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError

from backend.core.observability.logging import logger
from backend.core.observability.metrics import get_metrics

router = APIRouter()


def get_version() -> str:
    """Installed distribution version, or "dev" when running from a checkout."""
    try:
        return metadata.version("nfce-issuer")
    except metadata.PackageNotFoundError:
        return "dev"


def _ping_database() -> str:
    from agents.nfce.ledger import _get_engine

    try:
        with _get_engine().connect() as conn:
            value = conn.execute(sa.text("SELECT 1")).scalar()
    except SQLAlchemyError as exc:
        logger.warning("health_db_unavailable", extra={"error": str(exc)})
        return "FAIL"
    return "OK" if value == 1 else "FAIL"


async def check_database() -> str:
    """Check ledger database connectivity with a light query."""
    return await anyio.to_thread.run_sync(_ping_database)


@router.get("/health/ready")
async def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = await check_database()
    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}


@router.get("/health/metrics")
async def metrics_snapshot() -> dict[str, Any]:
    return get_metrics()
