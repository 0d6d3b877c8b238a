"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from trivia.config import get_settings
from trivia.database import get_session
from trivia.redis_client import redis_status

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check. Returns 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness check: durable store and fast store connectivity."""
    checks: dict[str, object] = {}

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    checks["redis"] = await redis_status()

    all_ok = all(v == "ok" for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """API version, environment and ledger network."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
        "network": settings.ledger_network,
    }
