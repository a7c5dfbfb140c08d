from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.pending_result import NativeAuthPendingResult

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    checks = {
        "database": "unhealthy",
        "pending_results": "unhealthy",
    }

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {type(e).__name__}"

    # Without the table, pending results live in process memory only.
    try:
        await db.execute(select(NativeAuthPendingResult.request_id).limit(1))
        checks["pending_results"] = "healthy"
    except Exception as e:
        await db.rollback()
        checks["pending_results"] = f"degraded: {type(e).__name__}"

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "unhealthy"

    return {
        "status": overall,
        "checks": checks,
    }
