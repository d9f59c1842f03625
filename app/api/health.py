"""
Health check endpoints.
/health always returns 200 so the platform healthcheck passes; database
trouble is reported in the body. /health/ready reflects real readiness.
"""

from typing import Optional

from fastapi import APIRouter
from sqlalchemy import text

from app.config import settings
from app.dependencies import get_engine
from app.models.database import async_session_factory

router = APIRouter(tags=["health"])


async def _database_ok() -> tuple[bool, Optional[str]]:
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1, None
    except Exception as e:
        return False, str(e)[:200]


@router.get("/health")
async def health_check():
    """Liveness plus a database probe. Always 200."""
    db_ok, db_error = await _database_ok()

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "pipeline_version": settings.PIPELINE_VERSION,
        "database": "connected" if db_ok else "unreachable",
    }
    if db_error:
        response["database_error"] = db_error
    return response


@router.get("/health/ready")
async def readiness_check():
    """Ready only when the database answers and the text engine is configured."""
    engine = get_engine()
    db_ok, _ = await _database_ok()
    engine_ok = await engine.health_check()
    return {
        "ready": db_ok and engine_ok,
        "database": db_ok,
        "engine": engine.engine_name,
        "engine_ready": engine_ok,
    }
