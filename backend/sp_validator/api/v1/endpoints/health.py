import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sp_validator import __version__
from sp_validator.core.config import settings
from sp_validator.core.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Unauthenticated liveness check including a database round-trip."""
    health = {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": __version__,
        "environment": settings.APP_ENV,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    try:
        await db.execute(sa.text("SELECT 1"))
        health["database"] = "connected"
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        health["database"] = "disconnected"
        health["status"] = "unhealthy"

    status_code = status.HTTP_200_OK if health["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=health)
