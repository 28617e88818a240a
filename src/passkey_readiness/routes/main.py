"""Health endpoint for the Passkey Readiness API."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from passkey_readiness.database import db_manager
from passkey_readiness.managers.logging_manager import get_logger
from passkey_readiness.managers.redis_manager import redis_manager

logger = get_logger(prefix="[Health]")

router = APIRouter()


@router.get("/health", tags=["System"])
async def health_check():
    """
    Report MongoDB and Redis connectivity.

    Returns 200 when both are reachable and 503 otherwise, with the same body shape.
    """
    db_healthy = await db_manager.health_check()
    redis_healthy = await redis_manager.health_check()
    healthy = db_healthy and redis_healthy
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "database": "connected" if db_healthy else "disconnected",
        "redis": "connected" if redis_healthy else "disconnected",
        "api": "running",
    }
    if not healthy:
        logger.warning("Health check failed: %s", body)
        return JSONResponse(status_code=503, content=body)
    return body
