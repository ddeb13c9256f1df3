"""
Health check and readiness endpoints.
Provides liveness and readiness checks for orchestrators and monitoring.
"""
import logging
from typing import Dict, Any
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from api.dependencies import get_db
from api.websocket_manager import connection_manager
from core.config import settings
from services.redis_client import get_redis_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": "Database connection failed"}


def check_redis() -> Dict[str, Any]:
    """
    Check Redis connectivity (only relevant with the redis broadcast backend).

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        get_redis_client().ping()
        return {"healthy": True, "message": "Redis connection OK"}
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return {"healthy": False, "message": "Redis connection failed"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Liveness check endpoint.

    Returns basic service status without checking dependencies.
    """
    return {
        "ok": True,
        "service": "swapply-chat",
        "connections": connection_manager.get_connection_count()
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check endpoint.

    Checks the database and, when the redis broadcast backend is enabled,
    Redis. Returns 200 only if every dependency is healthy, 503 otherwise.
    """
    checks = {"database": check_database(db)}
    if settings.broadcast_backend == "redis":
        checks["redis"] = check_redis()

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    unhealthy_services = [service for service, check in checks.items() if not check["healthy"]]
    logger.warning(f"Readiness check failed for services: {', '.join(unhealthy_services)}")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": "not_ready", "checks": checks}
    )
