"""
Health check and readiness probe endpoints.
Provides liveness and readiness checks for container orchestration and monitoring.
"""
import logging
from typing import Dict, Any
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from api.dependencies import get_db
from api.websocket_manager import connection_hub
from services.minio_client import get_content_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "messaging-api"
SERVICE_VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Args:
        db: Database session

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        result = db.execute(text("SELECT 1"))
        result.fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {str(e)}"}


def check_content_store() -> Dict[str, Any]:
    """
    Check MinIO connectivity.

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        if not get_content_store().ping():
            return {"healthy": False, "message": "MinIO bucket missing"}
        return {"healthy": True, "message": "MinIO connection OK"}
    except Exception as e:
        logger.error(f"MinIO health check failed: {e}")
        return {"healthy": False, "message": f"MinIO connection failed: {str(e)}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Liveness probe endpoint.

    Returns basic service status without checking dependencies.

    Example Response:
        {
            "status": "healthy",
            "service": "messaging-api",
            "version": "1.0.0",
            "websocket_connections": 2
        }
    """
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "websocket_connections": connection_hub.get_connection_count()
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe endpoint.

    Checks connectivity to the database and the media content store.
    Returns 200 OK only if all dependencies are healthy, 503 otherwise.

    Example Response (degraded):
        {
            "detail": {
                "status": "not_ready",
                "checks": {
                    "database": {"healthy": true, "message": "Database connection OK"},
                    "content_store": {"healthy": false, "message": "MinIO connection failed: ..."}
                }
            }
        }
    """
    checks = {
        "database": check_database(db),
        "content_store": check_content_store()
    }

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    unhealthy_services = [service for service, check in checks.items() if not check["healthy"]]
    logger.warning(f"Readiness check failed for services: {', '.join(unhealthy_services)}")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"status": "not_ready", "checks": checks}
    )
