# WORKFLOW: Health check endpoints for monitoring and operational status.
# Used by: Load balancers, monitoring systems, operational dashboards
# Endpoints:
# 1. /healthz - Basic health check (always returns healthy)
# 2. /readyz - Readiness check with service dependencies
# 3. /livez - Liveness check for Kubernetes probes
#
# Readiness flow: Readiness check -> Database connectivity -> Ready/Not ready
# The knowledge base is optional, so it is reported but does not gate readiness.

from fastapi import APIRouter
import logging
from datetime import datetime, timezone

from db.session import check_db_connection
from core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/healthz")
async def health_check():
    """
    Basic health check endpoint.

    Returns:
        Health status of the API
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
        "environment": settings.environment
    }


@router.get("/readyz")
async def readiness_check():
    """
    Readiness check endpoint.

    Returns:
        Readiness status with detailed checks
    """
    checks = {"database": check_db_connection()}
    is_ready = all(checks.values())

    return {
        "status": "ready" if is_ready else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "knowledge_base_enabled": settings.knowledge_base_enabled,
        "version": settings.version,
        "engine_version": settings.engine_version
    }


@router.get("/livez")
async def liveness_check():
    """Simple liveness check used by Kubernetes probes."""
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
