"""Health check endpoints."""

from fastapi import APIRouter, Response

from src.monitoring.health import HealthStatus, get_health_checker

router = APIRouter()


@router.get("/health")
async def health_check(response: Response):
    """
    Aggregate health of the database and the completion service.

    Returns 503 only when a critical component is unhealthy.
    """
    checker = await get_health_checker()
    health = await checker.check_all()
    if health.status == HealthStatus.UNHEALTHY:
        response.status_code = 503
    return health.to_dict()


@router.get("/ready")
async def readiness_check(response: Response):
    """
    Readiness check endpoint.
    Verifies the database is reachable.
    """
    checker = await get_health_checker()
    result = await checker.readiness()
    if result["status"] != "ready":
        response.status_code = 503
    return result


@router.get("/live")
async def liveness_check():
    """
    Liveness check for Kubernetes.
    Returns 200 if the process is alive.
    """
    checker = await get_health_checker()
    return await checker.liveness()
