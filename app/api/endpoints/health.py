"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.dependencies import Cache, DatabaseSession

router = APIRouter()

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Health of the service and the stores sign-in depends on."""

    database: str
    redis: str
    identity_provider: str
    sync_mode: str


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status=HEALTHY,
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(db: DatabaseSession, cache_manager: Cache) -> DetailedHealthResponse:
    """
    Check database and Redis connectivity.

    Redis holds pending MFA challenges and handoff hints, so sign-in with a
    second factor does not work while it is down. Either store failing
    reports the service as ``degraded``.
    """
    try:
        await db.execute(text("SELECT 1"))
        database = HEALTHY
    except SQLAlchemyError:
        database = UNHEALTHY

    redis_state = HEALTHY if cache_manager.ping() else UNHEALTHY

    return DetailedHealthResponse(
        status=HEALTHY if database == redis_state == HEALTHY else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database=database,
        redis=redis_state,
        identity_provider="configured" if settings.firebase_web_api_key else "not_configured",
        sync_mode="remote" if settings.sync_endpoint_url else "local",
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    return {"message": "pong"}
