"""FastAPI application entry point."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from app.api.router import api_router
from app.config import settings
from app.core.firebase import initialize_firebase
from app.core.redis_client import check_redis_connection, close_redis_connection
from app.database import check_database_connection, engine
from app.middleware.error_handler import register_exception_handlers
from app.middleware.logging import LoggingMiddleware, configure_logging

configure_logging()
logger = structlog.get_logger()

# Stores checked at startup, with what breaks when each is down
STARTUP_CHECKS: list[tuple[str, Callable[[], Awaitable[bool]], str]] = [
    ("database", check_database_connection, "User sync and admin endpoints will fail"),
    ("redis", check_redis_connection, "MFA sign-in and session handoff will fail"),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialise the identity provider, check the stores, release them on shutdown."""
    logger.info(
        "application_startup",
        environment=settings.environment,
        sync_mode="remote" if settings.sync_endpoint_url else "local",
    )

    try:
        initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)
    except Exception as e:
        logger.warning(
            "firebase_initialization_failed",
            error=str(e),
            note="Set FIREBASE_CREDENTIALS_PATH or FIREBASE_CONFIG_JSON.",
        )

    for name, check, impact in STARTUP_CHECKS:
        if await check():
            logger.info("dependency_ready", dependency=name)
        else:
            logger.error("dependency_unavailable", dependency=name, impact=impact)

    yield

    logger.info("application_shutdown")
    await engine.dispose()
    close_redis_connection()


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Authentication and session synchronisation for the imaging portal",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # The pendingAuth cookie must travel with cross-origin sign-in calls
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    application.add_middleware(LoggingMiddleware)

    register_exception_handlers(application)
    application.include_router(api_router, prefix=settings.api_prefix)

    Instrumentator(
        should_group_status_codes=True,
        excluded_handlers=["/docs", "/redoc", "/openapi.json", "/metrics"],
    ).instrument(application).expose(application, endpoint="/metrics", include_in_schema=False)

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
