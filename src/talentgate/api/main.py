"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from talentgate import __version__
from talentgate.api.dependencies.admin import require_admin
from talentgate.api.middleware.exception_handler import setup_exception_handlers
from talentgate.api.middleware.logging import LoggingMiddleware
from talentgate.api.routes import admin, entitlements, health
from talentgate.core.config import get_settings
from talentgate.core.logging import configure_logging, get_logger

settings = get_settings()

configure_logging(
    json_logs=settings.is_production,
    log_level="DEBUG" if settings.debug else "INFO",
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
    yield
    logger.info("application_shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Feature entitlements and usage metering",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(LoggingMiddleware)
    setup_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(
        entitlements.router,
        prefix=f"{settings.api_v1_prefix}/entitlements",
        tags=["Entitlements"],
    )
    app.include_router(
        admin.router,
        prefix=f"{settings.api_v1_prefix}/admin",
        tags=["Admin"],
        dependencies=[Depends(require_admin)],
    )

    return app


app = create_app()
