"""
BillyBot email connection service - main FastAPI application.

Entry point for the application. Builds the app around an explicit Settings
object and mounts the email router.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from billybot.core.config import Settings, get_settings
from billybot.core.database import close_db, create_engine_from_settings, create_session_factory, init_db
from billybot.core.exceptions import ConfigurationError
from billybot.core.health import get_health_metrics
from billybot.core.sentry import init_sentry
from billybot.modules.email.routes import router as email_router

logger = logging.getLogger(__name__)


async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "configuration_error", "detail": str(exc)},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to get_settings()

    Usage:
        app = create_app(Settings(DATABASE_URL=...))
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan events.

        Creates the database engine, the shared httpx client and the Redis
        client on startup, and closes them on shutdown.
        """
        logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")

        init_sentry(settings)

        engine = create_engine_from_settings(settings)
        app.state.engine = engine
        app.state.session_factory = create_session_factory(engine)
        app.state.http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
        app.state.redis = redis.from_url(settings.REDIS_URL)

        # Initialize database (only in development - use Alembic in production)
        if settings.ENVIRONMENT == "development":
            await init_db(engine)

        yield

        logger.info("Shutting down...")
        await app.state.http_client.aclose()
        await app.state.redis.aclose()
        await close_db(engine)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Email connection state engine - OAuth mailboxes, Gmail watches and Graph subscriptions",
        version="0.1.0",
        docs_url="/docs" if settings.DEBUG else None,  # Disable docs in production
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000"] if settings.DEBUG else [settings.APP_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET_KEY,
        max_age=86400,  # 24 hours in seconds
        same_site="lax",
        https_only=settings.is_production,
        session_cookie="session",
    )

    app.add_exception_handler(ConfigurationError, configuration_error_handler)

    app.include_router(email_router)

    @app.get("/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring.

        Reports database and Redis connectivity.
        """
        metrics = await get_health_metrics(request.app.state.session_factory, request.app.state.redis)
        return {
            "service": settings.APP_NAME,
            "version": "0.1.0",
            "environment": settings.ENVIRONMENT,
            **metrics,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billybot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().DEBUG,
    )
