"""
FastAPI Application Factory
===========================

Entry point for the Activity Auth service, which sits between a Discord
Activity client and the application's backend.

Routers:
    - /auth/*   : Discord OAuth2 exchange, refresh, revoke, logout, me
    - /health   : Health check endpoint

Components are composed once at startup from the immutable Settings:
storage (memory or PostgreSQL), the shared httpx client, the Discord client,
the entitlement reconciler and the AuthService. They are stored on
``app.state``.

Running the Service:
    Development:
        uvicorn activity_auth.main:create_app --factory --reload --port 3000

    Production:
        activity-auth
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .auth.provider import DiscordClient
from .auth.routes import auth_router
from .auth.service import AuthService
from .config import Settings, get_settings, validate_configuration
from .entitlements.reconciler import EntitlementReconciler
from .errors import AuthServiceError, InvalidRequest
from .models import ErrorResponse
from .storage import MemoryStorage, PostgresStorage, Storage

logger = logging.getLogger(__name__)


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_storage(settings: Settings) -> Storage:
    """Select the storage implementation named by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "memory":
        return MemoryStorage()
    return PostgresStorage(settings.DATABASE_URL)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Settings to use instead of the environment
        storage: Storage implementation to use instead of STORAGE_BACKEND
        http_client: httpx client for Discord calls (tests pass one with a
            mock transport); the application closes only clients it created

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: start storage, open the Discord HTTP client, compose the
        auth service. Shutdown: close what was opened.
        """
        setup_logging(settings.LOG_LEVEL)

        report = validate_configuration(settings)
        for warning in report["warnings"]:
            logger.warning(warning)
        if not report["valid"]:
            raise RuntimeError(f"Invalid configuration: {report['errors']}")

        app_storage = storage or build_storage(settings)
        await app_storage.start()

        owns_client = http_client is None
        client = http_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

        provider = DiscordClient.from_settings(settings, client)
        reconciler = EntitlementReconciler(
            app_storage, provider, settings.DISCORD_PREMIUM_SKU_ID
        )

        app.state.storage = app_storage
        app.state.discord_client = provider
        app.state.auth_service = AuthService(settings, app_storage, provider, reconciler)

        logger.info(
            "Activity auth service started",
            extra={
                "storage_backend": type(app_storage).__name__,
                "reconciliation_enabled": reconciler.enabled,
            },
        )

        try:
            yield
        finally:
            logger.info("Shutting down activity auth service")
            if owns_client:
                await client.aclose()
            await app_storage.stop()

    app = FastAPI(
        title="Activity Auth Service",
        description="Discord OAuth2 sessions and subscription reconciliation",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(auth_router)

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "activity-auth",
            "version": __version__,
        }

    @app.get("/", tags=["System"])
    async def root() -> Dict[str, object]:
        return {
            "service": "activity-auth",
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "auth": "/auth",
            },
        }

    @app.exception_handler(AuthServiceError)
    async def auth_service_error_handler(request: Request, exc: AuthServiceError) -> JSONResponse:
        """Translate service errors into their HTTP status and error body."""
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"{type(exc).__name__}: {exc}",
            extra={"path": request.url.path, "method": request.method},
        )

        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        body = ErrorResponse(error=exc.code, message=exc.public_message)
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Report malformed request bodies as InvalidRequest."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "body"
        error = InvalidRequest(f"{field}: {first.get('msg', 'malformed request')}")
        return await auth_service_error_handler(request, error)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled errors and return a standardized 500 response."""
        logger.error(
            f"Unhandled exception: {exc}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


def run() -> None:
    """Console entry point: load settings and serve."""
    settings = get_settings()

    uvicorn.run(
        "activity_auth.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
