"""FastAPI application factory and main entry point."""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from elvira_shared.config import Settings, get_settings
from elvira_shared.logging import configure_logging, get_logger
from elvira_shared.storage import create_storage

from .errors import AppError
from .middleware import CorrelationIdMiddleware
from .routes import admin, chat, health, user
from .services.catalog_client import CatalogClientFactory
from .services.llm_service import OpenAICompletionService
from .services.quota_governor import QuotaGovernor, run_reset_sweeps
from .services.session_registry import SessionRegistry

logger = get_logger(__name__)

Lifespan = Callable[[FastAPI], AbstractAsyncContextManager[None]]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown events."""
    settings: Settings = app.state.settings

    # Startup
    logger.info(
        "Starting application",
        service=settings.service_name,
        version=settings.service_version,
        environment=settings.environment,
        storage=settings.database.storage,
    )

    storage = create_storage(settings.database)
    await storage.init()
    app.state.storage = storage
    app.state.storage_initialized = True

    catalog_factory = CatalogClientFactory(settings.catalog)
    completions = OpenAICompletionService(settings.openai)
    governor = QuotaGovernor(storage, settings.quota)
    registry = SessionRegistry(storage, completions, settings.agent)

    app.state.catalog_factory = catalog_factory
    app.state.completions = completions
    app.state.governor = governor
    app.state.registry = registry

    sweeper = asyncio.create_task(
        run_reset_sweeps(governor, settings.quota.sweep_interval_seconds)
    )

    yield

    # Shutdown
    logger.info("Shutting down application", active_sessions=registry.active_count())

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper

    await registry.drain()
    await catalog_factory.close()
    await completions.close()
    await storage.close()
    app.state.storage_initialized = False


def create_app(
    settings: Settings | None = None,
    lifespan_handler: Lifespan = lifespan,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; defaults to the cached environment settings.
        lifespan_handler: Startup/shutdown handler. Tests pass one that wires
            in-memory collaborators onto ``app.state``.

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or get_settings()

    configure_logging(
        level=settings.logging.level,
        json_format=settings.logging.json_format,
        service_name=settings.service_name,
    )

    app = FastAPI(
        title="Elvira Agent API",
        description="Conversational assistant over a catalog of entries",
        version=settings.service_version,
        docs_url="/docs" if settings.api.debug else None,
        redoc_url="/redoc" if settings.api.debug else None,
        openapi_url="/openapi.json" if settings.api.debug else None,
        lifespan=lifespan_handler,
    )
    app.state.settings = settings
    app.state.storage_initialized = False

    # Middleware (first added = last executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health.router, tags=["Health"])
    app.include_router(chat.router)
    app.include_router(user.router)
    app.include_router(admin.router)

    return app


def _error_response(
    request: Request,
    status_code: int,
    content: dict,
) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", None)
    return JSONResponse(
        status_code=status_code,
        content={**content, "correlation_id": correlation_id},
        headers={"X-Correlation-ID": correlation_id} if correlation_id else {},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render application errors with their status and payload."""
    if exc.status_code >= 500:
        logger.error("Application error", error=exc.message, path=request.url.path)
    else:
        logger.info(
            "Request rejected",
            status_code=exc.status_code,
            error=exc.message,
            path=request.url.path,
        )
    return _error_response(request, exc.status_code, exc.to_dict())


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions."""
    return _error_response(request, exc.status_code, {"error": str(exc.detail)})


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Malformed bodies and parameters are bad requests."""
    details = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return _error_response(request, 400, {"error": "Invalid request", "details": details})


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
    )
    return _error_response(request, 500, {"error": "Internal Server Error"})


# Create the app instance
app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "elvira_api.main:app",
        host=settings.api.host,
        port=settings.api.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
