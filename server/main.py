"""
RelayFlow workflow execution service.

FastAPI app with dependency injection: graph execution, webhook and cron
triggers, and a small management API.
"""

# Performance: Install uvloop if available (Linux/macOS only)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass  # Windows - uvloop not available, use default asyncio

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.config import Settings
from core.logging import configure_logging, get_logger
from routers import webhook, workflow
from services.scheduler import shutdown_scheduler, start_scheduler

VERSION = "1.0.0"

# Initialize settings and logging
settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting RelayFlow", storage=settings.storage)

    container.wire(modules=[
        "routers.workflow",
        "routers.webhook",
    ])

    # Start services
    store = container.store()
    await store.startup()

    scheduler = container.scheduler()
    start_scheduler(scheduler)

    trigger_manager = container.trigger_manager()
    counts = await trigger_manager.initialize()

    logger.info("Services started successfully", **counts)
    yield

    # Shutdown in reverse order
    await trigger_manager.shutdown()
    shutdown_scheduler(scheduler)
    await container.handler_registry().close()
    await container.http_client().aclose()
    await store.shutdown()
    logger.info("Services shutdown complete")


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__, error=str(e),
                         path=request.url.path, exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="RelayFlow",
        version=VERSION,
        description="Workflow graph execution with webhook and cron triggers",
        lifespan=lifespan,
        default_response_class=ORJSONResponse
    )

    # Exception middleware BEFORE CORS to catch all errors
    app.add_middleware(CatchAllExceptionsMiddleware)

    logger.info("Configuring CORS middleware",
                origins_count=len(settings.cors_origins),
                origins=settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflow.router)
    app.include_router(webhook.router, prefix=settings.webhook_prefix)

    @app.get("/health")
    async def health_check():
        """Detailed health check."""
        trigger_manager = container.trigger_manager()
        coordinator = container.coordinator()
        return {
            "status": "OK",
            "service": "relayflow",
            "version": VERSION,
            "environment": "development" if settings.debug else "production",
            "storage": settings.storage,
            "active_runs": len(coordinator.get_active_runs()),
            "webhooks": len(trigger_manager.get_active_webhooks()),
            "schedules": len(trigger_manager.get_scheduled_jobs()),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting RelayFlow", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        # Triggers and active runs are process-local
        workers=1,
        log_config=None,
    )
