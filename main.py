#!/usr/bin/env python3
"""
expo-build-service: FastAPI service that builds Expo apps on request.
Bearer token authentication required for all endpoints except /health.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from build_service.api.build import router as build_router
from build_service.api.update import router as update_router
from build_service.core.config import get_settings
from build_service.core.errors import BuildServiceError
from build_service.core.logging import setup_logging
from build_service.core.metrics import metrics
from build_service.core.request_logging import RequestLoggingMiddleware
from build_service.core.security import BearerTokenMiddleware
from build_service.core.updater import UpdateCoordinator
from build_service.core.workspace import WorkspaceManager

VERSION = "1.0.0"

settings = get_settings()

# Setup structured JSON logging (stdout + shared log file)
setup_logging(settings.log_level, settings.log_path)

logger = logging.getLogger("buildsvc")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"server_started port={settings.server_port} version={VERSION}")
    yield
    logger.info("server_shutting_down")
    await app.state.updater.shutdown()
    logger.info("server_exiting")


# Create app
app = FastAPI(
    title="expo-build-service",
    description="Builds Expo apps from git repositories and returns the artifact",
    version=VERSION,
    lifespan=lifespan,
)

app.state.workspaces = WorkspaceManager(root=settings.temp_dir_root, prefix=settings.temp_dir_prefix)
app.state.updater = UpdateCoordinator(settings.update_script_path, timeout=settings.update_timeout_s)


@app.exception_handler(BuildServiceError)
async def build_service_error_handler(request: Request, exc: BuildServiceError):
    """Short plain-text reason; diagnostics stay in the service log."""
    return PlainTextResponse(exc.message, status_code=exc.status_code)


# Authentication runs inside request logging so 401s are logged too
app.add_middleware(BearerTokenMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# Include routes
app.include_router(build_router)
app.include_router(update_router)


@app.get("/health", response_class=PlainTextResponse)
def health():
    """Health check endpoint."""
    return "Server is up and running.\n"


@app.get("/metrics", response_class=PlainTextResponse)
async def get_metrics() -> str:
    """Prometheus text format. Auth required (AUTH_TOKEN)."""
    return metrics.to_prometheus()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.listen_host,
        port=settings.server_port,
        log_config=None,
        timeout_graceful_shutdown=settings.shutdown_timeout,
    )
