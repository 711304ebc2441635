"""
ChildGuard - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from childguard import __version__
from childguard.config import Settings, settings
from childguard.api import routes, websocket
from childguard.core.coordinator import create_coordinator
from childguard.core.exceptions import ChildGuardError
from childguard.core.logging import setup_structured_logging

setup_structured_logging(settings.app_log_level, json_format=settings.log_json_format)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Build stores, event bus and classifier gateway
        - Validate configuration (a misconfigured classifier fails startup)

    Shutdown:
        - Stop every child session, letting in-flight transcripts finish
        - Close every guardian subscription
    """
    # === Startup ===
    app_settings: Settings = app.state.settings
    logger.info("ChildGuard starting in %s mode", app_settings.app_env)

    coordinator = create_coordinator(app_settings)
    app.state.coordinator = coordinator

    logger.info(
        "Privacy: anonymize_logs=%s, store_transcripts=%s",
        app_settings.anonymize_logs,
        app_settings.store_transcripts,
    )

    yield

    # === Shutdown ===
    logger.info("ChildGuard shutting down")
    await coordinator.shutdown()
    logger.info("Shutdown complete")


async def childguard_error_handler(request: Request, exc: ChildGuardError) -> JSONResponse:
    """Render domain errors as {"error": {code, message, details}}."""
    if exc.status_code >= 500:
        logger.error("Request failed: %s %s -> %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Application factory. Tests pass their own settings."""
    app_settings = app_settings or settings

    app = FastAPI(
        title="ChildGuard",
        description="Mood classification and alert fan-out for child monitoring",
        version=__version__,
        docs_url="/docs" if app_settings.app_debug else None,
        redoc_url="/redoc" if app_settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    app.add_exception_handler(ChildGuardError, childguard_error_handler)

    # --- Routes ---
    app.include_router(routes.router, prefix="/api")
    app.include_router(websocket.router)

    return app


# Create app instance
app = create_app()


@app.get("/")
async def root():
    """Root health check."""
    return {
        "service": "ChildGuard",
        "status": "operational",
        "version": __version__,
    }
