"""FastAPI application entry point for the session bridge.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.routes import set_session_gateway as set_routes_session_gateway
from api.websocket import (
    set_session_gateway as set_websocket_session_gateway,
)
from api.websocket import (
    websocket_router,
)
from config import check_required_settings, configure_logging, settings
from engine import load_engine
from gateway import SessionGateway
from metrics import MetricsCollector
from query_orchestrator import QueryOrchestrator
from session_registry import SessionRegistry

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Validates configuration, loads the engine and wires the registry,
    orchestrator and gateway together. A ConfigurationError raised here
    aborts startup.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_engine=settings.use_mock_engine,
    )

    check_required_settings(settings)
    engine = load_engine(settings)

    metrics_collector = MetricsCollector()
    registry = SessionRegistry(
        disconnect_grace_seconds=settings.disconnect_grace_seconds,
        metrics_collector=metrics_collector,
    )
    orchestrator = QueryOrchestrator(
        registry,
        engine,
        metrics_collector,
        hook_timeout=settings.hook_timeout_seconds,
        notify_only_hooks=settings.notify_only_hooks,
        fallback_policy=settings.hook_fallback_policy,
    )
    gateway = SessionGateway(registry, orchestrator)

    # Register gateway with routes
    set_routes_session_gateway(gateway)
    set_websocket_session_gateway(gateway)

    # Store on app.state for access
    app.state.session_gateway = gateway

    logger.info("resources_initialized", engine=engine.name)
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await orchestrator.shutdown()
    registry.shutdown()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Agent Session Bridge",
    description="Keeps conversational agent sessions alive across client "
    "reconnects and brokers engine lifecycle hooks to the client.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["sessions"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint pointing at the API documentation."""
    return {
        "message": "Agent Session Bridge API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
