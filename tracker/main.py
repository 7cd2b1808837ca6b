"""
Vehicle Live Tracker - FastAPI Application

Serves the single-vehicle dashboard: authentication, per-user dashboard
sessions fed by the real-time store, SSE patches, device commands and the
same-day history export.
"""
from contextlib import asynccontextmanager
import logging

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from tracker.config import get_settings
from tracker import store_client
from tracker.routes import auth, commands, dashboard, export, stream
from tracker.services.auth import auth_provider
from tracker.services.session import session_manager

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_public}/minute"],
    storage_uri=settings.rate_limit_storage_uri,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown."""
    logger.info("Starting Vehicle Live Tracker", version=settings.app_version, device_id=settings.device_id)
    # Dashboard sessions follow sign-in / sign-out
    auth_provider.on_auth_state_changed(session_manager.handle_auth_change)

    yield

    logger.info("Shutting down Vehicle Live Tracker")
    await session_manager.stop_all()
    await store_client.close_redis()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Live tracking dashboard for a single GPS-equipped vehicle",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)

app.include_router(auth.router)
app.include_router(dashboard.router)
app.include_router(stream.router)
app.include_router(commands.router)
app.include_router(commands.settings_router)
app.include_router(export.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "device_id": settings.device_id,
        "docs": "/docs",
        "health": "/health",
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to prevent secret leakage."""
    logger.exception("Unhandled exception", path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tracker.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
