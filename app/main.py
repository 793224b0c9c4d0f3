"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, error handlers and the
WebSocket heartbeat monitor.
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from core.exceptions import register_error_handlers
from db.database import init_db

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

# Configure structured JSON logging
from core.logging_config import configure_logging, request_id_var
configure_logging(service_name="messaging-api", level=settings.log_level, enable_json=settings.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting messaging API...")
    init_db()
    logger.info("Database initialized")

    from api.websocket_manager import heartbeat_monitor, connection_hub

    heartbeat_task = asyncio.create_task(heartbeat_monitor(
        connection_hub,
        interval_seconds=settings.ws_heartbeat_interval_seconds,
        timeout_seconds=settings.ws_heartbeat_timeout_seconds
    ))
    logger.info("WebSocket heartbeat monitor started")

    yield

    # Shutdown
    logger.info("Shutting down messaging API...")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")


# Create FastAPI application
app = FastAPI(
    title="Messaging API",
    description="Two-party real-time messaging backend",
    version="1.0.0",
    lifespan=lifespan
)

# Exposes /metrics endpoint with HTTP request metrics plus the collectors in api.metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


# Request ID middleware
class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        try:
            logger.info(
                f"{request.method} {request.url.path} - "
                f"Client: {request.client.host if request.client else 'unknown'}"
            )

            response = await call_next(request)

            response.headers["X-Request-ID"] = request_id
            logger.info(f"Response: {response.status_code}")
            return response
        finally:
            request_id_var.reset(token)


# Add middlewares
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.get("/", tags=["Health"])
async def root():
    """
    Root endpoint with links to docs and probes.
    """
    return {
        "message": "Messaging API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


# Register endpoint routers
from api.endpoints import auth_router, chat_router, media_router, websocket_router
from api.health import router as health_router

app.include_router(health_router)
app.include_router(auth_router, prefix="/auth", tags=["Authentication"])
app.include_router(chat_router, prefix="/chat", tags=["Chat"])
app.include_router(media_router, prefix="/media", tags=["Media"])

# WebSocket endpoint
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower()
    )
