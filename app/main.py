"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, error handlers, the
realtime gateway and health check endpoints.
Instrumented with OpenTelemetry tracing and Prometheus metrics.
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from core.exceptions import AppError
from db.database import init_db, seed_db
from realtime.gateway import RealtimeGateway

# OpenTelemetry imports
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

# Configure structured JSON logging
from core.logging_config import configure_logging, request_id_var
configure_logging(service_name=settings.service_name, level=settings.log_level, enable_json=settings.log_json)

logger = logging.getLogger(__name__)


def setup_tracing() -> TracerProvider:
    """
    Configure the OpenTelemetry tracer provider.

    Spans give every HTTP request a trace id that the log filter copies into
    each record for correlation.
    """
    resource = Resource.create({
        "service.name": settings.service_name,
        "service.version": settings.app_version,
        "deployment.environment": settings.environment
    })
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    logger.info("OpenTelemetry tracing initialized")
    return tracer_provider


# Initialize tracing
tracer_provider = setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    try:
        init_db()
        if settings.seed_demo_data:
            seed_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    metrics_task = asyncio.create_task(app.state.gateway.metrics_monitor())

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")

    metrics_task.cancel()
    try:
        await metrics_task
    except asyncio.CancelledError:
        logger.info("Realtime metrics monitor stopped")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Real-time conversation and presence engine for multi-tenant teams",
    version=settings.app_version,
    lifespan=lifespan
)

# One gateway per process: owns the connection registry and the broadcaster
app.state.gateway = RealtimeGateway()

# Instrument FastAPI with OpenTelemetry
FastAPIInstrumentor.instrument_app(app)

# Instrument SQLAlchemy for database query tracing
from db.database import engine
SQLAlchemyInstrumentor().instrument(engine=engine)

# Instrument FastAPI with Prometheus metrics
# Exposes /metrics endpoint with HTTP request metrics and the realtime metrics
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

            # Add request_id to response headers
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


# Error handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Render operational errors as ``{"success": false, "message", "errorCode"}``."""
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": "Validation failed",
            "errorCode": "VALIDATION_ERROR",
            "errors": [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ]
        }
    )


@app.get("/", tags=["Health"])
async def root():
    """
    Root endpoint redirect to docs.
    """
    return {
        "message": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


# Register endpoint routers
from api.auth import router as auth_router
from api.endpoints import conversations_router, messages_router, users_router, websocket_router
from api.health import router as health_router

app.include_router(auth_router)
app.include_router(health_router)
app.include_router(conversations_router, prefix="/v1/conversations", tags=["Conversations"])
app.include_router(messages_router, prefix="/v1/messages", tags=["Messages"])
app.include_router(users_router, prefix="/v1/users", tags=["Users"])

# WebSocket endpoint
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
        ws_ping_interval=settings.ws_ping_interval_seconds,
        ws_ping_timeout=settings.ws_ping_timeout_seconds
    )
