"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, tracing and the
real-time background tasks (heartbeat monitor, Redis backplane).
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from db.database import engine, init_db

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_fastapi_instrumentator import Instrumentator

from core.logging_config import configure_logging
configure_logging(service_name="swapply-chat", level=settings.log_level, enable_json=settings.json_logs)

logger = logging.getLogger(__name__)

# Spans feed trace_id into the structured logs
trace.set_tracer_provider(TracerProvider(resource=Resource.create({"service.name": "swapply-chat"})))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    from api.websocket_manager import heartbeat_monitor, connection_manager
    from api.redis_subscriber import start_redis_subscriber, stop_redis_subscriber

    logger.info("Starting Swapply chat API...")
    init_db()

    heartbeat_task = asyncio.create_task(heartbeat_monitor(connection_manager))
    logger.info("WebSocket heartbeat monitor started")

    if settings.broadcast_backend == "redis":
        await start_redis_subscriber(connection_manager)
        logger.info("Redis Pub/Sub backplane started")

    yield

    logger.info("Shutting down Swapply chat API...")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")

    if settings.broadcast_backend == "redis":
        await stop_redis_subscriber()
        logger.info("Redis Pub/Sub backplane stopped")


# Create FastAPI application
app = FastAPI(
    title="Swapply Chat API",
    description="Real-time negotiation chat for the Swapply bartering marketplace",
    version="1.0.0",
    lifespan=lifespan
)

FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)

# Exposes /metrics endpoint with HTTP request metrics and the chat metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())
        request.state.request_id = request_id

        logger.info(
            f"{request.method} {request.url.path}",
            extra={"request_id": request_id}
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(f"Response: {response.status_code}", extra={"request_id": request_id})
        return response


app.add_middleware(RequestIDMiddleware)

# Cookies carry the credential, so origins must be explicit
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.client_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Register endpoint routers
from api.endpoints import chat_router, products_router, websocket_router
from api.health import router as health_router

app.include_router(health_router)
app.include_router(chat_router, prefix="/api/chat", tags=["Chat"])
app.include_router(products_router, prefix="/api/products", tags=["Products"])
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
