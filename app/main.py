"""
Dental Booking Orchestrator API

HTTP entry point: one conversation endpoint shared by every transport,
session inspection, tenant config invalidation and health probes.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from app.config import settings
from app.api.routes import chat, health
from app.core.agent.dispatch import get_dispatcher
from app.core.agent.dispatch_table import get_dispatch_table
from app.infra.notifications import get_notification_publisher
from app.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup loads the function catalog and connects Redis; shutdown drains and closes."""
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode")

    health.set_start_time()

    # Load the function catalog now so a broken catalog fails startup
    table = get_dispatch_table()
    logger.info(f"Function catalog loaded: {len(table.list_available())} functions")

    # Test Redis connection
    redis = await RedisClient.get_client()
    if redis:
        logger.info("Conversation state stored in Redis")
    else:
        logger.warning("Redis unavailable - conversation state kept in process memory")

    logger.info(
        f"Application ready at http://{settings.host}:{settings.port} "
        f"(booking backend: {settings.booking_backend})"
    )

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    # Let in-flight booking notifications finish
    await get_notification_publisher().drain()

    await get_dispatcher().close()
    logger.info("Booking backend closed")

    # Close Redis connection
    await RedisClient.close()
    logger.info("Redis connection closed")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Dental Booking Orchestrator API",
    description="""
    Multi-tenant conversational booking for dental offices.

    ## Features
    - Book, reschedule and cancel appointments by conversation
    - One entry point for voice, SMS, WhatsApp and web transports
    - Per-office persona, hours and workflow configuration

    ## Tenancy
    Every conversation request carries the office in the `X-Organization-ID` header.
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": detail,
        },
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Time each request and tag the log line with the calling office."""
    start_time = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start_time) * 1000

    response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
    if request.url.path.startswith("/v1/"):
        organization_id = request.headers.get("X-Organization-ID", "-")
        logger.info(
            f"{request.method} {request.url.path} org={organization_id} "
            f"status={response.status_code} {elapsed_ms:.0f}ms"
        )
    return response


app.include_router(health.router)
app.include_router(chat.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "environment": settings.app_env,
        "booking_backend": settings.booking_backend,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
