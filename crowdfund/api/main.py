"""
Crowdfunding donation API.

Wires the gateway, campaign, admin and monitoring routers into one app,
tags every request with an id and maps escaped domain errors to their
HTTP status.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crowdfund import __version__
from crowdfund.config import get_settings
from crowdfund.core.errors import CrowdfundError
from crowdfund.database.connection import close_db, init_db
from crowdfund.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    campaign_router,
    get_reconciler,
    monitoring_router,
    stripe_router,
    zalopay_router,
)

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; release gateway and database connections on shutdown."""
    logger.info(
        "application_startup",
        version=__version__,
        env=settings.app_env,
        zalopay_app_id=settings.zalopay_app_id,
        stripe_test_mode=settings.is_test_mode,
    )
    await init_db()

    yield

    logger.info("application_shutdown")
    # Only close a reconciler that was actually built
    if get_reconciler.cache_info().currsize:
        await get_reconciler().close()
    await close_db()


app = FastAPI(
    title="Crowdfunding Donation API",
    description=(
        "Campaign donations through ZaloPay and Stripe, reconciled against "
        "campaign funds from signed gateway callbacks."
    ),
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id (reusing the caller's X-Request-ID) into the log context."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    start = time.monotonic()
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.monotonic() - start,
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(CrowdfundError)
async def crowdfund_exception_handler(request: Request, exc: CrowdfundError) -> JSONResponse:
    """Domain errors that escaped a route keep their status code."""
    logger.warning(
        "domain_error",
        error=exc.message,
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


app.include_router(zalopay_router)
app.include_router(stripe_router)
app.include_router(campaign_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    return {
        "service": "crowdfund",
        "version": __version__,
        "environment": settings.app_env,
        "stripe_test_mode": settings.is_test_mode,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crowdfund.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )
