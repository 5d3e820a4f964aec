"""
Main FastAPI application for certkeeper.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog
import time

from certkeeper.core.config import get_settings
from certkeeper.core.database import init_db, close_db, get_db, get_session_factory
from certkeeper.core.logging import configure_logging
from certkeeper.core.security import get_actor
from certkeeper.api.v1 import cas, certificates, csrs, notifications, servers, settings as settings_api
from certkeeper.services.notification_service import get_notification_settings
from certkeeper.tasks.scheduler import JobScheduler

settings = get_settings()
configure_logging(settings)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting certkeeper API", environment=settings.environment)

    try:
        await init_db()
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e))
        raise

    session_factory = get_session_factory()
    app.state.scheduler = JobScheduler(session_factory, settings)
    if settings.scheduler_enabled:
        async with session_factory() as db:
            notification_settings = await get_notification_settings(db)
        app.state.scheduler.start(notification_hour=notification_settings.schedule_hour)
    else:
        logger.info("Scheduler disabled")

    yield

    logger.info("Shutting down certkeeper API")
    app.state.scheduler.stop()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Certificate lifecycle management for Windows PKI",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Bind the caller to the log context and log each request with its duration."""
    if request.url.path.startswith("/health"):
        return await call_next(request)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        actor=await get_actor(request.headers.get("x-remote-user")),
        method=request.method,
        path=request.url.path,
    )
    start_time = time.perf_counter()

    response = await call_next(request)

    process_time = time.perf_counter() - start_time
    logger.info(
        "Request handled",
        client_ip=request.client.host if request.client else "unknown",
        status_code=response.status_code,
        duration_ms=round(process_time * 1000, 1),
    )
    response.headers["X-Process-Time"] = f"{process_time:.3f}"
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unexpected errors."""
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    logger.exception("Unhandled exception", path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "timestamp": time.time(),
    }


@app.get("/health/ready")
async def readiness_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Ready when the database answers; also reports whether the scheduler runs."""
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "not ready", "database": "unavailable"})

    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ready",
        "database": "connected",
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
    }


app.include_router(csrs.router, prefix="/api/v1")
app.include_router(certificates.router, prefix="/api/v1")
app.include_router(cas.router, prefix="/api/v1")
app.include_router(servers.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")
app.include_router(settings_api.router, prefix="/api/v1")


def run():
    import uvicorn
    uvicorn.run(
        "certkeeper.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
