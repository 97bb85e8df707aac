"""
FastAPI main application entry point.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.database import engine
from app.core.exception_handlers import register_exception_handlers
from app.core.logging import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

# Create scheduler
scheduler = AsyncIOScheduler()

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Builds generated projects into container images and runs them behind per-deployment subdomains",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/openapi.json",
)

# Register domain exception handlers
register_exception_handlers(app)

# When allow_credentials=True, origins must be specific (not ["*"])
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-Requested-With",
    ],
    max_age=600,  # Cache preflight requests for 10 minutes
)


async def _database_healthy() -> bool:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database check failed: {e}")
        return False


@app.on_event("startup")
async def startup_event():
    """
    Startup event handler.
    """
    if await _database_healthy():
        logger.info("Database connection successful")
    else:
        logger.error("Database connection failed")

    # Reconciliation runs as a Celery task (worker has Docker socket access)
    from app.services.task_dispatcher import task_dispatcher
    scheduler.add_job(
        lambda: task_dispatcher.dispatch_reconcile(),
        'interval',
        seconds=settings.RECONCILE_INTERVAL,
    )
    scheduler.start()
    logger.info(f"Scheduler started with reconciliation every {settings.RECONCILE_INTERVAL}s")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Shutdown event handler.
    """
    await engine.dispose()
    scheduler.shutdown()
    logger.info("Application shutdown complete")


@app.get("/api/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Liveness and database check.
    """
    db_healthy = await _database_healthy()
    overall_status = "healthy" if db_healthy else "unhealthy"

    return JSONResponse(
        status_code=status.HTTP_200_OK if db_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": overall_status,
            "components": {
                "database": "healthy" if db_healthy else "unhealthy",
            },
            "version": settings.APP_VERSION,
        }
    )


# Include API v1 router
app.include_router(api_router, prefix="/api/v1")


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    return {
        "message": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/api/health",
    }
