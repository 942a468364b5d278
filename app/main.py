"""
Dual-Write Monitor - Main Application
FastAPI Entry Point with APScheduler for metrics snapshots and reconciliation
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from apscheduler.schedulers.background import BackgroundScheduler
import structlog

from app.config import settings
from app.database import init_db
from app.exceptions import MonitoringError, ValidationError
from app.middleware import CorrelationIdMiddleware
from app.routers import monitoring_router
from app.scheduler import start_scheduler, stop_scheduler
from app.services.monitoring import init_sentry, setup_logging

# Structured Logging Setup
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="Dual-Write Monitor",
    description="Monitoring and reconciliation for the Google Sheets to Supabase migration",
    version="1.0.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

app.add_middleware(CorrelationIdMiddleware)

# Register routers
app.include_router(monitoring_router)

scheduler: Optional[BackgroundScheduler] = None


@app.exception_handler(MonitoringError)
async def monitoring_error_handler(request: Request, exc: MonitoringError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.error, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    error = ValidationError("Invalid request", details=details)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    global scheduler

    setup_logging()
    init_sentry()
    logger.info("startup", environment=settings.environment)

    # Initialize database connection
    init_db()
    logger.info("database_initialized")

    # Start metrics/reconciliation scheduler (skipped in testing)
    scheduler = start_scheduler(settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(scheduler)


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "Dual-Write Monitor API",
        "version": "1.0.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
