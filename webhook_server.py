"""
FastAPI server for the CinemaRwa monetization core
Payment, withdrawal and access endpoints plus gateway webhooks
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import os
import time

import uvicorn

from config import Config
from database import create_tables, test_connection
from handlers.gateway_webhooks import router as gateway_webhook_router
from handlers.payment_routes import router as payment_router
from handlers.withdrawal_routes import router as withdrawal_router
from jobs.scheduler import MonetizationScheduler
from utils.exception_handler import MonetizationError, render_unexpected_error

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_startup_timestamp = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify configuration, create tables, start background jobs.
    Shutdown: stop background jobs.
    """
    global _startup_timestamp
    logger.info(f"🔧 Monetization worker {os.getpid()} starting...")

    Config.validate()
    create_tables()

    scheduler = None
    if Config.ENABLE_SCHEDULER:
        scheduler = MonetizationScheduler()
        scheduler.start()
    else:
        logger.info("⏸️ SCHEDULER_DISABLED: background jobs not started")

    _startup_timestamp = time.time()
    app.state.scheduler = scheduler
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield  # App is now running and handling requests

    if scheduler is not None:
        scheduler.stop()
    logger.info(f"🔄 Monetization worker {os.getpid()} shutting down...")


app = FastAPI(
    title="CinemaRwa Monetization API",
    description="Payments, creator payouts and access control",
    lifespan=lifespan
)


# ASGI middleware to strip /api prefix (the frontend proxies /api/* to this service)
@app.middleware("http")
async def strip_api_prefix(request: Request, call_next):
    if request.scope["path"].startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    elif request.scope["path"] == "/api":
        request.scope["path"] = "/"
    return await call_next(request)


@app.exception_handler(MonetizationError)
async def monetization_error_handler(request: Request, exc: MonetizationError):
    logger.warning(f"⚠️ API_{exc.error_kind.upper()}: {request.url.path}: {exc.message}")
    return exc.to_response()


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return render_unexpected_error(request.url.path, exc)


app.include_router(payment_router)
app.include_router(withdrawal_router)
app.include_router(gateway_webhook_router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "CinemaRwa monetization API is running"}


@app.get("/health")
async def health_check():
    """Health check endpoint with database reachability"""
    database_ok = test_connection()
    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    scheduler = getattr(app.state, "scheduler", None)

    content = {
        "status": "healthy" if database_ok else "degraded",
        "service": "cinemarwa-monetization",
        "database": "connected" if database_ok else "unreachable",
        "uptime_seconds": round(uptime, 2),
        "jobs": scheduler.job_summary() if scheduler else [],
    }
    return JSONResponse(content=content, status_code=200 if database_ok else 503)


def main():
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT, log_level=Config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
