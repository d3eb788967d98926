"""RentLedger FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rentledger.api import equity_bank, mpesa, payments
from rentledger.models import Base
from rentledger.services import SessionLocal, engine
from rentledger.services.config import get_settings
from rentledger.services.errors import AppError, error_response
from rentledger.services.logging import setup_server_logging
from rentledger.services.mpesa_client import close_mpesa_client
from rentledger.services.posting_dispatcher import (
    init_posting_dispatcher,
    shutdown_posting_dispatcher,
)

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle (startup and shutdown)."""
    setup_server_logging(settings.log_file, settings.log_level)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")
    init_posting_dispatcher(SessionLocal, settings)
    settings.log_mpesa_config()
    yield
    # Let queued postings finish before the process exits
    shutdown_posting_dispatcher()
    await close_mpesa_client()
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.api_title,
    description="Rent payment reconciliation service",
    version=settings.api_version,
    lifespan=lifespan,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render reconciliation errors as {"error": {"code", "message", ...}}."""
    logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.http_status, content=error_response(exc))


# Include routers
app.include_router(payments.router, prefix="/api")
app.include_router(mpesa.router, prefix="/api")
app.include_router(equity_bank.router, prefix="/api")
# Providers are registered with short callback URLs
app.include_router(mpesa.router)
app.include_router(equity_bank.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}

