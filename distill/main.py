"""FastAPI application entry point."""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from distill.config import settings
from distill.errors import LlmError, ServiceError
from distill.routes import classify, runs
from distill.services.advisory_lock import lock_manager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Distill",
    description="Tick-driven daily summarization of imported conversations",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(runs.router)
app.include_router(classify.router)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.exception_handler(LlmError)
async def llm_error_handler(request: Request, exc: LlmError):
    error = {"code": exc.code, "message": exc.message}
    if exc.details:
        error["details"] = exc.details
    return JSONResponse(status_code=exc.http_status, content={"error": error})


def run_migrations():
    """Apply Alembic migrations unless the schema is already there."""
    from alembic import command
    from alembic.config import Config
    from sqlalchemy import inspect

    from distill.database import engine

    if inspect(engine).has_table("jobs"):
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting application (LLM mode: {settings.LLM_MODE})")
    try:
        run_migrations()
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")


@app.on_event("shutdown")
async def shutdown_event():
    """Drain the advisory lock pool; in-flight ticks are allowed to finish."""
    logger.info("Shutting down application...")
    await run_in_threadpool(lock_manager.close, settings.LOCK_DRAIN_TIMEOUT)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}
