"""
Main FastAPI application.

Admin backend for the rental marketplace: duplicate detection, case
workflow and reversible account merges.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rental_admin.core.api_errors import DuplicateHubError
from rental_admin.core.config import get_settings
from rental_admin.core.database import create_tables
from rental_admin.api.v1 import duplicates

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Runs on startup and shutdown.
    """
    # Startup
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    logger.info("Starting Rental Admin Duplicate Hub")
    logger.info(f"Log level: {settings.log_level}")
    logger.info(f"Rollback window: {settings.rollback_window_minutes} minutes")
    if not settings.email_enabled:
        logger.warning("EMAIL_API_URL/EMAIL_API_KEY not set; merge notifications will be skipped")

    try:
        create_tables()
        logger.info("Database tables ready")
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down")


# Create FastAPI app
app = FastAPI(
    title="Rental Admin Duplicate Hub",
    description="Duplicate detection, triage and reversible account merges for the rental admin console",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware (configure as needed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DuplicateHubError)
async def duplicate_hub_error_handler(request: Request, exc: DuplicateHubError):
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.__class__.__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    invalid_params = {
        ".".join(str(part) for part in error["loc"]): error["msg"]
        for error in exc.errors()
    }
    logger.warning(f"{request.method} {request.url.path} -> 400 invalid params: {list(invalid_params)}")
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request parameters",
            "error_type": "ValidationError",
            "invalid_params": invalid_params,
        },
    )


# Include routers
app.include_router(duplicates.router, prefix="/api/v1")


@app.get("/")
def root():
    """Root endpoint with service info."""
    return {
        "service": "Rental Admin Duplicate Hub",
        "version": "0.1.0",
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns status of the service and database connectivity.
    """
    from rental_admin.core.database import get_engine
    from sqlalchemy import text

    health_status = {
        "status": "healthy",
        "service": "running",
        "database": "unknown"
    }

    # Check database connectivity
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["status"] = "degraded"
        health_status["database"] = f"error: {str(e)}"
        logger.warning(f"Database health check failed: {e}")

    return health_status
