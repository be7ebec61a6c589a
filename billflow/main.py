from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from billflow.config import settings
from billflow.api.deps import DB
from billflow.api.v1.router import api_router
from billflow.core.exceptions import InvoiceEngineError
from billflow.database import init_db
from billflow.jobs.scheduler import start_scheduler, shutdown_scheduler, get_job_status


logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create missing tables (development; production runs alembic)
    - Start background scheduler
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()

    yield

    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Invoices", "description": "Invoice drafting, totals, numbering and status lifecycle"},
    {"name": "Health", "description": "Liveness and database connectivity"},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Invoicing API: line-item totals, sequential invoice numbers and invoice status lifecycle.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _field_path(loc) -> str:
    # Drop the leading "body" / "query" / "header" / "path" segment
    parts = [str(p) for p in loc[1:]] if len(loc) > 1 else [str(p) for p in loc]
    return ".".join(parts)


@app.exception_handler(InvoiceEngineError)
async def invoice_engine_exception_handler(request: Request, exc: InvoiceEngineError):
    """Map engine errors to their HTTP status with a {error, kind, details} body."""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} -> {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report request validation failures in the same shape as engine validation errors."""
    field_errors = [
        {"field": _field_path(error.get("loc", ())), "message": error.get("msg", "Invalid value")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "kind": "validation_error", "details": field_errors},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors; the traceback is only returned in DEBUG."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")

    error_detail = {
        "error": "Internal server error",
        "kind": "internal_error",
    }
    if settings.DEBUG:
        error_detail["details"] = {
            "type": type(exc).__name__,
            "message": str(exc),
            "traceback": traceback.format_exc(),
        }
    return JSONResponse(status_code=500, content=error_detail)


@app.get("/health", tags=["Health"])
async def health_check(db: DB):
    """Health check endpoint with database validation."""
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "jobs": get_job_status(),
        }
    }

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
