"""
FastAPI application for the Gifter job service.

The process owns one :class:`JobSystem` (queues, worker pools, reminder
delivery) and, when enabled, the recurring-task scheduler. Both live on
``app.state`` so endpoints reach them through dependencies.
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from typing import Any, Dict, List, Optional
import time
import uuid
import os
from contextlib import asynccontextmanager
from gifter_jobs.api.v1 import api_router
from gifter_jobs.utils import setup_logging, get_logger, log_business_event
from gifter_jobs.jobs.scheduler import Scheduler, build_scheduler
from gifter_jobs.jobs.system import JobSystem
from gifter_jobs.database import engine, Base, SessionLocal
from gifter_jobs.config import QUEUE_SETTINGS, SCHEDULER_SETTINGS, WORKER_SETTINGS
from gifter_jobs.models.schemas.base import ErrorResponse

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/gifter_jobs.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_VERSION = "1.0.0"
START_WORKERS = os.getenv("START_WORKERS", "true").lower() in {"1", "true", "yes", "on"}

# Queue snapshot keys surfaced on /health
HEALTH_QUEUE_FIELDS = ("backend", "depth", "active", "failed")


def _start_scheduler(system: JobSystem) -> Optional[Scheduler]:
    if not SCHEDULER_SETTINGS.get("enabled", True):
        logger.info("Scheduler disabled by configuration")
        return None
    scheduler = build_scheduler(system)
    scheduler.start()
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, start workers and the scheduler; drain both on shutdown."""
    system: Optional[JobSystem] = None
    scheduler: Optional[Scheduler] = None
    try:
        Base.metadata.create_all(bind=engine)

        system = JobSystem(SessionLocal)
        if START_WORKERS:
            system.start_workers()
        else:
            logger.info("Worker pools not started in this process")
        scheduler = _start_scheduler(system)

        app.state.job_system = system
        app.state.scheduler = scheduler
        log_business_event(
            "service_started",
            {"queues": list(system.queues), "workers": START_WORKERS, "scheduler": scheduler is not None},
        )
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Service startup failed", error=str(e), exc_info=True)
        raise
    finally:
        if scheduler is not None:
            scheduler.stop()
        if system is not None:
            system.shutdown(timeout=float(WORKER_SETTINGS.get("drain_timeout_seconds", 30.0)))  # type: ignore[arg-type]
        logger.info("Service stopped")


app = FastAPI(
    title="Gifter Jobs",
    description="""
    Background job orchestration and collection curation for the Gifter marketplace.

    * **Queues** - named task queues with idempotent enqueue, priorities, delays and retry backoff
    * **Workers** - one bounded pool per queue
    * **Scheduler** - daily collections, expired collection cleanup, reminder polling
    * **Curation** - embedding clusters turned into editorial collections
    * **Ingestion** - CMS product.changed webhooks mirrored into the catalog
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    error_type: Optional[str] = None,
    details: Optional[List[Dict[str, Any]]] = None,
) -> JSONResponse:
    envelope = ErrorResponse(message=message, request_id=_request_id(request), error_type=error_type, details=details)
    return JSONResponse(status_code=status_code, content=envelope.to_content())


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Assign a request id, time the request and log one line per response."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(elapsed_ms)
    logger.info(
        "Request handled",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time_ms=elapsed_ms,
        client=request.client.host if request.client else None,
        request_id=request_id
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = jsonable_encoder(exc.errors())
    logger.warning("Request validation failed", path=request.url.path, errors=details, request_id=_request_id(request))
    return _error_response(request, 422, "Request validation failed", details=details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning("HTTP error", path=request.url.path, status_code=exc.status_code, detail=exc.detail, request_id=_request_id(request))
    return _error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=_request_id(request),
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error", error_type=type(exc).__name__)


def _database_status() -> str:
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return "healthy"
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", error=str(e))
        return f"unhealthy: {e}"
    finally:
        db.close()


@app.get("/health", tags=["health"], summary="Health check")
async def health_check(request: Request):
    """Database reachability, per-queue depth and scheduler state."""
    checks: Dict[str, Any] = {"database": _database_status()}

    system: Optional[JobSystem] = getattr(request.app.state, "job_system", None)
    if system is not None:
        checks["queues"] = {
            name: {field: snap.get(field) for field in HEALTH_QUEUE_FIELDS}
            for name, snap in system.snapshot().items()
        }
    scheduler: Optional[Scheduler] = getattr(request.app.state, "scheduler", None)
    checks["scheduler"] = "running" if scheduler is not None and scheduler.is_running() else "stopped"

    return {
        "status": "healthy" if checks["database"] == "healthy" else "degraded",
        "service": "gifter-jobs",
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "queue_backend": "redis" if QUEUE_SETTINGS.get("use_redis", False) else "memory",
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Gifter Jobs API",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gifter_jobs.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["gifter_jobs"],
        log_level="info"
    )
