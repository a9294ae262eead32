from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
import time
import uuid
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings, validate_environment
from logging_config import setup_logging
from sentry_integration import init_sentry, capture_exception

from database import init_db, get_engine, get_session_factory
from reconciliation import reconciliation_router
from reconciliation.services.run_store import ReconciliationRunRepository

settings = get_settings()

setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.json_logs,
    service_name="ledger-reconciliation"
)
logger = logging.getLogger(__name__)

if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=settings.API_VERSION,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration, prepare the run store, dispose the pool on exit."""
    logger.info(f"Starting Ledger Reconciliation API ({settings.ENVIRONMENT})")

    env_status = validate_environment()
    for error in env_status["errors"]:
        logger.error(f"Configuration Error: {error}")
    if not env_status["valid"] and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")
    for warning in env_status["warnings"]:
        logger.warning(f"Configuration Warning: {warning}")

    await init_db()
    logger.info(f"Matching tolerances: {settings.tolerance_defaults()}")

    yield

    logger.info("Shutting down Ledger Reconciliation API...")
    await get_engine().dispose()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Reconciliation of the application's transaction ledger against the
    payment gateway's records.

    ## Features

    ### Ledger Reconciliation (/api/reconciliation/runs)
    - Matching by transaction id, reference, fuzzy reference, amount and date
    - Per-run tolerance overrides, optional sharding by county or day
    - Run history with per-transaction items, CSV/JSON export

    ### Payable Reconciliation (/api/reconciliation/payables)
    - Event orders and donations against payments and gateway notifications
    - Discrepancy sweep and summaries
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Content-Disposition"],
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    return {
        "message": "Ledger Reconciliation API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Readiness check.

    Returns:
    - 200: run store reachable
    - 503: run store unavailable
    """
    checks = {}
    healthy = True

    try:
        async with get_session_factory()() as session:
            counts = await ReconciliationRunRepository(session).status_counts()
        checks["run_store"] = {
            "status": "connected",
            "type": get_engine().dialect.name,
            "runs_in_progress": counts["running"],
        }
    except Exception as e:
        logger.error(f"Run store health check failed: {e}")
        healthy = False
        checks["run_store"] = {"status": "disconnected", "error": str(e)}

    checks["gateway"] = {"status": "configured" if settings.gateway_configured else "not_configured"}

    env_status = validate_environment()
    checks["configuration"] = {
        "status": "valid" if env_status["valid"] else "invalid",
        "warnings": len(env_status["warnings"]),
        "errors": len(env_status["errors"]),
    }

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=503, detail=body)
    return body


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness check; does not touch dependencies."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(reconciliation_router)
app.include_router(api_router)


# ==================== MIDDLEWARE ====================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Attach a request id and log slow or failed requests."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    start_time = time.perf_counter()

    response = await call_next(request)

    elapsed = time.perf_counter() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = f"{elapsed * 1000:.2f}"

    if settings.debug_enabled or response.status_code >= 400:
        logger.info(
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed:.3f}s)",
            extra={"request_id": request_id}
        )
    return response


# ==================== EXCEPTION HANDLERS ====================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=exc)
    capture_exception(exc, path=request.url.path, method=request.method)

    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "type": type(exc).__name__}
    )
