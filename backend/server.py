from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import time
import traceback
import uuid

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import get_settings, get_cors_config, validate_environment

# Import logging and error tracking
from logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from sentry_integration import init_sentry, capture_exception, set_tag

# Import database and routers
from database import init_db, engine
from routers import wallet_router, reconciliation_router
from reconciliation.endpoints.reconciliation_api import get_reconciliation_service
from reconciliation.workers.match_sweep_worker import MatchSweepWorker

# Get settings
settings = get_settings()

# Configure structured logging
# Use JSON format in production, plain text in development
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.is_production,
    service_name="deposit-recon"
)
logger = get_logger(__name__)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    logger.info("=" * 60)
    logger.info("Starting Deposit Reconciliation API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug Mode: {settings.debug_enabled}")
    logger.info("=" * 60)

    # Validate environment
    env_status = validate_environment()
    if not env_status["valid"]:
        for error in env_status["errors"]:
            logger.error(f"Configuration Error: {error}")
        if settings.is_production:
            raise RuntimeError("Cannot start in production with invalid configuration")

    for warning in env_status.get("warnings", []):
        logger.warning(f"Configuration Warning: {warning}")

    # Initialize database
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    worker = None
    if settings.SWEEP_ENABLED:
        worker = MatchSweepWorker(get_reconciliation_service(), settings)
        worker.start()
    app.state.sweep_worker = worker

    logger.info("Deposit Reconciliation API started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Deposit Reconciliation API...")
    if worker is not None:
        worker.stop()
    await engine.dispose()


# Create the main app
app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Deposit reconciliation and wallet ledger.

    ## Features

    ### Reconciliation (/api/reconciliation)
    - Ingest bank / mobile-money notifications forwarded by the chat layer
    - Auto-match payer and payee notifications, crediting the payer's wallet
    - Operator queue: candidates, approve, reject, force-match, batch approve
    - Background re-match sweep

    ### Wallet (/api/wallet)
    - Balance and paginated transaction history
    - Idempotent credits and debits for game entries and winnings
    - Manual deposit requests and approval
    - Daily ledger report
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/", tags=["Health"])
async def root():
    """Basic health check - returns 200 if service is running"""
    return {
        "message": "Deposit Reconciliation API",
        "status": "healthy",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health", tags=["Health"])
async def health_check(request: Request):
    """
    Detailed health check for load balancers and uptime monitors.

    Returns:
    - 200: All systems operational
    - 503: Database unavailable
    """
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "checks": {}
    }

    try:
        from sqlalchemy import text

        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()

        health_status["checks"]["database"] = {
            "status": "connected",
            "type": engine.dialect.name
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {
            "status": "disconnected",
            "error": str(e)
        }

    worker = getattr(request.app.state, "sweep_worker", None)
    health_status["checks"]["sweep_worker"] = worker.status() if worker else {"running": False}

    env_status = validate_environment()
    health_status["checks"]["configuration"] = {
        "status": "valid" if env_status["valid"] else "invalid",
        "warnings": len(env_status.get("warnings", [])),
        "errors": len(env_status.get("errors", []))
    }

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    """
    Liveness probe.
    Returns 200 if the process is running (doesn't check dependencies).
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@api_router.get("/config/status", tags=["Health"])
async def config_status():
    """
    Configuration status check (non-sensitive).
    Useful for debugging deployment issues.
    """
    env_status = validate_environment()

    return {
        "environment": settings.ENVIRONMENT,
        "debug": settings.debug_enabled,
        "cors_origins_count": len(settings.cors_origins_list),
        "configuration_valid": env_status["valid"],
        "warnings": env_status.get("warnings", []),
        "variables": env_status.get("variables", {}),
        # Don't expose actual errors in production
        "errors": env_status.get("errors", []) if not settings.is_production else ["Hidden in production"]
    }


# Include all routers
api_router.include_router(reconciliation_router)
api_router.include_router(wallet_router)

# Include the main router in the app
app.include_router(api_router)

# ==================== MIDDLEWARE ====================

# CORS middleware with production-safe configuration
cors_config = get_cors_config()
app.add_middleware(
    CORSMiddleware,
    **cors_config
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing information and bind the request id to log records"""
    start_time = time.time()

    request_id = request.headers.get("X-Request-ID") or f"req-{uuid.uuid4().hex[:12]}"
    set_request_context(request_id, request.headers.get("X-Operator-Id"))
    set_tag("request_id", request_id)

    if settings.debug_enabled:
        logger.debug(f"[{request_id}] {request.method} {request.url.path}")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

        if settings.debug_enabled or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

        return response
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise
    finally:
        clear_request_context()


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    capture_exception(exc, path=request.url.path)
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

    # Don't expose internal errors in production
    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
        }
    )
