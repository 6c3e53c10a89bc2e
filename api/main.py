"""
api/main.py -- FastAPI application entry point for SIGRISK.

Exposes the MAGERIT risk engine and registry over HTTP so dashboards and
external tools can read and maintain the risk register without the CLI.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (registry, report cache, risk service, purge task)
and shutdown (cancel purge task, close cache and DB) symmetrically.

Domain errors raised anywhere below the routes map to HTTP here and only
here:
  NotFound        -> 404 not_found
  ValidationError -> 422 validation_error
  ConflictError   -> 409 conflict
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.assets import router as assets_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.risks import router as risks_router
from api.routes.v1.safeguards import router as safeguards_router
from api.routes.v1.threats import router as threats_router
from api.routes.v1.vulnerabilities import router as vulnerabilities_router
from cache.store import ReportCache
from core.calculator import RiskPolicy
from core.config import get_settings
from core.errors import ConflictError, NotFound, ValidationError
from registry.risks import RiskService
from registry.store import RegistryStore

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sigrisk.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired report cache entries every 15 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(15 * 60)
        removed = await run_in_threadpool(app.state.cache.purge_expired)
        if removed:
            logger.debug("Purged %d expired report(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the registry, report cache and risk service; tear them down on exit.

    Startup order matters: the service holds references to both the store
    and the cache, and the purge task references app.state.cache.
    """
    settings = get_settings()
    logger.info("SIGRISK API starting up")
    app.state.store = RegistryStore(settings.database_url)
    logger.info("Registry initialized")
    app.state.cache = ReportCache(settings.cache_path) if settings.cache_enabled else None
    logger.info("Report cache %s", "enabled" if app.state.cache is not None else "disabled")
    app.state.service = RiskService(app.state.store, RiskPolicy.from_settings(settings), app.state.cache)
    app.state.purge_task = asyncio.create_task(_purge_loop(app)) if app.state.cache is not None else None

    yield

    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    if app.state.cache is not None:
        app.state.cache.close()
    app.state.store.close()
    logger.info("SIGRISK API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SIGRISK API",
    description="MAGERIT v3.0 risk analysis: asset registry, threat catalog, risk quantification and safeguards.",
    version=API_VERSION,
    lifespan=lifespan,
    debug=get_settings().debug,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(assets_router, prefix="/api/v1", tags=["Assets"])
app.include_router(threats_router, prefix="/api/v1", tags=["Threats"])
app.include_router(vulnerabilities_router, prefix="/api/v1", tags=["Vulnerabilities"])
app.include_router(risks_router, prefix="/api/v1", tags=["Risks"])
app.include_router(safeguards_router, prefix="/api/v1", tags=["Safeguards"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return _error(404, "not_found", str(exc))


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, "validation_error", str(exc))


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return _error(409, "conflict", str(exc))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header (slowapi stores seconds on exc.retry_after)."""
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and the state of the database and cache."""
    components: dict[str, str] = {"app": "ok"}
    try:
        request.app.state.store.ping()
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    components["cache"] = "enabled" if getattr(request.app.state, "cache", None) is not None else "disabled"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
