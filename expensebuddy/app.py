from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from expensebuddy.api.error_handling import register_exception_handlers
from expensebuddy.api.routes import router
from expensebuddy.config import Settings
from expensebuddy.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3
_DEV_ORIGINS = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]
_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    from expensebuddy.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("service_started", version=__version__, store=type(runtime.store).__name__)
    yield
    try:
        await runtime.close()
    except Exception as exc:
        logger.error("service_shutdown_failed", error=str(exc))


async def _request_scope(request: Request, call_next):
    """Per-request id, hardening headers, and one completion log line.

    The id comes from the client's X-Request-ID when present and is echoed
    back so support can match a user report to server logs.
    """
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    response.headers.setdefault("API-Version", __version__)
    for header, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    # Bodies carry tokens and personal data
    response.headers.setdefault("Cache-Control", "no-store")
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


async def _probe(label: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=label, timeout=PROBE_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_probe_failed", component=label, error=str(exc))
    return False


async def health() -> JSONResponse:
    """Store and Redis reachability; 503 when either is down."""
    from expensebuddy.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    store_probe = getattr(runtime.store, "ping", None)
    if store_probe is None:
        checks["store"] = {"status": "healthy", "type": "memory"}
    else:
        ok = await _probe("store", store_probe)
        checks["store"] = {"status": "healthy" if ok else "unhealthy", "type": "postgres"}

    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if ok else "unhealthy"}

    healthy = all(c["status"] != "unhealthy" for c in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    origins: List[str] = settings.cors_allow_origins or _DEV_ORIGINS

    application = FastAPI(title="Expense Buddy Identity", version=__version__, lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version", "X-RateLimit-Remaining"],
        max_age=3600,
    )
    application.middleware("http")(_request_scope)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", health, methods=["GET"], include_in_schema=False)
    return application


app = create_app()
