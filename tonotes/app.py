from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tonotes.api.error_handling import register_exception_handlers
from tonotes.api.routes import router
from tonotes.logging import get_logger, set_correlation_id
from tonotes.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup unless one was injected, close it on shutdown."""
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = Runtime()
        logger.info("runtime_started")

    yield

    if owns_runtime:
        try:
            await app.state.runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request: Request, call_next):
    """Bind X-Request-ID (or a fresh id) to the log context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


async def health(request: Request):
    """Dependency probes for the store and Redis, each bounded by a timeout."""
    runtime: Runtime = request.app.state.runtime
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, probe) -> Optional[bool]:
        try:
            return await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.check_store)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    redis_ok = await _run_bounded("redis", runtime.check_cache)
    if redis_ok is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}

    healthy = bool(db_ok) and redis_ok is not False
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Application factory; tests pass their own runtime."""
    app = FastAPI(title="toNotes Auth", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
