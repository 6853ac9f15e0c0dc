from __future__ import annotations

import asyncio
import contextlib
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from wayne.api.error_handling import register_exception_handlers
from wayne.api.routes import router
from wayne.config import get_settings
from wayne.logging import get_logger

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

# Below this the sweep would mostly hit an empty index.
MIN_SWEEP_INTERVAL_SECONDS = 60

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the optional refresh-token sweep; drain the pool on shutdown."""
    global _sweep_task
    from wayne.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.refresh_token_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_refresh_token_sweep(interval))
        logger.info("refresh_token_sweep_scheduled", interval_seconds=interval)

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Wayne", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard while bearer headers are allowed.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line of a request with one id and echo it back.

    The id comes from the client's ``X-Request-ID`` header when present,
    otherwise a new UUID is generated.
    """
    correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Responses carry tokens and decrypted credentials
    if request.url.path.startswith("/api/v1/") or request.url.path == "/health":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Report database and Redis reachability; never requires auth."""
    from wayne.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    if runtime.settings.use_memory_store:
        checks["database"]["type"] = "memory"
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_refresh_token_sweep(interval_seconds: int) -> None:
    """Background loop deleting expired refresh tokens."""
    from wayne.service.runtime import get_runtime

    interval = max(interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
    try:
        while True:
            try:
                await asyncio.to_thread(get_runtime().tokens.cleanup_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_token_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("refresh_token_sweep_cancelled")


def create_app() -> FastAPI:
    return app
