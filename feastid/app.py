from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feastid.api.error_handling import register_exception_handlers
from feastid.api.routes import router
from feastid.config import Settings
from feastid.logging import get_logger, set_correlation_id
from feastid.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the passcode sweeper on startup and release resources on shutdown."""
    global _sweep_task
    from feastid.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_otp_sweep(runtime, runtime.settings.otp_sweep_interval_seconds)
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="FeastID", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log event of the request with one id, echoed in ``X-Request-ID``."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store and Redis reachability."""
    from feastid.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:  # any probe failure means unhealthy
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    # one cheap read exercises the pool (or the in-memory lock)
    db_ok = await _run_bounded(
        "store", lambda: runtime.store.get_role_permission_bindings(None)
    )
    checks["store"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_otp_sweep(runtime, interval_seconds: int) -> None:
    """Background loop purging expired and consumed passcode records."""
    interval = max(interval_seconds, 30)
    try:
        while True:
            try:
                await asyncio.to_thread(runtime.otp.sweep_expired)
            except StoreUnavailable as exc:
                logger.warning("otp_sweep_failed", operation=exc.operation)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("otp_sweep_task_cancelled")
        raise


def create_app() -> FastAPI:
    return app
