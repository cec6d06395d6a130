from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tenantgate.api.error_handling import register_exception_handlers
from tenantgate.api.routes import router
from tenantgate.config import Settings
from tenantgate.logging import get_logger, set_correlation_id
from tenantgate.service.runtime import Runtime, get_runtime
from tenantgate.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweeper_task: asyncio.Task | None = None


async def _run_invitation_sweeper(runtime: Runtime, interval_seconds: int) -> None:
    """Expire past-due invitations on a fixed interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(runtime.invitations.expire_due_invitations)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("invitation_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweeper_task
    runtime = get_runtime()
    interval = runtime.settings.invitation_sweep_interval_seconds
    if interval > 0:
        _sweeper_task = asyncio.create_task(_run_invitation_sweeper(runtime, interval))
        logger.info("invitation_sweeper_started", interval_seconds=interval)

    yield

    if _sweeper_task:
        _sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweeper_task
        _sweeper_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TenantGate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts; no wildcard while credentials are allowed
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
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Two-Factor-Code",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for logs and the ``X-Request-ID`` header.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID is generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Check the store and, when configured, Redis."""
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
    db_ok = await _run_bounded("database", runtime.store.ping)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    overall_healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }
