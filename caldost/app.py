from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from psycopg import Error as PsycopgError
from redis.exceptions import RedisError

from caldost.api.error_handling import register_exception_handlers
from caldost.api.routes import router
from caldost.config import get_settings
from caldost.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the secret store on startup; flush notifications on shutdown."""
    from caldost.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except (RedisError, OSError) as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="CALDOST Grievance Portal", version=__version__, lifespan=lifespan)

_settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Reuse the caller's X-Request-ID or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Complaint data must never sit in a shared cache
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report records store and secret store reachability, and whether the shared filesystem is writable."""
    from caldost.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        store_ok = False
    except (PsycopgError, OSError) as exc:
        logger.error("health_check_database_failed", error=str(exc))
        store_ok = False
    checks["database"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }

    try:
        secrets_ok = await asyncio.wait_for(runtime.secrets.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="secret_store")
        secrets_ok = False
    except (RedisError, OSError) as exc:
        logger.error("health_check_secret_store_failed", error=str(exc))
        secrets_ok = False
    checks["secret_store"] = {
        "status": "healthy" if secrets_ok else "unhealthy",
        "type": type(runtime.secrets).__name__,
    }

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_round_trip() -> None:
        fs_path.mkdir(parents=True, exist_ok=True)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    try:
        await asyncio.wait_for(asyncio.to_thread(_fs_round_trip), HEALTH_CHECK_TIMEOUT_SECONDS)
        fs_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="filesystem")
        fs_ok = False
    except OSError as exc:
        logger.error("health_check_filesystem_failed", error=str(exc))
        fs_ok = False
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    return {
        "status": "healthy" if store_ok and secrets_ok and fs_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
