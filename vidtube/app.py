from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from vidtube.api.error_handling import register_exception_handlers
from vidtube.api.routes import router
from vidtube.config import get_settings
from vidtube.logging import get_logger, set_correlation_id
from vidtube.service.rate_limit import run_sweeper

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"


_sweeper_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the rate-limit sweeper on startup; stop it and release the runtime on shutdown."""
    global _sweeper_task
    from vidtube.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _sweeper_task = asyncio.create_task(
            run_sweeper(
                runtime.limiters.values(),
                runtime.settings.rate_limit_sweep_interval_seconds,
            )
        )
    except Exception as exc:
        logger.error("startup_sweeper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _sweeper_task:
            _sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweeper_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="VidTube API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # credentials are allowed, so never fall back to a wildcard
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    Uses the client's ``X-Request-ID`` when present and echoes it back.
    """
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
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from vidtube.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": type(runtime.store).__name__,
    }
    checks["rate_limit"] = {"backend": runtime.settings.rate_limit_backend.value}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app


def main() -> None:
    """Serve the API with uvicorn using HOST, PORT and RELOAD from settings."""
    uvicorn.run(
        "vidtube.app:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.reload,
    )


if __name__ == "__main__":
    main()
