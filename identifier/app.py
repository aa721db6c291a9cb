from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from identifier.api.error_handling import register_exception_handlers
from identifier.api.routes import router
from identifier.config import Settings
from identifier.logging import configure_logging, get_logger, set_correlation_id
from identifier.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _allowed_origins(settings: Settings) -> list[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP application.

    ``settings`` defaults to ``Settings.from_env()``. A prebuilt ``runtime``
    may be passed in; otherwise one is built from the settings.
    """
    settings = settings or (runtime.settings if runtime else Settings.from_env())
    configure_logging(
        log_level=settings.log_level,
        json_output=settings.log_json,
        development_mode=settings.log_dev_mode,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            await app.state.runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))

    app = FastAPI(title="Identifier", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime or Runtime(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # token responses must never be cached
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Propagate X-Request-ID (or a fresh UUID) into logs and the response."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        """Store connectivity check plus version info."""
        rt: Runtime = request.app.state.runtime
        checks: Dict[str, Any] = {}
        try:
            await asyncio.wait_for(
                asyncio.to_thread(rt.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["store"] = {"status": "ok"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            checks["store"] = {"status": "error", "error": "timeout"}
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            checks["store"] = {"status": "error", "error": type(exc).__name__}
        healthy = all(c["status"] == "ok" for c in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    return app
