from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from chatrelay.api.error_handling import register_exception_handlers
from chatrelay.api.routes import router
from chatrelay.config import Settings, get_settings
from chatrelay.logging import get_logger, set_correlation_id
from chatrelay.metrics import observe_request
from chatrelay.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup unless one was injected; close it on shutdown."""
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = Runtime(app.state.settings)
    logger.info("app_started", owns_runtime=owns_runtime)

    yield

    if owns_runtime:
        try:
            app.state.runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__)
        app.state.runtime = None


async def _run_bounded(label: str, func) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_failed", component=label, error_type=type(exc).__name__)
    return False


async def health(request: Request) -> JSONResponse:
    """Connectivity of each store plus the count of failed mirror writes.

    The mirror is reported but does not make the service unhealthy.
    """
    runtime: Runtime = request.app.state.runtime
    primary_ok = await _run_bounded("primary", runtime.users.verify_connection)
    conversations_ok = await _run_bounded(
        "conversations", runtime.conversations.verify_connection
    )
    mirror_ok = await _run_bounded("mirror", runtime.mirror.verify_connection)

    checks: Dict[str, Dict[str, Any]] = {
        "primary": {
            "status": "healthy" if primary_ok else "unhealthy",
            "type": runtime.users.kind,
        },
        "conversations": {
            "status": "healthy" if conversations_ok else "unhealthy",
            "type": runtime.conversations.kind,
        },
        "mirror": {
            "status": "healthy" if mirror_ok else "degraded",
            "type": runtime.mirror.kind,
            "failed_writes": runtime.registry.mirror_failures,
        },
    }
    healthy = primary_ok and conversations_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


async def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="chatrelay", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs and the response with ``X-Request-ID`` (client-supplied or new)."""
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
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def record_request_duration(request: Request, call_next):
        """Feed ``http_request_duration_seconds``, labelled by route template."""
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            observe_request(
                request.method,
                getattr(route, "path", "unknown"),
                status_code,
                time.perf_counter() - start,
            )

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], include_in_schema=False)
    app.add_api_route("/metrics", metrics, methods=["GET"], include_in_schema=False)
    return app
