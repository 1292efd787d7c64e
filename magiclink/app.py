from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse
from fastapi.staticfiles import StaticFiles

from magiclink.api.error_handling import register_exception_handlers
from magiclink.api.routes import get_runtime, router
from magiclink.api.schemas import HealthChecks, HealthConfiguration, HealthResponse
from magiclink.config import Settings, get_settings
from magiclink.logging import get_logger, set_correlation_id
from magiclink.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
STATIC_DIR = Path(__file__).resolve().parent.parent / "static"

_NO_STORE_PREFIXES = ("/auth/", "/api/")


async def _run_local_sweep(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop dropping expired local cache entries."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            runtime.sweep_local()
    except asyncio.CancelledError:
        logger.info("local_cache_sweep_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Verify Redis, start the sweep loop, and release backends on shutdown."""
    runtime: Runtime = app.state.runtime
    await runtime.verify_distributed()
    sweep_task = asyncio.create_task(
        _run_local_sweep(runtime, runtime.settings.local_cache_sweep_seconds)
    )
    logger.info("app_started", environment=runtime.settings.environment, version=__version__)

    yield

    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task
    await runtime.close()
    logger.info("runtime_cleanup_complete")


async def add_correlation_id(request: Request, call_next):
    """Bind a request id for structured logs and echo it in ``X-Request-ID``."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    path = request.url.path
    if path.startswith(_NO_STORE_PREFIXES) or path == "/health":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


async def health(request: Request) -> HealthResponse:
    """Liveness plus backend status.

    Reports whether Redis answers a bounded ping, how many entries the local
    cache holds, and which optional integrations are configured (never their
    values).
    """
    runtime = get_runtime(request)
    settings = runtime.settings
    try:
        redis_status = await asyncio.wait_for(
            runtime.redis_status(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="redis", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        redis_status = "unavailable"
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment=settings.environment,
        version=__version__,
        checks=HealthChecks(
            redis=redis_status,
            local_cache={"status": "healthy", "entries": len(runtime.local)},
        ),
        configuration=HealthConfiguration(
            redis_configured=runtime.distributed is not None,
            email_configured=runtime.email.is_configured,
            base_url_configured=bool(settings.app_base_url),
        ),
    )


async def index() -> RedirectResponse:
    return RedirectResponse("/index.html", status_code=302)


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application around ``runtime`` (constructed from settings if omitted)."""
    runtime = runtime or Runtime(settings or get_settings())
    app = FastAPI(title="Magic Link Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # Registered last runs outermost, so the request id covers every other layer
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], response_model=HealthResponse, tags=["health"])
    app.add_api_route("/", index, methods=["GET"], include_in_schema=False)

    if STATIC_DIR.exists():
        # Mounted last so API routes take precedence over files
        app.mount("/", StaticFiles(directory=STATIC_DIR, html=False), name="static")
    else:
        logger.warning("static_assets_missing", path=str(STATIC_DIR))
    return app
