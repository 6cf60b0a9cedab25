from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool

from taptab.api.error_handling import register_exception_handlers
from taptab.api.routes import router
from taptab.logging import get_logger, set_correlation_id
from taptab.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store on shutdown."""
    from taptab.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await run_in_threadpool(runtime.warmup)
    except StoreUnavailableError as exc:
        # Keep serving; requests will answer 503 until the store returns
        logger.error("startup_warmup_failed", error=exc.message)

    yield

    from taptab.service import runtime as runtime_module

    if runtime_module.runtime is not None:
        runtime_module.runtime.close()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="TapTab Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation ID to each request for log tracing.

    The ID is taken from the X-Request-ID header when the client sends one,
    otherwise generated, and echoed back in the response header.
    """
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
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token-bearing responses must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
def health() -> Dict[str, Any]:
    """Report store connectivity and version."""
    from taptab.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        runtime.store.verify_connection()
        store_ok = True
    except StoreUnavailableError as exc:
        logger.error("health_check_store_failed", error=exc.message)
        store_ok = False
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": "memory" if runtime.settings.use_memory_store else "redis",
            }
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
