from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from oauthabl.api.error_handling import register_exception_handlers
from oauthabl.api.routes import clients_router, oauth_router
from oauthabl.logging import get_logger, set_correlation_id
from oauthabl.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and close the store on shutdown."""
    from oauthabl.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="oauthabl", version=__version__, lifespan=lifespan)

# Tenant applications call from their own origins and authenticate by header
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Admin-Key", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(clients_router)
app.include_router(oauth_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report whether the key-value store answers a read."""
    from oauthabl.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.store.get("healthz:probe")
    except StoreUnavailable as exc:
        logger.error("health_check_store_failed", error=exc.message)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": __version__, "store": "unavailable"},
        )
    return {"status": "healthy", "version": __version__, "store": "ok"}


def create_app() -> FastAPI:
    return app
