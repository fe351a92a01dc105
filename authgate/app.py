from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import router
from authgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", service=runtime.settings.service_name)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authgate", version=__version__, lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    return response


app.include_router(router)


def create_app() -> FastAPI:
    return app
