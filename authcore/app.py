from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.logging import get_logger, set_correlation_id
from authcore.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP app around ``runtime``.

    When no runtime is passed one is constructed from the environment at
    startup and closed at shutdown. A runtime passed in is owned by the caller
    and left open.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        if owned:
            app.state.runtime = Runtime()
        logger.info("app_started", owned_runtime=owned)
        try:
            yield
        finally:
            if owned:
                try:
                    await app.state.runtime.close()
                    logger.info("runtime_cleanup_complete")
                except Exception as exc:
                    logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with the caller's X-Request-ID or a fresh uuid.

        The id lands in every log line for the request and is echoed back in
        the X-Request-ID response header.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app
