"""ASGI entry-point for the FastAPI application.

This module
1. instantiates the :class:`fastapi.FastAPI` application around a service
   container (see :mod:`vidscribe.bootstrap`);
2. wires the API routers located in ``vidscribe.api``;
3. registers global exception handlers and middleware; and
4. starts / stops the in-process transcription queue with the application.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vidscribe import __version__
from vidscribe.api import api_router
from vidscribe.bootstrap import Container, get_container
from vidscribe.errors import ServiceError
from vidscribe.logging_config import LOG_DIR as APP_LOG_DIR
from vidscribe.logging_config import setup_logging
from vidscribe.services.notion import NotionAPIError, describe_error
from vidscribe.utils.storage import ensure_dir_exists


# ---------------------------------------------------------------------------
# Logging must be configured as soon as possible so that any errors during
# import/start-up are captured.
# ---------------------------------------------------------------------------
setup_logging()
logger = logging.getLogger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    """Wire and return the FastAPI application instance."""

    container = container or get_container()

    app = FastAPI(
        title="Vidscribe API",
        version=__version__,
        docs_url="/api/docs",
    )
    app.state.container = container

    # ------------------------------------------------------------------
    # Start-up / shutdown
    # ------------------------------------------------------------------

    @app.on_event("startup")
    async def _startup() -> None:
        logger.info("Running start-up checks …")

        for path in (APP_LOG_DIR, container.settings.TEMP_AUDIO_DIR):
            try:
                ensure_dir_exists(Path(path))
            except OSError as exc:
                logger.critical("Cannot create/access directory %s – %s", path, exc)
            else:
                writable = os.access(str(path), os.W_OK)
                logger.info("Directory %s is %swritable", path, "" if writable else "NOT ")

        if not container.settings.OPENAI_API_KEY:
            logger.warning("OPENAI_API_KEY is not set; transcription jobs will fail")

        if hasattr(container.queue, "start"):
            await container.queue.start()
        logger.info("Start-up checks finished.")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if hasattr(container.queue, "stop"):
            await container.queue.stop()

    # ------------------------------------------------------------------
    # Exception handlers
    # ------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.error("Request validation error: %s", exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.error("HTTP exception %s: %s", exc.status_code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(ServiceError)
    async def _service_error_handler(_request: Request, exc: ServiceError) -> JSONResponse:
        logger.warning("%s: %s", type(exc).__name__, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(NotionAPIError)
    async def _notion_error_handler(_request: Request, exc: NotionAPIError) -> JSONResponse:
        logger.error("Notion API error: %s", exc)
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": describe_error(exc), "error_kind": exc.kind.value},
        )

    @app.exception_handler(Exception)
    async def _generic_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")

    # ------------------------------------------------------------------
    # Miscellaneous endpoints
    # ------------------------------------------------------------------

    @app.get("/api/health")
    async def _health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "queue_backend": container.settings.QUEUE_BACKEND,
            "transcription_configured": bool(container.settings.OPENAI_API_KEY),
            "notion_configured": container.notion is not None,
        }

    return app


# Instantiate at import time so `uvicorn vidscribe.main:app` works.
app: FastAPI = create_app()
