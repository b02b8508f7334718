from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Final

from fastapi import FastAPI

from coderunner.api.routes import get_orchestrator, router as api_router
from coderunner.core.config import get_settings
from coderunner.core.errors import register_exception_handlers


logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    orchestrator = app.dependency_overrides.get(get_orchestrator, get_orchestrator)()
    healthy, detail = orchestrator.runtime.check_health()
    if healthy:
        logger.info("Sandbox runtime: %s", detail)
    else:
        # Requests will fail with infrastructure errors until this is fixed.
        logger.error("Sandbox runtime unavailable at startup: %s", detail)
    yield


def create_app() -> FastAPI:
    configure_logging(get_settings().log_level)
    app = FastAPI(
        title="Code Execution API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(api_router)
    return app


app: Final[FastAPI] = create_app()


def run() -> None:
    """Serve the API with Uvicorn for local development.

    Each request holds a worker thread for the lifetime of its sandboxes, so size
    the threadpool (or run several workers) for the expected concurrency.
    """
    import uvicorn

    host: str = os.environ.get("HOST", "127.0.0.1")
    port_str: str | None = os.environ.get("PORT")
    port: int = int(port_str) if port_str else 8000
    uvicorn.run("coderunner.main:app", host=host, port=port, log_level="info")
