"""execflow FastAPI Application.

Entry point for the backend server: graph registry, execution history,
live progress and recovery over HTTP.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from execflow.api.health import VERSION
from execflow.api.health import router as health_router
from execflow.api.responses import engine_error_handler, request_validation_handler
from execflow.api.v1.executions import router as executions_router
from execflow.api.v1.graphs import router as graphs_router
from execflow.api.v1.sse import router as sse_router
from execflow.config import Settings
from execflow.config import settings as default_settings
from execflow.services import build_services
from execflow.workflows.errors import EngineError

logger = logging.getLogger(__name__)


def create_app(cfg: Settings | None = None) -> FastAPI:
    """Build the application. Tests pass their own Settings."""
    cfg = cfg or default_settings
    logging.basicConfig(level=cfg.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        services = build_services(cfg)
        app.state.services = services
        await services.start()
        logger.info("execflow started (store=%s)", cfg.store_backend)

        yield

        await services.stop()
        if services.db_engine is not None:
            services.db_engine.dispose()
        logger.info("execflow stopped")

    app = FastAPI(
        title="execflow",
        description="Workflow execution lifecycle: validation, history, progress and recovery",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Global exception handler: internal details never leak to clients
    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, HTTPException):
            raise exc
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "INTERNAL_ERROR", "message": "Internal server error.", "details": {}},
            },
        )

    # Routes
    app.include_router(health_router)
    app.include_router(graphs_router)
    app.include_router(executions_router)
    app.include_router(sse_router)

    @app.get("/")
    async def root():
        return {"name": "execflow", "version": VERSION, "status": "running"}

    return app


app = create_app()
