"""
FastAPI REST API server for the tool-flow orchestrator.

Exposes orchestration, cache control, cloning and workspace template
overrides to tool handlers and the admin UI.

Usage:
    # Run standalone
    python -m taskpilot.api.server

    # Or via factory
    from taskpilot.api import create_app
    app = create_app()
    uvicorn.run(app, port=5002)

API Structure:
    /api/tools/       - Orchestration and next-step endpoints (routes/tool_flows.py)
    /api/cache/       - Instruction cache control
    /api/workspaces/  - Cloning, effective flows, template overrides
    /api/health       - Health check
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config.runtime_config import RuntimeConfig, get_runtime_config
from ..config.seed import seed_global_flows
from ..runtime.async_utils import run_blocking
from ..runtime.errors import DuplicateRowError, StorageUnavailableError
from ..runtime.orchestrator import Orchestrator
from .routes import tool_flows_router

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    global_store: str
    open_workspaces: List[str] = Field(default_factory=list)
    cache: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# =============================================================================
# FastAPI Application Factory
# =============================================================================


def create_app(
    config: Optional[RuntimeConfig] = None,
    orchestrator: Optional[Orchestrator] = None,
    seed_on_startup: bool = True,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Runtime config; loaded from YAML/environment if None.
        orchestrator: Pre-built orchestrator (tests inject in-memory stores).
        seed_on_startup: Insert missing default flows into the global store.
        enable_cors: Whether to enable CORS middleware.

    Returns:
        Configured FastAPI application.
    """
    config = config or get_runtime_config()
    orchestrator = orchestrator or Orchestrator.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        On startup: seed default flows into the global store.
        On shutdown: close every open store.
        """
        logger.info("TaskPilot API server starting...")
        if seed_on_startup:
            try:
                report = await run_blocking(seed_global_flows, orchestrator.registry.global_db)
                logger.info("Default flows: %s", report.summary())
            except StorageUnavailableError as e:
                logger.error("Could not seed global store: %s", e)

        yield

        logger.info("TaskPilot API server shutting down...")
        orchestrator.close()

    app = FastAPI(
        title="TaskPilot API",
        description="Tiered tool-flow orchestration: rendered step instructions, hand-offs and workspace overrides.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.config = config

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(tool_flows_router, prefix="/api")

    # -------------------------------------------------------------------------
    # Request Logging Middleware
    # -------------------------------------------------------------------------

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.info(
            "%s %s %s %.3fs",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response

    # -------------------------------------------------------------------------
    # Error Mapping
    # -------------------------------------------------------------------------

    @app.exception_handler(DuplicateRowError)
    async def duplicate_row(request: Request, exc: DuplicateRowError):
        logger.warning("%s %s conflicted: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={
                "error": "duplicate_row",
                "message": str(exc),
                "details": {"table": exc.table, "key": exc.key},
            },
        )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable(request: Request, exc: StorageUnavailableError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={
                "error": "storage_unavailable",
                "message": str(exc),
                "details": {"store": exc.store},
            },
        )

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint.

        Reports degraded (not an error status) when the global store cannot
        be queried.
        """
        orch: Orchestrator = request.app.state.orchestrator
        try:
            await run_blocking(orch.registry.global_db.list_tool_flows)
            global_store, status, error = "ok", "healthy", None
        except StorageUnavailableError as e:
            logger.warning("Global store health check failed: %s", e)
            global_store, status, error = "unavailable", "degraded", str(e)

        return HealthResponse(
            status=status,
            global_store=global_store,
            open_workspaces=orch.registry.open_workspaces(),
            cache=orch.cache.stats(),
            error=error,
        )

    return app


# =============================================================================
# Main Entry Point
# =============================================================================


def main():
    """Run the API server."""
    import argparse

    import uvicorn

    config = get_runtime_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="TaskPilot API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5002, help="Port to bind to")
    parser.add_argument("--no-cors", action="store_true", help="Disable CORS")
    parser.add_argument("--no-seed", action="store_true", help="Skip seeding default flows")
    args = parser.parse_args()

    app = create_app(config, seed_on_startup=not args.no_seed, enable_cors=not args.no_cors)

    print(f"Starting TaskPilot API server at http://{args.host}:{args.port}")
    print("  POST   /api/tools/{tool_name}/orchestrate")
    print("  GET    /api/tools/{tool_name}/next-steps")
    print("  POST   /api/cache/clear")
    print("  POST   /api/workspaces/{workspace_id}/tool-flows/{flow_id}/clone")
    print("  GET    /api/workspaces/{workspace_id}/tool-flows")
    print("  GET    /api/workspaces/{workspace_id}/feedback-steps")
    print("  PUT    /api/workspaces/{workspace_id}/feedback-steps/{name}")
    print("  GET    /api/health")

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
