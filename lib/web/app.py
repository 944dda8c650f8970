"""
OpsHub - FastAPI Application.

Wires the project registry, worktree reconciler and CLI session manager into
one app and maps their errors to JSON responses.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from cli_bridge import TransportBridge
from cli_sessions import CliSessionManager
from opshub_config import OpsHubSettings
from opshub_errors import OpsHubError
from project_registry import ProjectRegistry
from session_token import SessionTokenCodec
from web.routes import cli, projects, worktrees, ws
from worktree_reconciler import WorktreeReconciler

# Application info
APP_NAME = "OpsHub"
APP_VERSION = "0.1.0"

logger = logging.getLogger("opshub.web")

STATUS_BY_KIND = {
    "capacity": 429,
    "validation": 400,
    "sandbox": 400,
    "session_state": 400,
    "external_tool": 400,
    "not_found": 404,
    "registry": 500,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(
    settings: Optional[OpsHubSettings] = None,
    *,
    registry: Optional[ProjectRegistry] = None,
    sessions: Optional[CliSessionManager] = None,
    reconciler: Optional[WorktreeReconciler] = None,
    codec: Optional[SessionTokenCodec] = None,
) -> FastAPI:
    """Create the FastAPI application. Services not passed in are built from ``settings``."""
    settings = settings or OpsHubSettings.from_env()
    registry = registry or ProjectRegistry(settings.projects_file)
    sessions = sessions or CliSessionManager(settings)
    reconciler = reconciler or WorktreeReconciler(registry, settings=settings)
    codec = codec or SessionTokenCodec(settings.ws_secret, ttl=settings.token_ttl)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await sessions.init()
        logger.info("%s %s ready", APP_NAME, APP_VERSION)
        try:
            yield
        finally:
            await sessions.shutdown()
            registry.shutdown()

    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        docs_url="/api/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # Services for request handlers (see web.state)
    app.state.settings = settings
    app.state.registry = registry
    app.state.sessions = sessions
    app.state.reconciler = reconciler
    app.state.codec = codec
    app.state.bridge = TransportBridge(codec, sessions)

    @app.exception_handler(OpsHubError)
    async def handle_opshub_error(request: Request, exc: OpsHubError):
        status = STATUS_BY_KIND.get(exc.kind, 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"error": str(exc), "kind": exc.kind})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{location}: {message}" if location else message, "kind": "validation"},
        )

    # Include routers
    app.include_router(projects.router, prefix="/api/projects", tags=["projects"])
    app.include_router(worktrees.router, prefix="/api/projects", tags=["worktrees"])
    app.include_router(cli.router, prefix="/api/cli", tags=["cli"])
    app.include_router(ws.router, prefix="/ws", tags=["websocket"])

    # Health checks
    @app.get("/api/health")
    async def health():
        live = sessions.list_sessions()
        return {
            "status": "ok",
            "version": APP_VERSION,
            "timestamp": _timestamp(),
            "projects": len(registry.list_projects()),
            "cli": {
                "totalSessions": len(live),
                "runningSessions": sum(1 for s in live if s["status"] == "running"),
            },
        }

    @app.get("/api/health/ready")
    async def ready():
        tools = sessions.list_tools()
        return {
            "status": "ready",
            "timestamp": _timestamp(),
            "cli": {
                "availableTools": sum(1 for t in tools if t["available"]),
                "totalTools": len(tools),
            },
        }

    @app.get("/api/health/live")
    async def live():
        return {"status": "alive", "timestamp": _timestamp()}

    # Mount the built UI last so API routes win
    if settings.static_dir is not None and settings.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")

    return app
