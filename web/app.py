"""Web dashboard — monitoring and control of agent sessions.

Routes:
  GET  /                                -> serves the HTML dashboard page
  GET  /api/sessions?project=&archived= -> JSON list for polling
  GET  /api/sessions/{session_id}       -> single session detail
  POST /api/sessions/{session_id}/kill     -> kill the agent, keep the worktree
  POST /api/sessions/{session_id}/restore  -> restart a killed/exited session
  POST /api/sessions/{session_id}/archive  -> archive a merged/killed session
  POST /api/sessions/{session_id}/send     -> type a message into the agent

All API errors return consistent JSON: {"error": "message", "code": "ERROR_CODE"}

The app's lifespan runs one LifecyclePoller so statuses stay fresh while
the dashboard is open.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse

# Ensure orchestrator is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from orchestrator.collaborators import default_collaborators
from orchestrator.config import load_config
from orchestrator.errors import (
    AllocationError,
    CollaboratorError,
    CollisionError,
    ConfigError,
    InvalidStateError,
    NotFoundError,
    OrchestratorError,
)
from orchestrator.manager import SessionManager
from orchestrator.notify import notify_transition
from orchestrator.poller import LifecyclePoller
from orchestrator.validation import validate_identifier

logger = logging.getLogger(__name__)

_HTML_PATH = Path(__file__).parent / "index.html"

_manager: SessionManager | None = None

_STATUS_CODES = {
    NotFoundError: 404,
    InvalidStateError: 409,
    CollisionError: 409,
    CollaboratorError: 502,
    AllocationError: 503,
    ConfigError: 500,
}


def set_manager(manager: SessionManager | None) -> None:
    global _manager
    _manager = manager


def get_manager() -> SessionManager:
    """The process-wide manager, built from the discovered config on first use."""
    global _manager
    if _manager is None:
        _manager = SessionManager(load_config(), default_collaborators())
    return _manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager = get_manager()
    on_transition = notify_transition if manager.config.notifications else None
    poller = LifecyclePoller.for_manager(manager, on_transition=on_transition)
    poller.start()
    app.state.poller = poller
    try:
        yield
    finally:
        poller.stop()


app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------


def _error_response(message: str, code: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message, "code": code}, status_code=status_code)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    status_code = _STATUS_CODES.get(type(exc), 500)
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return _error_response(str(exc), exc.code, status_code)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s: %s", request.url.path, exc)
    return _error_response(str(exc), "VALIDATION_ERROR", 400)


@app.exception_handler(Exception)
async def generic_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
    return _error_response("Internal server error", "INTERNAL_ERROR", 500)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/")
def index():
    return FileResponse(_HTML_PATH, media_type="text/html")


@app.get("/api/sessions")
def api_sessions(
    project: str | None = Query(None, max_length=128),
    archived: bool = Query(False),
):
    if project is not None:
        validate_identifier(project, "project")
    sessions = get_manager().list(project_id=project, include_archived=archived)
    return JSONResponse([asdict(s) for s in sessions])


@app.get("/api/sessions/{session_id}")
def api_session_detail(session_id: str):
    validate_identifier(session_id, "id")
    return JSONResponse(asdict(get_manager().get(session_id)))


@app.post("/api/sessions/{session_id}/kill")
def api_kill(session_id: str):
    validate_identifier(session_id, "id")
    return JSONResponse({"ok": True, "session": asdict(get_manager().kill(session_id))})


@app.post("/api/sessions/{session_id}/restore")
def api_restore(session_id: str):
    validate_identifier(session_id, "id")
    return JSONResponse({"ok": True, "session": asdict(get_manager().restore(session_id))})


@app.post("/api/sessions/{session_id}/archive")
def api_archive(session_id: str):
    validate_identifier(session_id, "id")
    return JSONResponse({"ok": True, "session": asdict(get_manager().archive(session_id))})


@app.post("/api/sessions/{session_id}/send")
def api_send(session_id: str, message: str = Body(..., embed=True)):
    validate_identifier(session_id, "id")
    result = get_manager().send(session_id, message, wait=False)
    return JSONResponse({"ok": True, "sessionId": session_id, "delivered": result.delivered})
