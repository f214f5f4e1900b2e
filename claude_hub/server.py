"""FastAPI server: session metadata API and the viewer WebSocket."""

import logging
import time
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .browse import BrowseError, browse_directory
from .connection_hub import DEFAULT_MAX_PENDING, Connection
from .models import SessionNotFound
from .protocol import ProtocolHandler

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        timeouts = self.config.get("timeouts", {})
        server_timeouts = timeouts.get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    name: Optional[str] = None
    cwd: Optional[str] = None
    args: Optional[List[str]] = None


class UpdateSessionRequest(BaseModel):
    """Request to update session metadata."""
    name: Optional[str] = None


class SessionResponse(BaseModel):
    """Session record as returned by the API."""
    id: str
    name: str
    cwd: str
    args: List[str]
    createdAt: str
    lastActiveAt: str
    status: Optional[str] = None


class BrowseEntry(BaseModel):
    name: str
    mtime: float


class BrowseResponse(BaseModel):
    """Directory listing for the folder picker."""
    current: str
    parent: Optional[str] = None
    folders: List[BrowseEntry]
    files: List[BrowseEntry]


def create_app(
    registry=None,
    supervisor=None,
    hub=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: SessionRegistry instance
        supervisor: ProcessSupervisor instance
        hub: ConnectionHub instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Claude Hub",
        description="Run Claude CLI sessions on this machine and drive them from the browser",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.registry = registry
    app.state.supervisor = supervisor
    app.state.hub = hub

    def _require_registry():
        if app.state.registry is None:
            raise HTTPException(status_code=503, detail="Session registry not configured")
        return app.state.registry

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/sessions", response_model=List[SessionResponse])
    async def list_sessions():
        """List sessions with their live status."""
        return _require_registry().list()

    @app.post("/api/sessions", response_model=SessionResponse)
    async def create_session(request: CreateSessionRequest):
        """Create a session record. The process starts on first attach."""
        registry = _require_registry()
        session = registry.create(name=request.name, cwd=request.cwd, args=request.args)
        return {**session.to_dict(), "status": registry.status_of(session.id).value}

    @app.patch("/api/sessions/{session_id}", response_model=SessionResponse)
    async def update_session(session_id: str, request: UpdateSessionRequest):
        """Update session metadata (currently only the name)."""
        registry = _require_registry()
        session = registry.get(session_id)
        if not session:
            raise HTTPException(status_code=404, detail="Not found")
        if request.name is not None:
            try:
                session = registry.rename(session_id, request.name)
            except SessionNotFound:
                raise HTTPException(status_code=404, detail="Not found")
        return {**session.to_dict(), "status": registry.status_of(session_id).value}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str):
        """Delete a session, terminating its process if running."""
        registry = _require_registry()
        try:
            registry.delete(session_id)
        except SessionNotFound:
            raise HTTPException(status_code=404, detail="Not found")
        return {"ok": True}

    @app.get("/api/recent-dirs", response_model=List[str])
    async def recent_dirs():
        """Home directory plus every directory a session runs in."""
        return _require_registry().recent_dirs()

    @app.get("/api/browse", response_model=BrowseResponse)
    async def browse(path: Optional[str] = None, files: Optional[str] = None):
        """List subdirectories (and files with files=1) of a directory."""
        try:
            return browse_directory(path, include_files=files == "1")
        except BrowseError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.websocket("/ws")
    @app.websocket("/")
    async def viewer_socket(websocket: WebSocket):
        """Viewer connection speaking the attach/input/resize/detach protocol."""
        if app.state.registry is None or app.state.supervisor is None or app.state.hub is None:
            await websocket.close(code=1011)
            return

        await websocket.accept()
        connection = Connection(
            websocket.send_text,
            max_pending=app.state.config.get("server", {}).get("max_pending_messages", DEFAULT_MAX_PENDING),
            transport_close=websocket.close,
        )
        connection.start()
        handler = ProtocolHandler(
            connection,
            registry=app.state.registry,
            supervisor=app.state.supervisor,
            hub=app.state.hub,
        )
        logger.info(f"Viewer connection {connection.id} opened")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                try:
                    handler.handle(raw)
                except Exception as e:
                    logger.error(f"Error handling message on connection {connection.id}: {e}")
        except WebSocketDisconnect:
            pass
        finally:
            handler.close()
            await connection.close()
            logger.info(f"Viewer connection {connection.id} closed")

    static_dir = (config or {}).get("server", {}).get("static_dir")
    if static_dir:
        static_path = Path(static_dir).expanduser()
        if static_path.is_dir():
            app.mount("/", StaticFiles(directory=str(static_path), html=True), name="ui")
        else:
            logger.warning(f"Static directory {static_path} not found, UI not served")

    return app
