"""
Memo Tool Server

Exposes the note tools over the tool protocol on two transports that share
one dispatcher:

  WS     /ws       persistent socket, one JSON message per frame
  POST   /mcp      HTTP-polled variant: submit one message, get queued replies
  GET    /mcp      poll queued messages for a session
  DELETE /mcp      drop a session
  GET    /health   liveness and counts
  GET    /metrics  Prometheus metrics

Runs on MCP_HOST:MCP_PORT (default 0.0.0.0:9090).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mcp_servers.memo_tools.tools import build_registry
from mcp_servers.memo_tools.transports import HttpSessionManager, serve_websocket
from memo.config import Settings, settings
from memo.middleware import MetricsMiddleware
from memo.store import NoteStore

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
PRUNE_INTERVAL = 60  # seconds


async def _prune_sessions(sessions: HttpSessionManager) -> None:
    """Periodically close idle HTTP sessions."""
    while True:
        await asyncio.sleep(PRUNE_INTERVAL)
        try:
            await sessions.prune()
        except Exception as e:
            logger.warning("Session pruning failed: %s", e)


def create_app(
    app_settings: Settings = settings, store: Optional[NoteStore] = None
) -> FastAPI:
    """Build the tool server around *store* (one is created from settings if omitted)."""
    store = store or NoteStore(app_settings.sqlalchemy_url)
    registry = build_registry(store)
    sessions = HttpSessionManager(registry, app_settings.mcp_session_idle_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: open the store and start session pruning."""
        await store.init()
        logger.info("Tool server ready with %d tools: %s", len(registry), registry.names)
        prune_task = asyncio.create_task(_prune_sessions(sessions))
        yield
        prune_task.cancel()
        try:
            await prune_task
        except asyncio.CancelledError:
            pass
        await sessions.close_all()
        await store.close()
        logger.info("Tool server shut down.")

    app = FastAPI(title="Memo Tool Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.store = store
    app.state.registry = registry
    app.state.sessions = sessions
    app.add_middleware(MetricsMiddleware)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """Persistent tool protocol session."""
        await serve_websocket(websocket, registry)

    @app.post("/mcp")
    async def submit(
        request: Request,
        session_id: Optional[str] = Header(default=None, alias=SESSION_HEADER),
    ) -> JSONResponse:
        """Deliver one protocol message; returns everything queued for the session."""
        if session_id is None:
            entry = sessions.create()
        else:
            entry = sessions.get(session_id)
            if entry is None:
                raise HTTPException(status_code=404, detail="unknown session")
        raw = await request.body()
        messages = await sessions.handle(entry, raw)
        return JSONResponse(
            content=messages, headers={SESSION_HEADER: entry.session.session_id}
        )

    @app.get("/mcp")
    async def poll(
        session_id: str = Header(..., alias=SESSION_HEADER),
    ) -> JSONResponse:
        """Collect messages pushed since the last exchange."""
        entry = sessions.get(session_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="unknown session")
        return JSONResponse(
            content=await sessions.poll(entry), headers={SESSION_HEADER: session_id}
        )

    @app.delete("/mcp", status_code=204)
    async def drop(session_id: str = Header(..., alias=SESSION_HEADER)) -> Response:
        """Tear down a session without a shutdown exchange."""
        if not await sessions.discard(session_id):
            raise HTTPException(status_code=404, detail="unknown session")
        return Response(status_code=204)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness plus tool, session and note counts."""
        return {
            "ok": True,
            "tools": len(registry),
            "sessions": len(sessions),
            "notes": await store.count_notes(),
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    logger.info(
        "Starting Memo tool server on ws://%s:%d/ws ...", settings.mcp_host, settings.mcp_port
    )
    uvicorn.run(app, host=settings.mcp_host, port=settings.mcp_port)
