"""Transport adapters binding ToolSession to concrete channels."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from mcp_servers.memo_tools.session import ToolSession, TransportError
from mcp_servers.memo_tools.tools import ToolRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class WebSocketTransport:
    """One JSON message per text frame. Sends are serialized."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._lock = asyncio.Lock()

    async def send(self, message: dict[str, Any]) -> None:
        async with self._lock:
            try:
                await self._ws.send_text(json.dumps(message))
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                raise TransportError(str(exc) or type(exc).__name__) from exc

    async def close(self) -> None:
        async with self._lock:
            if self._ws.application_state is WebSocketState.DISCONNECTED:
                return
            if self._ws.client_state is WebSocketState.DISCONNECTED:
                return
            try:
                await self._ws.close()
            except (RuntimeError, OSError) as exc:
                raise TransportError(str(exc) or type(exc).__name__) from exc


async def serve_websocket(websocket: WebSocket, registry: ToolRegistry) -> None:
    """Run one session over an accepted-on-entry WebSocket until it closes.

    Each frame is handled in its own task so a slow tool call does not hold
    up later frames; responses carry their request id for correlation.
    """
    await websocket.accept()
    session = ToolSession(registry, WebSocketTransport(websocket), transport_name="websocket")
    pending: set[asyncio.Task[None]] = set()
    logger.info("WebSocket session %s opened", session.session_id)
    try:
        while not session.closed:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes") or b""
            task = asyncio.create_task(session.receive(raw))
            pending.add(task)
            task.add_done_callback(pending.discard)
    except WebSocketDisconnect:
        pass
    finally:
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await session.close()


# ---------------------------------------------------------------------------
# HTTP polling
# ---------------------------------------------------------------------------


class PollingTransport:
    """Queues outbound messages until the client collects them."""

    def __init__(self) -> None:
        self._outbox: deque[dict[str, Any]] = deque()
        self.closed = False

    async def send(self, message: dict[str, Any]) -> None:
        self._outbox.append(message)

    async def close(self) -> None:
        self.closed = True

    def drain(self) -> list[dict[str, Any]]:
        messages = list(self._outbox)
        self._outbox.clear()
        return messages


class PollingSession:
    """A session, its outbox, and the lock that keeps exchanges from interleaving."""

    def __init__(self, session: ToolSession, transport: PollingTransport) -> None:
        self.session = session
        self.transport = transport
        self.lock = asyncio.Lock()


class HttpSessionManager:
    """Sessions of the HTTP-polled transport, keyed by session id."""

    def __init__(self, registry: ToolRegistry, idle_timeout: float) -> None:
        self.registry = registry
        self.idle_timeout = idle_timeout
        self._sessions: dict[str, PollingSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> PollingSession:
        transport = PollingTransport()
        session = ToolSession(self.registry, transport, transport_name="http")
        entry = PollingSession(session, transport)
        self._sessions[session.session_id] = entry
        logger.info("HTTP session %s opened", session.session_id)
        return entry

    def get(self, session_id: str) -> Optional[PollingSession]:
        entry = self._sessions.get(session_id)
        if entry is None or entry.session.closed:
            return None
        return entry

    async def handle(self, entry: PollingSession, raw: bytes) -> list[dict[str, Any]]:
        """Feed one frame to the session and collect everything it emitted."""
        async with entry.lock:
            await entry.session.receive(raw)
            messages = entry.transport.drain()
        if entry.session.closed:
            self._sessions.pop(entry.session.session_id, None)
        return messages

    async def poll(self, entry: PollingSession) -> list[dict[str, Any]]:
        entry.session.last_activity = time.monotonic()
        async with entry.lock:
            return entry.transport.drain()

    async def discard(self, session_id: str) -> bool:
        entry = self._sessions.pop(session_id, None)
        if entry is None:
            return False
        await entry.session.close()
        return True

    async def prune(self) -> int:
        """Close sessions idle for longer than the timeout."""
        cutoff = time.monotonic() - self.idle_timeout
        stale = [
            sid
            for sid, entry in self._sessions.items()
            if entry.session.closed or entry.session.last_activity < cutoff
        ]
        for sid in stale:
            await self.discard(sid)
        if stale:
            logger.info("Pruned %d idle HTTP session(s)", len(stale))
        return len(stale)

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            await self.discard(sid)
