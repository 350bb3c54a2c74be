"""Tool protocol session: one state machine per client connection.

    CONNECTED --initialize--> READY --shutdown--> CLOSED
        |                                            ^
        +------------- shutdown / disconnect --------+

The session knows nothing about sockets or HTTP. It reads frames handed to
``receive()`` and writes envelopes through a Transport, so the same logic
serves the WebSocket endpoint and the HTTP-polled endpoint.

Every correctly framed message gets exactly one response, carrying the
request id (``null`` when the request had none). Unreadable frames get a
parse error and the session stays open.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from mcp_servers.memo_tools.protocol import (
    PROTOCOL_VERSION,
    SERVER_NAME,
    SERVER_VERSION,
    CallParams,
    ErrorCode,
    ParseFailure,
    Request,
    RPCError,
    decode_request,
    error_message,
    notification,
    result_message,
)
from mcp_servers.memo_tools.tools import ToolExecutionError, ToolRegistry
from memo.metrics import ACTIVE_SESSIONS, RPC_MESSAGES, TOOL_DURATION, TOOL_INVOCATIONS
from memo.models import flatten_errors

logger = logging.getLogger(__name__)

READY_NOTIFICATION = "notifications/ready"


class Transport(Protocol):
    """Outbound side of a connection."""

    async def send(self, message: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class TransportError(Exception):
    """The underlying channel failed and cannot carry more messages."""


class SessionState(str, Enum):
    CONNECTED = "connected"
    READY = "ready"
    CLOSED = "closed"


class ToolSession:
    """Dispatches protocol messages for one client."""

    def __init__(
        self,
        registry: ToolRegistry,
        transport: Transport,
        *,
        transport_name: str = "websocket",
        session_id: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.transport_name = transport_name
        self.session_id = session_id or uuid.uuid4().hex
        self.state = SessionState.CONNECTED
        self.last_activity = time.monotonic()
        self._accepting = True
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._methods: dict[str, Callable[[Request], Awaitable[Any]]] = {
            "initialize": self._initialize,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "shutdown": self._shutdown,
        }
        ACTIVE_SESSIONS.labels(transport=transport_name).inc()

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def receive(self, raw: str | bytes) -> None:
        """Handle one inbound frame."""
        if self.closed or not self._accepting:
            logger.debug("Session %s: frame after shutdown discarded", self.session_id)
            return
        self.last_activity = time.monotonic()

        try:
            request = decode_request(raw)
        except ParseFailure as failure:
            RPC_MESSAGES.labels(method="<unparsed>", outcome="error").inc()
            logger.info("Session %s: %s", self.session_id, failure.error.message)
            with self._tracked():
                await self._send(error_message(failure.request_id, failure.error))
            return

        if request.method == "shutdown":
            await self.dispatch(request)
        else:
            with self._tracked():
                await self.dispatch(request)

    @contextmanager
    def _tracked(self) -> Iterator[None]:
        """Count a frame as in flight until its response has been sent."""
        self._in_flight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._in_flight -= 1
            if not self._in_flight:
                self._idle.set()

    async def dispatch(self, request: Request) -> None:
        handler = self._methods.get(request.method)
        try:
            if handler is None:
                raise RPCError.method_not_found(f"Unknown method {request.method}")
            result = await handler(request)
        except RPCError as err:
            RPC_MESSAGES.labels(method=self._metric_method(request), outcome="error").inc()
            logger.info(
                "Session %s: %s failed (%d %s)",
                self.session_id,
                request.method,
                err.code,
                err.message,
            )
            await self._send(error_message(request.id, err))
            return

        RPC_MESSAGES.labels(method=request.method, outcome="ok").inc()
        await self._send(result_message(request.id, result))
        await self._after_response(request)

    def _metric_method(self, request: Request) -> str:
        return request.method if request.method in self._methods else "<unknown>"

    async def _after_response(self, request: Request) -> None:
        if request.method == "initialize":
            await self._send(notification(READY_NOTIFICATION))
        elif request.method == "shutdown":
            await self.close()

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    async def _initialize(self, request: Request) -> dict[str, Any]:
        if self.state is SessionState.READY:
            logger.info("Session %s: re-initialized", self.session_id)
        self.state = SessionState.READY
        logger.info("Session %s ready (%s)", self.session_id, self.transport_name)
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": {"tools": {"list": True, "call": True}},
        }

    async def _list_tools(self, request: Request) -> dict[str, Any]:
        return {"tools": self.registry.catalog()}

    async def _call_tool(self, request: Request) -> dict[str, Any]:
        if self.state is not SessionState.READY:
            raise RPCError(ErrorCode.NOT_INITIALIZED, "Session not initialized")

        try:
            call = CallParams.model_validate({} if request.params is None else request.params)
        except ValidationError as exc:
            raise RPCError.invalid_params(
                "Invalid params", flatten_errors(exc.errors(include_url=False))
            ) from None

        tool = self.registry.get(call.name)
        if tool is None:
            raise RPCError.method_not_found(f"Unknown tool {call.name}")

        try:
            arguments = tool.arguments.model_validate(call.arguments or {})
        except ValidationError as exc:
            raise RPCError.invalid_params(
                "Tool argument validation failed",
                flatten_errors(exc.errors(include_url=False)),
            ) from None

        start = time.perf_counter()
        status = "error"
        try:
            result = await tool.handler(arguments)
            status = "success"
        except ToolExecutionError as exc:
            raise RPCError.execution_failed(str(exc)) from None
        except Exception:
            logger.exception("Tool %s raised", tool.name)
            raise RPCError.execution_failed("Tool execution failed") from None
        finally:
            TOOL_INVOCATIONS.labels(tool_name=tool.name, status=status).inc()
            TOOL_DURATION.labels(tool_name=tool.name).observe(time.perf_counter() - start)

        logger.info("Session %s: tool %s ok", self.session_id, tool.name)
        return result.to_dict()

    async def _shutdown(self, request: Request) -> dict[str, Any]:
        """Answer only once every earlier request has been answered."""
        logger.info("Session %s: shutdown requested", self.session_id)
        while self._in_flight:
            await self._idle.wait()
        self._accepting = False
        return {}

    # ------------------------------------------------------------------
    # Outbound / lifecycle
    # ------------------------------------------------------------------

    async def _send(self, message: dict[str, Any]) -> None:
        if self.closed:
            logger.debug("Session %s: outbound message dropped after close", self.session_id)
            return
        try:
            await self.transport.send(message)
        except TransportError as exc:
            logger.warning("Session %s: transport failed: %s", self.session_id, exc)
            await self.close()

    async def close(self) -> None:
        """Move to CLOSED and release the transport. Safe to call repeatedly."""
        if self.closed:
            return
        self.state = SessionState.CLOSED
        ACTIVE_SESSIONS.labels(transport=self.transport_name).dec()
        try:
            await self.transport.close()
        except TransportError as exc:
            logger.debug("Session %s: close on broken transport: %s", self.session_id, exc)
        logger.info("Session %s closed", self.session_id)
