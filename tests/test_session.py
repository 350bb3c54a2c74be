"""Unit tests for the tool protocol session (dispatcher + state machine)."""

import asyncio
import json

import pytest
import pytest_asyncio

from mcp_servers.memo_tools.protocol import PROTOCOL_VERSION, SERVER_NAME
from mcp_servers.memo_tools.session import SessionState, ToolSession, TransportError
from mcp_servers.memo_tools.tools import (
    ToolDescriptor,
    ToolExecutionError,
    ToolRegistry,
    ToolResult,
    build_registry,
)
from memo.models import PurgeNotesArgs
from memo.store import NoteStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeTransport:
    """Records everything the session sends."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, message):
        json.dumps(message)  # must be serializable
        self.sent.append(message)

    async def close(self):
        self.closed = True


class BrokenTransport(FakeTransport):
    async def send(self, message):
        raise TransportError("peer went away")


@pytest_asyncio.fixture
async def store():
    s = NoteStore("sqlite+aiosqlite://")
    await s.init()
    yield s
    await s.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def session(store, transport):
    s = ToolSession(build_registry(store), transport)
    yield s
    await s.close()


async def _send(session, message):
    await session.receive(json.dumps(message))


async def _ready(session, transport):
    await _send(session, {"id": 0, "method": "initialize"})
    transport.sent.clear()


def _failing_registry(exc):
    async def handler(args):
        raise exc

    return ToolRegistry(
        [ToolDescriptor(name="boom", description="fails", arguments=PurgeNotesArgs, handler=handler)]
    )


def _gated_registry(gate):
    """A "slow" tool that waits for *gate* and a "fast" one that does not."""

    async def slow(args):
        await gate.wait()
        return ToolResult("slow done")

    async def fast(args):
        return ToolResult("fast done")

    return ToolRegistry(
        [
            ToolDescriptor(name="slow", description="waits", arguments=PurgeNotesArgs, handler=slow),
            ToolDescriptor(name="fast", description="returns", arguments=PurgeNotesArgs, handler=fast),
        ]
    )


def _call(request_id, name, **arguments):
    return {
        "id": request_id,
        "method": "tools/call",
        "params": {"name": name, "arguments": {"user_id": "u1", **arguments}},
    }


# ---------------------------------------------------------------------------
# Handshake / lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_then_ready_notification(self, session, transport):
        await _send(session, {"jsonrpc": "2.0", "id": 1, "method": "initialize"})

        assert session.state is SessionState.READY
        assert len(transport.sent) == 2
        response, pushed = transport.sent
        assert response["id"] == 1
        assert response["result"]["protocolVersion"] == PROTOCOL_VERSION
        assert response["result"]["serverInfo"]["name"] == SERVER_NAME
        assert response["result"]["capabilities"] == {"tools": {"list": True, "call": True}}
        assert pushed["method"] == "notifications/ready"
        assert "id" not in pushed

    @pytest.mark.asyncio
    async def test_reinitialize_answers_again(self, session, transport):
        await _send(session, {"id": 1, "method": "initialize"})
        await _send(session, {"id": 2, "method": "initialize"})
        assert [m.get("id") for m in transport.sent] == [1, None, 2, None]
        assert session.state is SessionState.READY

    @pytest.mark.asyncio
    async def test_shutdown_closes_after_reply(self, session, transport):
        await _ready(session, transport)
        await _send(session, {"id": "bye", "method": "shutdown"})

        assert transport.sent == [{"jsonrpc": "2.0", "id": "bye", "result": {}}]
        assert session.closed
        assert transport.closed

    @pytest.mark.asyncio
    async def test_shutdown_without_initialize(self, session, transport):
        await _send(session, {"id": 1, "method": "shutdown"})
        assert transport.sent[0]["result"] == {}
        assert session.closed

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_calls_in_flight(self, transport):
        gate = asyncio.Event()
        s = ToolSession(_gated_registry(gate), transport)
        await _ready(s, transport)

        slow = asyncio.create_task(_send(s, _call(1, "slow")))
        await asyncio.sleep(0)
        stop = asyncio.create_task(_send(s, {"id": 2, "method": "shutdown"}))
        await asyncio.sleep(0)
        assert transport.sent == []
        assert not s.closed

        gate.set()
        await asyncio.gather(slow, stop)
        assert [m["id"] for m in transport.sent] == [1, 2]
        assert transport.sent[0]["result"]["content"][0]["text"] == "slow done"
        assert transport.sent[1]["result"] == {}
        assert s.closed

    @pytest.mark.asyncio
    async def test_frames_after_close_ignored(self, session, transport):
        await session.close()
        await _send(session, {"id": 1, "method": "initialize"})
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session, transport):
        await session.close()
        await session.close()
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_broken_transport_closes_session(self, store):
        s = ToolSession(build_registry(store), BrokenTransport())
        await _send(s, {"id": 1, "method": "initialize"})
        assert s.closed


# ---------------------------------------------------------------------------
# Envelope errors
# ---------------------------------------------------------------------------


class TestEnvelopeErrors:
    @pytest.mark.asyncio
    async def test_invalid_json(self, session, transport):
        await session.receive("{not json")
        (reply,) = transport.sent
        assert reply["id"] is None
        assert reply["error"]["code"] == -32700
        assert reply["error"]["message"] == "Invalid JSON"
        assert not session.closed

    @pytest.mark.asyncio
    async def test_invalid_envelope_echoes_id(self, session, transport):
        await _send(session, {"id": 7, "method": 42})
        (reply,) = transport.sent
        assert reply["id"] == 7
        assert reply["error"]["code"] == -32700
        assert reply["error"]["message"] == "Invalid envelope"
        assert "method" in reply["error"]["data"]["fieldErrors"]

    @pytest.mark.asyncio
    async def test_non_object_payload(self, session, transport):
        await session.receive("[1, 2, 3]")
        (reply,) = transport.sent
        assert reply["id"] is None
        assert reply["error"]["code"] == -32700

    @pytest.mark.asyncio
    async def test_unknown_method(self, session, transport):
        await _send(session, {"id": "x", "method": "resources/list"})
        (reply,) = transport.sent
        assert reply["id"] == "x"
        assert reply["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_request_without_id_answered_with_null(self, session, transport):
        await _send(session, {"method": "tools/list"})
        (reply,) = transport.sent
        assert reply["id"] is None
        assert len(reply["result"]["tools"]) == 7

    @pytest.mark.asyncio
    async def test_errors_keep_session_open(self, session, transport):
        await session.receive("garbage")
        await _send(session, {"id": 1, "method": "initialize"})
        assert session.state is SessionState.READY


# ---------------------------------------------------------------------------
# tools/list and tools/call
# ---------------------------------------------------------------------------


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_list_available_before_initialize(self, session, transport):
        await _send(session, {"id": 1, "method": "tools/list"})
        names = [t["name"] for t in transport.sent[0]["result"]["tools"]]
        assert names[0] == "create_note"
        assert "purge_notes" in names

    @pytest.mark.asyncio
    async def test_call_before_initialize_rejected(self, session, transport):
        await _send(
            session,
            {
                "id": 1,
                "method": "tools/call",
                "params": {"name": "list_notes", "arguments": {"user_id": "u1"}},
            },
        )
        assert transport.sent[0]["error"]["code"] == -32002

    @pytest.mark.asyncio
    async def test_create_note_call(self, session, transport):
        await _ready(session, transport)
        await _send(
            session,
            {
                "id": 2,
                "method": "tools/call",
                "params": {"name": "create_note", "arguments": {"user_id": "u1", "content": "hello"}},
            },
        )
        (reply,) = transport.sent
        assert reply["id"] == 2
        note = reply["result"]["data"]["note"]
        assert note["content"] == "hello"
        assert note["title"] is None
        assert reply["result"]["content"][0]["type"] == "text"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, session, transport):
        await _ready(session, transport)
        await _send(
            session,
            {"id": 3, "method": "tools/call", "params": {"name": "notes.create", "arguments": {}}},
        )
        error = transport.sent[0]["error"]
        assert error["code"] == -32601
        assert "notes.create" in error["message"]

    @pytest.mark.asyncio
    async def test_malformed_call_params(self, session, transport):
        await _ready(session, transport)
        await _send(session, {"id": 4, "method": "tools/call", "params": {"arguments": {}}})
        assert transport.sent[0]["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_argument_validation(self, session, transport):
        await _ready(session, transport)
        await _send(
            session,
            {
                "id": 5,
                "method": "tools/call",
                "params": {"name": "create_note", "arguments": {"user_id": "u1", "content": ""}},
            },
        )
        error = transport.sent[0]["error"]
        assert error["code"] == -32602
        assert error["message"] == "Tool argument validation failed"
        assert "content" in error["data"]["fieldErrors"]

    @pytest.mark.asyncio
    async def test_extra_argument_rejected(self, session, transport):
        await _ready(session, transport)
        await _send(
            session,
            {
                "id": 6,
                "method": "tools/call",
                "params": {"name": "purge_notes", "arguments": {"user_id": "u1", "all": True}},
            },
        )
        assert transport.sent[0]["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_missing_note_is_execution_error(self, session, transport):
        await _ready(session, transport)
        await _send(
            session,
            {
                "id": 7,
                "method": "tools/call",
                "params": {"name": "get_note", "arguments": {"user_id": "u1", "note_id": "nope"}},
            },
        )
        error = transport.sent[0]["error"]
        assert error["code"] == -32000
        assert error["message"] == "Note nope not found"

    @pytest.mark.asyncio
    async def test_handler_crash_is_generic_error(self, transport):
        s = ToolSession(_failing_registry(RuntimeError("db exploded")), transport)
        await _ready(s, transport)
        await _send(
            s,
            {"id": 8, "method": "tools/call", "params": {"name": "boom", "arguments": {"user_id": "u1"}}},
        )
        error = transport.sent[0]["error"]
        assert error == {"code": -32000, "message": "Tool execution failed"}
        assert not s.closed
        await s.close()

    @pytest.mark.asyncio
    async def test_handler_domain_error_message_passed_through(self, transport):
        s = ToolSession(_failing_registry(ToolExecutionError("quota reached")), transport)
        await _ready(s, transport)
        await _send(
            s,
            {"id": 9, "method": "tools/call", "params": {"name": "boom", "arguments": {"user_id": "u1"}}},
        )
        assert transport.sent[0]["error"]["message"] == "quota reached"
        await s.close()

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, session, transport):
        await _ready(session, transport)
        await _send(
            session,
            {
                "id": 10,
                "method": "tools/call",
                "params": {"name": "create_note", "arguments": {"user_id": "u1"}},
            },
        )
        error = transport.sent[0]["error"]
        assert error["code"] == -32602
        assert error["message"] == "Tool argument validation failed"
        assert "content" in error["data"]["fieldErrors"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [["create_note"], "create_note", 3])
    async def test_non_object_params_are_invalid_params(self, session, transport, params):
        await _ready(session, transport)
        await _send(session, {"id": 11, "method": "tools/call", "params": params})
        (reply,) = transport.sent
        assert reply["id"] == 11
        assert reply["error"]["code"] == -32602
        assert reply["error"]["message"] == "Invalid params"
        assert not session.closed

    @pytest.mark.asyncio
    async def test_concurrent_calls_correlated_by_id(self, transport):
        gate = asyncio.Event()
        s = ToolSession(_gated_registry(gate), transport)
        await _ready(s, transport)

        slow = asyncio.create_task(_send(s, _call(1, "slow")))
        await asyncio.sleep(0)
        await _send(s, _call(2, "fast"))
        assert [m["id"] for m in transport.sent] == [2]

        gate.set()
        await slow
        assert [m["id"] for m in transport.sent] == [2, 1]
        texts = {m["id"]: m["result"]["content"][0]["text"] for m in transport.sent}
        assert texts == {1: "slow done", 2: "fast done"}
        await s.close()
