"""Wire envelope for the tool protocol.

Messages are JSON objects shaped after JSON-RPC 2.0:

    request       {"id"?: token, "method": str, "params"?: object}
    response      {"id": token|null, "result": any}
    error         {"id": token|null, "error": {"code", "message", "data"?}}
    notification  {"method": str, "params": object}   (server push, no id)
"""

from __future__ import annotations

import json
from enum import IntEnum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, ValidationError

from memo.models import flatten_errors

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-05-24"
SERVER_NAME = "memo-ia"
SERVER_VERSION = "0.1.0"

RequestId = Union[StrictStr, StrictInt]


class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    TOOL_EXECUTION_ERROR = -32000
    NOT_INITIALIZED = -32002


class RPCError(Exception):
    """Protocol-level failure rendered as an error envelope."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = int(code)
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    @classmethod
    def parse_error(cls, message: str = "Parse error", data: Any = None) -> RPCError:
        return cls(ErrorCode.PARSE_ERROR, message, data)

    @classmethod
    def method_not_found(cls, message: str) -> RPCError:
        return cls(ErrorCode.METHOD_NOT_FOUND, message)

    @classmethod
    def invalid_params(cls, message: str, data: Any = None) -> RPCError:
        return cls(ErrorCode.INVALID_PARAMS, message, data)

    @classmethod
    def execution_failed(cls, message: str) -> RPCError:
        return cls(ErrorCode.TOOL_EXECUTION_ERROR, message)


class Request(BaseModel):
    """Inbound message. ``id`` is absent on client notifications."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: Optional[str] = None
    id: Optional[RequestId] = None
    method: StrictStr
    params: Any = None  # checked by the method that reads it


class CallParams(BaseModel):
    """``tools/call`` parameters."""

    model_config = ConfigDict(extra="forbid")

    name: StrictStr
    arguments: Optional[dict[str, Any]] = None


class ParseFailure(Exception):
    """A frame that could not be read as a request envelope."""

    def __init__(self, error: RPCError, request_id: Optional[RequestId] = None) -> None:
        super().__init__(error.message)
        self.error = error
        self.request_id = request_id


def decode_request(raw: Union[str, bytes, bytearray]) -> Request:
    """Parse one frame into a Request or raise ParseFailure."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        raise ParseFailure(RPCError.parse_error("Invalid JSON")) from None

    try:
        return Request.model_validate(payload)
    except ValidationError as exc:
        request_id = None
        if isinstance(payload, dict):
            candidate = payload.get("id")
            if isinstance(candidate, (str, int)) and not isinstance(candidate, bool):
                request_id = candidate
        data = flatten_errors(exc.errors(include_url=False))
        raise ParseFailure(
            RPCError.parse_error("Invalid envelope", data), request_id
        ) from None


def result_message(request_id: Optional[RequestId], result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_message(request_id: Optional[RequestId], error: RPCError) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error.to_dict()}


def notification(method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}}
