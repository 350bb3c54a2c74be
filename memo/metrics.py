"""Prometheus metrics for the REST API and the tool server.

All metric objects are defined here so they can be imported from any module.
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Tool invocation metrics
# ---------------------------------------------------------------------------

TOOL_INVOCATIONS = Counter(
    "memo_tool_invocations_total",
    "Total number of tool invocations",
    ["tool_name", "status"],  # success, error
)

TOOL_DURATION = Histogram(
    "memo_tool_duration_seconds",
    "Duration of tool calls in seconds",
    ["tool_name"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# ---------------------------------------------------------------------------
# Protocol metrics
# ---------------------------------------------------------------------------

RPC_MESSAGES = Counter(
    "memo_rpc_messages_total",
    "Inbound protocol messages by method and outcome",
    ["method", "outcome"],  # ok, error
)

ACTIVE_SESSIONS = Gauge(
    "memo_active_sessions",
    "Number of open tool protocol sessions",
    ["transport"],
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS = Counter(
    "memo_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_DURATION = Histogram(
    "memo_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)
