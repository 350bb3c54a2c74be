#!/usr/bin/env python3
"""Smoke test against running Memo services.

Assumes the REST API (memo.main) and the tool server
(mcp_servers.memo_tools.server) are already up and share one database.
Exercises every REST route, then the tool protocol over the HTTP-polled
transport, and prints a pass/fail summary.
"""

import os
import sys
import time

import httpx

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

API_URL = os.environ.get("MEMO_API_URL", "http://localhost:8080")
TOOLS_URL = os.environ.get("MEMO_TOOLS_URL", "http://localhost:9090")
TOKEN = os.environ.get("APP_BEARER_TOKEN", "")
USER = "user_demo"
HEALTH_TIMEOUT = 30  # seconds
SESSION_HEADER = "Mcp-Session-Id"

HEADERS = {"Authorization": f"Bearer {TOKEN}", "X-ChatGPT-User": USER}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Results:
    """Collects pass/fail lines for the final summary."""

    def __init__(self) -> None:
        self.lines: list[str] = []
        self.all_passed = True

    def check(self, label: str, passed: bool, detail: str = "") -> bool:
        mark = "✅" if passed else "❌"
        self.lines.append(f"  {mark} {label}" + (f" ({detail})" if detail else ""))
        self.all_passed = self.all_passed and passed
        return passed

    def print_summary(self) -> None:
        print("\n" + "=" * 60)
        print("  MEMO SMOKE TEST SUMMARY")
        print("=" * 60)
        for line in self.lines:
            print(line)
        print("=" * 60)


def wait_for(url: str, timeout: int) -> bool:
    """Poll a health URL until it answers 2xx or timeout."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            if httpx.get(url, timeout=5).status_code < 400:
                return True
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError):
            pass
        time.sleep(1)
    return False


def _reply(messages: list[dict], request_id) -> dict:
    """Pick the response for *request_id* out of a drained message batch."""
    for message in messages:
        if message.get("id") == request_id and "method" not in message:
            return message
    raise LookupError(f"no response for request {request_id}")


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def check_rest(client: httpx.Client, results: Results) -> None:
    print("\n--- REST API ---")
    resp = client.post(
        f"{API_URL}/v1/notes",
        json={
            "title": "Badge Parking",
            "content": "Q-3 niveau -2",
            "tags": ["boulot", "parking"],
            "remind_at": "2025-10-08T09:00:00Z",
        },
    )
    if not results.check("POST /v1/notes", resp.status_code == 201, str(resp.status_code)):
        return
    note_id = resp.json()["note"]["id"]

    resp = client.get(
        f"{API_URL}/v1/notes", params={"query": "parking", "tag": "boulot", "limit": 5}
    )
    found = resp.status_code == 200 and any(n["id"] == note_id for n in resp.json()["notes"])
    results.check("GET /v1/notes (filtered)", found)

    resp = client.get(f"{API_URL}/v1/notes/{note_id}")
    results.check("GET /v1/notes/{id}", resp.status_code == 200)

    resp = client.patch(
        f"{API_URL}/v1/notes/{note_id}",
        json={"title": "Badge Parking (MAJ)", "tags": ["parking"]},
    )
    patched = resp.status_code == 200 and resp.json()["note"]["tags"] == ["parking"]
    results.check("PATCH /v1/notes/{id}", patched)

    resp = client.post(f"{API_URL}/v1/export", json={"format": "csv"})
    results.check(
        "POST /v1/export (csv)",
        resp.status_code == 200 and resp.text.startswith("id,title,content"),
    )

    resp = client.delete(f"{API_URL}/v1/notes/{note_id}")
    results.check("DELETE /v1/notes/{id}", resp.status_code == 204)

    resp = client.get(f"{API_URL}/v1/notes/{note_id}")
    results.check("GET deleted note is 404", resp.status_code == 404)


def check_tools(client: httpx.Client, results: Results) -> None:
    print("\n--- Tool protocol (HTTP transport) ---")
    resp = client.post(f"{TOOLS_URL}/mcp", json={"id": 1, "method": "initialize"})
    if not results.check("initialize", resp.status_code == 200, str(resp.status_code)):
        return
    session = {SESSION_HEADER: resp.headers[SESSION_HEADER]}
    info = _reply(resp.json(), 1)["result"]["serverInfo"]
    print(f"  Connected to {info['name']} {info['version']}")

    resp = client.post(f"{TOOLS_URL}/mcp", json={"id": 2, "method": "tools/list"}, headers=session)
    tools = [t["name"] for t in _reply(resp.json(), 2)["result"]["tools"]]
    results.check("tools/list", len(tools) == 7, ", ".join(tools))

    call = {
        "id": 3,
        "method": "tools/call",
        "params": {
            "name": "create_note",
            "arguments": {"user_id": USER, "content": "created over the tool protocol"},
        },
    }
    resp = client.post(f"{TOOLS_URL}/mcp", json=call, headers=session)
    reply = _reply(resp.json(), 3)
    if not results.check("tools/call create_note", "result" in reply):
        return
    note_id = reply["result"]["data"]["note"]["id"]

    # the REST side reads the same store
    resp = client.get(f"{API_URL}/v1/notes/{note_id}")
    results.check("note visible through REST", resp.status_code == 200)

    call = {
        "id": 4,
        "method": "tools/call",
        "params": {"name": "purge_notes", "arguments": {"user_id": USER}},
    }
    resp = client.post(f"{TOOLS_URL}/mcp", json=call, headers=session)
    purged = _reply(resp.json(), 4)["result"]["data"]["purged"]
    results.check("tools/call purge_notes", purged >= 1, f"purged {purged}")

    resp = client.post(f"{TOOLS_URL}/mcp", json={"id": 5, "method": "shutdown"}, headers=session)
    results.check("shutdown", _reply(resp.json(), 5).get("result") == {})


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> int:
    print("=" * 60)
    print("  Memo Smoke Test")
    print("=" * 60)

    if not TOKEN:
        print("APP_BEARER_TOKEN is not set; the REST API would reject every call.")
        return 1

    results = Results()
    for name, url in (("REST API", f"{API_URL}/health"), ("Tool server", f"{TOOLS_URL}/health")):
        if not results.check(f"{name} healthy", wait_for(url, HEALTH_TIMEOUT)):
            results.print_summary()
            return 1

    with httpx.Client(headers=HEADERS, timeout=10) as client:
        check_rest(client, results)
        check_tools(client, results)

    results.print_summary()
    return 0 if results.all_passed else 1


if __name__ == "__main__":
    sys.exit(main())
