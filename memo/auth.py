"""Shared-secret authentication for the REST API."""

from __future__ import annotations

import hmac
from collections.abc import Mapping

from fastapi import HTTPException, Request

USER_HEADER = "x-chatgpt-user"
BEARER_PREFIX = "Bearer "


class Unauthorized(Exception):
    """Missing or wrong credentials."""


def authenticate(headers: Mapping[str, str], app_token: str) -> str:
    """Return the caller's user id if the bearer token matches *app_token*.

    An empty *app_token* rejects every request.
    """
    auth = headers.get("authorization", "")
    token = auth[len(BEARER_PREFIX):] if auth.startswith(BEARER_PREFIX) else ""
    if not token or not app_token or not hmac.compare_digest(
        token.encode(), app_token.encode()
    ):
        raise Unauthorized("bad bearer token")
    user_id = headers.get(USER_HEADER, "").strip()
    if not user_id:
        raise Unauthorized(f"missing {USER_HEADER} header")
    return user_id


async def require_user(request: Request) -> str:
    """FastAPI dependency resolving the authenticated user id."""
    try:
        return authenticate(request.headers, request.app.state.settings.app_bearer_token)
    except Unauthorized:
        raise HTTPException(status_code=401, detail="unauthorized") from None
