"""HTTP middleware shared by the REST API and the tool server."""

from __future__ import annotations

import time
from collections import deque

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from memo.metrics import HTTP_DURATION, HTTP_REQUESTS

RATE_LIMIT_WINDOW = 60  # seconds

# Endpoints excluded from metrics and rate limiting
_EXEMPT_PATHS = {"/metrics", "/health", "/openapi.json", "/docs", "/redoc"}


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record HTTP request count and duration for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        """Wrap each request with timing and counting."""
        if request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        # Label by route template to keep cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        HTTP_REQUESTS.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        HTTP_DURATION.labels(endpoint=endpoint).observe(elapsed)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window request limit per client address (in-memory, per-process)."""

    def __init__(self, app, max_requests: int, window: float = RATE_LIMIT_WINDOW) -> None:
        super().__init__(app)
        self.max_requests = max_requests
        self.window = window
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = time.monotonic()

    def allow(self, client: str) -> bool:
        """Return True if the request is allowed, False if rate-limited."""
        now = time.monotonic()
        cutoff = now - self.window
        if now - self._last_sweep >= self.window:
            self._sweep(cutoff)
            self._last_sweep = now
        hits = self._hits.setdefault(client, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    def _sweep(self, cutoff: float) -> None:
        """Forget clients with no hit inside the window."""
        stale = [client for client, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for client in stale:
            del self._hits[client]

    async def dispatch(self, request: Request, call_next):
        if self.max_requests <= 0 or request.url.path in _EXEMPT_PATHS:
            return await call_next(request)
        client = request.client.host if request.client else "unknown"
        if not self.allow(client):
            return JSONResponse(
                status_code=429,
                content={"detail": "rate limit exceeded"},
                headers={"Retry-After": str(int(self.window))},
            )
        return await call_next(request)
