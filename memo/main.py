"""FastAPI application for the Memo REST API.

Endpoints:
  GET    /health           Liveness probe (no auth)
  POST   /v1/notes         Create a note
  GET    /v1/notes         List notes (?query=&tag=&limit=)
  GET    /v1/notes/{id}    Fetch one note
  PATCH  /v1/notes/{id}    Partially update a note
  DELETE /v1/notes/{id}    Delete a note
  POST   /v1/export        Export all notes as JSON or CSV
  POST   /v1/purge         Delete all notes of the caller
  GET    /metrics          Prometheus metrics

Every /v1 route needs ``Authorization: Bearer <APP_BEARER_TOKEN>`` and an
``X-ChatGPT-User`` header naming the note owner.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from memo.auth import require_user
from memo.config import Settings, settings
from memo.csv_export import to_csv
from memo.middleware import MetricsMiddleware, RateLimitMiddleware
from memo.models import ExportRequest, NoteCreate, NoteQuery, NoteUpdate, flatten_errors
from memo.store import NoteStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)

# Location prefixes FastAPI adds to validation errors
_REQUEST_PARTS = {"body", "query", "path", "header"}

UserId = Annotated[str, Depends(require_user)]


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request validation failures as 400 with per-field messages."""
    errors = []
    for err in exc.errors():
        loc = tuple(err.get("loc") or ())
        if loc and loc[0] in _REQUEST_PARTS:
            loc = loc[1:]
        errors.append({**err, "loc": loc})
    return JSONResponse(status_code=400, content={"detail": flatten_errors(errors)})


def create_app(app_settings: Settings = settings, store: Optional[NoteStore] = None) -> FastAPI:
    """Build the REST API around *store* (one is created from settings if omitted)."""
    store = store or NoteStore(app_settings.sqlalchemy_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: open the note store."""
        await store.init()
        logger.info("Memo API ready (env=%s)", app_settings.env)
        yield
        await store.close()
        logger.info("Memo API shut down.")

    app = FastAPI(title="Memo API", version="0.1.0", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.store = store

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RateLimitMiddleware, max_requests=app_settings.rate_limit_per_minute)
    if app_settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness probe."""
        return {"ok": True}

    @app.post("/v1/notes", status_code=201)
    async def create_note(body: NoteCreate, user_id: UserId) -> dict[str, Any]:
        """Create a note for the caller."""
        note = await store.create_note(user_id, body)
        return {"note": note.model_dump()}

    @app.get("/v1/notes")
    async def list_notes(
        filters: Annotated[NoteQuery, Query()], user_id: UserId
    ) -> dict[str, Any]:
        """List the caller's notes, most recently updated first."""
        notes = await store.list_notes(user_id, filters)
        return {"notes": [n.model_dump() for n in notes]}

    @app.get("/v1/notes/{note_id}")
    async def get_note(note_id: str, user_id: UserId) -> dict[str, Any]:
        """Fetch one of the caller's notes."""
        note = await store.get_note(user_id, note_id)
        if note is None:
            raise HTTPException(status_code=404, detail="not_found")
        return {"note": note.model_dump()}

    @app.patch("/v1/notes/{note_id}")
    async def update_note(
        note_id: str, body: NoteUpdate, user_id: UserId
    ) -> dict[str, Any]:
        """Apply a partial update. An empty body changes nothing."""
        note = await store.update_note(user_id, note_id, body)
        if note is None:
            raise HTTPException(status_code=404, detail="not_found")
        return {"note": note.model_dump()}

    @app.delete("/v1/notes/{note_id}", status_code=204)
    async def delete_note(note_id: str, user_id: UserId) -> Response:
        """Delete one of the caller's notes."""
        if not await store.delete_note(user_id, note_id):
            raise HTTPException(status_code=404, detail="not_found")
        return Response(status_code=204)

    @app.post("/v1/export", response_model=None)
    async def export_notes(
        user_id: UserId, body: Optional[ExportRequest] = None
    ) -> dict[str, Any] | PlainTextResponse:
        """Export the caller's notes as JSON (default) or CSV."""
        fmt = body.format if body else "json"
        if fmt == "csv":
            rows = await store.export_rows(user_id)
            return PlainTextResponse(to_csv(rows), media_type="text/csv; charset=utf-8")
        notes = await store.export_notes(user_id)
        return {"notes": [n.model_dump() for n in notes]}

    @app.post("/v1/purge")
    async def purge_notes(user_id: UserId) -> dict[str, int]:
        """Delete all of the caller's notes."""
        return {"purged": await store.purge_notes(user_id)}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
