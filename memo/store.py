"""Relational note store shared by the REST API and the tool server.

Uses a SQLAlchemy async engine with raw SQL statements. SQLite (aiosqlite)
is the default backend; PostgreSQL (asyncpg) is supported as well. Every
operation is scoped by user id, and a note owned by another user is reported
exactly like a note that does not exist.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from memo.models import DEFAULT_LIST_LIMIT, Note, NoteCreate, NoteQuery, NoteUpdate

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = ("id", "title", "content", "tags", "remind_at", "created_at", "updated_at")
TAG_SEPARATOR = ";"
LIKE_ESCAPE = "!"

_CREATE_TABLE_STMTS = [
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        title TEXT,
        content TEXT NOT NULL,
        tags TEXT,
        remind_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_notes_user ON notes(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_notes_user_updated ON notes(user_id, updated_at)",
]

_SELECT_NOTE = (
    "SELECT id, title, content, tags, remind_at, created_at, updated_at FROM notes"
)


class StoreNotInitialized(RuntimeError):
    """Raised when the store is used before ``init()`` or after ``close()``."""


def _utcnow() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def parse_tags(raw: Optional[str]) -> list[str]:
    """Decode the stored tag column. Anything unreadable becomes no tags."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(parsed, list):
        return []
    return [t for t in parsed if isinstance(t, str)]


def _dump_tags(tags: Optional[list[str]]) -> Optional[str]:
    return json.dumps(tags) if tags is not None else None


def _escape_like(term: str) -> str:
    for ch in (LIKE_ESCAPE, "%", "_"):
        term = term.replace(ch, LIKE_ESCAPE + ch)
    return term


def _row_to_note(row: Any) -> Note:
    return Note(
        id=row.id,
        title=row.title,
        content=row.content,
        tags=parse_tags(row.tags),
        remind_at=row.remind_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_export_row(note: Note) -> dict[str, str]:
    """Flatten a note for tabular export: tags joined, nulls as empty strings."""
    values = note.model_dump()
    values["tags"] = TAG_SEPARATOR.join(note.tags)
    return {col: "" if values[col] is None else values[col] for col in EXPORT_COLUMNS}


class NoteStore:
    """Async store for users and notes."""

    def __init__(self, database_url: str) -> None:
        self._url = database_url
        self._engine: Optional[AsyncEngine] = None

    @property
    def available(self) -> bool:
        """Whether the engine is active."""
        return self._engine is not None

    @property
    def dialect(self) -> str:
        return make_url(self._url).get_backend_name()

    async def init(self) -> None:
        """Create the engine and the tables."""
        url = make_url(self._url)
        kwargs: dict[str, Any] = {}
        if url.get_backend_name() == "sqlite":
            if url.database in (None, "", ":memory:"):
                # one shared connection, otherwise every checkout sees a new empty db
                kwargs["poolclass"] = StaticPool
            else:
                Path(url.database).expanduser().resolve().parent.mkdir(
                    parents=True, exist_ok=True
                )
        else:
            kwargs.update(pool_size=5, max_overflow=10)

        self._engine = create_async_engine(self._url, **kwargs)
        async with self._engine.begin() as conn:
            for stmt in _CREATE_TABLE_STMTS:
                await conn.execute(text(stmt))
        logger.info("Note store ready (%s)", url.render_as_string(hide_password=True))

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreNotInitialized("NoteStore.init() has not been awaited")
        return self._engine

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @staticmethod
    async def _upsert_user(conn: Any, user_id: str) -> None:
        await conn.execute(
            text(
                "INSERT INTO users (id, created_at) VALUES (:id, :now) "
                "ON CONFLICT (id) DO NOTHING"
            ),
            {"id": user_id, "now": _utcnow()},
        )

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def create_note(self, user_id: str, data: NoteCreate) -> Note:
        """Insert a note for *user_id* and return the stored record."""
        note_id = str(uuid.uuid4())
        now = _utcnow()
        async with self._require_engine().begin() as conn:
            await self._upsert_user(conn, user_id)
            await conn.execute(
                text(
                    "INSERT INTO notes "
                    "(id, user_id, title, content, tags, remind_at, created_at, updated_at) "
                    "VALUES (:id, :user_id, :title, :content, :tags, :remind_at, :now, :now)"
                ),
                {
                    "id": note_id,
                    "user_id": user_id,
                    "title": data.title,
                    "content": data.content,
                    "tags": _dump_tags(data.tags),
                    "remind_at": data.remind_at,
                    "now": now,
                },
            )
            row = (
                await conn.execute(
                    text(f"{_SELECT_NOTE} WHERE id = :id AND user_id = :user_id"),
                    {"id": note_id, "user_id": user_id},
                )
            ).one()
        logger.info("Created note %s for user %s", note_id, user_id)
        return _row_to_note(row)

    async def list_notes(
        self, user_id: str, filters: Optional[NoteQuery] = None
    ) -> list[Note]:
        """Notes of *user_id* matching the filters, most recently updated first."""
        filters = filters or NoteQuery()
        conditions = ["user_id = :user_id"]
        limit = filters.limit or DEFAULT_LIST_LIMIT
        params: dict[str, Any] = {"user_id": user_id}
        if filters.query:
            conditions.append(
                f"(LOWER(COALESCE(title, '')) LIKE :search ESCAPE '{LIKE_ESCAPE}' "
                f"OR LOWER(content) LIKE :search ESCAPE '{LIKE_ESCAPE}')"
            )
            params["search"] = f"%{_escape_like(filters.query.lower())}%"
        in_memory_tag = None
        if filters.tag:
            condition = self._tag_condition()
            if condition is None:
                in_memory_tag = filters.tag
            else:
                conditions.append(condition)
                params["tag"] = filters.tag
        sql = f"{_SELECT_NOTE} WHERE {' AND '.join(conditions)} ORDER BY updated_at DESC"
        if in_memory_tag is None:
            sql += " LIMIT :limit"
            params["limit"] = limit

        async with self._require_engine().begin() as conn:
            await self._upsert_user(conn, user_id)
            result = await conn.execute(text(sql), params)
            notes = [_row_to_note(row) for row in result.fetchall()]
        if in_memory_tag is not None:
            notes = [note for note in notes if in_memory_tag in note.tags][:limit]
        return notes

    def _tag_condition(self) -> Optional[str]:
        """SQL for tag membership, or None when tags are matched after decoding.

        Only SQLite can skip unreadable tag text inside the query. Elsewhere
        the stored text is decoded with ``parse_tags`` like every other read.
        """
        if self.dialect != "sqlite":
            return None
        # json_each raises on malformed text, so guard it behind json_valid
        return (
            "tags IS NOT NULL AND CASE WHEN json_valid(tags) "
            "THEN json_type(tags) = 'array' "
            "AND EXISTS (SELECT 1 FROM json_each(tags) WHERE value = :tag) "
            "ELSE 0 END"
        )

    async def get_note(self, user_id: str, note_id: str) -> Optional[Note]:
        """The note, or None if it does not exist under *user_id*."""
        async with self._require_engine().connect() as conn:
            row = (
                await conn.execute(
                    text(f"{_SELECT_NOTE} WHERE id = :id AND user_id = :user_id"),
                    {"id": note_id, "user_id": user_id},
                )
            ).one_or_none()
        return _row_to_note(row) if row else None

    async def update_note(
        self, user_id: str, note_id: str, changes: NoteUpdate
    ) -> Optional[Note]:
        """Apply the explicitly supplied fields of *changes*.

        An update carrying no fields leaves the row (and its ``updated_at``)
        untouched and returns the current record.
        """
        fields = changes.changes()
        if not fields:
            return await self.get_note(user_id, note_id)

        assignments = [f"{name} = :{name}" for name in fields]
        params: dict[str, Any] = {"id": note_id, "user_id": user_id, "now": _utcnow()}
        for name, value in fields.items():
            params[name] = _dump_tags(value) if name == "tags" else value
        assignments.append("updated_at = :now")

        async with self._require_engine().begin() as conn:
            result = await conn.execute(
                text(
                    f"UPDATE notes SET {', '.join(assignments)} "
                    "WHERE id = :id AND user_id = :user_id"
                ),
                params,
            )
            if result.rowcount == 0:
                return None
            row = (
                await conn.execute(
                    text(f"{_SELECT_NOTE} WHERE id = :id AND user_id = :user_id"),
                    {"id": note_id, "user_id": user_id},
                )
            ).one()
        logger.info("Updated note %s (%s)", note_id, ", ".join(fields))
        return _row_to_note(row)

    async def delete_note(self, user_id: str, note_id: str) -> bool:
        """Remove one note. Returns whether anything was deleted."""
        async with self._require_engine().begin() as conn:
            result = await conn.execute(
                text("DELETE FROM notes WHERE id = :id AND user_id = :user_id"),
                {"id": note_id, "user_id": user_id},
            )
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted note %s", note_id)
        return deleted

    async def purge_notes(self, user_id: str) -> int:
        """Remove every note of *user_id*. Returns the number removed."""
        async with self._require_engine().begin() as conn:
            result = await conn.execute(
                text("DELETE FROM notes WHERE user_id = :user_id"),
                {"user_id": user_id},
            )
        purged = max(result.rowcount or 0, 0)
        logger.info("Purged %d notes for user %s", purged, user_id)
        return purged

    async def export_notes(self, user_id: str) -> list[Note]:
        """All notes of *user_id*, most recently updated first."""
        async with self._require_engine().connect() as conn:
            result = await conn.execute(
                text(f"{_SELECT_NOTE} WHERE user_id = :user_id ORDER BY updated_at DESC"),
                {"user_id": user_id},
            )
            return [_row_to_note(row) for row in result.fetchall()]

    async def export_rows(self, user_id: str) -> list[dict[str, str]]:
        """Tabular export rows for *user_id*."""
        return [to_export_row(note) for note in await self.export_notes(user_id)]

    async def count_notes(self) -> int:
        """Total number of stored notes."""
        async with self._require_engine().connect() as conn:
            return (await conn.execute(text("SELECT COUNT(*) FROM notes"))).scalar_one()
