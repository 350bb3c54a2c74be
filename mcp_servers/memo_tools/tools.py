"""Tool catalog exposed over the tool protocol.

Each tool pairs a pydantic argument model with an async handler bound to a
NoteStore. The discovery schema is generated from the argument model, so
what clients are told and what the server enforces cannot diverge.
"""

from __future__ import annotations

import html
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from functools import cached_property
from typing import Any, Optional

from pydantic import BaseModel

from memo.csv_export import to_csv
from memo.models import (
    CreateNoteArgs,
    DeleteNoteArgs,
    ExportNotesArgs,
    GetNoteArgs,
    ListNotesArgs,
    Note,
    NoteCreate,
    NoteQuery,
    PurgeNotesArgs,
    UpdateNoteArgs,
)
from memo.store import NoteStore, to_export_row

logger = logging.getLogger(__name__)

CARD_PREVIEW_CHARS = 160


class ToolExecutionError(Exception):
    """A handler failure whose message is safe to show to the caller."""


class NoteNotFoundError(ToolExecutionError):
    def __init__(self, note_id: str) -> None:
        super().__init__(f"Note {note_id} not found")
        self.note_id = note_id


@dataclass
class ToolResult:
    """Uniform handler reply: a short summary plus structured data."""

    text: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"content": [{"type": "text", "text": self.text}], "data": self.data}


Handler = Callable[[Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolDescriptor:
    """Metadata and behaviour of one tool."""

    name: str
    description: str
    arguments: type[BaseModel]
    handler: Handler

    @cached_property
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema for the tool arguments."""
        return self.arguments.model_json_schema()

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolRegistry:
    """Immutable, ordered set of tools keyed by exact name."""

    def __init__(self, tools: list[ToolDescriptor]) -> None:
        by_name: dict[str, ToolDescriptor] = {}
        for tool in tools:
            if tool.name in by_name:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            by_name[tool.name] = tool
        self._tools = by_name

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        """Exact lookup; unknown names give None."""
        return self._tools.get(name)

    def catalog(self) -> list[dict[str, Any]]:
        """Discovery listing in declaration order."""
        return [tool.describe() for tool in self._tools.values()]


def memo_card(note: Note) -> str:
    """Small HTML card summarising a note."""
    title = html.escape(note.title or "Note")
    preview = html.escape(note.content[:CARD_PREVIEW_CHARS])
    return f"<div class='memo-card'><strong>{title}</strong><p>{preview}</p></div>"


def _dump(note: Note) -> dict[str, Any]:
    return note.model_dump()


def build_registry(store: NoteStore) -> ToolRegistry:
    """Create the tool catalog with every handler bound to *store*."""

    async def create_note(args: CreateNoteArgs) -> ToolResult:
        data = NoteCreate.model_validate(args.model_dump(exclude={"user_id"}))
        note = await store.create_note(args.user_id, data)
        return ToolResult(
            text=f"Saved note {note.id}" + (f" '{note.title}'" if note.title else ""),
            data={"note": _dump(note), "html": memo_card(note)},
        )

    async def list_notes(args: ListNotesArgs) -> ToolResult:
        filters = NoteQuery.model_validate(args.model_dump(exclude={"user_id"}))
        notes = await store.list_notes(args.user_id, filters)
        return ToolResult(
            text=f"Found {len(notes)} note(s)",
            data={"count": len(notes), "notes": [_dump(n) for n in notes]},
        )

    async def get_note(args: GetNoteArgs) -> ToolResult:
        note = await store.get_note(args.user_id, args.note_id)
        if note is None:
            raise NoteNotFoundError(args.note_id)
        return ToolResult(text=note.title or note.content[:80], data={"note": _dump(note)})

    async def update_note(args: UpdateNoteArgs) -> ToolResult:
        changed = sorted(args.changes())
        note = await store.update_note(args.user_id, args.note_id, args)
        if note is None:
            raise NoteNotFoundError(args.note_id)
        summary = ", ".join(changed) if changed else "nothing to change"
        return ToolResult(text=f"Updated note {note.id} ({summary})", data={"note": _dump(note)})

    async def delete_note(args: DeleteNoteArgs) -> ToolResult:
        deleted = await store.delete_note(args.user_id, args.note_id)
        text = f"Deleted note {args.note_id}" if deleted else f"No note {args.note_id} to delete"
        return ToolResult(text=text, data={"deleted": deleted, "note_id": args.note_id})

    async def export_notes(args: ExportNotesArgs) -> ToolResult:
        notes = await store.export_notes(args.user_id)
        if args.format == "csv":
            return ToolResult(
                text=f"Exported {len(notes)} note(s) as CSV",
                data={"format": "csv", "csv": to_csv([to_export_row(n) for n in notes])},
            )
        return ToolResult(
            text=f"Exported {len(notes)} note(s)",
            data={"format": "json", "notes": [_dump(n) for n in notes]},
        )

    async def purge_notes(args: PurgeNotesArgs) -> ToolResult:
        purged = await store.purge_notes(args.user_id)
        return ToolResult(text=f"Purged {purged} note(s)", data={"purged": purged})

    return ToolRegistry(
        [
            ToolDescriptor(
                name="create_note",
                description=(
                    "Save a new note for a user. Content is required; title, tags "
                    "and an ISO-8601 reminder time are optional."
                ),
                arguments=CreateNoteArgs,
                handler=create_note,
            ),
            ToolDescriptor(
                name="list_notes",
                description=(
                    "List a user's notes, most recently updated first. Optionally "
                    "filter by text (title or content, case-insensitive) and by tag."
                ),
                arguments=ListNotesArgs,
                handler=list_notes,
            ),
            ToolDescriptor(
                name="get_note",
                description="Fetch one note of a user by its id.",
                arguments=GetNoteArgs,
                handler=get_note,
            ),
            ToolDescriptor(
                name="update_note",
                description=(
                    "Change fields of an existing note. Only the fields given are "
                    "modified; set title, tags or remind_at to null to clear them."
                ),
                arguments=UpdateNoteArgs,
                handler=update_note,
            ),
            ToolDescriptor(
                name="delete_note",
                description="Delete one note of a user. Reports whether anything was removed.",
                arguments=DeleteNoteArgs,
                handler=delete_note,
            ),
            ToolDescriptor(
                name="export_notes",
                description="Export all notes of a user as JSON records or CSV text.",
                arguments=ExportNotesArgs,
                handler=export_notes,
            ),
            ToolDescriptor(
                name="purge_notes",
                description="Delete every note of a user. Returns how many were removed.",
                arguments=PurgeNotesArgs,
                handler=purge_notes,
            ),
        ]
    )
