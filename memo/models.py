"""Pydantic models for notes and for every request shape that touches them.

The same models validate REST bodies, REST query strings and tool arguments,
and the tool discovery schema is generated from them, so there is one
declarative source for every constraint.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    WithJsonSchema,
)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200

UPDATABLE_FIELDS = ("title", "content", "tags", "remind_at")


_ISO_UTC = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z")


def _check_iso_timestamp(value: str) -> str:
    """Accept UTC datetimes like ``2025-10-08T09:00:00Z`` (fraction optional)."""
    if not _ISO_UTC.fullmatch(value):
        raise ValueError("must be an ISO-8601 UTC datetime ending in Z")
    try:
        datetime.fromisoformat(value[:19])
    except ValueError as exc:
        raise ValueError("must be an ISO-8601 UTC datetime ending in Z") from exc
    return value


def _drop_default(schema: dict[str, Any]) -> None:
    schema.pop("default", None)


NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]
SearchTerm = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
IsoTimestamp = Annotated[
    str,
    AfterValidator(_check_iso_timestamp),
    WithJsonSchema({"type": "string", "format": "date-time"}),
]
ExportFormat = Literal["json", "csv"]


class Note(BaseModel):
    """A stored note as returned to callers."""

    id: str
    title: str | None = None
    content: str
    tags: list[str] = Field(default_factory=list)
    remind_at: str | None = None
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class NoteCreate(BaseModel):
    """Fields accepted when creating a note."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, description="Optional short title")
    content: NonEmptyStr = Field(..., description="Note body, must not be empty")
    tags: list[str] | None = Field(default=None, description="Optional list of tags")
    remind_at: IsoTimestamp | None = Field(
        default=None, description="Optional ISO-8601 reminder timestamp"
    )


class NoteUpdate(BaseModel):
    """Partial update. Only fields present in the payload are written.

    ``title``, ``tags`` and ``remind_at`` may be set to null to clear them;
    ``content`` may be replaced but never cleared.
    """

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, description="New title, null clears it")
    content: NonEmptyStr = Field(
        default=None,
        description="New note body",
        json_schema_extra=_drop_default,
    )
    tags: list[str] | None = Field(default=None, description="New tags, null clears them")
    remind_at: IsoTimestamp | None = Field(
        default=None, description="New reminder timestamp, null clears it"
    )

    def changes(self) -> dict[str, Any]:
        """Explicitly supplied fields, including those set to null."""
        return {
            name: getattr(self, name)
            for name in UPDATABLE_FIELDS
            if name in self.model_fields_set
        }


class NoteQuery(BaseModel):
    """Filters for listing notes."""

    model_config = ConfigDict(extra="forbid")

    query: SearchTerm | None = Field(
        default=None, description="Case-insensitive text searched in title and content"
    )
    tag: SearchTerm | None = Field(default=None, description="Only notes carrying this tag")
    limit: int = Field(
        default=DEFAULT_LIST_LIMIT,
        ge=1,
        le=MAX_LIST_LIMIT,
        description="Maximum number of notes returned",
    )


class ExportRequest(BaseModel):
    """Export format selection."""

    model_config = ConfigDict(extra="forbid")

    format: ExportFormat = Field(default="json", description="json or csv")


# ---------------------------------------------------------------------------
# Tool arguments
# ---------------------------------------------------------------------------


class UserScoped(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: NonEmptyStr = Field(..., description="Opaque identifier of the note owner")


class NoteRef(UserScoped):
    note_id: NonEmptyStr = Field(..., description="Identifier of the note")


class CreateNoteArgs(NoteCreate, UserScoped):
    pass


class ListNotesArgs(NoteQuery, UserScoped):
    pass


class GetNoteArgs(NoteRef):
    pass


class UpdateNoteArgs(NoteUpdate, NoteRef):
    pass


class DeleteNoteArgs(NoteRef):
    pass


class ExportNotesArgs(ExportRequest, UserScoped):
    pass


class PurgeNotesArgs(UserScoped):
    pass


# ---------------------------------------------------------------------------
# Validation diagnostics
# ---------------------------------------------------------------------------


def flatten_errors(errors: list[dict[str, Any]]) -> dict[str, Any]:
    """Group pydantic error dicts by top-level field.

    Errors without a location (whole-payload problems) go to ``formErrors``.
    """
    form_errors: list[str] = []
    field_errors: dict[str, list[str]] = {}
    for err in errors:
        loc = err.get("loc") or ()
        message = err.get("msg", "Invalid value")
        if loc:
            field_errors.setdefault(str(loc[0]), []).append(message)
        else:
            form_errors.append(message)
    return {"formErrors": form_errors, "fieldErrors": field_errors}
