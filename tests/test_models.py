"""Unit tests for memo.models: validation rules shared by REST and tools."""

import pytest
from pydantic import ValidationError

from memo.models import (
    CreateNoteArgs,
    ExportRequest,
    NoteCreate,
    NoteQuery,
    NoteUpdate,
    UpdateNoteArgs,
    flatten_errors,
)

# ---------------------------------------------------------------------------
# NoteCreate
# ---------------------------------------------------------------------------


class TestNoteCreate:
    def test_content_only(self):
        body = NoteCreate(content="hello")
        assert body.title is None
        assert body.tags is None
        assert body.remind_at is None

    def test_empty_content_rejected(self):
        with pytest.raises(ValidationError):
            NoteCreate(content="")

    def test_missing_content_rejected(self):
        with pytest.raises(ValidationError):
            NoteCreate.model_validate({"title": "only a title"})

    def test_whitespace_content_kept(self):
        assert NoteCreate(content="  x  ").content == "  x  "

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            NoteCreate.model_validate({"content": "x", "colour": "red"})

    def test_tags_must_be_strings(self):
        with pytest.raises(ValidationError):
            NoteCreate.model_validate({"content": "x", "tags": [1, 2]})

    @pytest.mark.parametrize(
        "value",
        [
            "2025-10-08T09:00:00Z",
            "2025-10-08T09:00:00.123Z",
            "2024-02-29T23:59:59.999999Z",
        ],
    )
    def test_reminder_accepts_utc_datetimes(self, value):
        assert NoteCreate(content="x", remind_at=value).remind_at == value

    @pytest.mark.parametrize(
        "value",
        [
            "2025-10-08",
            "tomorrow",
            "2025-13-08T09:00:00Z",
            "2025-02-30T09:00:00Z",
            "",
            "08/10/2025 09:00",
            "2025-10-08 09:00:00Z",
            "2025-10-08T09:00:00+02:00",
            "2025-10-08T09:00",
            "2025-10-08T09:00:00z",
        ],
    )
    def test_reminder_rejects_non_utc_datetimes(self, value):
        with pytest.raises(ValidationError):
            NoteCreate(content="x", remind_at=value)


# ---------------------------------------------------------------------------
# NoteUpdate
# ---------------------------------------------------------------------------


class TestNoteUpdate:
    def test_empty_update_has_no_changes(self):
        assert NoteUpdate().changes() == {}

    def test_omitted_fields_are_not_changes(self):
        assert NoteUpdate(title="T").changes() == {"title": "T"}

    def test_explicit_null_is_a_change(self):
        update = NoteUpdate.model_validate({"tags": None, "remind_at": None})
        assert update.changes() == {"tags": None, "remind_at": None}

    def test_content_cannot_be_cleared(self):
        with pytest.raises(ValidationError):
            NoteUpdate.model_validate({"content": None})
        with pytest.raises(ValidationError):
            NoteUpdate.model_validate({"content": ""})

    def test_tool_arguments_exclude_identifiers_from_changes(self):
        args = UpdateNoteArgs.model_validate(
            {"user_id": "u1", "note_id": "n1", "title": None}
        )
        assert args.changes() == {"title": None}

    def test_content_schema_has_no_null_default(self):
        schema = NoteUpdate.model_json_schema()
        assert "default" not in schema["properties"]["content"]
        assert schema["additionalProperties"] is False


# ---------------------------------------------------------------------------
# NoteQuery / ExportRequest
# ---------------------------------------------------------------------------


class TestNoteQuery:
    def test_defaults(self):
        q = NoteQuery()
        assert q.query is None
        assert q.tag is None
        assert q.limit == 50

    @pytest.mark.parametrize("limit", [0, 201, -1])
    def test_limit_bounds(self, limit):
        with pytest.raises(ValidationError):
            NoteQuery(limit=limit)

    def test_limit_from_query_string(self):
        assert NoteQuery.model_validate({"limit": "10"}).limit == 10

    def test_search_terms_are_trimmed(self):
        assert NoteQuery(query="  parking ").query == "parking"

    def test_blank_search_rejected(self):
        with pytest.raises(ValidationError):
            NoteQuery(query="   ")


class TestExportRequest:
    def test_default_json(self):
        assert ExportRequest().format == "json"

    def test_unknown_format_rejected(self):
        with pytest.raises(ValidationError):
            ExportRequest.model_validate({"format": "xml"})


# ---------------------------------------------------------------------------
# Tool argument models
# ---------------------------------------------------------------------------


class TestToolArguments:
    def test_user_id_required(self):
        with pytest.raises(ValidationError):
            CreateNoteArgs.model_validate({"content": "x"})

    def test_create_args_carry_note_fields(self):
        args = CreateNoteArgs.model_validate({"user_id": "u1", "content": "x", "tags": ["a"]})
        assert args.user_id == "u1"
        assert args.tags == ["a"]


# ---------------------------------------------------------------------------
# flatten_errors
# ---------------------------------------------------------------------------


class TestFlattenErrors:
    def test_groups_by_top_level_field(self):
        with pytest.raises(ValidationError) as exc_info:
            NoteCreate.model_validate({"content": "", "tags": [1], "remind_at": "nope"})
        flat = flatten_errors(exc_info.value.errors())
        assert flat["formErrors"] == []
        assert set(flat["fieldErrors"]) == {"content", "tags", "remind_at"}
        assert all(isinstance(m, str) for msgs in flat["fieldErrors"].values() for m in msgs)

    def test_location_less_errors_are_form_errors(self):
        flat = flatten_errors([{"loc": (), "msg": "Input should be an object"}])
        assert flat == {"formErrors": ["Input should be an object"], "fieldErrors": {}}
