from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from contextengine.services.context.overlay import (
    NOTES_KEY,
    SectionNode,
    SectionTree,
    apply_corrections,
)


BASE_TIME = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _correction(
    correction_id: str,
    section_id: str,
    correction_type: str,
    value: str | None,
    *,
    field_path: str | None = None,
    minutes: int = 0,
    is_active: bool = True,
):
    return SimpleNamespace(
        id=correction_id,
        section_id=section_id,
        field_path=field_path,
        correction_type=correction_type,
        corrected_value=value,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        is_active=is_active,
    )


def _sections() -> dict:
    return {
        "identity": {"name": "Acme Industries SRL", "cui": "RO1"},
        "people": {"contacts": [{"id": "c1", "name": "Mihai"}, {"id": "c2", "name": "Ana"}]},
        "documents": {
            "items": [
                {"ref_id": "DOC-aaaaa", "source_id": "d1", "file_name": "a.pdf"},
                {"ref_id": "DOC-bbbbb", "source_id": "d2", "file_name": "b.pdf"},
            ],
            "total_count": 2,
            "has_more": False,
        },
        "communications": {"threads": [], "emails": []},
    }


def test_tree_round_trip_preserves_data() -> None:
    sections = _sections()
    assert SectionTree(sections).to_sections() == sections


def test_notes_on_scalars_surface_on_parent_mapping() -> None:
    node = SectionNode.from_json({"name": "Acme"})
    node.fields["name"].notes.append("verify spelling")
    assert node.to_json() == {"name": "Acme", NOTES_KEY: ["[name] verify spelling"]}


def test_override_replaces_scalar() -> None:
    result = apply_corrections(
        _sections(), [_correction("c1", "identity", "OVERRIDE", "Acme Renamed SRL", field_path="name")]
    )
    assert result.sections["identity"]["name"] == "Acme Renamed SRL"
    assert result.applied == ["c1"]


def test_override_with_json_object_replaces_subtree() -> None:
    value = json.dumps({"id": "c1", "name": "Mihai Ionescu", "email": "m@acme.example"})
    result = apply_corrections(
        _sections(), [_correction("c1", "people", "OVERRIDE", value, field_path="contacts[c1]")]
    )
    assert result.sections["people"]["contacts"][0]["email"] == "m@acme.example"


def test_override_creates_missing_field() -> None:
    result = apply_corrections(
        _sections(), [_correction("c1", "identity", "OVERRIDE", "Str. Noua 5", field_path="registered.address")]
    )
    assert result.sections["identity"]["registered"] == {"address": "Str. Noua 5"}


def test_root_override_requires_object() -> None:
    result = apply_corrections(_sections(), [_correction("c1", "identity", "OVERRIDE", "plain text")])
    assert result.applied == []
    assert "object" in result.skipped[0].reason
    assert result.sections["identity"]["name"] == "Acme Industries SRL"


def test_last_override_wins_by_creation_order() -> None:
    corrections = [
        _correction("late", "identity", "OVERRIDE", "Second", field_path="name", minutes=5),
        _correction("early", "identity", "OVERRIDE", "First", field_path="name", minutes=1),
    ]
    result = apply_corrections(_sections(), corrections)
    assert result.sections["identity"]["name"] == "Second"
    assert result.applied == ["early", "late"]


def test_append_text_becomes_named_item() -> None:
    result = apply_corrections(
        _sections(), [_correction("c1", "people", "APPEND", "Radu Vasile", field_path="contacts")]
    )
    assert result.sections["people"]["contacts"][-1] == {"name": "Radu Vasile"}


def test_append_creates_missing_sequence() -> None:
    result = apply_corrections(
        _sections(), [_correction("c1", "people", "APPEND", '{"name": "Elena"}', field_path="administrators")]
    )
    assert result.sections["people"]["administrators"] == [{"name": "Elena"}]


def test_remove_document_decrements_total() -> None:
    result = apply_corrections(_sections(), [_correction("c1", "documents", "REMOVE", "", field_path="items[0]")])
    documents = result.sections["documents"]
    assert [item["file_name"] for item in documents["items"]] == ["b.pdf"]
    assert documents["total_count"] == 1


def test_remove_by_selector() -> None:
    result = apply_corrections(
        _sections(), [_correction("c1", "documents", "REMOVE", "", field_path="items[DOC-bbbbb]")]
    )
    assert [item["file_name"] for item in result.sections["documents"]["items"]] == ["a.pdf"]


def test_note_keeps_primary_value() -> None:
    result = apply_corrections(
        _sections(), [_correction("c1", "identity", "NOTE", "Confirm with registry", field_path="cui")]
    )
    identity = result.sections["identity"]
    assert identity["cui"] == "RO1"
    assert identity[NOTES_KEY] == ["[cui] Confirm with registry"]


def test_note_on_section_root() -> None:
    result = apply_corrections(_sections(), [_correction("c1", "communications", "NOTE", "Prefers phone calls")])
    assert result.sections["communications"][NOTES_KEY] == ["Prefers phone calls"]


def test_failures_are_skipped_not_raised() -> None:
    corrections = [
        _correction("bad-path", "identity", "OVERRIDE", "x", field_path="name[", minutes=1),
        _correction("bad-index", "documents", "REMOVE", "", field_path="items[9]", minutes=2),
        _correction("bad-type", "identity", "REPLACE", "x", field_path="name", minutes=3),
        _correction("bad-section", "billing", "OVERRIDE", "x", field_path="name", minutes=4),
        _correction("good", "identity", "OVERRIDE", "Acme Renamed SRL", field_path="name", minutes=5),
    ]
    result = apply_corrections(_sections(), corrections)
    assert result.applied == ["good"]
    assert {diagnostic.correction_id for diagnostic in result.skipped} == {
        "bad-path",
        "bad-index",
        "bad-type",
        "bad-section",
    }
    assert result.sections["identity"]["name"] == "Acme Renamed SRL"


def test_inactive_corrections_are_ignored() -> None:
    result = apply_corrections(
        _sections(),
        [_correction("c1", "identity", "OVERRIDE", "Ignored", field_path="name", is_active=False)],
    )
    assert result.sections["identity"]["name"] == "Acme Industries SRL"
    assert result.applied == []


def test_input_sections_are_not_mutated() -> None:
    sections = _sections()
    apply_corrections(sections, [_correction("c1", "documents", "REMOVE", "", field_path="items[0]")])
    assert len(sections["documents"]["items"]) == 2
    assert sections["documents"]["total_count"] == 2
