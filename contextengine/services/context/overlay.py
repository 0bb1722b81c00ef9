from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from contextengine.domain.context import (
    CORRECTION_APPEND,
    CORRECTION_NOTE,
    CORRECTION_OVERRIDE,
    CORRECTION_REMOVE,
    SECTION_DOCUMENTS,
    SECTION_IDS,
)
from contextengine.services.context.field_path import (
    SEGMENT_FIELD,
    SEGMENT_INDEX,
    SEGMENT_KEY,
    PathSegment,
    parse_field_path,
)


logger = logging.getLogger(__name__)

NODE_MAPPING = "mapping"
NODE_SEQUENCE = "sequence"
NODE_SCALAR = "scalar"

NOTES_KEY = "_notes"
# Item fields a bracketed key selector may match inside a sequence.
SELECTOR_FIELDS = ("id", "ref_id", "source_id", "user_id")


class SectionNode:
    """One node of an editable section tree.

    Mapping nodes keep insertion order, sequence nodes keep positions and scalar
    nodes hold a JSON primitive. Every node carries its own list of notes so an
    annotation never changes the primary value.
    """

    __slots__ = ("kind", "value", "fields", "items", "notes")

    def __init__(self, kind: str, value: Any = None) -> None:
        self.kind = kind
        self.value = value
        self.fields: dict[str, SectionNode] = {}
        self.items: list[SectionNode] = []
        self.notes: list[str] = []

    @classmethod
    def from_json(cls, data: Any) -> "SectionNode":
        if isinstance(data, dict):
            node = cls(NODE_MAPPING)
            for key, value in data.items():
                if key == NOTES_KEY and isinstance(value, list):
                    node.notes.extend(str(note) for note in value)
                    continue
                node.fields[str(key)] = cls.from_json(value)
            return node
        if isinstance(data, (list, tuple)):
            node = cls(NODE_SEQUENCE)
            node.items = [cls.from_json(item) for item in data]
            return node
        return cls(NODE_SCALAR, data)

    def to_json(self) -> Any:
        if self.kind == NODE_SCALAR:
            return self.value
        if self.kind == NODE_SEQUENCE:
            return [item.to_json() for item in self.items]
        data: dict[str, Any] = {}
        notes = list(self.notes)
        for key, child in self.fields.items():
            data[key] = child.to_json()
            if child.kind != NODE_MAPPING:
                notes.extend(_collect_child_notes(key, child))
        if notes:
            data[NOTES_KEY] = notes
        return data

    def select(self, key: str) -> int | None:
        # Position of the first mapping item whose identifier field equals key.
        for position, item in enumerate(self.items):
            if item.kind != NODE_MAPPING:
                continue
            for name in SELECTOR_FIELDS:
                candidate = item.fields.get(name)
                if candidate is not None and candidate.kind == NODE_SCALAR and str(candidate.value) == key:
                    return position
        return None


def _collect_child_notes(label: str, node: SectionNode) -> list[str]:
    # Scalars and sequences have no mapping of their own to hold notes, so they surface on the parent.
    notes = [f"[{label}] {note}" for note in node.notes]
    if node.kind == NODE_SEQUENCE:
        for position, item in enumerate(node.items):
            if item.kind != NODE_MAPPING:
                notes.extend(_collect_child_notes(f"{label}[{position}]", item))
    return notes


class SectionTree:
    """Explicit tree over the four context sections used for structural edits."""

    def __init__(self, sections: dict[str, Any]) -> None:
        self.roots: dict[str, SectionNode] = {
            section_id: SectionNode.from_json(data if data is not None else {})
            for section_id, data in sections.items()
        }

    def to_sections(self) -> dict[str, Any]:
        return {section_id: root.to_json() for section_id, root in self.roots.items()}


class OverlayFailure(Exception):
    """Internal signal that one correction cannot be applied."""


@dataclass(frozen=True)
class OverlayDiagnostic:
    correction_id: str | None
    section_id: str | None
    field_path: str | None
    correction_type: str | None
    reason: str


@dataclass
class OverlayResult:
    sections: dict[str, Any]
    applied: list[str] = field(default_factory=list)
    skipped: list[OverlayDiagnostic] = field(default_factory=list)


def _parse_json_value(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (TypeError, ValueError):
        return False, None


def _step(node: SectionNode, segment: PathSegment) -> tuple[Any, SectionNode | None]:
    # Returns the child address and the child node (None when absent).
    if segment.kind == SEGMENT_FIELD:
        if node.kind != NODE_MAPPING:
            raise OverlayFailure(f"field {segment.value!r} requested on a {node.kind}")
        return segment.value, node.fields.get(str(segment.value))
    if node.kind != NODE_SEQUENCE:
        raise OverlayFailure(f"index {segment.describe()} requested on a {node.kind}")
    if segment.kind == SEGMENT_INDEX:
        position = int(segment.value)
        if position >= len(node.items):
            raise OverlayFailure(f"index {position} out of range ({len(node.items)} items)")
        return position, node.items[position]
    position = node.select(str(segment.value))
    if position is None:
        raise OverlayFailure(f"no item matches selector {segment.value!r}")
    return position, node.items[position]


def _locate(
    root: SectionNode, segments: tuple[PathSegment, ...], *, create: bool
) -> tuple[SectionNode, Any, SectionNode | None]:
    """Walk to the parent of the last segment.

    With ``create`` missing intermediate mapping keys are added as empty mappings.
    """
    parent = root
    for segment in segments[:-1]:
        address, child = _step(parent, segment)
        if child is None:
            if not create or segment.kind != SEGMENT_FIELD:
                raise OverlayFailure(f"missing location at {segment.describe()}")
            child = SectionNode(NODE_MAPPING)
            parent.fields[str(address)] = child
        parent = child
    address, node = _step(parent, segments[-1])
    return parent, address, node


def _set_child(parent: SectionNode, address: Any, node: SectionNode) -> None:
    if parent.kind == NODE_MAPPING:
        existing = parent.fields.get(str(address))
        if existing is not None:
            node.notes = existing.notes + node.notes
        parent.fields[str(address)] = node
    else:
        node.notes = parent.items[address].notes + node.notes
        parent.items[address] = node


def _apply_override(root: SectionNode, segments: tuple[PathSegment, ...], value: str) -> SectionNode:
    parsed_ok, parsed = _parse_json_value(value)
    if parsed_ok and isinstance(parsed, (dict, list)):
        replacement = SectionNode.from_json(parsed)
    else:
        replacement = SectionNode(NODE_SCALAR, value)
    if not segments:
        if replacement.kind != NODE_MAPPING:
            raise OverlayFailure("section root can only be replaced by an object")
        replacement.notes = root.notes + replacement.notes
        return replacement
    parent, address, _ = _locate(root, segments, create=True)
    _set_child(parent, address, replacement)
    return root


def _apply_append(root: SectionNode, segments: tuple[PathSegment, ...], value: str) -> None:
    parsed_ok, parsed = _parse_json_value(value)
    item = SectionNode.from_json(parsed if parsed_ok else {"name": value})
    if not segments:
        raise OverlayFailure("cannot append to a section root")
    parent, address, target = _locate(root, segments, create=True)
    if target is None:
        target = SectionNode(NODE_SEQUENCE)
        _set_child(parent, address, target)
    if target.kind != NODE_SEQUENCE:
        raise OverlayFailure(f"append target is a {target.kind}, not a sequence")
    target.items.append(item)


def _apply_remove(
    section_id: str, root: SectionNode, segments: tuple[PathSegment, ...]
) -> None:
    if not segments:
        raise OverlayFailure("cannot remove a section root")
    parent, address, target = _locate(root, segments, create=False)
    if target is None:
        raise OverlayFailure("missing location")
    if parent.kind == NODE_MAPPING:
        del parent.fields[str(address)]
        return
    del parent.items[address]
    # Keep the document count consistent with the visible list.
    if section_id == SECTION_DOCUMENTS and len(segments) == 2 and segments[0].value == "items":
        total = root.fields.get("total_count")
        if total is not None and total.kind == NODE_SCALAR and isinstance(total.value, int) and total.value > 0:
            total.value -= 1


def _apply_note(root: SectionNode, segments: tuple[PathSegment, ...], value: str) -> None:
    if not segments:
        root.notes.append(value)
        return
    _, _, target = _locate(root, segments, create=False)
    if target is None:
        raise OverlayFailure("missing location")
    target.notes.append(value)


def _order_key(correction: Any) -> tuple[datetime, str]:
    created_at = getattr(correction, "created_at", None) or datetime.min
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, str(getattr(correction, "id", "") or "")


def apply_corrections(sections: dict[str, Any], corrections: Iterable[Any]) -> OverlayResult:
    """Apply active corrections to a copy of ``sections``.

    Corrections apply in creation order, so the last OVERRIDE on a location wins.
    A correction that cannot be applied is skipped with a diagnostic; it never
    aborts the others. The input mapping is left untouched.
    """
    tree = SectionTree(sections)
    result = OverlayResult(sections={})
    active = [c for c in corrections if getattr(c, "is_active", True)]
    for correction in sorted(active, key=_order_key):
        correction_id = getattr(correction, "id", None)
        section_id = getattr(correction, "section_id", None)
        field_path = getattr(correction, "field_path", None)
        correction_type = getattr(correction, "correction_type", None)
        value = getattr(correction, "corrected_value", None)
        try:
            if section_id not in SECTION_IDS:
                raise OverlayFailure(f"unknown section {section_id!r}")
            root = tree.roots.get(section_id)
            if root is None:
                raise OverlayFailure(f"section {section_id!r} not loaded")
            parsed = parse_field_path(field_path)
            if not parsed.ok:
                raise OverlayFailure(f"malformed field path: {parsed.error}")
            if value is None:
                raise OverlayFailure("missing corrected value")
            if correction_type == CORRECTION_OVERRIDE:
                tree.roots[section_id] = _apply_override(root, parsed.segments, str(value))
            elif correction_type == CORRECTION_APPEND:
                _apply_append(root, parsed.segments, str(value))
            elif correction_type == CORRECTION_REMOVE:
                _apply_remove(section_id, root, parsed.segments)
            elif correction_type == CORRECTION_NOTE:
                _apply_note(root, parsed.segments, str(value))
            else:
                raise OverlayFailure(f"unknown correction type {correction_type!r}")
        except OverlayFailure as exc:
            diagnostic = OverlayDiagnostic(
                correction_id=correction_id,
                section_id=section_id,
                field_path=field_path,
                correction_type=correction_type,
                reason=str(exc),
            )
            result.skipped.append(diagnostic)
            logger.warning(
                "context_correction_skipped correction_id=%s section=%s path=%s reason=%s",
                correction_id,
                section_id,
                field_path,
                diagnostic.reason,
            )
            continue
        if correction_id is not None:
            result.applied.append(str(correction_id))
    result.sections = tree.to_sections()
    return result
