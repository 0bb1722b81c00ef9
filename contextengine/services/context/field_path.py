from __future__ import annotations

import re
from dataclasses import dataclass


SEGMENT_FIELD = "field"
SEGMENT_INDEX = "index"
# Bracketed non-numeric selector matching an item's id or ref_id, e.g. items[DOC-abc12].
SEGMENT_KEY = "key"

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_INDEX_RE = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class PathSegment:
    kind: str
    value: str | int

    def describe(self) -> str:
        if self.kind == SEGMENT_FIELD:
            return str(self.value)
        return f"[{self.value}]"


@dataclass(frozen=True)
class PathParseResult:
    segments: tuple[PathSegment, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _fail(message: str) -> PathParseResult:
    return PathParseResult(error=message)


def parse_field_path(text: str | None) -> PathParseResult:
    """Parse a dotted/bracketed path such as ``items[0].name`` into segments.

    Never raises: malformed input yields a result with ``error`` set. An empty or
    missing path addresses the section root and parses to zero segments.
    """
    if text is None:
        return PathParseResult()
    if not isinstance(text, str):
        return _fail("field path must be a string")
    raw = text.strip()
    if not raw:
        return PathParseResult()

    segments: list[PathSegment] = []
    pos = 0
    expect_field = True
    length = len(raw)
    while pos < length:
        char = raw[pos]
        if char == "[":
            close = raw.find("]", pos + 1)
            if close == -1:
                return _fail(f"unclosed bracket at position {pos}")
            inner = raw[pos + 1 : close].strip()
            if not inner:
                return _fail(f"empty brackets at position {pos}")
            if "[" in inner:
                return _fail(f"nested bracket at position {pos}")
            if _INDEX_RE.match(inner):
                index = int(inner)
                if index < 0:
                    return _fail(f"negative index {index}")
                segments.append(PathSegment(SEGMENT_INDEX, index))
            else:
                segments.append(PathSegment(SEGMENT_KEY, inner.strip("'\"")))
            pos = close + 1
            expect_field = False
            continue
        if char == "]":
            return _fail(f"unmatched closing bracket at position {pos}")
        if char == ".":
            if expect_field:
                return _fail(f"empty field name at position {pos}")
            pos += 1
            expect_field = True
            if pos >= length:
                return _fail("path ends with a dot")
            continue
        if not expect_field:
            return _fail(f"missing dot before position {pos}")
        end = pos
        while end < length and raw[end] not in ".[]":
            end += 1
        name = raw[pos:end]
        if not _FIELD_RE.match(name):
            return _fail(f"invalid field name {name!r}")
        segments.append(PathSegment(SEGMENT_FIELD, name))
        pos = end
        expect_field = False

    return PathParseResult(segments=tuple(segments))


def format_path(segments: tuple[PathSegment, ...]) -> str:
    parts: list[str] = []
    for segment in segments:
        if segment.kind == SEGMENT_FIELD and parts:
            parts.append(".")
        parts.append(segment.describe())
    return "".join(parts)
