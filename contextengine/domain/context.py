from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


ENTITY_CLIENT = "CLIENT"
ENTITY_CASE = "CASE"
ENTITY_TYPES = frozenset({ENTITY_CLIENT, ENTITY_CASE})

TIER_CRITICAL = "critical"
TIER_STANDARD = "standard"
TIER_FULL = "full"
TIERS = (TIER_CRITICAL, TIER_STANDARD, TIER_FULL)
# Tiers produced by the compression capability rather than rendered directly.
COMPRESSED_TIERS = (TIER_STANDARD, TIER_CRITICAL)

SECTION_IDENTITY = "identity"
SECTION_PEOPLE = "people"
SECTION_DOCUMENTS = "documents"
SECTION_COMMUNICATIONS = "communications"
SECTION_IDS = (SECTION_IDENTITY, SECTION_PEOPLE, SECTION_DOCUMENTS, SECTION_COMMUNICATIONS)
# Sections whose changes require the reference catalog to be rebuilt.
REFERENCE_SECTIONS = frozenset({SECTION_DOCUMENTS, SECTION_COMMUNICATIONS})
# Rendering-only sub-section carrying the parent client snapshot for cases.
SUBSECTION_PARENT = "parent"

CORRECTION_OVERRIDE = "OVERRIDE"
CORRECTION_APPEND = "APPEND"
CORRECTION_REMOVE = "REMOVE"
CORRECTION_NOTE = "NOTE"
CORRECTION_TYPES = frozenset(
    {CORRECTION_OVERRIDE, CORRECTION_APPEND, CORRECTION_REMOVE, CORRECTION_NOTE}
)

REF_DOCUMENT = "DOCUMENT"
REF_EMAIL = "EMAIL"
REF_THREAD = "THREAD"
REF_PREFIXES = {REF_DOCUMENT: "DOC", REF_EMAIL: "EMAIL", REF_THREAD: "THR"}

SOURCE_DOCUMENT = "Document"
SOURCE_EMAIL = "Email"
SOURCE_THREAD = "ThreadSummary"


def normalize_entity_type(value: str) -> str:
    # Accept case-insensitive entity types from API callers.
    return str(value or "").strip().upper()


class ReferenceInfo(BaseModel):
    ref_id: str
    ref_type: str
    title: str
    summary: str | None = None


class CorrectionView(BaseModel):
    id: str
    section_id: str
    field_path: str | None = None
    correction_type: str
    original_value: str | None = None
    corrected_value: str
    reason: str | None = None
    created_by: str
    created_at: datetime
    is_active: bool = True


class DisplaySection(BaseModel):
    # Per-section markdown for UI tabs, independent of tier compression.
    id: str
    title: str
    content: str
    token_count: int


class ContextResult(BaseModel):
    entity_type: str
    entity_id: str
    tenant_id: str
    tier: str
    content: str
    token_count: int
    references: list[ReferenceInfo] = Field(default_factory=list)
    corrections: list[CorrectionView] = Field(default_factory=list)
    sections: list[DisplaySection] = Field(default_factory=list)
    version: int
    generated_at: datetime
    valid_until: datetime


class CombinedContextResult(BaseModel):
    case_id: str
    client_id: str
    content: str
    client_content: str
    case_content: str
    references: list[ReferenceInfo] = Field(default_factory=list)
    token_count: int


class EmailReplyContextResult(BaseModel):
    case_id: str
    client_id: str
    case_content: str
    client_content: str
    thread_content: str | None = None
    actor_content: str | None = None
    references: list[ReferenceInfo] = Field(default_factory=list)
    token_count: int


class ResolvedReference(BaseModel):
    ref_id: str
    ref_type: str
    source_id: str
    title: str
    summary: str | None = None
    entity_details: dict[str, Any] = Field(default_factory=dict)
