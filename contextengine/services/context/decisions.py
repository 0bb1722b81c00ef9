from __future__ import annotations

from datetime import datetime

from contextengine.domain.context import SECTION_IDS
from contextengine.domain.models import ContextRecord
from contextengine.persistence.repos.contexts import as_utc


CACHE_HIT = "CACHE_HIT"
MISSING = "MISSING"
SCHEMA_STALE = "SCHEMA_STALE"
EXPIRED = "EXPIRED"
FORCE_REFRESH = "FORCE_REFRESH"
STORED = "STORED"
SECTIONS_REQUESTED = "SECTIONS_REQUESTED"

# Decisions that rebuild every section from collaborator data.
FULL_REGENERATION = frozenset({MISSING, SCHEMA_STALE, EXPIRED, FORCE_REFRESH})

REASON_NO_EXISTING_FILE = "no_existing_file"
REASON_ALL_SECTIONS_REQUESTED = "all_sections_requested"


def decide(
    record: ContextRecord | None,
    *,
    cached: bool,
    force_refresh: bool,
    now: datetime,
    schema_version: int,
) -> str:
    """Pick how a read is served: cache, stored tiers, or a full regeneration."""
    if force_refresh:
        return FORCE_REFRESH
    if cached:
        return CACHE_HIT
    if record is None:
        return MISSING
    if record.schema_version != schema_version:
        return SCHEMA_STALE
    if as_utc(record.valid_until) <= now:
        return EXPIRED
    return STORED


def decide_sections(record: ContextRecord | None, sections: list[str]) -> tuple[str, str | None]:
    # Partial requests fall back to a full rebuild when there is nothing to patch or nothing left out.
    if record is None:
        return MISSING, REASON_NO_EXISTING_FILE
    if set(sections) >= set(SECTION_IDS):
        return FORCE_REFRESH, REASON_ALL_SECTIONS_REQUESTED
    return SECTIONS_REQUESTED, None
