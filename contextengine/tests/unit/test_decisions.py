from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from contextengine.domain.models import ContextRecord
from contextengine.services.context.decisions import (
    CACHE_HIT,
    EXPIRED,
    FORCE_REFRESH,
    MISSING,
    REASON_ALL_SECTIONS_REQUESTED,
    REASON_NO_EXISTING_FILE,
    SCHEMA_STALE,
    SECTIONS_REQUESTED,
    STORED,
    decide,
    decide_sections,
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _record(*, schema_version: int = 1, valid_for: timedelta = timedelta(hours=1)) -> ContextRecord:
    return ContextRecord(
        tenant_id="t1",
        entity_type="CLIENT",
        entity_id="client-1",
        schema_version=schema_version,
        valid_until=NOW + valid_for,
    )


@pytest.mark.parametrize(
    ("record", "cached", "force", "expected"),
    [
        (None, False, True, FORCE_REFRESH),
        (_record(), True, True, FORCE_REFRESH),
        (_record(), True, False, CACHE_HIT),
        (None, False, False, MISSING),
        (_record(schema_version=0), False, False, SCHEMA_STALE),
        (_record(valid_for=timedelta(0)), False, False, EXPIRED),
        (_record(valid_for=-timedelta(minutes=5)), False, False, EXPIRED),
        (_record(), False, False, STORED),
    ],
)
def test_decide(record, cached, force, expected) -> None:
    assert decide(record, cached=cached, force_refresh=force, now=NOW, schema_version=1) == expected


def test_schema_staleness_wins_over_expiry() -> None:
    record = _record(schema_version=0, valid_for=-timedelta(hours=1))
    assert decide(record, cached=False, force_refresh=False, now=NOW, schema_version=1) == SCHEMA_STALE


def test_naive_validity_is_treated_as_utc() -> None:
    record = _record()
    record.valid_until = (NOW + timedelta(minutes=1)).replace(tzinfo=None)
    assert decide(record, cached=False, force_refresh=False, now=NOW, schema_version=1) == STORED


def test_decide_sections() -> None:
    assert decide_sections(None, ["identity"]) == (MISSING, REASON_NO_EXISTING_FILE)
    every = ["identity", "people", "documents", "communications"]
    assert decide_sections(_record(), every) == (FORCE_REFRESH, REASON_ALL_SECTIONS_REQUESTED)
    assert decide_sections(_record(), ["documents"]) == (SECTIONS_REQUESTED, None)
