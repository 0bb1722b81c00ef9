from __future__ import annotations

import pytest

from contextengine.providers.compression.fake import FakeCompressor
from contextengine.services.context.overlay import NOTES_KEY
from contextengine.services.context.renderer import (
    MIN_SECTION_TOKENS,
    TierBudgets,
    build_display_sections,
    render_subsection,
    render_tiers,
    section_budgets,
    section_digest,
    subsections_for,
)


def _client_sections(name: str = "Acme Industries SRL") -> dict:
    return {
        "identity": {
            "entity_type": "CLIENT",
            "id": "client-1",
            "name": name,
            "type": "company",
            "company_type": "SRL",
            "cui": "RO1234567",
            "registration_number": "J40/100/2010",
            "address": "1 Main Street, Bucharest",
            "phone": "+40 21 000 0000",
            "email": "office@acme.example",
        },
        "people": {
            "administrators": [{"name": "Elena Pop", "role": "Director"}],
            "contacts": [
                {"name": "Mihai Ionescu", "role": "Contact", "email": "mihai@acme.example", "is_primary": True},
                {"name": "Ana Dumitru", "role": "Contact", "email": "ana@acme.example", "is_primary": False},
            ],
        },
        "documents": {
            "items": [
                {
                    "ref_id": f"DOC-{index:05d}",
                    "file_name": f"contract_{index}.pdf",
                    "summary": "Framework agreement for logistics services and annual price review. " * 2,
                    "is_scan": index == 0,
                }
                for index in range(6)
            ],
            "total_count": 9,
            "has_more": False,
        },
        "communications": {
            "overview": "2 active conversations. 1 need urgent attention.",
            "threads": [
                {
                    "ref_id": "THR-aaaaa",
                    "subject": "Shareholder meeting",
                    "message_count": 3,
                    "overview": "Client asked about the annual shareholder meeting.",
                    "is_urgent": True,
                    "action_items": ["Send agenda"],
                }
            ],
            "emails": [
                {
                    "ref_id": "EMAIL-bbbbb",
                    "subject": "Invoice dispute",
                    "from": "ana@acme.example",
                    "received_at": "2026-02-26T12:00:00+00:00",
                    "is_important": True,
                }
            ],
            "pending_actions": [],
        },
    }


def test_client_identity_template() -> None:
    text = render_subsection("CLIENT", "identity", _client_sections()["identity"])
    assert text.startswith("## Client: Acme Industries SRL")
    assert "Type: SRL" in text
    assert "Tax ID: RO1234567" in text
    assert "Registration no.: J40/100/2010" in text


def test_identity_renders_fields_added_by_corrections() -> None:
    identity = dict(_client_sections()["identity"], vat_status="registered")
    text = render_subsection("CLIENT", "identity", identity)
    assert "Vat status: registered" in text


def test_case_identity_template() -> None:
    identity = {
        "title": "Acme v. Carpathia",
        "case_number": "1024/3/2026",
        "type": "Litigation",
        "status": "Active",
        "court": "Bucharest Tribunal",
        "value": 125000.0,
        "opened_date": "2026-01-20T12:00:00+00:00",
        "keywords": ["freight"],
        "summary": "Unpaid invoices.",
    }
    text = render_subsection("CASE", "identity", identity)
    assert text.startswith("## Case: Acme v. Carpathia")
    assert "No: 1024/3/2026 | Type: Litigation | Status: Active" in text
    assert "Value: 125,000.00" in text
    assert "Opened: 2026-01-20" in text
    assert "Keywords: freight" in text


def test_people_marks_primary_contact() -> None:
    text = render_subsection("CLIENT", "people", _client_sections()["people"])
    assert "### Administrators" in text
    assert "- Mihai Ionescu (Contact) [Primary] - mihai@acme.example" in text


def test_documents_list_mentions_remaining_count() -> None:
    text = render_subsection("CLIENT", "documents", _client_sections()["documents"])
    assert "- [DOC-00000] contract_0.pdf [SCAN]" in text
    assert "... and 3 more documents" in text


def test_communications_template() -> None:
    text = render_subsection("CLIENT", "communications", _client_sections()["communications"])
    assert "**Recent threads:**" in text
    assert "- [THR-aaaaa] Shareholder meeting [URGENT] (3 messages)" in text
    assert "Actions: Send agenda" in text
    assert "- [EMAIL-bbbbb] Invoice dispute [IMPORTANT] from ana@acme.example (2026-02-26)" in text


def test_notes_render_as_note_lines() -> None:
    identity = dict(_client_sections()["identity"])
    identity[NOTES_KEY] = ["[cui] Confirm with registry"]
    text = render_subsection("CLIENT", "identity", identity)
    assert text.endswith("Note: [cui] Confirm with registry")


def test_empty_section_renders_nothing() -> None:
    assert render_subsection("CLIENT", "documents", {}) == ""
    assert render_subsection("CLIENT", "documents", None) == ""


def test_display_sections_cover_every_section() -> None:
    display = build_display_sections("CLIENT", {"identity": _client_sections()["identity"]})
    assert [section.id for section in display] == ["identity", "people", "documents", "communications"]
    assert display[0].title == "Profile"
    assert display[2].content == "_No data._"
    assert display[0].token_count > 0


def test_section_budgets_renormalize_and_floor() -> None:
    client = section_budgets("CLIENT", TierBudgets(standard_tokens=400, critical_tokens=100))
    assert client["identity"]["standard"] == int(400 * 0.25 / 0.90)
    case = section_budgets("CASE", TierBudgets(standard_tokens=400, critical_tokens=20))
    assert set(case) == set(subsections_for("CASE"))
    assert case["parent"]["critical"] == MIN_SECTION_TOKENS


def test_digest_changes_with_data_and_budget() -> None:
    budget = {"standard": 100, "critical": 25}
    digest = section_digest("identity", {"name": "A"}, budget)
    assert digest == section_digest("identity", {"name": "A"}, dict(budget))
    assert digest != section_digest("identity", {"name": "B"}, budget)
    assert digest != section_digest("identity", {"name": "A"}, {"standard": 90, "critical": 25})


async def test_tiers_are_monotonic() -> None:
    rendered = await render_tiers(
        "CLIENT",
        _client_sections(),
        parent_snapshot=None,
        previous=None,
        compressor=FakeCompressor(),
        budgets=TierBudgets(standard_tokens=120, critical_tokens=40),
    )
    assert rendered.compressed_sections
    assert len(rendered.content_critical) <= len(rendered.content_standard) <= len(rendered.content_full)
    for fragments in rendered.section_tiers.values():
        assert len(fragments["critical"]) <= len(fragments["standard"]) <= len(fragments["full"])
    assert "Acme Industries SRL" in rendered.content_full
    assert rendered.tokens_full >= rendered.tokens_standard >= rendered.tokens_critical


async def test_unchanged_sections_reuse_fragments_without_compressing() -> None:
    budgets = TierBudgets(standard_tokens=120, critical_tokens=40)
    first = await render_tiers(
        "CLIENT",
        _client_sections(),
        parent_snapshot=None,
        previous=None,
        compressor=FakeCompressor(),
        budgets=budgets,
    )
    compressor = FakeCompressor()
    second = await render_tiers(
        "CLIENT",
        _client_sections(name="Acme Renamed SRL"),
        parent_snapshot=None,
        previous=first.section_tiers,
        compressor=compressor,
        budgets=budgets,
    )
    assert second.reused_sections == ["people", "documents", "communications"]
    assert "identity" not in second.reused_sections
    assert second.section_tiers["documents"] == first.section_tiers["documents"]
    # Only the changed identity sub-section may reach the compressor.
    assert len(compressor.calls) <= 2
    assert "Acme Renamed SRL" in second.content_full


@pytest.mark.parametrize("entity_type", ["CLIENT", "CASE"])
async def test_small_sections_skip_compression(entity_type: str) -> None:
    compressor = FakeCompressor()
    rendered = await render_tiers(
        entity_type,
        {"identity": {"name": "A", "title": "T"}},
        parent_snapshot={"name": "Parent"} if entity_type == "CASE" else None,
        previous=None,
        compressor=compressor,
        budgets=TierBudgets(),
    )
    assert compressor.calls == []
    assert rendered.content_full == rendered.content_standard == rendered.content_critical
