from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from contextengine.domain.context import (
    ENTITY_CASE,
    SECTION_COMMUNICATIONS,
    SECTION_DOCUMENTS,
    SECTION_IDENTITY,
    SECTION_IDS,
    SECTION_PEOPLE,
    SUBSECTION_PARENT,
    TIER_CRITICAL,
    TIER_FULL,
    TIER_STANDARD,
    DisplaySection,
)
from contextengine.providers.compression.base import Compressor
from contextengine.services.context.compression import compress_to_budget, estimate_tokens
from contextengine.services.context.overlay import NOTES_KEY
from contextengine.services.resilience import RetryPolicy


logger = logging.getLogger(__name__)

# Bump when templates change so stored fragments are not reused across layouts.
RENDER_VERSION = 1
SUMMARY_PREVIEW_CHARS = 100
MAX_RENDERED_THREADS = 5
MIN_SECTION_TOKENS = 10

SECTION_WEIGHTS = {
    SECTION_IDENTITY: 0.25,
    SUBSECTION_PARENT: 0.10,
    SECTION_PEOPLE: 0.20,
    SECTION_DOCUMENTS: 0.20,
    SECTION_COMMUNICATIONS: 0.25,
}
DISPLAY_TITLES = {
    SECTION_IDENTITY: "Profile",
    SECTION_PEOPLE: "People",
    SECTION_DOCUMENTS: "Documents",
    SECTION_COMMUNICATIONS: "Communications",
}

_CLIENT_IDENTITY_KEYS = {
    "entity_type", "id", "name", "type", "company_type", "cui", "registration_number",
    "address", "phone", "email",
}
_CASE_IDENTITY_KEYS = {
    "entity_type", "id", "case_number", "title", "type", "type_label", "status", "status_label",
    "court", "phase", "phase_label", "value", "opened_date", "closed_date", "summary", "keywords",
}


@dataclass(frozen=True)
class TierBudgets:
    standard_tokens: int = 400
    critical_tokens: int = 100


def subsections_for(entity_type: str) -> tuple[str, ...]:
    if entity_type == ENTITY_CASE:
        return (SECTION_IDENTITY, SUBSECTION_PARENT, SECTION_PEOPLE, SECTION_DOCUMENTS, SECTION_COMMUNICATIONS)
    return SECTION_IDS


def section_budgets(entity_type: str, budgets: TierBudgets) -> dict[str, dict[str, int]]:
    # Split tier totals across sub-sections by weight, renormalized to the sub-sections present.
    names = subsections_for(entity_type)
    total_weight = sum(SECTION_WEIGHTS[name] for name in names)
    result: dict[str, dict[str, int]] = {}
    for name in names:
        share = SECTION_WEIGHTS[name] / total_weight
        result[name] = {
            TIER_STANDARD: max(MIN_SECTION_TOKENS, int(budgets.standard_tokens * share)),
            TIER_CRITICAL: max(MIN_SECTION_TOKENS, int(budgets.critical_tokens * share)),
        }
    return result


def section_digest(name: str, data: Any, budgets: dict[str, int]) -> str:
    payload = {"render_version": RENDER_VERSION, "section": name, "data": data, "budgets": budgets}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Markdown templates
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value).strip()


def _items(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    return value if isinstance(value, list) else []


def _mapping_items(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    return [item for item in _items(data, key) if isinstance(item, dict)]


def _note_lines(data: Any, indent: str = "") -> list[str]:
    if not isinstance(data, dict):
        return []
    return [f"{indent}Note: {_text(note)}" for note in data.get(NOTES_KEY) or []]


def _date(value: Any) -> str:
    return _text(value)[:10]


def _preview(value: Any) -> str:
    text = _text(value)
    if len(text) > SUMMARY_PREVIEW_CHARS:
        return text[:SUMMARY_PREVIEW_CHARS] + "..."
    return text


def _amount(value: Any) -> str:
    try:
        return f"{float(value):,.2f}"
    except (TypeError, ValueError):
        return _text(value)


def _label(key: str) -> str:
    return key.replace("_", " ").capitalize()


def _extra_lines(data: dict[str, Any], known: set[str]) -> list[str]:
    # Fields added by corrections still appear in the faithful rendering.
    lines = []
    for key, value in data.items():
        if key in known or key == NOTES_KEY or value in (None, "", [], {}):
            continue
        lines.append(f"{_label(key)}: {_text(value)}")
    return lines


def _render_client_identity(data: dict[str, Any]) -> list[str]:
    lines = [f"## Client: {_text(data.get('name')) or 'Unknown'}"]
    if data.get("type") == "company":
        lines.append(f"Type: {_text(data.get('company_type')) or 'Company'}")
        if data.get("cui"):
            lines.append(f"Tax ID: {_text(data['cui'])}")
        if data.get("registration_number"):
            lines.append(f"Registration no.: {_text(data['registration_number'])}")
    elif data.get("type"):
        lines.append(f"Type: {_text(data['type'])}")
    if data.get("address"):
        lines.append(f"Address: {_text(data['address'])}")
    if data.get("phone"):
        lines.append(f"Phone: {_text(data['phone'])}")
    if data.get("email"):
        lines.append(f"Email: {_text(data['email'])}")
    lines.extend(_extra_lines(data, _CLIENT_IDENTITY_KEYS))
    return lines


def _render_case_identity(data: dict[str, Any]) -> list[str]:
    lines = [f"## Case: {_text(data.get('title')) or 'Untitled'}"]
    type_label = _text(data.get("type_label") or data.get("type"))
    status_label = _text(data.get("status_label") or data.get("status"))
    lines.append(f"No: {_text(data.get('case_number'))} | Type: {type_label} | Status: {status_label}")
    if data.get("court"):
        lines.append(f"Court: {_text(data['court'])}")
    if data.get("phase"):
        lines.append(f"Phase: {_text(data.get('phase_label') or data['phase'])}")
    if data.get("value") not in (None, ""):
        lines.append(f"Value: {_amount(data['value'])}")
    if data.get("opened_date"):
        opened = f"Opened: {_date(data['opened_date'])}"
        if data.get("closed_date"):
            opened += f" | Closed: {_date(data['closed_date'])}"
        lines.append(opened)
    keywords = [_text(keyword) for keyword in _items(data, "keywords") if _text(keyword)]
    if keywords:
        lines.append(f"Keywords: {', '.join(keywords)}")
    if data.get("summary"):
        lines.append("")
        lines.append(_text(data["summary"]))
    lines.extend(_extra_lines(data, _CASE_IDENTITY_KEYS))
    return lines


def _person_line(person: dict[str, Any], default_role: str) -> str:
    line = f"- {_text(person.get('name')) or 'Unknown'} ({_text(person.get('role')) or default_role})"
    if person.get("is_primary"):
        line += " [Primary]"
    if person.get("email"):
        line += f" - {_text(person['email'])}"
    return line


def _render_client_people(data: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    administrators = _mapping_items(data, "administrators")
    if administrators:
        lines.append("### Administrators")
        for person in administrators:
            lines.append(_person_line(person, "Administrator"))
            lines.extend(_note_lines(person, "  "))
    contacts = _mapping_items(data, "contacts")
    if contacts:
        if lines:
            lines.append("")
        lines.append("### Contacts")
        for person in contacts:
            lines.append(_person_line(person, "Contact"))
            lines.extend(_note_lines(person, "  "))
    return lines


def _render_case_people(data: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    actors = _mapping_items(data, "actors")
    if actors:
        lines.append("### Parties")
        for actor in actors:
            role = _text(actor.get("role_label") or actor.get("role")) or "Party"
            organization = f" ({_text(actor['organization'])})" if actor.get("organization") else ""
            lines.append(f"- **{role}**: {_text(actor.get('name')) or 'Unknown'}{organization}")
            if actor.get("email"):
                lines.append(f"  Email: {_text(actor['email'])}")
            if actor.get("communication_notes"):
                lines.append(f"  Communication notes: {_text(actor['communication_notes'])}")
            if actor.get("preferred_tone"):
                lines.append(f"  Preferred tone: {_text(actor['preferred_tone'])}")
            lines.extend(_note_lines(actor, "  "))
    team = _mapping_items(data, "team")
    if team:
        if lines:
            lines.append("")
        lines.append("### Team")
        for member in team:
            role = _text(member.get("case_role_label") or member.get("case_role")) or "Member"
            lines.append(f"- {_text(member.get('name')) or 'Unknown'} ({role})")
            lines.extend(_note_lines(member, "  "))
    return lines


def _render_parent(data: dict[str, Any]) -> list[str]:
    lines = [f"### Client: {_text(data.get('name')) or 'Unknown'}"]
    if data.get("type") == "company" and data.get("cui"):
        lines.append(f"Tax ID: {_text(data['cui'])}")
    people = data.get("people") if isinstance(data.get("people"), dict) else {}
    administrators = [_text(p.get("name")) for p in _mapping_items(people, "administrators") if p.get("name")]
    if administrators:
        lines.append(f"Administrators: {', '.join(administrators)}")
    primary = people.get("primary_contact") if isinstance(people.get("primary_contact"), dict) else None
    if primary and primary.get("name"):
        contact = _text(primary["name"])
        if primary.get("email"):
            contact += f" ({_text(primary['email'])})"
        lines.append(f"Primary contact: {contact}")
    return lines


def _render_documents(data: dict[str, Any]) -> list[str]:
    items = _mapping_items(data, "items")
    if not items:
        return []
    lines = ["### Documents"]
    for item in items:
        scan = " [SCAN]" if item.get("is_scan") else ""
        lines.append(f"- [{_text(item.get('ref_id'))}] {_text(item.get('file_name'))}{scan}")
        if item.get("summary"):
            lines.append(f"  {_preview(item['summary'])}")
        lines.extend(_note_lines(item, "  "))
    total = data.get("total_count")
    if isinstance(total, int) and total > len(items):
        lines.append(f"  ... and {total - len(items)} more documents")
    return lines


def _render_communications(data: dict[str, Any], entity_type: str) -> list[str]:
    lines: list[str] = []
    threads = _mapping_items(data, "threads")
    emails = _mapping_items(data, "emails")
    if threads or emails:
        lines.append("### Communications")
        if data.get("overview"):
            lines.append(_text(data["overview"]))
    if threads:
        lines.append("")
        lines.append("**Recent threads:**")
        for thread in threads[:MAX_RENDERED_THREADS]:
            urgent = " [URGENT]" if thread.get("is_urgent") else ""
            line = f"- [{_text(thread.get('ref_id'))}] {_text(thread.get('subject'))}{urgent}"
            if entity_type != ENTITY_CASE:
                line += f" ({_text(thread.get('message_count')) or 0} messages)"
            lines.append(line)
            if thread.get("overview"):
                lines.append(f"  {_text(thread['overview'])}")
            actions = [_text(action) for action in _items(thread, "action_items") if _text(action)]
            if actions:
                lines.append(f"  Actions: {', '.join(actions)}")
            lines.extend(_note_lines(thread, "  "))
    if emails:
        lines.append("")
        lines.append("**Notable emails:**")
        for email in emails:
            flag = " [IMPORTANT]" if email.get("is_important") else ""
            lines.append(
                f"- [{_text(email.get('ref_id'))}] {_text(email.get('subject'))}{flag}"
                f" from {_text(email.get('from')) or 'Unknown'} ({_date(email.get('received_at'))})"
            )
            lines.extend(_note_lines(email, "  "))
    actions = _mapping_items(data, "pending_actions")
    if actions:
        if lines:
            lines.append("")
        lines.append("### Pending actions")
        for action in actions:
            due = f" (due: {_date(action['due_date'])})" if action.get("due_date") else ""
            lines.append(f"- {_text(action.get('description'))}{due}")
    return lines


def render_subsection(entity_type: str, name: str, data: Any) -> str:
    """Faithful markdown for one sub-section, including any correction notes."""
    if not isinstance(data, dict) or not data:
        return ""
    if name == SECTION_IDENTITY:
        lines = _render_case_identity(data) if entity_type == ENTITY_CASE else _render_client_identity(data)
    elif name == SUBSECTION_PARENT:
        lines = _render_parent(data)
    elif name == SECTION_PEOPLE:
        lines = _render_case_people(data) if entity_type == ENTITY_CASE else _render_client_people(data)
    elif name == SECTION_DOCUMENTS:
        lines = _render_documents(data)
    elif name == SECTION_COMMUNICATIONS:
        lines = _render_communications(data, entity_type)
    else:
        return ""
    notes = _note_lines(data)
    if notes and lines:
        lines = lines + notes
    elif notes:
        lines = [f"### {DISPLAY_TITLES.get(name, _label(name))}"] + notes
    return "\n".join(lines).strip()


def build_display_sections(entity_type: str, sections: dict[str, Any]) -> list[DisplaySection]:
    display: list[DisplaySection] = []
    for name in SECTION_IDS:
        content = render_subsection(entity_type, name, sections.get(name)) or "_No data._"
        display.append(
            DisplaySection(
                id=name,
                title=DISPLAY_TITLES[name],
                content=content,
                token_count=estimate_tokens(content),
            )
        )
    return display


# ---------------------------------------------------------------------------
# Tier rendering
# ---------------------------------------------------------------------------


@dataclass
class RenderedTiers:
    section_tiers: dict[str, dict[str, Any]]
    content_full: str
    content_standard: str
    content_critical: str
    compressed_sections: list[str] = field(default_factory=list)
    reused_sections: list[str] = field(default_factory=list)

    @property
    def tokens_full(self) -> int:
        return estimate_tokens(self.content_full)

    @property
    def tokens_standard(self) -> int:
        return estimate_tokens(self.content_standard)

    @property
    def tokens_critical(self) -> int:
        return estimate_tokens(self.content_critical)

    def content_for(self, tier: str) -> str:
        if tier == TIER_CRITICAL:
            return self.content_critical
        if tier == TIER_STANDARD:
            return self.content_standard
        return self.content_full

    def as_record_fields(self) -> dict[str, Any]:
        return {
            "section_tiers": self.section_tiers,
            "content_full": self.content_full,
            "content_standard": self.content_standard,
            "content_critical": self.content_critical,
            "tokens_full": self.tokens_full,
            "tokens_standard": self.tokens_standard,
            "tokens_critical": self.tokens_critical,
        }


def _reusable(previous: Any, digest: str) -> bool:
    if not isinstance(previous, dict) or previous.get("digest") != digest:
        return False
    return all(isinstance(previous.get(tier), str) for tier in (TIER_FULL, TIER_STANDARD, TIER_CRITICAL))


def _join(fragments: list[str]) -> str:
    return "\n\n".join(fragment for fragment in fragments if fragment)


async def render_tiers(
    entity_type: str,
    sections: dict[str, Any],
    *,
    parent_snapshot: dict[str, Any] | None,
    previous: dict[str, Any] | None,
    compressor: Compressor,
    budgets: TierBudgets,
    retry_policy: RetryPolicy | None = None,
) -> RenderedTiers:
    """Render all three tiers from overlaid sections.

    Compression only runs for sub-sections whose digest differs from the
    previous snapshot; unchanged sub-sections reuse their stored fragments.
    """
    previous = previous or {}
    per_section = section_budgets(entity_type, budgets)
    section_tiers: dict[str, dict[str, Any]] = {}
    compressed: list[str] = []
    reused: list[str] = []
    for name in subsections_for(entity_type):
        data = parent_snapshot if name == SUBSECTION_PARENT else sections.get(name)
        section_budget = per_section[name]
        digest = section_digest(name, data, section_budget)
        prior = previous.get(name)
        if _reusable(prior, digest):
            section_tiers[name] = {
                "digest": digest,
                TIER_FULL: prior[TIER_FULL],
                TIER_STANDARD: prior[TIER_STANDARD],
                TIER_CRITICAL: prior[TIER_CRITICAL],
            }
            reused.append(name)
            continue
        full = render_subsection(entity_type, name, data)
        standard_outcome = await compress_to_budget(
            compressor, full, TIER_STANDARD,
            target_tokens=section_budget[TIER_STANDARD], policy=retry_policy, label=name,
        )
        critical_outcome = await compress_to_budget(
            compressor, full, TIER_CRITICAL,
            target_tokens=section_budget[TIER_CRITICAL], policy=retry_policy, label=name,
        )
        standard = standard_outcome.text
        critical = critical_outcome.text
        # Clamp so each tier is never longer than the tier above it.
        if len(standard) > len(full):
            standard = full
        if len(critical) > len(standard):
            critical = standard
        section_tiers[name] = {
            "digest": digest,
            TIER_FULL: full,
            TIER_STANDARD: standard,
            TIER_CRITICAL: critical,
        }
        if standard_outcome.invoked or critical_outcome.invoked:
            compressed.append(name)
    order = subsections_for(entity_type)
    rendered = RenderedTiers(
        section_tiers=section_tiers,
        content_full=_join([section_tiers[name][TIER_FULL] for name in order]),
        content_standard=_join([section_tiers[name][TIER_STANDARD] for name in order]),
        content_critical=_join([section_tiers[name][TIER_CRITICAL] for name in order]),
        compressed_sections=compressed,
        reused_sections=reused,
    )
    logger.debug(
        "context_rendered entity_type=%s compressed=%s reused=%s",
        entity_type,
        ",".join(compressed),
        ",".join(reused),
    )
    return rendered
