from __future__ import annotations

import logging
import time
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contextengine.core.errors import ContextPersistenceError, ContextValidationError
from contextengine.domain.context import (
    CORRECTION_TYPES,
    ENTITY_CASE,
    ENTITY_CLIENT,
    ENTITY_TYPES,
    REFERENCE_SECTIONS,
    SECTION_IDS,
    TIER_CRITICAL,
    TIER_FULL,
    TIER_STANDARD,
    TIERS,
    CombinedContextResult,
    ContextResult,
    CorrectionView,
    EmailReplyContextResult,
    ResolvedReference,
    normalize_entity_type,
)
from contextengine.domain.models import ContextCorrection, ContextRecord
from contextengine.persistence.repos import contexts as contexts_repo
from contextengine.persistence.repos import corrections as corrections_repo
from contextengine.persistence.repos import sources as sources_repo
from contextengine.persistence.repos.contexts import as_utc
from contextengine.services.context import references as reference_catalog
from contextengine.services.context.access import ensure_same_tenant
from contextengine.services.context.decisions import (
    CACHE_HIT,
    FORCE_REFRESH,
    REASON_ALL_SECTIONS_REQUESTED,
    SCHEMA_STALE,
    SECTIONS_REQUESTED,
    STORED,
    decide,
    decide_sections,
)
from contextengine.services.context.field_path import parse_field_path
from contextengine.services.context.gatherer import email_sender, gather
from contextengine.services.context.overlay import apply_corrections
from contextengine.services.context.renderer import (
    build_display_sections,
    render_tiers,
    subsections_for,
)
from contextengine.services.context.compression import estimate_tokens
from contextengine.services.context.runtime import ContextRuntime


logger = logging.getLogger(__name__)

COMBINED_SEPARATOR = "\n\n---\n\n"


def _validate_entity_type(entity_type: str) -> str:
    normalized = normalize_entity_type(entity_type)
    if normalized not in ENTITY_TYPES:
        raise ContextValidationError(f"unknown entity type {entity_type!r}")
    return normalized


def _validate_tier(tier: str) -> str:
    normalized = str(tier or "").strip().lower()
    if normalized not in TIERS:
        raise ContextValidationError(f"unknown tier {tier!r}")
    return normalized


def _validate_sections(sections: Any) -> list[str]:
    if not isinstance(sections, (list, tuple)) or not sections:
        raise ContextValidationError("sections must be a non-empty list")
    unknown = [section for section in sections if section not in SECTION_IDS]
    if unknown:
        raise ContextValidationError(f"unknown sections: {', '.join(map(str, unknown))}")
    return [section_id for section_id in SECTION_IDS if section_id in sections]


def _validate_corrected_value(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ContextValidationError("corrected_value must be a non-empty string")
    return value


def to_correction_view(correction: ContextCorrection) -> CorrectionView:
    return CorrectionView(
        id=correction.id,
        section_id=correction.section_id,
        field_path=correction.field_path,
        correction_type=correction.correction_type,
        original_value=correction.original_value,
        corrected_value=correction.corrected_value,
        reason=correction.reason,
        created_by=correction.created_by,
        created_at=correction.created_at,
        is_active=correction.is_active,
    )


async def _commit(session: AsyncSession, what: str) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise ContextPersistenceError(f"{what} commit failed") from exc


class ContextService:
    """Serves tiered context for clients and cases.

    Reads go cache first, then the stored record, and regenerate when the
    record is missing, expired, schema-stale or a refresh is forced. Every
    write lands in one transaction before the cache is repopulated.
    """

    def __init__(self, runtime: ContextRuntime) -> None:
        self._rt = runtime

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_context(
        self,
        entity_type: str,
        entity_id: str,
        tier: str = TIER_FULL,
        *,
        force_refresh: bool = False,
        tenant_id: str | None = None,
    ) -> ContextResult | None:
        entity_type = _validate_entity_type(entity_type)
        tier = _validate_tier(tier)
        now = self._rt.now()

        if not force_refresh:
            cached = await self._rt.cache.get(entity_type, entity_id, tier)
            if cached is not None and as_utc(cached.valid_until) > now:
                if tenant_id is not None and not ensure_same_tenant(
                    cached.tenant_id, tenant_id, resource_type=entity_type, resource_id=entity_id
                ):
                    return None
                self._log_decision(entity_type, entity_id, CACHE_HIT)
                return cached

        async with self._rt.session_factory() as session:
            record = await contexts_repo.get_record(session, entity_type, entity_id)
            if record is not None and tenant_id is not None and not ensure_same_tenant(
                record.tenant_id, tenant_id, resource_type=entity_type, resource_id=entity_id
            ):
                return None
            decision = decide(
                record,
                cached=False,
                force_refresh=force_refresh,
                now=now,
                schema_version=self._rt.settings.context_schema_version,
            )
            self._log_decision(entity_type, entity_id, decision)
            if decision == STORED:
                results = await self._results_for(session, record)
                await self._rt.cache.populate(results.values(), valid_until=as_utc(record.valid_until), now=now)
                return results[tier]

        return await self._regenerate_full(
            entity_type,
            entity_id,
            tier,
            tenant_id=tenant_id,
            reuse_previous=decision not in (FORCE_REFRESH, SCHEMA_STALE),
        )

    async def get_combined_context(
        self, case_id: str, requesting_tenant: str, tier: str = TIER_FULL
    ) -> CombinedContextResult | None:
        client_id = await self._case_client_id(case_id, requesting_tenant)
        if client_id is None:
            return None
        case_result = await self.get_context(ENTITY_CASE, case_id, tier, tenant_id=requesting_tenant)
        client_result = await self.get_context(ENTITY_CLIENT, client_id, tier, tenant_id=requesting_tenant)
        if case_result is None or client_result is None:
            return None
        return CombinedContextResult(
            case_id=case_id,
            client_id=client_id,
            content=client_result.content + COMBINED_SEPARATOR + case_result.content,
            client_content=client_result.content,
            case_content=case_result.content,
            references=[*client_result.references, *case_result.references],
            token_count=client_result.token_count + case_result.token_count,
        )

    async def get_email_reply_context(
        self,
        case_id: str,
        requesting_tenant: str,
        *,
        conversation_id: str | None = None,
        target_actor_id: str | None = None,
    ) -> EmailReplyContextResult | None:
        client_id = await self._case_client_id(case_id, requesting_tenant)
        if client_id is None:
            return None
        case_result = await self.get_context(ENTITY_CASE, case_id, TIER_STANDARD, tenant_id=requesting_tenant)
        client_result = await self.get_context(ENTITY_CLIENT, client_id, TIER_STANDARD, tenant_id=requesting_tenant)
        if case_result is None or client_result is None:
            return None
        thread_content = None
        actor_content = None
        async with self._rt.session_factory() as session:
            if conversation_id:
                emails = await sources_repo.list_conversation_emails(session, conversation_id, requesting_tenant)
                if emails:
                    thread_content = "\n\n".join(
                        f"[{email.received_at.date().isoformat()}] {email_sender(email.from_json)}: {email.body_preview or ''}"
                        for email in emails
                    )
            if target_actor_id:
                actor = await sources_repo.get_case_actor(session, case_id, target_actor_id)
                if actor is not None:
                    lines = [f"**{actor.name}** ({actor.role})"]
                    if actor.organization:
                        lines.append(f"Organization: {actor.organization}")
                    if actor.communication_notes:
                        lines.append(f"Communication notes: {actor.communication_notes}")
                    if actor.preferred_tone:
                        lines.append(f"Preferred tone: {actor.preferred_tone}")
                    actor_content = "\n".join(lines)
        return EmailReplyContextResult(
            case_id=case_id,
            client_id=client_id,
            case_content=case_result.content,
            client_content=client_result.content,
            thread_content=thread_content,
            actor_content=actor_content,
            references=[*client_result.references, *case_result.references],
            token_count=case_result.token_count + client_result.token_count,
        )

    async def resolve_reference(
        self, ref_id: str, requesting_tenant: str, *, actor_id: str | None = None
    ) -> ResolvedReference | None:
        async with self._rt.session_factory() as session:
            return await reference_catalog.resolve_one(session, ref_id, requesting_tenant, actor_id=actor_id)

    async def resolve_references(self, ref_ids: Any, requesting_tenant: str) -> dict[str, ResolvedReference]:
        limit = self._rt.settings.max_refs_per_request
        cleaned = reference_catalog.validate_ref_ids(ref_ids, limit)
        if not cleaned:
            return {}
        async with self._rt.session_factory() as session:
            return await reference_catalog.resolve_many(session, cleaned, requesting_tenant, max_refs=limit)

    # ------------------------------------------------------------------
    # Invalidation and regeneration
    # ------------------------------------------------------------------

    async def invalidate(self, entity_type: str, entity_id: str, *, tenant_id: str | None = None) -> bool:
        """Soft-expire the stored record and drop its cached tiers.

        Returns False when no record is visible to the caller. The cache is
        cleared either way.
        """
        entity_type = _validate_entity_type(entity_type)
        async with self._rt.session_factory() as session:
            if tenant_id is not None:
                record = await contexts_repo.get_record(session, entity_type, entity_id)
                if record is None or not ensure_same_tenant(
                    record.tenant_id, tenant_id, resource_type=entity_type, resource_id=entity_id
                ):
                    return False
            expired = await contexts_repo.soft_expire(session, entity_type, entity_id, now=self._rt.now())
            await _commit(session, "context invalidation")
        await self._rt.cache.invalidate(entity_type, entity_id)
        logger.info("context_invalidated entity_type=%s entity_id=%s rows=%s", entity_type, entity_id, expired)
        return expired > 0

    async def regenerate(
        self, entity_type: str, entity_id: str, tier: str = TIER_FULL, *, tenant_id: str | None = None
    ) -> ContextResult | None:
        entity_type = _validate_entity_type(entity_type)
        tier = _validate_tier(tier)
        return await self._regenerate_full(entity_type, entity_id, tier, tenant_id=tenant_id, reuse_previous=False)

    async def regenerate_sections(
        self,
        entity_type: str,
        entity_id: str,
        sections: Any,
        tier: str = TIER_FULL,
        *,
        tenant_id: str | None = None,
    ) -> ContextResult | None:
        entity_type = _validate_entity_type(entity_type)
        tier = _validate_tier(tier)
        requested = _validate_sections(sections)
        now = self._rt.now()
        settings = self._rt.settings
        started = time.monotonic()

        async with self._rt.session_factory() as session:
            record = await contexts_repo.get_record(session, entity_type, entity_id)
            if record is not None and tenant_id is not None and not ensure_same_tenant(
                record.tenant_id, tenant_id, resource_type=entity_type, resource_id=entity_id
            ):
                return None
            decision, reason = decide_sections(record, requested)
            if decision == SECTIONS_REQUESTED and record.schema_version != settings.context_schema_version:
                # Stored sections from an older schema cannot be patched in place.
                decision, reason = SCHEMA_STALE, "schema_stale"
            if decision == SECTIONS_REQUESTED:
                gathered = await gather(session, entity_type, entity_id, settings=settings, sections=requested)
                if gathered is None:
                    return None
                merged: dict[str, Any] = {section_id: getattr(record, section_id) or {} for section_id in SECTION_IDS}
                merged.update(gathered.sections)
                parent_snapshot = gathered.parent_snapshot if entity_type == ENTITY_CASE else None
                corrections = await corrections_repo.list_active(session, record.id)
                overlay = apply_corrections(merged, corrections)
                rendered = await render_tiers(
                    entity_type,
                    overlay.sections,
                    parent_snapshot=parent_snapshot if parent_snapshot is not None else record.parent_snapshot,
                    previous=record.section_tiers,
                    compressor=self._rt.compressor,
                    budgets=self._rt.budgets,
                    retry_policy=self._rt.retry_policy,
                )
                await contexts_repo.update_sections(
                    session,
                    record,
                    section_patch=gathered.sections,
                    parent_snapshot=parent_snapshot,
                    tiers=rendered.as_record_fields(),
                    now=now,
                    validity=self._rt.validity(entity_type),
                )
                if REFERENCE_SECTIONS.intersection(requested):
                    await reference_catalog.rebuild(session, record, merged)
                await _commit(session, "context section update")
                results = await self._results_for(session, record, corrections=corrections)
                valid_until = as_utc(record.valid_until)
                rebuilt = [name for name in subsections_for(entity_type) if name not in rendered.reused_sections]
                logger.info(
                    "context_sections_regenerated entity_type=%s entity_id=%s sections_requested=%s "
                    "sections_rebuilt=%s version=%s duration_ms=%s",
                    entity_type,
                    entity_id,
                    ",".join(requested),
                    ",".join(rebuilt),
                    record.version,
                    int((time.monotonic() - started) * 1000),
                )

        if decision != SECTIONS_REQUESTED:
            logger.info(
                "context_sections_full_fallback entity_type=%s entity_id=%s reason=%s sections_requested=%s",
                entity_type,
                entity_id,
                reason,
                ",".join(requested),
            )
            return await self._regenerate_full(
                entity_type,
                entity_id,
                tier,
                tenant_id=tenant_id,
                reuse_previous=reason == REASON_ALL_SECTIONS_REQUESTED,
            )

        await self._rt.cache.invalidate(entity_type, entity_id)
        await self._rt.cache.populate(results.values(), valid_until=valid_until, now=now)
        return results[tier]

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    async def add_correction(
        self,
        entity_type: str,
        entity_id: str,
        *,
        section_id: str,
        correction_type: str,
        corrected_value: str,
        created_by: str,
        field_path: str | None = None,
        original_value: str | None = None,
        reason: str | None = None,
        tenant_id: str | None = None,
    ) -> CorrectionView | None:
        entity_type = _validate_entity_type(entity_type)
        if section_id not in SECTION_IDS:
            raise ContextValidationError(f"unknown section {section_id!r}")
        correction_type = str(correction_type or "").strip().upper()
        if correction_type not in CORRECTION_TYPES:
            raise ContextValidationError(f"unknown correction type {correction_type!r}")
        corrected_value = _validate_corrected_value(corrected_value)
        parsed = parse_field_path(field_path)
        if not parsed.ok:
            raise ContextValidationError(f"invalid field path: {parsed.error}")

        async with self._rt.session_factory() as session:
            record = await contexts_repo.get_record(session, entity_type, entity_id)
        if record is None:
            # Corrections attach to a record, so build one first.
            generated = await self._regenerate_full(
                entity_type, entity_id, TIER_FULL, tenant_id=tenant_id, reuse_previous=False
            )
            if generated is None:
                return None

        async with self._rt.session_factory() as session:
            record = await contexts_repo.get_record(session, entity_type, entity_id)
            if record is None:
                return None
            if tenant_id is not None and not ensure_same_tenant(
                record.tenant_id, tenant_id, resource_type=entity_type, resource_id=entity_id
            ):
                return None
            correction = await corrections_repo.create_correction(
                session,
                context_record_id=record.id,
                tenant_id=record.tenant_id,
                section_id=section_id,
                field_path=field_path,
                correction_type=correction_type,
                corrected_value=corrected_value,
                created_by=created_by,
                original_value=original_value,
                reason=reason,
            )
            contexts_repo.mark_corrected(record, user_id=created_by, now=self._rt.now())
            await _commit(session, "correction insert")
            view = to_correction_view(correction)
        await self._rt.cache.invalidate(entity_type, entity_id)
        logger.info(
            "context_correction_added entity_type=%s entity_id=%s correction_id=%s type=%s",
            entity_type,
            entity_id,
            view.id,
            correction_type,
        )
        return view

    async def update_correction(
        self,
        correction_id: str,
        corrected_value: str,
        *,
        updated_by: str | None = None,
        tenant_id: str | None = None,
    ) -> CorrectionView | None:
        corrected_value = _validate_corrected_value(corrected_value)
        async with self._rt.session_factory() as session:
            loaded = await self._load_correction(session, correction_id, tenant_id)
            if loaded is None:
                return None
            correction, record = loaded
            correction.corrected_value = corrected_value
            contexts_repo.mark_corrected(record, user_id=updated_by or correction.created_by, now=self._rt.now())
            await _commit(session, "correction update")
            view = to_correction_view(correction)
            entity_type, entity_id = record.entity_type, record.entity_id
        await self._rt.cache.invalidate(entity_type, entity_id)
        return view

    async def delete_correction(
        self, correction_id: str, *, deleted_by: str | None = None, tenant_id: str | None = None
    ) -> bool:
        async with self._rt.session_factory() as session:
            loaded = await self._load_correction(session, correction_id, tenant_id)
            if loaded is None:
                return False
            correction, record = loaded
            removed = await corrections_repo.delete_correction(session, correction.id)
            if not removed:
                return False
            contexts_repo.mark_corrected(record, user_id=deleted_by or correction.created_by, now=self._rt.now())
            await _commit(session, "correction delete")
            entity_type, entity_id = record.entity_type, record.entity_id
        await self._rt.cache.invalidate(entity_type, entity_id)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _log_decision(self, entity_type: str, entity_id: str, decision: str) -> None:
        logger.info("context_decision entity_type=%s entity_id=%s decision=%s", entity_type, entity_id, decision)

    async def _case_client_id(self, case_id: str, requesting_tenant: str) -> str | None:
        async with self._rt.session_factory() as session:
            case = await sources_repo.get_case(session, case_id)
        if case is None:
            return None
        if not ensure_same_tenant(case.tenant_id, requesting_tenant, resource_type=ENTITY_CASE, resource_id=case_id):
            return None
        return case.client_id

    async def _load_correction(
        self, session: AsyncSession, correction_id: str, tenant_id: str | None
    ) -> tuple[ContextCorrection, ContextRecord] | None:
        correction = await corrections_repo.get_correction(session, correction_id)
        if correction is None:
            return None
        record = await contexts_repo.get_record_by_id(session, correction.context_record_id)
        if record is None:
            return None
        if tenant_id is not None and not ensure_same_tenant(
            record.tenant_id, tenant_id, resource_type="context_correction", resource_id=correction_id
        ):
            return None
        return correction, record

    async def _results_for(
        self,
        session: AsyncSession,
        record: ContextRecord,
        *,
        corrections: Iterable[ContextCorrection] | None = None,
    ) -> dict[str, ContextResult]:
        if corrections is None:
            corrections = await corrections_repo.list_active(session, record.id)
        corrections = list(corrections)
        overlay = apply_corrections(
            {section_id: getattr(record, section_id) or {} for section_id in SECTION_IDS}, corrections
        )
        display = build_display_sections(record.entity_type, overlay.sections)
        references = await reference_catalog.list_reference_infos(session, record.id)
        views = [to_correction_view(correction) for correction in corrections]
        contents = {
            TIER_CRITICAL: record.content_critical,
            TIER_STANDARD: record.content_standard,
            TIER_FULL: record.content_full,
        }
        return {
            tier: ContextResult(
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                tenant_id=record.tenant_id,
                tier=tier,
                content=content or "",
                token_count=estimate_tokens(content),
                references=references,
                corrections=views,
                sections=display,
                version=record.version,
                generated_at=as_utc(record.generated_at),
                valid_until=as_utc(record.valid_until),
            )
            for tier, content in contents.items()
        }

    async def _regenerate_full(
        self,
        entity_type: str,
        entity_id: str,
        tier: str,
        *,
        tenant_id: str | None,
        reuse_previous: bool,
    ) -> ContextResult | None:
        settings = self._rt.settings
        now = self._rt.now()
        started = time.monotonic()
        async with self._rt.session_factory() as session:
            gathered = await gather(session, entity_type, entity_id, settings=settings)
            if gathered is None:
                logger.info("context_entity_missing entity_type=%s entity_id=%s", entity_type, entity_id)
                return None
            if tenant_id is not None and not ensure_same_tenant(
                gathered.tenant_id, tenant_id, resource_type=entity_type, resource_id=entity_id
            ):
                return None
            record = await contexts_repo.get_record(session, entity_type, entity_id)
            corrections = await corrections_repo.list_active(session, record.id) if record is not None else []
            previous = None
            if reuse_previous and record is not None and record.schema_version == settings.context_schema_version:
                previous = record.section_tiers
            overlay = apply_corrections(gathered.sections, corrections)
            # Render completes before any write so a failure leaves the stored record untouched.
            rendered = await render_tiers(
                entity_type,
                overlay.sections,
                parent_snapshot=gathered.parent_snapshot,
                previous=previous,
                compressor=self._rt.compressor,
                budgets=self._rt.budgets,
                retry_policy=self._rt.retry_policy,
            )
            record = await contexts_repo.upsert_full(
                session,
                tenant_id=gathered.tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                client_id=gathered.client_id,
                sections=gathered.sections,
                parent_snapshot=gathered.parent_snapshot,
                tiers=rendered.as_record_fields(),
                schema_version=settings.context_schema_version,
                now=now,
                validity=self._rt.validity(entity_type),
            )
            await reference_catalog.rebuild(session, record, gathered.sections)
            await _commit(session, "context regeneration")
            results = await self._results_for(session, record, corrections=corrections)
            valid_until = as_utc(record.valid_until)
            logger.info(
                "context_generated entity_type=%s entity_id=%s version=%s tokens_full=%s tokens_standard=%s "
                "tokens_critical=%s compressed=%s duration_ms=%s",
                entity_type,
                entity_id,
                record.version,
                record.tokens_full,
                record.tokens_standard,
                record.tokens_critical,
                ",".join(rendered.compressed_sections),
                int((time.monotonic() - started) * 1000),
            )
        await self._rt.cache.invalidate(entity_type, entity_id)
        await self._rt.cache.populate(results.values(), valid_until=valid_until, now=now)
        return results[tier]
