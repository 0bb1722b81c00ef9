from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping the models portable to SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Context engine tables
# ---------------------------------------------------------------------------


class ContextRecord(Base):
    __tablename__ = "context_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_context_records_entity"),
        Index("ix_context_records_tenant_entity", "tenant_id", "entity_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # CLIENT or CASE; exactly one live record per entity.
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    # Owning client for case records so combined reads can reach the parent.
    client_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Raw section data; corrections are applied at render time only.
    identity: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    people: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    documents: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    communications: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    parent_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Per sub-section rendered fragments and digests used for change detection.
    section_tiers: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    content_full: Mapped[str] = mapped_column(Text, default="")
    content_standard: Mapped[str] = mapped_column(Text, default="")
    content_critical: Mapped[str] = mapped_column(Text, default="")
    tokens_full: Mapped[int] = mapped_column(Integer, default=0)
    tokens_standard: Mapped[int] = mapped_column(Integer, default=0)
    tokens_critical: Mapped[int] = mapped_column(Integer, default=0)
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    version: Mapped[int] = mapped_column(Integer, default=1)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_corrected_by: Mapped[str | None] = mapped_column(String, nullable=True)
    corrections_applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class ContextCorrection(Base):
    __tablename__ = "context_corrections"
    __table_args__ = (
        Index("ix_context_corrections_record_active", "context_record_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    context_record_id: Mapped[str] = mapped_column(
        String, ForeignKey("context_records.id", ondelete="CASCADE"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    section_id: Mapped[str] = mapped_column(String)
    field_path: Mapped[str | None] = mapped_column(String, nullable=True)
    # OVERRIDE, APPEND, REMOVE or NOTE.
    correction_type: Mapped[str] = mapped_column(String)
    original_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrected_value: Mapped[str] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class ContextReference(Base):
    __tablename__ = "context_references"
    __table_args__ = (
        UniqueConstraint("context_record_id", "ref_id", name="uq_context_references_record_ref"),
        Index("ix_context_references_ref_id", "ref_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    context_record_id: Mapped[str] = mapped_column(
        String, ForeignKey("context_records.id", ondelete="CASCADE"), index=True
    )
    # Inherited from the owning record; checked on every resolution.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    ref_id: Mapped[str] = mapped_column(String)
    ref_type: Mapped[str] = mapped_column(String)
    source_id: Mapped[str] = mapped_column(String)
    source_type: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred", "tenant_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


# ---------------------------------------------------------------------------
# Collaborator tables (owned by other subsystems, read-only here)
# ---------------------------------------------------------------------------


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    # Individual or Company.
    client_type: Mapped[str | None] = mapped_column(String, nullable=True)
    company_type: Mapped[str | None] = mapped_column(String, nullable=True)
    cui: Mapped[str | None] = mapped_column(String, nullable=True)
    registration_number: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    contact_info: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    administrators: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    contacts: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)


class Case(Base):
    __tablename__ = "cases"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), index=True)
    case_number: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    keywords: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    phase: Mapped[str | None] = mapped_column(String, nullable=True)
    phase_label: Mapped[str | None] = mapped_column(String, nullable=True)


class CaseActor(Base):
    __tablename__ = "case_actors"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    case_id: Mapped[str] = mapped_column(String, ForeignKey("cases.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String)
    custom_role_code: Mapped[str | None] = mapped_column(String, nullable=True)
    organization: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    email_domains: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    communication_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    preferred_tone: Mapped[str | None] = mapped_column(String, nullable=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String)


class CaseTeamMember(Base):
    __tablename__ = "case_team_members"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    case_id: Mapped[str] = mapped_column(String, ForeignKey("cases.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    role: Mapped[str] = mapped_column(String)


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    file_name: Mapped[str] = mapped_column(String)
    file_type: Mapped[str | None] = mapped_column(String, nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String, nullable=True)
    sharepoint_item_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # NONE, PENDING, COMPLETED or FAILED.
    extraction_status: Mapped[str] = mapped_column(String, default="NONE")
    extracted_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_type: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CaseDocument(Base):
    __tablename__ = "case_documents"
    __table_args__ = (
        UniqueConstraint("case_id", "document_id", name="uq_case_documents_link"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    case_id: Mapped[str] = mapped_column(String, ForeignKey("cases.id"), index=True)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"), index=True)
    linked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Email(Base):
    __tablename__ = "emails"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    case_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    conversation_id: Mapped[str] = mapped_column(String, index=True)
    graph_message_id: Mapped[str] = mapped_column(String)
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    # Graph-style sender payload: {"emailAddress": {"name": ..., "address": ...}}.
    from_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    body_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False)
    importance: Mapped[str] = mapped_column(String, default="normal")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ThreadSummary(Base):
    __tablename__ = "thread_summaries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    client_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    case_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    conversation_id: Mapped[str] = mapped_column(String, index=True)
    overview: Mapped[str | None] = mapped_column(Text, nullable=True)
    key_points: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    action_items: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    participants: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    sentiment: Mapped[str | None] = mapped_column(String, nullable=True)
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    last_analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    case_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    # Pending, InProgress, Completed or Cancelled.
    status: Mapped[str] = mapped_column(String, default="Pending")
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
