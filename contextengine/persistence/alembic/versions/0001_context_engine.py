"""context engine

Revision ID: 0001_context_engine
Revises: 
Create Date: 2026-10-01 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_context_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Collaborator tables (clients, cases, documents, emails, ...) are migrated by their owners.
    op.create_table(
        "context_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("identity", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("people", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("documents", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("communications", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("parent_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("section_tiers", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("content_full", sa.Text(), nullable=False, server_default=""),
        sa.Column("content_standard", sa.Text(), nullable=False, server_default=""),
        sa.Column("content_critical", sa.Text(), nullable=False, server_default=""),
        sa.Column("tokens_full", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_standard", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tokens_critical", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_corrected_by", sa.String(), nullable=True),
        sa.Column("corrections_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_context_records_entity"),
    )
    op.create_index("ix_context_records_tenant_id", "context_records", ["tenant_id"])
    op.create_index("ix_context_records_tenant_entity", "context_records", ["tenant_id", "entity_type"])

    op.create_table(
        "context_corrections",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "context_record_id",
            sa.String(),
            sa.ForeignKey("context_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("section_id", sa.String(), nullable=False),
        sa.Column("field_path", sa.String(), nullable=True),
        sa.Column("correction_type", sa.String(), nullable=False),
        sa.Column("original_value", sa.Text(), nullable=True),
        sa.Column("corrected_value", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_context_corrections_context_record_id", "context_corrections", ["context_record_id"])
    op.create_index("ix_context_corrections_tenant_id", "context_corrections", ["tenant_id"])
    op.create_index(
        "ix_context_corrections_record_active",
        "context_corrections",
        ["context_record_id", "is_active"],
    )

    op.create_table(
        "context_references",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "context_record_id",
            sa.String(),
            sa.ForeignKey("context_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("ref_id", sa.String(), nullable=False),
        sa.Column("ref_type", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("source_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.UniqueConstraint("context_record_id", "ref_id", name="uq_context_references_record_ref"),
    )
    op.create_index("ix_context_references_context_record_id", "context_references", ["context_record_id"])
    op.create_index("ix_context_references_tenant_id", "context_references", ["tenant_id"])
    op.create_index("ix_context_references_ref_id", "context_references", ["ref_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_tenant_occurred", "audit_events", ["tenant_id", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_tenant_occurred", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_context_references_ref_id", table_name="context_references")
    op.drop_index("ix_context_references_tenant_id", table_name="context_references")
    op.drop_index("ix_context_references_context_record_id", table_name="context_references")
    op.drop_table("context_references")
    op.drop_index("ix_context_corrections_record_active", table_name="context_corrections")
    op.drop_index("ix_context_corrections_tenant_id", table_name="context_corrections")
    op.drop_index("ix_context_corrections_context_record_id", table_name="context_corrections")
    op.drop_table("context_corrections")
    op.drop_index("ix_context_records_tenant_entity", table_name="context_records")
    op.drop_index("ix_context_records_tenant_id", table_name="context_records")
    op.drop_table("context_records")
