"""compliance_core_schema

Creates the certification portal's compliance tables:
  - organizations            — member businesses + stored compliance scores
  - organization_members     — staff with LBP licence details
  - insurance_policies       — cover held per policy type
  - documents                — ISO element documentation (soft-deletable)
  - compliance_assessments   — authoritative per-element scores
  - audits                   — certification audits (self-referencing follow-ups)
  - audit_checklist_items    — checklist responses per audit
  - capa_records             — corrective / preventive actions
  - metadata_sync_messages   — identity provider outbox

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: c3a91f0d2b47
Revises:
Create Date: 2026-10-18 09:12:40.118203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'c3a91f0d2b47'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Organizations ─────────────────────────────────────────────────────
    if "organizations" not in existing:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("trading_name", sa.String(length=200), nullable=True),
            sa.Column("identity_org_ref", sa.String(length=100), nullable=True,
                      comment="Organization id at the identity provider (metadata sync target)"),
            sa.Column("certification_tier", sa.String(length=30), nullable=False,
                      server_default="ACCREDITED",
                      comment="ACCREDITED | CERTIFIED | MASTER_ROOFER"),
            sa.Column("last_audit_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("next_audit_due", sa.DateTime(timezone=True), nullable=True),
            sa.Column("compliance_score", sa.Integer(), nullable=True),
            sa.Column("compliance_doc_score", sa.Integer(), nullable=True),
            sa.Column("compliance_ins_score", sa.Integer(), nullable=True),
            sa.Column("compliance_pers_score", sa.Integer(), nullable=True),
            sa.Column("compliance_audit_score", sa.Integer(), nullable=True),
            sa.Column("compliance_last_calc", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("identity_org_ref"),
        )

    # ── Members ───────────────────────────────────────────────────────────
    if "organization_members" not in existing:
        op.create_table(
            "organization_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=True),
            sa.Column("last_name", sa.String(length=100), nullable=True),
            sa.Column("email", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="STAFF",
                      comment="OWNER | ADMIN | STAFF"),
            sa.Column("lbp_number", sa.String(length=30), nullable=True),
            sa.Column("lbp_verified", sa.Boolean(), nullable=True),
            sa.Column("lbp_expiry", sa.DateTime(timezone=True), nullable=True),
            sa.Column("lbp_status", sa.String(length=20), nullable=True,
                      comment="Registry status at last verification"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_organization_members_organization_id", "organization_members",
                        ["organization_id"])

    # ── Insurance ─────────────────────────────────────────────────────────
    if "insurance_policies" not in existing:
        op.create_table(
            "insurance_policies",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("policy_type", sa.String(length=40), nullable=False),
            sa.Column("policy_number", sa.String(length=100), nullable=True),
            sa.Column("insurer", sa.String(length=200), nullable=True),
            sa.Column("coverage_amount", sa.Numeric(precision=15, scale=2), nullable=False),
            sa.Column("effective_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_insurance_policies_organization_id", "insurance_policies", ["organization_id"])
        op.create_index("ix_insurance_policies_policy_type", "insurance_policies", ["policy_type"])
        op.create_index("ix_insurance_policies_expiry_date", "insurance_policies", ["expiry_date"])

    # ── Documents ─────────────────────────────────────────────────────────
    if "documents" not in existing:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("iso_element", sa.String(length=40), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="DRAFT",
                      comment="DRAFT | PENDING_APPROVAL | APPROVED | SUPERSEDED | ARCHIVED"),
            sa.Column("version", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_documents_organization_id", "documents", ["organization_id"])
        op.create_index("ix_documents_iso_element", "documents", ["iso_element"])
        op.create_index("ix_documents_deleted_at", "documents", ["deleted_at"])

    if "compliance_assessments" not in existing:
        op.create_table(
            "compliance_assessments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("iso_element", sa.String(length=40), nullable=False),
            sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="NOT_ASSESSED"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("assessed_by", sa.String(length=150), nullable=True),
            sa.Column("assessed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "iso_element", name="uq_assessment_org_element"),
            sa.CheckConstraint("score >= 0 AND score <= 100", name="ck_assessment_score_range"),
        )
        op.create_index("ix_compliance_assessments_organization_id", "compliance_assessments",
                        ["organization_id"])

    # ── Audits ────────────────────────────────────────────────────────────
    if "audits" not in existing:
        op.create_table(
            "audits",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("audit_number", sa.String(length=30), nullable=False,
                      comment="Auto-generated: AUD-2026-001"),
            sa.Column("audit_type", sa.String(length=30), nullable=False, server_default="SURVEILLANCE"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="SCHEDULED"),
            sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("auditor_name", sa.String(length=150), nullable=True),
            sa.Column("scope", sa.Text(), nullable=True),
            sa.Column("iso_elements", sa.JSON(), nullable=True, comment="ISO elements in scope"),
            sa.Column("rating", sa.String(length=30), nullable=True,
                      comment="PASS | PASS_WITH_OBSERVATIONS | CONDITIONAL_PASS | FAIL"),
            sa.Column("summary", sa.Text(), nullable=True),
            sa.Column("conforming_count", sa.Integer(), nullable=True),
            sa.Column("minor_nonconformities", sa.Integer(), nullable=True),
            sa.Column("major_nonconformities", sa.Integer(), nullable=True),
            sa.Column("observations", sa.Integer(), nullable=True),
            sa.Column("follow_up_required", sa.Boolean(), nullable=True),
            sa.Column("follow_up_due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("follow_up_of_id", sa.Integer(), nullable=True,
                      comment="Audit this one follows up"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["follow_up_of_id"], ["audits.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "audit_number", name="uq_audit_org_number"),
        )
        op.create_index("ix_audits_organization_id", "audits", ["organization_id"])
        op.create_index("ix_audits_status", "audits", ["status"])
        op.create_index("ix_audits_completed_at", "audits", ["completed_at"])
        op.create_index("ix_audits_follow_up_of_id", "audits", ["follow_up_of_id"])

    if "audit_checklist_items" not in existing:
        op.create_table(
            "audit_checklist_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("audit_id", sa.Integer(), nullable=False),
            sa.Column("iso_element", sa.String(length=40), nullable=False),
            sa.Column("question_text", sa.Text(), nullable=True),
            sa.Column("response", sa.String(length=30), nullable=True),
            sa.Column("finding", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True, comment="MINOR | MAJOR | CRITICAL"),
            sa.ForeignKeyConstraint(["audit_id"], ["audits.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_checklist_items_audit_id", "audit_checklist_items", ["audit_id"])

    # ── CAPA ──────────────────────────────────────────────────────────────
    if "capa_records" not in existing:
        op.create_table(
            "capa_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("audit_id", sa.Integer(), nullable=True),
            sa.Column("capa_number", sa.String(length=30), nullable=False,
                      comment="Auto-generated: CAPA-2026-001"),
            sa.Column("source_type", sa.String(length=20), nullable=True),
            sa.Column("source_reference", sa.String(length=100), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="MINOR"),
            sa.Column("iso_element", sa.String(length=40), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="OPEN"),
            sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("root_cause", sa.Text(), nullable=True),
            sa.Column("corrective_action", sa.Text(), nullable=True),
            sa.Column("preventive_action", sa.Text(), nullable=True),
            sa.Column("assigned_to", sa.String(length=150), nullable=True),
            sa.Column("verification_notes", sa.Text(), nullable=True),
            sa.Column("verified_by", sa.String(length=150), nullable=True),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["audit_id"], ["audits.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("organization_id", "capa_number", name="uq_capa_org_number"),
        )
        op.create_index("ix_capa_records_organization_id", "capa_records", ["organization_id"])
        op.create_index("ix_capa_records_audit_id", "capa_records", ["audit_id"])
        op.create_index("ix_capa_records_status", "capa_records", ["status"])
        op.create_index("ix_capa_records_due_date", "capa_records", ["due_date"])

    # ── Identity outbox ───────────────────────────────────────────────────
    if "metadata_sync_messages" not in existing:
        op.create_table(
            "metadata_sync_messages",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False,
                      comment='{"certification_tier", "compliance_score", "insurance_valid"}'),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_metadata_sync_messages_organization_id", "metadata_sync_messages",
                        ["organization_id"])
        op.create_index("ix_metadata_sync_messages_status", "metadata_sync_messages", ["status"])


def downgrade():
    for table in (
        "metadata_sync_messages",
        "capa_records",
        "audit_checklist_items",
        "audits",
        "compliance_assessments",
        "documents",
        "insurance_policies",
        "organization_members",
        "organizations",
    ):
        op.drop_table(table)
