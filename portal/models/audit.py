"""
Certification Portal
Audit & corrective-action domain models.

Models:
    - Audit: a certification audit of one organization
    - AuditChecklistItem: one checklist question and the auditor's response
    - CAPARecord: Corrective And Preventive Action opened against a finding

Lifecycles:
    Audit  SCHEDULED → IN_PROGRESS → PENDING_REVIEW → COMPLETED
           any non-terminal → CANCELLED
    CAPA   OPEN → IN_PROGRESS → PENDING_VERIFICATION → CLOSED
           OPEN / IN_PROGRESS → OVERDUE once the due date passes
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_TYPES = {"INITIAL_CERTIFICATION", "SURVEILLANCE", "RECERTIFICATION", "FOLLOW_UP", "SPECIAL"}
AUDIT_STATUSES = {"SCHEDULED", "IN_PROGRESS", "PENDING_REVIEW", "COMPLETED", "CANCELLED"}
AUDIT_TERMINAL_STATUSES = {"COMPLETED", "CANCELLED"}
AUDIT_RATINGS = ("PASS", "PASS_WITH_OBSERVATIONS", "CONDITIONAL_PASS", "FAIL")

CHECKLIST_RESPONSES = {
    "CONFORMING", "MINOR_NONCONFORMITY", "MAJOR_NONCONFORMITY", "OBSERVATION", "NOT_APPLICABLE",
}
NONCONFORMITY_RESPONSES = {"MINOR_NONCONFORMITY", "MAJOR_NONCONFORMITY"}

CAPA_STATUSES = {"OPEN", "IN_PROGRESS", "PENDING_VERIFICATION", "CLOSED", "OVERDUE"}
CAPA_UNRESOLVED_STATUSES = {"OPEN", "IN_PROGRESS"}
CAPA_SEVERITIES = {"MINOR", "MAJOR", "CRITICAL"}
CAPA_SOURCE_TYPES = {"AUDIT", "INTERNAL", "COMPLAINT", "OTHER"}


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  AUDIT
# ═══════════════════════════════════════════════════════════════════════════

class Audit(db.Model):
    """
    A certification audit.

    Immutable once COMPLETED or CANCELLED; the audit service enforces this.
    """

    __tablename__ = "audits"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "audit_number", name="uq_audit_org_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    audit_number = db.Column(db.String(30), nullable=False, comment="Auto-generated: AUD-2026-001")
    audit_type = db.Column(db.String(30), nullable=False, default="SURVEILLANCE")
    status = db.Column(db.String(20), nullable=False, default="SCHEDULED", index=True)
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    auditor_name = db.Column(db.String(150), default="")
    scope = db.Column(db.Text, default="")
    iso_elements = db.Column(db.JSON, default=list, comment="ISO elements in scope")

    # Outcome
    rating = db.Column(db.String(30), nullable=True,
                       comment="PASS | PASS_WITH_OBSERVATIONS | CONDITIONAL_PASS | FAIL")
    summary = db.Column(db.Text, nullable=True)
    conforming_count = db.Column(db.Integer, default=0)
    minor_nonconformities = db.Column(db.Integer, default=0)
    major_nonconformities = db.Column(db.Integer, default=0)
    observations = db.Column(db.Integer, default=0)

    # Follow-up
    follow_up_required = db.Column(db.Boolean, default=False)
    follow_up_due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    follow_up_of_id = db.Column(
        db.Integer, db.ForeignKey("audits.id", ondelete="SET NULL"), nullable=True, index=True,
        comment="Audit this one follows up",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    checklist_items = db.relationship(
        "AuditChecklistItem", backref="audit", lazy="select",
        cascade="all, delete-orphan", order_by="AuditChecklistItem.id",
    )
    organization = db.relationship("Organization", backref=db.backref("audits", lazy="dynamic"))

    @property
    def is_terminal(self) -> bool:
        return self.status in AUDIT_TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "audit_number": self.audit_number,
            "audit_type": self.audit_type,
            "status": self.status,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "auditor_name": self.auditor_name,
            "scope": self.scope,
            "iso_elements": list(self.iso_elements or []),
            "rating": self.rating,
            "summary": self.summary,
            "conforming_count": self.conforming_count,
            "minor_nonconformities": self.minor_nonconformities,
            "major_nonconformities": self.major_nonconformities,
            "observations": self.observations,
            "follow_up_required": self.follow_up_required,
            "follow_up_due_date": self.follow_up_due_date.isoformat() if self.follow_up_due_date else None,
            "follow_up_of_id": self.follow_up_of_id,
        }

    def __repr__(self):
        return f"<Audit {self.audit_number}: {self.status}>"


class AuditChecklistItem(db.Model):
    """One checklist question answered during an audit."""

    __tablename__ = "audit_checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    audit_id = db.Column(
        db.Integer, db.ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    iso_element = db.Column(db.String(40), nullable=False)
    question_text = db.Column(db.Text, default="")
    response = db.Column(db.String(30), nullable=True)
    finding = db.Column(db.Text, nullable=True)
    severity = db.Column(db.String(20), nullable=True, comment="MINOR | MAJOR | CRITICAL")

    def to_dict(self):
        return {
            "id": self.id,
            "audit_id": self.audit_id,
            "iso_element": self.iso_element,
            "question_text": self.question_text,
            "response": self.response,
            "finding": self.finding,
            "severity": self.severity,
        }

    def __repr__(self):
        return f"<AuditChecklistItem {self.id}: {self.iso_element} {self.response}>"


# ═══════════════════════════════════════════════════════════════════════════
#  CAPA
# ═══════════════════════════════════════════════════════════════════════════

class CAPARecord(db.Model):
    """
    A corrective/preventive action.

    ``due_date`` is fixed from severity at creation time.
    """

    __tablename__ = "capa_records"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "capa_number", name="uq_capa_org_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    audit_id = db.Column(
        db.Integer, db.ForeignKey("audits.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    capa_number = db.Column(db.String(30), nullable=False, comment="Auto-generated: CAPA-2026-001")
    source_type = db.Column(db.String(20), default="AUDIT")
    source_reference = db.Column(db.String(100), default="")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), nullable=False, default="MINOR")
    iso_element = db.Column(db.String(40), nullable=True)
    status = db.Column(db.String(30), nullable=False, default="OPEN", index=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    root_cause = db.Column(db.Text, default="")
    corrective_action = db.Column(db.Text, default="")
    preventive_action = db.Column(db.Text, default="")
    assigned_to = db.Column(db.String(150), default="")

    verification_notes = db.Column(db.Text, nullable=True)
    verified_by = db.Column(db.String(150), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    audit = db.relationship("Audit", backref=db.backref("capa_records", lazy="dynamic"))

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "audit_id": self.audit_id,
            "capa_number": self.capa_number,
            "source_type": self.source_type,
            "source_reference": self.source_reference,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "iso_element": self.iso_element,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "root_cause": self.root_cause,
            "corrective_action": self.corrective_action,
            "preventive_action": self.preventive_action,
            "assigned_to": self.assigned_to,
            "verification_notes": self.verification_notes,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }

    def __repr__(self):
        return f"<CAPARecord {self.capa_number}: {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  AUTO-NUMBER GENERATION HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _next_number(model_class, column, organization_id: int, prefix: str, year: int) -> str:
    """
    Generate the next sequential number for an organization within a year.
    E.g. CAPA-2026-001, CAPA-2026-002, ...

    Uses MAX(id) ordering and SELECT ... FOR UPDATE where supported.
    The (organization_id, number) unique constraint catches any remaining race.
    """
    full_prefix = f"{prefix}-{year}-"
    last = (
        model_class.query
        .filter(model_class.organization_id == organization_id)
        .filter(column.like(f"{full_prefix}%"))
        .order_by(model_class.id.desc())
        .with_for_update()
        .first()
    )
    num = 1
    if last:
        try:
            num = int(getattr(last, column.key).rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            num = 1
    return f"{full_prefix}{num:03d}"


def next_audit_number(organization_id: int, year: int) -> str:
    return _next_number(Audit, Audit.audit_number, organization_id, "AUD", year)


def next_capa_number(organization_id: int, year: int) -> str:
    return _next_number(CAPARecord, CAPARecord.capa_number, organization_id, "CAPA", year)
