"""
Certification Portal
Quality-management documentation models.

Models:
    - Document: a controlled document filed against one ISO element
    - ComplianceAssessment: reviewer's authoritative score for one ISO element

The 19 ISO elements and their display labels live here; their scoring
weights are policy and live in services.compliance_policy.
"""

from datetime import datetime, timezone

from portal.models import db
from portal.models.soft_delete import SoftDeleteMixin


# ── Constants ────────────────────────────────────────────────────────────────

ISO_ELEMENTS = (
    "QUALITY_POLICY",
    "QUALITY_OBJECTIVES",
    "ORG_STRUCTURE",
    "PROCESS_MANAGEMENT",
    "DOCUMENTATION",
    "TRAINING_COMPETENCE",
    "CONTRACT_REVIEW",
    "DOCUMENT_CONTROL",
    "PURCHASING",
    "CUSTOMER_PRODUCT",
    "TRACEABILITY",
    "PROCESS_CONTROL",
    "INSPECTION_TESTING",
    "NONCONFORMING_PRODUCT",
    "CORRECTIVE_ACTION",
    "HANDLING_STORAGE",
    "QUALITY_RECORDS",
    "INTERNAL_AUDITS",
    "SERVICING",
)

ISO_ELEMENT_LABELS = {
    "QUALITY_POLICY": "Quality Policy",
    "QUALITY_OBJECTIVES": "Quality Objectives",
    "ORG_STRUCTURE": "Organizational Structure",
    "PROCESS_MANAGEMENT": "Process Management",
    "DOCUMENTATION": "Documentation",
    "TRAINING_COMPETENCE": "Training & Competence",
    "CONTRACT_REVIEW": "Contract Review",
    "DOCUMENT_CONTROL": "Document Control",
    "PURCHASING": "Purchasing",
    "CUSTOMER_PRODUCT": "Customer Product",
    "TRACEABILITY": "Traceability",
    "PROCESS_CONTROL": "Process Control",
    "INSPECTION_TESTING": "Inspection & Testing",
    "NONCONFORMING_PRODUCT": "Nonconforming Product",
    "CORRECTIVE_ACTION": "Corrective Action",
    "HANDLING_STORAGE": "Handling & Storage",
    "QUALITY_RECORDS": "Quality Records",
    "INTERNAL_AUDITS": "Internal Audits",
    "SERVICING": "Servicing",
}

DOCUMENT_STATUSES = {"DRAFT", "PENDING_APPROVAL", "APPROVED", "SUPERSEDED", "ARCHIVED"}
COMPLIANCE_STATUSES = {"COMPLIANT", "PARTIAL", "NON_COMPLIANT", "NOT_ASSESSED", "NOT_APPLICABLE"}


def element_label(element: str) -> str:
    """Human-readable ISO element name; falls back to title-casing the code."""
    return ISO_ELEMENT_LABELS.get(
        element, " ".join(w.capitalize() for w in (element or "").split("_"))
    )


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  DOCUMENT
# ═══════════════════════════════════════════════════════════════════════════

class Document(SoftDeleteMixin, db.Model):
    """A controlled quality document. Soft-deleted documents never count."""

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    iso_element = db.Column(db.String(40), nullable=False, index=True)
    status = db.Column(
        db.String(30), nullable=False, default="DRAFT",
        comment="DRAFT | PENDING_APPROVAL | APPROVED | SUPERSEDED | ARCHIVED",
    )
    version = db.Column(db.Integer, default=1)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "title": self.title,
            "iso_element": self.iso_element,
            "status": self.status,
            "version": self.version,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Document {self.id}: {self.iso_element} {self.status}>"


# ═══════════════════════════════════════════════════════════════════════════
#  ASSESSMENT
# ═══════════════════════════════════════════════════════════════════════════

class ComplianceAssessment(db.Model):
    """
    Reviewer-entered assessment of one ISO element.

    When present it overrides every document-based heuristic for that element.
    """

    __tablename__ = "compliance_assessments"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "iso_element", name="uq_assessment_org_element"),
        db.CheckConstraint("score >= 0 AND score <= 100", name="ck_assessment_score_range"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    iso_element = db.Column(db.String(40), nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="NOT_ASSESSED")
    notes = db.Column(db.Text, default="")
    assessed_by = db.Column(db.String(150), default="")
    assessed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "iso_element": self.iso_element,
            "score": self.score,
            "status": self.status,
            "notes": self.notes,
            "assessed_by": self.assessed_by,
            "assessed_at": self.assessed_at.isoformat() if self.assessed_at else None,
        }

    def __repr__(self):
        return f"<ComplianceAssessment {self.iso_element}: {self.score}>"
