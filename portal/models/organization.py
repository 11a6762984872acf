"""
Certification Portal
Organization domain models.

Models:
    - Organization: a certified member business with its stored compliance scores
    - OrganizationMember: staff record with Licensed Building Practitioner (LBP) details
    - InsurancePolicy: insurance cover held by an organization

Architecture chain: Organization → Members / InsurancePolicies / Documents / Audits / CAPAs
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

# Ordered lowest → highest; index position is the tier rank.
CERTIFICATION_TIERS = ("ACCREDITED", "CERTIFIED", "MASTER_ROOFER")

MEMBER_ROLES = {"OWNER", "ADMIN", "STAFF"}
LBP_STATUSES = {"CURRENT", "SUSPENDED", "CANCELLED", "NOT_FOUND", "PENDING"}

POLICY_TYPES = (
    "PUBLIC_LIABILITY",
    "PROFESSIONAL_INDEMNITY",
    "STATUTORY_LIABILITY",
    "EMPLOYERS_LIABILITY",
    "MOTOR_VEHICLE",
    "CONTRACT_WORKS",
)


def _utcnow():
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  ORGANIZATION
# ═══════════════════════════════════════════════════════════════════════════

class Organization(db.Model):
    """
    A member business holding a certification tier.

    Score columns are written only by the compliance service; the tier is
    changed by certification decisions outside the scoring engine.
    """

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    trading_name = db.Column(db.String(200), nullable=True)
    identity_org_ref = db.Column(
        db.String(100), nullable=True, unique=True,
        comment="Organization id at the identity provider (metadata sync target)",
    )
    certification_tier = db.Column(
        db.String(30), nullable=False, default="ACCREDITED",
        comment="ACCREDITED | CERTIFIED | MASTER_ROOFER",
    )

    last_audit_date = db.Column(db.DateTime(timezone=True), nullable=True)
    next_audit_due = db.Column(db.DateTime(timezone=True), nullable=True)

    # Stored compliance results (0-100)
    compliance_score = db.Column(db.Integer, default=0)
    compliance_doc_score = db.Column(db.Integer, default=0)
    compliance_ins_score = db.Column(db.Integer, default=0)
    compliance_pers_score = db.Column(db.Integer, default=0)
    compliance_audit_score = db.Column(db.Integer, default=0)
    compliance_last_calc = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # ── Relationships ────────────────────────────────────────────────────
    members = db.relationship(
        "OrganizationMember", backref="organization", lazy="dynamic",
        cascade="all, delete-orphan", order_by="OrganizationMember.id",
    )
    insurance_policies = db.relationship(
        "InsurancePolicy", backref="organization", lazy="dynamic",
        cascade="all, delete-orphan", order_by="InsurancePolicy.id",
    )

    @property
    def tier_rank(self) -> int:
        return CERTIFICATION_TIERS.index(self.certification_tier)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "trading_name": self.trading_name,
            "certification_tier": self.certification_tier,
            "last_audit_date": self.last_audit_date.isoformat() if self.last_audit_date else None,
            "next_audit_due": self.next_audit_due.isoformat() if self.next_audit_due else None,
            "compliance_score": self.compliance_score,
            "compliance_doc_score": self.compliance_doc_score,
            "compliance_ins_score": self.compliance_ins_score,
            "compliance_pers_score": self.compliance_pers_score,
            "compliance_audit_score": self.compliance_audit_score,
            "compliance_last_calc": (
                self.compliance_last_calc.isoformat() if self.compliance_last_calc else None
            ),
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.name[:40]} ({self.certification_tier})>"


# ═══════════════════════════════════════════════════════════════════════════
#  MEMBER
# ═══════════════════════════════════════════════════════════════════════════

class OrganizationMember(db.Model):
    """
    A person working for an organization.

    Exactly one OWNER is expected per organization; that is not enforced here.
    """

    __tablename__ = "organization_members"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    first_name = db.Column(db.String(100), default="")
    last_name = db.Column(db.String(100), default="")
    email = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="STAFF", comment="OWNER | ADMIN | STAFF")

    # Licensed Building Practitioner credential
    lbp_number = db.Column(db.String(30), nullable=True)
    lbp_verified = db.Column(db.Boolean, default=False)
    lbp_expiry = db.Column(db.DateTime(timezone=True), nullable=True)
    lbp_status = db.Column(db.String(20), nullable=True, comment="Registry status at last verification")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "role": self.role,
            "lbp_number": self.lbp_number,
            "lbp_verified": self.lbp_verified,
            "lbp_expiry": self.lbp_expiry.isoformat() if self.lbp_expiry else None,
            "lbp_status": self.lbp_status,
        }

    def __repr__(self):
        return f"<OrganizationMember {self.id}: {self.role}>"


# ═══════════════════════════════════════════════════════════════════════════
#  INSURANCE
# ═══════════════════════════════════════════════════════════════════════════

class InsurancePolicy(db.Model):
    """Insurance cover. Valid only while ``expiry_date`` is strictly in the future."""

    __tablename__ = "insurance_policies"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    policy_type = db.Column(db.String(40), nullable=False, index=True)
    policy_number = db.Column(db.String(100), default="")
    insurer = db.Column(db.String(200), default="")
    coverage_amount = db.Column(db.Numeric(15, 2), nullable=False)
    effective_date = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "policy_type": self.policy_type,
            "policy_number": self.policy_number,
            "insurer": self.insurer,
            "coverage_amount": float(self.coverage_amount) if self.coverage_amount is not None else None,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
        }

    def __repr__(self):
        return f"<InsurancePolicy {self.id}: {self.policy_type}>"
