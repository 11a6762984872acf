"""
Organization Snapshot — immutable input graph for compliance scoring.

The snapshot is assembled once per computation from the database and passed
by value into the pure scoring functions in ``compliance_rules``.  Nothing in
the rules module touches the session, so the rules can be exercised with
hand-built snapshots.

All timestamps are normalised to aware UTC on the way in.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from portal.core.exceptions import NotFoundError
from portal.models import db
from portal.models.audit import Audit, CAPARecord
from portal.models.document import ComplianceAssessment, Document
from portal.models.organization import InsurancePolicy, Organization, OrganizationMember
from portal.utils.helpers import as_utc


@dataclass(frozen=True)
class PolicySnapshot:
    policy_type: str
    coverage_amount: Decimal
    expiry_date: datetime


@dataclass(frozen=True)
class MemberSnapshot:
    role: str
    lbp_number: str | None = None
    lbp_verified: bool = False
    lbp_expiry: datetime | None = None
    lbp_status: str | None = None


@dataclass(frozen=True)
class DocumentSnapshot:
    iso_element: str
    status: str


@dataclass(frozen=True)
class AssessmentSnapshot:
    iso_element: str
    score: int
    status: str


@dataclass(frozen=True)
class AuditSnapshot:
    audit_id: int
    rating: str | None
    completed_at: datetime | None


@dataclass(frozen=True)
class CAPASnapshot:
    capa_id: int
    status: str


@dataclass(frozen=True)
class OrganizationSnapshot:
    """Everything the scorers read about one organization."""

    organization_id: int
    certification_tier: str
    policies: tuple[PolicySnapshot, ...] = ()
    members: tuple[MemberSnapshot, ...] = ()
    documents: tuple[DocumentSnapshot, ...] = ()
    assessments: tuple[AssessmentSnapshot, ...] = ()
    last_completed_audit: AuditSnapshot | None = None
    capa_records: tuple[CAPASnapshot, ...] = ()


def load_organization_snapshot(organization_id: int) -> OrganizationSnapshot:
    """Load one organization's full scoring graph.

    Includes insurance policies, members, non-deleted documents, assessments,
    the most recently completed audit and every CAPA record.

    Raises:
        NotFoundError: if the organization does not exist.
    """
    org = db.session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError("Organization", organization_id)

    policies = (
        InsurancePolicy.query
        .filter_by(organization_id=organization_id)
        .order_by(InsurancePolicy.id)
        .all()
    )
    members = (
        OrganizationMember.query
        .filter_by(organization_id=organization_id)
        .order_by(OrganizationMember.id)
        .all()
    )
    documents = (
        Document.query_active()
        .filter_by(organization_id=organization_id)
        .order_by(Document.id)
        .all()
    )
    assessments = (
        ComplianceAssessment.query
        .filter_by(organization_id=organization_id)
        .order_by(ComplianceAssessment.id)
        .all()
    )
    last_audit = (
        Audit.query
        .filter_by(organization_id=organization_id, status="COMPLETED")
        .filter(Audit.completed_at.isnot(None))
        .order_by(Audit.completed_at.desc(), Audit.id.desc())
        .first()
    )
    capas = (
        CAPARecord.query
        .filter_by(organization_id=organization_id)
        .order_by(CAPARecord.id)
        .all()
    )

    return OrganizationSnapshot(
        organization_id=org.id,
        certification_tier=org.certification_tier,
        policies=tuple(
            PolicySnapshot(
                policy_type=p.policy_type,
                coverage_amount=Decimal(p.coverage_amount),
                expiry_date=as_utc(p.expiry_date),
            )
            for p in policies
        ),
        members=tuple(
            MemberSnapshot(
                role=m.role,
                lbp_number=m.lbp_number or None,
                lbp_verified=bool(m.lbp_verified),
                lbp_expiry=as_utc(m.lbp_expiry),
                lbp_status=m.lbp_status,
            )
            for m in members
        ),
        documents=tuple(DocumentSnapshot(iso_element=d.iso_element, status=d.status) for d in documents),
        assessments=tuple(
            AssessmentSnapshot(iso_element=a.iso_element, score=a.score, status=a.status)
            for a in assessments
        ),
        last_completed_audit=(
            AuditSnapshot(
                audit_id=last_audit.id,
                rating=last_audit.rating,
                completed_at=as_utc(last_audit.completed_at),
            )
            if last_audit else None
        ),
        capa_records=tuple(CAPASnapshot(capa_id=c.id, status=c.status) for c in capas),
    )
