"""
Compliance Service — score orchestration.

    calculate_compliance_score(org_id)            read-only, returns ComplianceResult
    update_organization_compliance_score(org_id)  calculate + persist + metadata sync

The persisting variant writes the overall and per-category scores onto the
Organization, commits, then queues an identity metadata update.  The queueing
step is best-effort: a failure there is logged and never reaches the caller.

Usage:
    from portal.services.compliance_service import update_organization_compliance_score

    result = update_organization_compliance_score(org.id)
    result.overall_score            # 0..100
    result.tier_eligibility.blockers
"""

import logging
from datetime import datetime

from portal.core.exceptions import NotFoundError
from portal.models import db
from portal.models.organization import Organization
from portal.services.compliance_policy import CompliancePolicy, current_policy
from portal.services.compliance_rules import ComplianceResult, evaluate_compliance
from portal.services.metadata_sync import enqueue_metadata_sync
from portal.services.snapshot import OrganizationSnapshot, load_organization_snapshot
from portal.utils.helpers import commit_or_raise, utcnow

logger = logging.getLogger(__name__)


def calculate_compliance_score(
    organization_id: int,
    *,
    now: datetime | None = None,
    policy: CompliancePolicy | None = None,
) -> ComplianceResult:
    """Compute an organization's compliance without writing anything.

    Raises:
        NotFoundError: if the organization does not exist.
    """
    snapshot = load_organization_snapshot(organization_id)
    return evaluate_compliance(
        snapshot,
        now=now or utcnow(),
        policy=policy or current_policy(),
    )


def insurance_valid(snapshot: OrganizationSnapshot, now: datetime) -> bool:
    """True iff any unexpired PUBLIC_LIABILITY policy is held."""
    return any(
        p.policy_type == "PUBLIC_LIABILITY" and p.expiry_date > now
        for p in snapshot.policies
    )


def update_organization_compliance_score(
    organization_id: int,
    *,
    now: datetime | None = None,
    policy: CompliancePolicy | None = None,
) -> ComplianceResult:
    """Recalculate, persist the scores and queue an identity metadata sync.

    Raises:
        NotFoundError: if the organization does not exist.
        PersistenceError: if the score write fails (rolled back).
    """
    now = now or utcnow()
    policy = policy or current_policy()

    snapshot = load_organization_snapshot(organization_id)
    result = evaluate_compliance(snapshot, now=now, policy=policy)

    org = db.session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError("Organization", organization_id)

    breakdown = result.breakdown
    org.compliance_score = result.overall_score
    org.compliance_doc_score = breakdown.documentation.score
    org.compliance_ins_score = breakdown.insurance.score
    org.compliance_pers_score = breakdown.personnel.score
    org.compliance_audit_score = breakdown.audit.score
    org.compliance_last_calc = now
    commit_or_raise("update_organization_compliance_score")

    logger.info(
        "Compliance score updated: org=%s score=%s eligible=%s",
        organization_id,
        result.overall_score,
        result.tier_eligibility.eligible_for_upgrade,
        extra={"organization_id": organization_id, "event_type": "compliance.score_updated"},
    )

    enqueue_metadata_sync(
        organization_id,
        certification_tier=org.certification_tier,
        compliance_score=result.overall_score,
        insurance_valid=insurance_valid(snapshot, now),
    )
    return result
