"""
Audit Scheduling Service.

    frequency_months(tier)                          months between routine audits
    get_organizations_needing_audit(now)            orgs whose routine audit is due
    schedule_audit(org_id)                          routine INITIAL_CERTIFICATION / SURVEILLANCE audit
    schedule_follow_up_audit(org_id, source_id)     FOLLOW_UP after FAIL / CONDITIONAL_PASS

Scheduling functions only ``flush``; the caller owns the transaction.
``schedule_follow_up_audit`` runs inside the audit completion unit of work.
"""

import logging
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from portal.models import db
from portal.models.audit import Audit, CAPARecord, NONCONFORMITY_RESPONSES, next_audit_number
from portal.models.organization import Organization, OrganizationMember
from portal.services.compliance_policy import CompliancePolicy, current_policy
from portal.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

ROUTINE_AUDIT_LEAD_DAYS = 30


def frequency_months(tier: str, policy: CompliancePolicy | None = None) -> int:
    """Months between routine audits for ``tier`` (ACCREDITED 24, others 12)."""
    return (policy or current_policy()).frequency_months(tier)


def get_organizations_needing_audit(
    now: datetime | None = None,
    policy: CompliancePolicy | None = None,
) -> list[Organization]:
    """Organizations with no open audit whose last completed audit is older
    than their tier's frequency (or that were never audited).

    Organizations without an OWNER member are skipped: there is nobody to
    notify about the audit.
    """
    now = now or utcnow()
    policy = policy or current_policy()

    busy_ids = {
        row.organization_id
        for row in db.session.query(Audit.organization_id)
        .filter(Audit.status.in_(["SCHEDULED", "IN_PROGRESS", "PENDING_REVIEW"]))
        .distinct()
    }
    owned_ids = {
        row.organization_id
        for row in db.session.query(OrganizationMember.organization_id)
        .filter(OrganizationMember.role == "OWNER")
        .distinct()
    }

    needing = []
    for org in Organization.query.order_by(Organization.id).all():
        if org.id in busy_ids or org.id not in owned_ids:
            continue
        last = (
            Audit.query
            .filter_by(organization_id=org.id, status="COMPLETED")
            .filter(Audit.completed_at.isnot(None))
            .order_by(Audit.completed_at.desc())
            .first()
        )
        if last is None:
            needing.append(org)
            continue
        threshold = as_utc(last.completed_at) + relativedelta(months=policy.frequency_months(org.certification_tier))
        if threshold <= now:
            needing.append(org)
    return needing


def schedule_audit(organization_id: int, *, now: datetime | None = None) -> Audit:
    """Schedule a routine audit 30 days out covering all ISO elements.

    INITIAL_CERTIFICATION if the organization has never completed an audit,
    SURVEILLANCE otherwise.  Also moves ``next_audit_due`` to the scheduled date.
    """
    now = now or utcnow()
    policy = current_policy()
    org = db.session.get(Organization, organization_id)

    has_completed = (
        Audit.query.filter_by(organization_id=organization_id, status="COMPLETED").first() is not None
    )
    audit_type = "SURVEILLANCE" if has_completed else "INITIAL_CERTIFICATION"
    scheduled_date = now + timedelta(days=ROUTINE_AUDIT_LEAD_DAYS)
    label = "Surveillance" if has_completed else "Initial certification"

    audit = Audit(
        organization_id=organization_id,
        audit_number=next_audit_number(organization_id, now.year),
        audit_type=audit_type,
        status="SCHEDULED",
        scheduled_date=scheduled_date,
        iso_elements=list(policy.iso_elements),
        scope=f"{label} audit - all {len(policy.iso_elements)} ISO elements",
    )
    db.session.add(audit)
    if org is not None:
        org.next_audit_due = scheduled_date
    db.session.flush()

    logger.info(
        "Audit scheduled: %s org=%s type=%s", audit.audit_number, organization_id, audit_type,
        extra={"organization_id": organization_id, "audit_id": audit.id, "event_type": "audit.scheduled"},
    )
    return audit


def schedule_follow_up_audit(
    organization_id: int,
    source_audit_id: int,
    *,
    now: datetime | None = None,
    policy: CompliancePolicy | None = None,
) -> Audit | None:
    """Schedule a FOLLOW_UP audit for ``source_audit_id``.

    Scheduled ``follow_up_gap_days`` (90) after the later of now and the
    latest CAPA due date raised by the source audit, scoped to the elements
    with non-conformities (falling back to the source audit's scope).

    Returns None if the source audit does not exist.
    """
    now = now or utcnow()
    policy = policy or current_policy()

    source = db.session.get(Audit, source_audit_id)
    if source is None:
        return None

    nc_elements = []
    for item in source.checklist_items:
        if item.response in NONCONFORMITY_RESPONSES and item.iso_element not in nc_elements:
            nc_elements.append(item.iso_element)
    scope_elements = nc_elements or list(source.iso_elements or [])

    latest_capa = (
        CAPARecord.query
        .filter_by(audit_id=source_audit_id)
        .order_by(CAPARecord.due_date.desc())
        .first()
    )
    base = now
    if latest_capa is not None and as_utc(latest_capa.due_date) > now:
        base = as_utc(latest_capa.due_date)
    scheduled_date = base + timedelta(days=policy.follow_up_gap_days)

    plural = "" if len(nc_elements) == 1 else "s"
    audit = Audit(
        organization_id=organization_id,
        audit_number=next_audit_number(organization_id, now.year),
        audit_type="FOLLOW_UP",
        status="SCHEDULED",
        scheduled_date=scheduled_date,
        iso_elements=scope_elements,
        scope=(
            f"Follow-up audit for {source.audit_number} - "
            f"{len(nc_elements)} element{plural} with non-conformities"
        ),
        follow_up_of_id=source_audit_id,
    )
    db.session.add(audit)
    db.session.flush()

    logger.info(
        "Follow-up audit scheduled: %s for %s on %s",
        audit.audit_number, source.audit_number, scheduled_date.date().isoformat(),
        extra={"organization_id": organization_id, "audit_id": audit.id, "event_type": "audit.follow_up_scheduled"},
    )
    return audit
