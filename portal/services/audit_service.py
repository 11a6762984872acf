"""
Audit Service — lifecycle transitions and the completion workflow.

Transitions:
    start               SCHEDULED       → IN_PROGRESS
    submit_for_review   IN_PROGRESS     → PENDING_REVIEW
    cancel              any open state  → CANCELLED
    complete            any open state  → COMPLETED   (complete_audit)

Completion is one unit of work:
    1. tally checklist responses, mark COMPLETED with rating/summary
    2. raise one CAPA per MINOR/MAJOR non-conformity (unless create_capas=False)
    3. decide whether a follow-up is required
    4. roll the organization's last_audit_date / next_audit_due forward
    5. schedule a FOLLOW_UP audit for FAIL / CONDITIONAL_PASS
    -- commit --
    6. refresh the organization's compliance score (best-effort)

Usage:
    from portal.services.audit_service import complete_audit

    outcome = complete_audit(audit.id, {"rating": "PASS", "summary": "All elements conforming"})
    outcome["created_capa_ids"]
"""

import logging
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError

from portal.core.exceptions import InvalidStateError, NotFoundError, PersistenceError, ValidationError
from portal.models import db
from portal.models.audit import (
    AUDIT_RATINGS,
    AUDIT_TERMINAL_STATUSES,
    Audit,
    CAPARecord,
    NONCONFORMITY_RESPONSES,
    next_capa_number,
)
from portal.models.organization import Organization
from portal.services.audit_scheduling import schedule_follow_up_audit
from portal.services.compliance_policy import CompliancePolicy, current_policy
from portal.services.compliance_service import update_organization_compliance_score
from portal.utils.helpers import commit_or_raise, parse_datetime, utcnow

logger = logging.getLogger(__name__)

MIN_SUMMARY_LENGTH = 10
FOLLOW_UP_RATINGS = {"FAIL", "CONDITIONAL_PASS"}

_OPEN_STATUSES = ["SCHEDULED", "IN_PROGRESS", "PENDING_REVIEW"]

AUDIT_TRANSITIONS = {
    "start": {"from": ["SCHEDULED"], "to": "IN_PROGRESS"},
    "submit_for_review": {"from": ["IN_PROGRESS"], "to": "PENDING_REVIEW"},
    "cancel": {"from": _OPEN_STATUSES, "to": "CANCELLED"},
}


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle transitions
# ═════════════════════════════════════════════════════════════════════════════

def validate_audit_transition(audit: Audit, action: str) -> dict:
    """Validate whether an action is valid for the audit's current state."""
    rule = AUDIT_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": audit.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if audit.status not in rule["from"]:
        return {"valid": False, "from": audit.status, "to": rule["to"],
                "reason": f"Cannot '{action}' audit {audit.audit_number} from status '{audit.status}'"}

    return {"valid": True, "from": audit.status, "to": rule["to"], "reason": None}


def transition_audit(audit_id: int, action: str, *, now: datetime | None = None,
                     auditor_name: str | None = None) -> dict:
    """Execute an audit lifecycle transition other than completion.

    Returns:
        {"audit_id", "audit_number", "previous_status", "new_status", "action"}

    Raises:
        NotFoundError, InvalidStateError, PersistenceError
    """
    now = now or utcnow()
    audit = db.session.get(Audit, audit_id, with_for_update=True)
    if audit is None:
        raise NotFoundError("Audit", audit_id)

    validation = validate_audit_transition(audit, action)
    if not validation["valid"]:
        db.session.rollback()
        raise InvalidStateError(validation["reason"], current_status=audit.status)

    previous = audit.status
    audit.status = validation["to"]
    if action == "start":
        audit.started_at = now
        if auditor_name:
            audit.auditor_name = auditor_name
    elif action == "cancel":
        audit.cancelled_at = now
    commit_or_raise(f"audit {action}")

    logger.info(
        "Audit %s: %s → %s", audit.audit_number, previous, audit.status,
        extra={"organization_id": audit.organization_id, "audit_id": audit.id,
               "event_type": f"audit.{action}"},
    )
    return {
        "audit_id": audit.id,
        "audit_number": audit.audit_number,
        "previous_status": previous,
        "new_status": audit.status,
        "action": action,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Completion
# ═════════════════════════════════════════════════════════════════════════════

def _validate_completion_data(data: dict) -> dict:
    """Check the completion payload; returns the normalised fields.

    Raises:
        ValidationError: listing every failing field.
    """
    errors = {}
    data = data or {}

    rating = data.get("rating")
    if rating not in AUDIT_RATINGS:
        errors["rating"] = f"rating must be one of: {', '.join(AUDIT_RATINGS)}"

    summary = data.get("summary")
    if not isinstance(summary, str) or len(summary.strip()) < MIN_SUMMARY_LENGTH:
        errors["summary"] = f"summary must be at least {MIN_SUMMARY_LENGTH} characters"

    follow_up_requested = data.get("follow_up_required", False)
    if not isinstance(follow_up_requested, bool):
        errors["follow_up_required"] = "follow_up_required must be a boolean"

    create_capas = data.get("create_capas", True)
    if not isinstance(create_capas, bool):
        errors["create_capas"] = "create_capas must be a boolean"

    follow_up_due_date = None
    if data.get("follow_up_due_date"):
        follow_up_due_date = parse_datetime(data["follow_up_due_date"])
        if follow_up_due_date is None:
            errors["follow_up_due_date"] = "follow_up_due_date must be an ISO date"

    if errors:
        raise ValidationError("Invalid audit completion data", details=errors)

    return {
        "rating": rating,
        "summary": summary.strip(),
        "follow_up_required": follow_up_requested,
        "follow_up_due_date": follow_up_due_date,
        "create_capas": create_capas,
    }


def tally_responses(items) -> dict:
    """Count checklist responses; NOT_APPLICABLE and unanswered items are ignored."""
    stats = {
        "conforming_count": 0,
        "minor_nonconformities": 0,
        "major_nonconformities": 0,
        "observations": 0,
    }
    for item in items:
        if item.response == "CONFORMING":
            stats["conforming_count"] += 1
        elif item.response == "MINOR_NONCONFORMITY":
            stats["minor_nonconformities"] += 1
        elif item.response == "MAJOR_NONCONFORMITY":
            stats["major_nonconformities"] += 1
        elif item.response == "OBSERVATION":
            stats["observations"] += 1
    return stats


def _create_capas(audit: Audit, now: datetime, policy: CompliancePolicy) -> list[CAPARecord]:
    created = []
    for item in audit.checklist_items:
        if item.response not in NONCONFORMITY_RESPONSES:
            continue
        is_major = item.response == "MAJOR_NONCONFORMITY"
        severity = item.severity or ("MAJOR" if is_major else "MINOR")
        capa = CAPARecord(
            organization_id=audit.organization_id,
            audit_id=audit.id,
            capa_number=next_capa_number(audit.organization_id, now.year),
            source_type="AUDIT",
            source_reference=audit.audit_number,
            title=f"{item.iso_element} - {'Major' if is_major else 'Minor'} Non-conformity",
            description=item.finding or item.question_text or "",
            severity=severity,
            iso_element=item.iso_element,
            status="OPEN",
            due_date=now + timedelta(days=policy.due_days_for("MAJOR" if is_major else "MINOR")),
        )
        db.session.add(capa)
        # flush so the next CAPA number sees this one
        db.session.flush()
        created.append(capa)
    return created


def complete_audit(
    audit_id: int,
    data: dict,
    *,
    now: datetime | None = None,
    policy: CompliancePolicy | None = None,
    follow_up_scheduler=None,
) -> dict:
    """Complete an audit and run its side effects atomically.

    Args:
        audit_id: Audit to complete.
        data: {"rating", "summary", "follow_up_required"?, "follow_up_due_date"?,
               "create_capas"? (default True)}
        now: Completion timestamp (defaults to utcnow()).
        policy: CompliancePolicy override.
        follow_up_scheduler: Callable(org_id, source_audit_id, now=, policy=)
            returning the follow-up Audit; defaults to schedule_follow_up_audit.

    Returns:
        {"audit": dict, "statistics": dict, "created_capa_ids": [int],
         "follow_up_audit": {"id", "audit_number", "scheduled_date"} | None}

    Raises:
        ValidationError: malformed rating/summary/flags.
        NotFoundError: audit does not exist.
        InvalidStateError: audit already COMPLETED or CANCELLED.
        PersistenceError: the unit of work failed; nothing was written.
        Errors raised by ``follow_up_scheduler`` or the policy propagate
        unchanged after the same rollback.
    """
    fields = _validate_completion_data(data)
    now = now or utcnow()
    policy = policy or current_policy()
    follow_up_scheduler = follow_up_scheduler or schedule_follow_up_audit

    audit = db.session.get(Audit, audit_id, with_for_update=True)
    if audit is None:
        raise NotFoundError("Audit", audit_id)
    if audit.status in AUDIT_TERMINAL_STATUSES:
        status = audit.status
        db.session.rollback()
        raise InvalidStateError(
            f"Audit {audit.audit_number} is already {status.lower()}",
            current_status=status,
        )

    organization_id = audit.organization_id
    rating = fields["rating"]

    try:
        stats = tally_responses(audit.checklist_items)
        audit.status = "COMPLETED"
        audit.completed_at = now
        audit.rating = rating
        audit.summary = fields["summary"]
        audit.conforming_count = stats["conforming_count"]
        audit.minor_nonconformities = stats["minor_nonconformities"]
        audit.major_nonconformities = stats["major_nonconformities"]
        audit.observations = stats["observations"]

        capas = _create_capas(audit, now, policy) if fields["create_capas"] else []

        audit.follow_up_required = fields["follow_up_required"] or rating in FOLLOW_UP_RATINGS
        audit.follow_up_due_date = fields["follow_up_due_date"]

        org = db.session.get(Organization, organization_id)
        org.last_audit_date = now
        org.next_audit_due = now + relativedelta(months=policy.frequency_months(org.certification_tier))

        follow_up = None
        if rating in FOLLOW_UP_RATINGS:
            follow_up = follow_up_scheduler(organization_id, audit.id, now=now, policy=policy)
            if follow_up is not None and audit.follow_up_due_date is None:
                audit.follow_up_due_date = follow_up.scheduled_date

        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Audit completion failed for audit=%s", audit_id,
            extra={"organization_id": organization_id, "audit_id": audit_id,
                   "event_type": "audit.complete_failed"},
        )
        raise PersistenceError("complete_audit", exc) from exc
    except Exception:
        db.session.rollback()
        logger.exception(
            "Audit completion aborted for audit=%s", audit_id,
            extra={"organization_id": organization_id, "audit_id": audit_id,
                   "event_type": "audit.complete_failed"},
        )
        raise

    capa_ids = [c.id for c in capas]
    logger.info(
        "Audit %s completed: rating=%s capas=%d follow_up=%s",
        audit.audit_number, rating, len(capa_ids), follow_up.audit_number if follow_up else None,
        extra={"organization_id": organization_id, "audit_id": audit.id,
               "event_type": "audit.completed"},
    )

    try:
        update_organization_compliance_score(organization_id, now=now, policy=policy)
    except (PersistenceError, SQLAlchemyError):
        db.session.rollback()
        logger.exception(
            "Compliance refresh after audit completion failed for org=%s", organization_id,
            extra={"organization_id": organization_id, "audit_id": audit.id,
                   "event_type": "compliance.refresh_failed"},
        )

    return {
        "audit": audit.to_dict(),
        "statistics": stats,
        "created_capa_ids": capa_ids,
        "follow_up_audit": (
            {
                "id": follow_up.id,
                "audit_number": follow_up.audit_number,
                "scheduled_date": follow_up.scheduled_date.isoformat(),
            }
            if follow_up else None
        ),
    }
