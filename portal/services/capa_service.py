"""
CAPA Lifecycle Service.

Manages corrective/preventive action status transitions:

    start                     OPEN                        → IN_PROGRESS
    submit_for_verification   OPEN / IN_PROGRESS / OVERDUE → PENDING_VERIFICATION
    verify                    PENDING_VERIFICATION        → CLOSED
    reject                    PENDING_VERIFICATION        → IN_PROGRESS
    mark_overdue              OPEN / IN_PROGRESS          → OVERDUE

CLOSED is terminal.  Every transition refreshes the organization's
compliance score after commit, since overdue CAPAs cost audit points.

Usage:
    from portal.services.capa_service import transition_capa

    transition_capa(capa.id, "verify", verified_by="J. Smith",
                    verification_notes="Evidence reviewed on site")
"""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from portal.core.exceptions import InvalidStateError, NotFoundError, PersistenceError
from portal.models import db
from portal.models.audit import CAPA_UNRESOLVED_STATUSES, CAPARecord
from portal.services.compliance_service import update_organization_compliance_score
from portal.utils.helpers import as_utc, commit_or_raise, utcnow

logger = logging.getLogger(__name__)


CAPA_TRANSITIONS = {
    "start": {"from": ["OPEN"], "to": "IN_PROGRESS"},
    "submit_for_verification": {"from": ["OPEN", "IN_PROGRESS", "OVERDUE"], "to": "PENDING_VERIFICATION"},
    "verify": {"from": ["PENDING_VERIFICATION"], "to": "CLOSED"},
    "reject": {"from": ["PENDING_VERIFICATION"], "to": "IN_PROGRESS"},
    "mark_overdue": {"from": ["OPEN", "IN_PROGRESS"], "to": "OVERDUE"},
}


def validate_capa_transition(capa: CAPARecord, action: str) -> dict:
    """Validate whether an action is valid for the CAPA's current state."""
    rule = CAPA_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": capa.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if capa.status not in rule["from"]:
        return {"valid": False, "from": capa.status, "to": rule["to"],
                "reason": f"Cannot '{action}' CAPA {capa.capa_number} from status '{capa.status}'"}

    return {"valid": True, "from": capa.status, "to": rule["to"], "reason": None}


def _refresh_score(organization_id: int, now: datetime) -> None:
    try:
        update_organization_compliance_score(organization_id, now=now)
    except (PersistenceError, SQLAlchemyError):
        db.session.rollback()
        logger.exception(
            "Compliance refresh after CAPA change failed for org=%s", organization_id,
            extra={"organization_id": organization_id, "event_type": "compliance.refresh_failed"},
        )


def transition_capa(
    capa_id: int,
    action: str,
    *,
    now: datetime | None = None,
    verified_by: str | None = None,
    verification_notes: str | None = None,
    root_cause: str | None = None,
    corrective_action: str | None = None,
    preventive_action: str | None = None,
) -> dict:
    """
    Execute a CAPA lifecycle transition.

    Args:
        capa_id: CAPARecord PK
        action: One of CAPA_TRANSITIONS
        verified_by / verification_notes: recorded on verify and reject
        root_cause / corrective_action / preventive_action: recorded on
            submit_for_verification when given

    Returns:
        {"capa_id", "capa_number", "previous_status", "new_status", "action"}

    Raises:
        NotFoundError, InvalidStateError, PersistenceError
    """
    now = now or utcnow()
    capa = db.session.get(CAPARecord, capa_id, with_for_update=True)
    if capa is None:
        raise NotFoundError("CAPA", capa_id)

    validation = validate_capa_transition(capa, action)
    if not validation["valid"]:
        status = capa.status
        db.session.rollback()
        raise InvalidStateError(validation["reason"], current_status=status)

    previous = capa.status
    capa.status = validation["to"]

    if action == "submit_for_verification":
        if root_cause is not None:
            capa.root_cause = root_cause
        if corrective_action is not None:
            capa.corrective_action = corrective_action
        if preventive_action is not None:
            capa.preventive_action = preventive_action
    elif action in ("verify", "reject"):
        capa.verified_by = verified_by
        capa.verification_notes = verification_notes
        capa.verified_at = now
        if action == "verify":
            capa.closed_at = now

    organization_id = capa.organization_id
    commit_or_raise(f"capa {action}")

    logger.info(
        "CAPA %s: %s → %s", capa.capa_number, previous, capa.status,
        extra={"organization_id": organization_id, "capa_id": capa.id, "event_type": f"capa.{action}"},
    )

    _refresh_score(organization_id, now)

    return {
        "capa_id": capa.id,
        "capa_number": capa.capa_number,
        "previous_status": previous,
        "new_status": capa.status,
        "action": action,
    }


def mark_overdue_capas(now: datetime | None = None) -> dict:
    """Flip unresolved CAPAs past their due date to OVERDUE.

    Scores of every affected organization are recomputed afterwards.

    Returns:
        {"marked_overdue": n, "organizations_refreshed": n, "capa_ids": [...]}
    """
    now = now or utcnow()

    candidates = (
        CAPARecord.query
        .filter(CAPARecord.status.in_(sorted(CAPA_UNRESOLVED_STATUSES)))
        .order_by(CAPARecord.id)
        .all()
    )
    overdue = [c for c in candidates if as_utc(c.due_date) < now]

    org_ids = []
    for capa in overdue:
        capa.status = "OVERDUE"
        if capa.organization_id not in org_ids:
            org_ids.append(capa.organization_id)
    capa_ids = [c.id for c in overdue]
    commit_or_raise("mark_overdue_capas")

    if capa_ids:
        logger.info(
            "Marked %d CAPA(s) overdue across %d organization(s)", len(capa_ids), len(org_ids),
            extra={"event_type": "capa.overdue_scan"},
        )

    for org_id in org_ids:
        _refresh_score(org_id, now)

    return {
        "marked_overdue": len(capa_ids),
        "organizations_refreshed": len(org_ids),
        "capa_ids": capa_ids,
    }
