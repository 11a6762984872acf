"""Compliance blueprint — scoring, audit completion and CAPA lifecycle.

Endpoint groups:
  Compliance      GET  /api/v1/organizations/<org_id>/compliance
                  POST /api/v1/organizations/<org_id>/compliance/recalculate
  Audits          POST /api/v1/audits/<audit_id>/complete
                  POST /api/v1/audits/<audit_id>/transition
  CAPA            PATCH /api/v1/capa/<capa_id>/status
  Jobs            GET  /api/v1/jobs
                  POST /api/v1/jobs/<job_name>/run
  Health          GET  /api/v1/health

Auth is handled upstream.  Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from portal.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from portal.services import audit_service, capa_service, compliance_service
from portal.services.scheduler_service import SchedulerService, get_registered_jobs
from portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

compliance_bp = Blueprint("compliance", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@compliance_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@compliance_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    details = dict(error.details)
    if error.current_status:
        details["current_status"] = error.current_status
    return api_error(E.CONFLICT_STATE, str(error), details=details)


@compliance_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@compliance_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@compliance_bp.errorhandler(PersistenceError)
def _handle_persistence(error: PersistenceError):
    return api_error(E.DATABASE, "Database error, changes were rolled back")


@compliance_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    return jsonify({"error": error.description}), error.code


@compliance_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in compliance_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_REQUIRED, "JSON object body is required")
    return data, None


# ═════════════════════════════════════════════════════════════════════════
# Compliance
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/organizations/<int:org_id>/compliance", methods=["GET"])
def get_compliance(org_id):
    """Current compliance breakdown, computed on the fly (nothing persisted)."""
    result = compliance_service.calculate_compliance_score(org_id)
    return jsonify(result.to_dict()), 200


@compliance_bp.route("/organizations/<int:org_id>/compliance/recalculate", methods=["POST"])
def recalculate_compliance(org_id):
    """Recalculate and persist the organization's scores."""
    result = compliance_service.update_organization_compliance_score(org_id)
    return jsonify(result.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Audits
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/audits/<int:audit_id>/complete", methods=["POST"])
def complete_audit(audit_id):
    """Complete an audit.

    Body: {rating, summary, follow_up_required?, follow_up_due_date?, create_capas?}
    """
    data, err = _json_body()
    if err:
        return err
    outcome = audit_service.complete_audit(audit_id, data)
    return jsonify(outcome), 200


@compliance_bp.route("/audits/<int:audit_id>/transition", methods=["POST"])
def transition_audit(audit_id):
    """Body: {action: start|submit_for_review|cancel, auditor_name?}"""
    data, err = _json_body()
    if err:
        return err
    action = (data.get("action") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    result = audit_service.transition_audit(audit_id, action, auditor_name=data.get("auditor_name"))
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# CAPA
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/capa/<int:capa_id>/status", methods=["PATCH"])
def transition_capa(capa_id):
    """Body: {action, verified_by?, verification_notes?, root_cause?,
    corrective_action?, preventive_action?}"""
    data, err = _json_body()
    if err:
        return err
    action = (data.get("action") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    result = capa_service.transition_capa(
        capa_id,
        action,
        verified_by=data.get("verified_by"),
        verification_notes=data.get("verification_notes"),
        root_cause=data.get("root_cause"),
        corrective_action=data.get("corrective_action"),
        preventive_action=data.get("preventive_action"),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Scheduled jobs
# ═════════════════════════════════════════════════════════════════════════


@compliance_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs()}), 200


@compliance_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a registered job (cron entry point)."""
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    outcome = SchedulerService.run_job(job_name)
    status = 200 if outcome["status"] == "success" else 500
    return jsonify(outcome), status


@compliance_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "Certification Portal"}), 200
