"""
Metadata Sync Service — identity provider outbox.

Score updates never call the identity provider inline.  Instead:

    enqueue_metadata_sync(org_id, ...)        writes a pending MetadataSyncMessage
    dispatch_pending_sync_messages(...)       delivers pending messages (scheduled job)

Delivery is at-least-once and best-effort:
  - enqueue failures are logged and rolled back; the caller never sees them
  - organizations without an identity reference are dropped with a warning
  - a message that fails ``IDENTITY_SYNC_MAX_ATTEMPTS`` dispatches is dropped

Only the newest pending message per organization is delivered; older
pending ones for the same organization are superseded and marked sent
alongside it.
"""

import logging

from flask import current_app, has_app_context

from portal.integrations.identity_gateway import IdentityGateway
from portal.models import db
from portal.models.organization import Organization
from portal.models.outbox import MetadataSyncMessage
from portal.utils.helpers import commit_or_raise, utcnow

logger = logging.getLogger(__name__)

_DEFAULT_MAX_ATTEMPTS = 5


def _max_attempts() -> int:
    if has_app_context():
        return int(current_app.config.get("IDENTITY_SYNC_MAX_ATTEMPTS", _DEFAULT_MAX_ATTEMPTS))
    return _DEFAULT_MAX_ATTEMPTS


def build_metadata_payload(certification_tier: str, compliance_score: int, insurance_valid: bool) -> dict:
    return {
        "certification_tier": certification_tier,
        "compliance_score": compliance_score,
        "insurance_valid": bool(insurance_valid),
    }


def enqueue_metadata_sync(
    organization_id: int,
    *,
    certification_tier: str,
    compliance_score: int,
    insurance_valid: bool,
) -> MetadataSyncMessage | None:
    """Queue a metadata update for the identity provider.

    Runs in its own commit.  Never raises: on failure the session is rolled
    back, the error is logged and None is returned.
    """
    try:
        message = MetadataSyncMessage(
            organization_id=organization_id,
            payload=build_metadata_payload(certification_tier, compliance_score, insurance_valid),
            status="pending",
            attempts=0,
        )
        db.session.add(message)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.warning(
            "Metadata sync enqueue failed for org=%s",
            organization_id,
            exc_info=True,
            extra={"organization_id": organization_id, "event_type": "metadata_sync.enqueue_failed"},
        )
        return None

    logger.debug("Metadata sync queued: org=%s message=%s", organization_id, message.id)
    return message


def dispatch_pending_sync_messages(gateway: IdentityGateway | None = None, limit: int = 50) -> dict:
    """Deliver pending messages through the identity gateway.

    Args:
        gateway: Gateway to use; built from app config when omitted.
        limit:   Max number of pending messages examined in this run.

    Returns:
        {"processed": n, "sent": n, "failed": n, "dropped": n, "superseded": n}
    """
    gateway = gateway or IdentityGateway.from_config()
    max_attempts = _max_attempts()
    stats = {"processed": 0, "sent": 0, "failed": 0, "dropped": 0, "superseded": 0}

    pending = (
        MetadataSyncMessage.query
        .filter_by(status="pending")
        .order_by(MetadataSyncMessage.id.desc())
        .limit(limit)
        .all()
    )

    # Newest message per organization wins
    latest: dict[int, MetadataSyncMessage] = {}
    for message in pending:
        if message.organization_id in latest:
            message.status = "sent"
            message.sent_at = utcnow()
            message.last_error = f"superseded by message {latest[message.organization_id].id}"
            stats["superseded"] += 1
            continue
        latest[message.organization_id] = message

    for message in sorted(latest.values(), key=lambda m: m.id):
        stats["processed"] += 1
        org = db.session.get(Organization, message.organization_id)

        if org is None or not org.identity_org_ref:
            message.status = "dropped"
            message.last_error = "organization has no identity reference"
            stats["dropped"] += 1
            logger.warning(
                "Organization %s has no identity reference, dropping metadata sync",
                message.organization_id,
                extra={"organization_id": message.organization_id, "message_id": message.id,
                       "event_type": "metadata_sync.dropped"},
            )
            continue

        result = gateway.sync_organization_metadata(org.identity_org_ref, message.payload)
        message.attempts = (message.attempts or 0) + 1

        if result.ok:
            message.status = "sent"
            message.sent_at = utcnow()
            message.last_error = None
            stats["sent"] += 1
            logger.info(
                "Metadata synced: org=%s tier=%s score=%s",
                org.id,
                message.payload.get("certification_tier"),
                message.payload.get("compliance_score"),
                extra={"organization_id": org.id, "message_id": message.id, "event_type": "metadata_sync.sent"},
            )
            continue

        message.last_error = result.error
        if message.attempts >= max_attempts:
            message.status = "dropped"
            stats["dropped"] += 1
            logger.warning(
                "Metadata sync for org=%s dropped after %d attempts: %s",
                org.id, message.attempts, result.error,
                extra={"organization_id": org.id, "message_id": message.id, "event_type": "metadata_sync.dropped"},
            )
        else:
            stats["failed"] += 1
            logger.warning(
                "Metadata sync for org=%s failed (attempt %d/%d): %s",
                org.id, message.attempts, max_attempts, result.error,
                extra={"organization_id": org.id, "message_id": message.id, "event_type": "metadata_sync.failed"},
            )

    commit_or_raise("dispatch_pending_sync_messages")
    return stats
