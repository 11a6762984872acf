"""
Certification Portal
Outbound message model.

Models:
    - MetadataSyncMessage: pending push of an organization's tier/score/insurance
      claims to the identity provider

Delivery is at-least-once and best-effort: a message is retried by the
dispatcher until it is sent or exhausts its attempts, then dropped.
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

SYNC_STATUSES = {"pending", "sent", "dropped"}


def _utcnow():
    return datetime.now(timezone.utc)


class MetadataSyncMessage(db.Model):
    """One queued identity-metadata update for one organization."""

    __tablename__ = "metadata_sync_messages"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    payload = db.Column(db.JSON, nullable=False, comment='{"certification_tier", "compliance_score", "insurance_valid"}')
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<MetadataSyncMessage {self.id}: org={self.organization_id} {self.status}>"
