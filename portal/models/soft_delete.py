"""
Soft Delete Mixin.

Adds a `deleted_at` timestamp column and query helpers for soft delete.
Models that include this mixin are marked deleted rather than physically
removed; compliance scoring only ever sees active rows.

Usage:
    class Document(SoftDeleteMixin, db.Model):
        ...

    doc.soft_delete()
    db.session.commit()

    Document.query_active().filter_by(organization_id=org_id).all()
"""

from datetime import datetime, timezone

from portal.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
