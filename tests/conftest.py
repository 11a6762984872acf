"""
Shared pytest fixtures for the Certification Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - NOW: fixed clock used by service-level tests
    - make_org / make_member / make_policy / make_document / make_assessment /
      make_audit / make_checklist_item / make_capa: ORM factories (commit)
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from portal import create_app
from portal.models import db as _db
from portal.models.audit import Audit, AuditChecklistItem, CAPARecord
from portal.models.document import ComplianceAssessment, Document
from portal.models.organization import InsurancePolicy, Organization, OrganizationMember

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _save(obj):
    _db.session.add(obj)
    _db.session.commit()
    return obj


@pytest.fixture()
def make_org():
    def _make(name="Apex Roofing Ltd", tier="ACCREDITED", identity_org_ref=None, **kw):
        return _save(Organization(
            name=name, certification_tier=tier, identity_org_ref=identity_org_ref, **kw,
        ))
    return _make


@pytest.fixture()
def make_member():
    def _make(org, role="STAFF", lbp_number=None, lbp_verified=False, lbp_expiry=None,
              lbp_status=None, **kw):
        return _save(OrganizationMember(
            organization_id=org.id, role=role, lbp_number=lbp_number,
            lbp_verified=lbp_verified, lbp_expiry=lbp_expiry, lbp_status=lbp_status,
            first_name=kw.pop("first_name", "Test"), last_name=kw.pop("last_name", role.title()),
            **kw,
        ))
    return _make


@pytest.fixture()
def make_policy():
    def _make(org, policy_type="PUBLIC_LIABILITY", coverage=2_000_000, expiry=None, **kw):
        return _save(InsurancePolicy(
            organization_id=org.id, policy_type=policy_type,
            coverage_amount=Decimal(coverage),
            expiry_date=expiry or (NOW + timedelta(days=365)),
            **kw,
        ))
    return _make


@pytest.fixture()
def make_document():
    def _make(org, iso_element="QUALITY_POLICY", status="APPROVED", **kw):
        return _save(Document(
            organization_id=org.id, iso_element=iso_element, status=status,
            title=kw.pop("title", f"{iso_element} manual"), **kw,
        ))
    return _make


@pytest.fixture()
def make_assessment():
    def _make(org, iso_element="QUALITY_POLICY", score=100, status="COMPLIANT"):
        return _save(ComplianceAssessment(
            organization_id=org.id, iso_element=iso_element, score=score, status=status,
        ))
    return _make


_audit_seq = 0


@pytest.fixture()
def make_audit():
    def _make(org, status="IN_PROGRESS", audit_type="SURVEILLANCE", **kw):
        global _audit_seq
        _audit_seq += 1
        return _save(Audit(
            organization_id=org.id,
            audit_number=kw.pop("audit_number", f"AUD-{NOW.year}-{_audit_seq:03d}"),
            audit_type=audit_type,
            status=status,
            scheduled_date=kw.pop("scheduled_date", NOW - timedelta(days=1)),
            iso_elements=kw.pop("iso_elements", ["QUALITY_POLICY", "TRAINING_COMPETENCE"]),
            **kw,
        ))
    return _make


@pytest.fixture()
def make_checklist_item():
    def _make(audit, iso_element="QUALITY_POLICY", response="CONFORMING", finding=None,
              severity=None, question_text="Is the requirement met?"):
        return _save(AuditChecklistItem(
            audit_id=audit.id, iso_element=iso_element, response=response,
            finding=finding, severity=severity, question_text=question_text,
        ))
    return _make


_capa_seq = 0


@pytest.fixture()
def make_capa():
    def _make(org, status="OPEN", severity="MAJOR", due_date=None, audit=None, **kw):
        global _capa_seq
        _capa_seq += 1
        return _save(CAPARecord(
            organization_id=org.id,
            audit_id=audit.id if audit else None,
            capa_number=kw.pop("capa_number", f"CAPA-{NOW.year}-{_capa_seq:03d}"),
            title=kw.pop("title", "Corrective action"),
            severity=severity,
            status=status,
            due_date=due_date or (NOW + timedelta(days=30)),
            **kw,
        ))
    return _make
