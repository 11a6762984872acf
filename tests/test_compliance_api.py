"""
HTTP surface of the compliance blueprint.

Covers:
    - GET/POST compliance endpoints
    - audit completion + transition endpoints, error code mapping
    - CAPA status endpoint
    - job listing / manual trigger
    - health
"""

from datetime import timedelta

from portal.models import db
from portal.models.audit import Audit, CAPARecord
from portal.models.organization import Organization

from conftest import NOW


class TestComplianceEndpoints:

    def test_get_compliance(self, client, make_org, make_policy):
        org = make_org()
        make_policy(org)

        res = client.get(f"/api/v1/organizations/{org.id}/compliance")

        assert res.status_code == 200
        data = res.get_json()
        assert data["organization_id"] == org.id
        assert set(data["breakdown"]) == {"documentation", "insurance", "personnel", "audit"}
        assert data["tier_eligibility"]["current_tier"] == "ACCREDITED"
        assert any(i["code"] == "INS_MISSING_PROFESSIONAL_INDEMNITY" for i in data["issues"])
        assert db.session.get(Organization, org.id).compliance_last_calc is None

    def test_get_compliance_unknown_org(self, client):
        res = client.get("/api/v1/organizations/9999/compliance")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_recalculate_persists(self, client, make_org):
        org = make_org()
        res = client.post(f"/api/v1/organizations/{org.id}/compliance/recalculate")

        assert res.status_code == 200
        assert res.get_json()["overall_score"] == 5
        refreshed = db.session.get(Organization, org.id)
        assert refreshed.compliance_score == 5
        assert refreshed.compliance_last_calc is not None


class TestAuditEndpoints:

    def test_complete(self, client, make_org, make_audit, make_checklist_item):
        audit = make_audit(make_org())
        make_checklist_item(audit, "QUALITY_POLICY", "MAJOR_NONCONFORMITY", finding="Policy missing")

        res = client.post(f"/api/v1/audits/{audit.id}/complete",
                          json={"rating": "FAIL", "summary": "Quality policy missing"})

        assert res.status_code == 200
        data = res.get_json()
        assert data["audit"]["status"] == "COMPLETED"
        assert data["statistics"]["major_nonconformities"] == 1
        assert len(data["created_capa_ids"]) == 1
        assert data["follow_up_audit"]["audit_number"].startswith("AUD-")

    def test_complete_twice_conflicts(self, client, make_org, make_audit):
        audit = make_audit(make_org())
        payload = {"rating": "PASS", "summary": "All elements conforming"}
        assert client.post(f"/api/v1/audits/{audit.id}/complete", json=payload).status_code == 200

        res = client.post(f"/api/v1/audits/{audit.id}/complete", json=payload)

        assert res.status_code == 409
        data = res.get_json()
        assert data["code"] == "ERR_CONFLICT_STATE"
        assert data["details"]["current_status"] == "COMPLETED"

    def test_complete_validation_error(self, client, make_org, make_audit):
        audit = make_audit(make_org())
        res = client.post(f"/api/v1/audits/{audit.id}/complete", json={"rating": "GREAT", "summary": "x"})

        assert res.status_code == 422
        data = res.get_json()
        assert data["code"] == "ERR_VALIDATION_INVALID"
        assert set(data["details"]) == {"rating", "summary"}

    def test_complete_requires_json_object(self, client, make_org, make_audit):
        audit = make_audit(make_org())
        res = client.post(f"/api/v1/audits/{audit.id}/complete", data="not json",
                          content_type="text/plain")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_complete_unknown_audit(self, client):
        res = client.post("/api/v1/audits/9999/complete",
                          json={"rating": "PASS", "summary": "All elements conforming"})
        assert res.status_code == 404

    def test_transition(self, client, make_org, make_audit):
        audit = make_audit(make_org(), status="SCHEDULED")
        res = client.post(f"/api/v1/audits/{audit.id}/transition",
                          json={"action": "start", "auditor_name": "R. Hale"})

        assert res.status_code == 200
        assert res.get_json()["new_status"] == "IN_PROGRESS"
        assert db.session.get(Audit, audit.id).auditor_name == "R. Hale"

    def test_transition_requires_action(self, client, make_org, make_audit):
        audit = make_audit(make_org(), status="SCHEDULED")
        res = client.post(f"/api/v1/audits/{audit.id}/transition", json={})
        assert res.status_code == 400

    def test_invalid_transition(self, client, make_org, make_audit):
        audit = make_audit(make_org(), status="CANCELLED")
        res = client.post(f"/api/v1/audits/{audit.id}/transition", json={"action": "start"})
        assert res.status_code == 409


class TestCapaEndpoint:

    def test_status_change(self, client, make_org, make_capa):
        capa = make_capa(make_org(), status="PENDING_VERIFICATION")
        res = client.patch(f"/api/v1/capa/{capa.id}/status",
                           json={"action": "verify", "verified_by": "J. Smith",
                                 "verification_notes": "Evidence sighted"})

        assert res.status_code == 200
        assert res.get_json()["new_status"] == "CLOSED"
        assert db.session.get(CAPARecord, capa.id).verified_by == "J. Smith"

    def test_closed_capa_conflicts(self, client, make_org, make_capa):
        capa = make_capa(make_org(), status="CLOSED", due_date=NOW - timedelta(days=1))
        res = client.patch(f"/api/v1/capa/{capa.id}/status", json={"action": "start"})
        assert res.status_code == 409
        assert res.get_json()["details"]["current_status"] == "CLOSED"

    def test_unknown_capa(self, client):
        res = client.patch("/api/v1/capa/9999/status", json={"action": "start"})
        assert res.status_code == 404


class TestJobAndHealthEndpoints:

    def test_list_jobs(self, client):
        res = client.get("/api/v1/jobs")
        assert res.status_code == 200
        names = {j["job_name"] for j in res.get_json()["jobs"]}
        assert {"capa_overdue_scanner", "metadata_sync_dispatch", "audit_scheduler"} <= names

    def test_run_job(self, client):
        res = client.post("/api/v1/jobs/capa_overdue_scanner/run")
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

    def test_run_unknown_job(self, client):
        res = client.post("/api/v1/jobs/nope/run")
        assert res.status_code == 404

    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_unknown_route(self, client):
        res = client.get("/api/v1/does-not-exist")
        assert res.status_code == 404
