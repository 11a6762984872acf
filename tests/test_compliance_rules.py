"""
Pure compliance scoring rules.

Covers:
  • score_documentation: element priority, weighting, DOC_* issues
  • score_insurance: tier minimums, expiry windows, optional types
  • score_personnel: additive points, flat expired-licence penalty
  • score_audit: rating baseline, staleness, overdue CAPAs, clamping
  • combine_scores: weights + half-up rounding
  • evaluate_tier_eligibility: thresholds, critical issues, LBP minimum
  • CompliancePolicy validation

No database access: every test builds an OrganizationSnapshot by hand.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from portal.services.compliance_policy import DEFAULT_POLICY, CompliancePolicy
from portal.services.compliance_rules import (
    ComplianceIssue,
    IssueCategory,
    IssueSeverity,
    PersonnelDetails,
    combine_scores,
    compliance_status_level,
    evaluate_compliance,
    evaluate_tier_eligibility,
    round_half_up,
    score_audit,
    score_documentation,
    score_insurance,
    score_personnel,
)
from portal.services.snapshot import (
    AssessmentSnapshot,
    AuditSnapshot,
    CAPASnapshot,
    DocumentSnapshot,
    MemberSnapshot,
    OrganizationSnapshot,
    PolicySnapshot,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _snapshot(**kw) -> OrganizationSnapshot:
    kw.setdefault("organization_id", 1)
    kw.setdefault("certification_tier", "ACCREDITED")
    return OrganizationSnapshot(**kw)


def _policy(policy_type="PUBLIC_LIABILITY", amount=2_000_000, days=365) -> PolicySnapshot:
    return PolicySnapshot(
        policy_type=policy_type,
        coverage_amount=Decimal(amount),
        expiry_date=NOW + timedelta(days=days),
    )


def _full_accredited_cover(pl_days=365, pl_amount=2_000_000):
    return (
        _policy("PUBLIC_LIABILITY", pl_amount, pl_days),
        _policy("PROFESSIONAL_INDEMNITY", 1_000_000),
        _policy("STATUTORY_LIABILITY", 1_000_000),
    )


def _codes(issues):
    return [i.code for i in issues]


# ═══════════════════════════════════════════════════════════════════════════
# 1 · Documentation
# ═══════════════════════════════════════════════════════════════════════════

class TestDocumentationScorer:

    def test_no_documents_scores_zero(self):
        issues = []
        result = score_documentation(_snapshot(), issues, DEFAULT_POLICY)
        assert result.score == 0
        assert len(result.elements) == 19
        assert all(e.status == "NOT_ASSESSED" for e in result.elements)

    def test_missing_issue_severity_follows_element_weight(self):
        issues = []
        score_documentation(_snapshot(), issues, DEFAULT_POLICY)
        warnings = [i for i in issues if i.severity == IssueSeverity.WARNING]
        infos = [i for i in issues if i.severity == IssueSeverity.INFO]
        # QUALITY_POLICY, PROCESS_MANAGEMENT, TRAINING_COMPETENCE,
        # PROCESS_CONTROL, INSPECTION_TESTING, INTERNAL_AUDITS
        assert len(warnings) == 6
        assert len(infos) == 13
        assert all(i.element for i in issues)
        assert "DOC_MISSING_QUALITY_POLICY" in _codes(warnings)
        assert "DOC_MISSING_PURCHASING" in _codes(infos)

    def test_approved_document_on_every_element_scores_75(self):
        docs = tuple(DocumentSnapshot(iso_element=e, status="APPROVED") for e in DEFAULT_POLICY.iso_elements)
        issues = []
        result = score_documentation(_snapshot(documents=docs), issues, DEFAULT_POLICY)
        assert result.score == 75
        assert issues == []
        assert all(e.status == "PARTIAL" and e.has_approved_doc for e in result.elements)

    def test_draft_only_element_scores_25_with_pending_issue(self):
        docs = (DocumentSnapshot(iso_element="PURCHASING", status="DRAFT"),)
        issues = []
        result = score_documentation(_snapshot(documents=docs), issues, DEFAULT_POLICY)
        element = next(e for e in result.elements if e.element == "PURCHASING")
        assert element.score == 25
        assert element.document_count == 1
        assert "DOC_PENDING_PURCHASING" in _codes(issues)
        assert "DOC_MISSING_PURCHASING" not in _codes(issues)

    def test_assessment_overrides_documents(self):
        snapshot = _snapshot(
            documents=(DocumentSnapshot(iso_element="QUALITY_POLICY", status="DRAFT"),),
            assessments=(AssessmentSnapshot(iso_element="QUALITY_POLICY", score=90, status="COMPLIANT"),),
        )
        issues = []
        result = score_documentation(snapshot, issues, DEFAULT_POLICY)
        element = next(e for e in result.elements if e.element == "QUALITY_POLICY")
        assert (element.score, element.status) == (90, "COMPLIANT")
        assert not any(i.element == "QUALITY_POLICY" for i in issues)

    def test_low_assessment_with_approved_doc_has_no_pending_issue(self):
        snapshot = _snapshot(
            documents=(DocumentSnapshot(iso_element="SERVICING", status="APPROVED"),),
            assessments=(AssessmentSnapshot(iso_element="SERVICING", score=20, status="PARTIAL"),),
        )
        issues = []
        score_documentation(snapshot, issues, DEFAULT_POLICY)
        assert not any(i.element == "SERVICING" for i in issues)

    def test_weighting_favours_heavy_elements(self):
        heavy = _snapshot(assessments=(AssessmentSnapshot("QUALITY_POLICY", 100, "COMPLIANT"),))
        light = _snapshot(assessments=(AssessmentSnapshot("HANDLING_STORAGE", 100, "COMPLIANT"),))
        assert score_documentation(heavy, [], DEFAULT_POLICY).score > score_documentation(light, [], DEFAULT_POLICY).score


# ═══════════════════════════════════════════════════════════════════════════
# 2 · Insurance
# ═══════════════════════════════════════════════════════════════════════════

class TestInsuranceScorer:

    def test_full_cover_scores_100(self):
        issues = []
        result = score_insurance(_snapshot(policies=_full_accredited_cover()), issues, DEFAULT_POLICY, NOW)
        assert result.score == 100
        assert issues == []
        assert all(p.is_valid for p in result.policies if p.required)

    def test_expiring_within_30_days_degrades_to_70(self):
        issues = []
        result = score_insurance(
            _snapshot(policies=_full_accredited_cover(pl_days=25)), issues, DEFAULT_POLICY, NOW,
        )
        pl = next(p for p in result.policies if p.policy_type == "PUBLIC_LIABILITY")
        assert pl.score == 70
        assert pl.expires_in_days == 25
        assert result.score == 90
        assert _codes(issues) == ["INS_EXPIRING_PUBLIC_LIABILITY"]
        assert issues[0].severity == IssueSeverity.WARNING

    def test_expiring_within_60_days_degrades_to_85(self):
        issues = []
        result = score_insurance(
            _snapshot(policies=_full_accredited_cover(pl_days=45)), issues, DEFAULT_POLICY, NOW,
        )
        assert result.score == 95
        assert _codes(issues) == ["INS_EXPIRING_SOON_PUBLIC_LIABILITY"]
        assert issues[0].severity == IssueSeverity.INFO

    def test_days_to_expiry_rounds_up(self):
        cover = (
            PolicySnapshot("PUBLIC_LIABILITY", Decimal(2_000_000), NOW + timedelta(days=30, hours=1)),
            _policy("PROFESSIONAL_INDEMNITY", 1_000_000),
            _policy("STATUTORY_LIABILITY", 1_000_000),
        )
        issues = []
        result = score_insurance(_snapshot(policies=cover), issues, DEFAULT_POLICY, NOW)
        pl = next(p for p in result.policies if p.policy_type == "PUBLIC_LIABILITY")
        assert pl.expires_in_days == 31
        assert _codes(issues) == ["INS_EXPIRING_SOON_PUBLIC_LIABILITY"]

    def test_insufficient_cover_scores_50_and_cites_amounts(self):
        issues = []
        result = score_insurance(
            _snapshot(policies=_full_accredited_cover(pl_amount=500_000)), issues, DEFAULT_POLICY, NOW,
        )
        assert result.score == 83
        assert _codes(issues) == ["INS_INSUFFICIENT_PUBLIC_LIABILITY"]
        pl = next(p for p in result.policies if p.policy_type == "PUBLIC_LIABILITY")
        assert pl.score == 50
        assert pl.is_valid is False
        assert "$500,000" in issues[0].message
        assert "$1,000,000" in issues[0].message

    def test_missing_required_cover_is_critical(self):
        issues = []
        result = score_insurance(_snapshot(), issues, DEFAULT_POLICY, NOW)
        assert result.score == 0
        assert len(issues) == 3
        assert all(i.severity == IssueSeverity.CRITICAL for i in issues)
        assert "INS_MISSING_PUBLIC_LIABILITY" in _codes(issues)

    def test_expired_policy_counts_as_missing(self):
        cover = (
            _policy("PUBLIC_LIABILITY", 2_000_000, days=-1),
            _policy("PROFESSIONAL_INDEMNITY", 1_000_000),
            _policy("STATUTORY_LIABILITY", 1_000_000),
        )
        issues = []
        result = score_insurance(_snapshot(policies=cover), issues, DEFAULT_POLICY, NOW)
        assert "INS_MISSING_PUBLIC_LIABILITY" in _codes(issues)
        assert result.score == 67

    def test_optional_types_do_not_affect_the_mean(self):
        cover = _full_accredited_cover() + (_policy("MOTOR_VEHICLE", 10_000, days=5),)
        issues = []
        result = score_insurance(_snapshot(policies=cover), issues, DEFAULT_POLICY, NOW)
        assert result.score == 100
        assert issues == []
        motor = next(p for p in result.policies if p.policy_type == "MOTOR_VEHICLE")
        assert motor.required is False
        assert motor.score == 0
        assert motor.is_valid is False
        assert motor.actual_coverage == 10_000

    def test_minimums_follow_the_current_tier(self):
        issues = []
        result = score_insurance(
            _snapshot(certification_tier="MASTER_ROOFER", policies=_full_accredited_cover()),
            issues, DEFAULT_POLICY, NOW,
        )
        assert "INS_INSUFFICIENT_PUBLIC_LIABILITY" in _codes(issues)
        assert "INS_INSUFFICIENT_PROFESSIONAL_INDEMNITY" in _codes(issues)
        assert result.score == 67

    def test_no_required_types_scores_100(self):
        policy = CompliancePolicy(insurance_requirements={
            "ACCREDITED": {"PUBLIC_LIABILITY": None},
            "CERTIFIED": {"PUBLIC_LIABILITY": None},
            "MASTER_ROOFER": {"PUBLIC_LIABILITY": None},
        })
        assert score_insurance(_snapshot(), [], policy, NOW).score == 100


# ═══════════════════════════════════════════════════════════════════════════
# 3 · Personnel
# ═══════════════════════════════════════════════════════════════════════════

class TestPersonnelScorer:

    def test_owner_and_verified_team_scores_100(self):
        members = (
            MemberSnapshot(role="OWNER", lbp_number="BP100", lbp_verified=True, lbp_status="CURRENT"),
            MemberSnapshot(role="STAFF", lbp_number="BP101", lbp_verified=True, lbp_status="CURRENT"),
        )
        issues = []
        result = score_personnel(_snapshot(members=members), issues, NOW)
        assert result.score == 100
        assert issues == []
        assert result.details.lbp_verified_count == 2

    def test_no_members_scores_zero(self):
        issues = []
        result = score_personnel(_snapshot(), issues, NOW)
        assert result.score == 0
        assert _codes(issues) == ["PERS_NO_OWNER", "PERS_NO_LBP"]

    def test_single_unverified_owner(self):
        members = (MemberSnapshot(role="OWNER", lbp_number="BP100", lbp_status="PENDING"),)
        issues = []
        result = score_personnel(_snapshot(members=members), issues, NOW)
        assert result.score == 55
        assert _codes(issues) == ["PERS_NO_VERIFIED_LBP", "PERS_SINGLE_STAFF"]

    def test_partially_verified_names_pending_count(self):
        members = (
            MemberSnapshot(role="OWNER", lbp_number="BP100", lbp_verified=True, lbp_status="CURRENT"),
            MemberSnapshot(role="STAFF", lbp_number="BP101", lbp_status="PENDING"),
            MemberSnapshot(role="STAFF", lbp_number="BP102", lbp_status="NOT_FOUND"),
        )
        issues = []
        result = score_personnel(_snapshot(members=members), issues, NOW)
        assert result.score == 80
        assert _codes(issues) == ["PERS_UNVERIFIED_LBP"]
        assert issues[0].message.startswith("2 ")
        assert result.details.lbp_pending_count == 2

    def test_expired_licences_cost_a_flat_ten(self):
        members = (
            MemberSnapshot(role="OWNER", lbp_number="BP100", lbp_verified=True,
                           lbp_expiry=NOW - timedelta(days=1)),
            MemberSnapshot(role="STAFF", lbp_number="BP101", lbp_verified=True,
                           lbp_expiry=NOW - timedelta(days=90)),
        )
        issues = []
        result = score_personnel(_snapshot(members=members), issues, NOW)
        assert result.score == 90
        assert result.details.lbp_expired_count == 2
        expired = [i for i in issues if i.code == "PERS_EXPIRED_LBP"]
        assert len(expired) == 1
        assert expired[0].severity == IssueSeverity.CRITICAL


# ═══════════════════════════════════════════════════════════════════════════
# 4 · Audit / CAPA
# ═══════════════════════════════════════════════════════════════════════════

class TestAuditScorer:

    def _audit(self, rating, days_ago=30):
        return AuditSnapshot(audit_id=1, rating=rating, completed_at=NOW - timedelta(days=days_ago))

    def test_no_audit_scores_50(self):
        issues = []
        result = score_audit(_snapshot(), issues, DEFAULT_POLICY, NOW)
        assert result.score == 50
        assert _codes(issues) == ["AUDIT_NONE"]
        assert result.details.days_since_last_audit is None

    @pytest.mark.parametrize("rating,expected,codes", [
        ("PASS", 100, []),
        ("PASS_WITH_OBSERVATIONS", 85, []),
        ("CONDITIONAL_PASS", 60, ["AUDIT_CONDITIONAL"]),
        ("FAIL", 30, ["AUDIT_FAILED"]),
    ])
    def test_rating_baseline(self, rating, expected, codes):
        issues = []
        result = score_audit(_snapshot(last_completed_audit=self._audit(rating)), issues, DEFAULT_POLICY, NOW)
        assert result.score == expected
        assert _codes(issues) == codes

    def test_stale_audit_loses_20(self):
        issues = []
        result = score_audit(
            _snapshot(last_completed_audit=self._audit("PASS", days_ago=400)), issues, DEFAULT_POLICY, NOW,
        )
        assert result.score == 80
        assert _codes(issues) == ["AUDIT_OVERDUE"]
        assert result.details.days_since_last_audit == 400

    def test_exactly_365_days_is_not_stale(self):
        issues = []
        result = score_audit(
            _snapshot(last_completed_audit=self._audit("PASS", days_ago=365)), issues, DEFAULT_POLICY, NOW,
        )
        assert result.score == 100
        assert issues == []

    def test_overdue_capas_cost_ten_each_with_one_issue(self):
        capas = (
            CAPASnapshot(capa_id=1, status="OVERDUE"),
            CAPASnapshot(capa_id=2, status="OVERDUE"),
            CAPASnapshot(capa_id=3, status="OPEN"),
            CAPASnapshot(capa_id=4, status="CLOSED"),
        )
        issues = []
        result = score_audit(
            _snapshot(last_completed_audit=self._audit("PASS"), capa_records=capas), issues, DEFAULT_POLICY, NOW,
        )
        assert result.score == 80
        assert _codes(issues) == ["CAPA_OVERDUE"]
        assert "2 " in issues[0].message
        assert result.details.overdue_capa_count == 2
        assert result.details.open_capa_count == 1

    def test_score_is_clamped_at_zero(self):
        capas = tuple(CAPASnapshot(capa_id=i, status="OVERDUE") for i in range(3))
        result = score_audit(
            _snapshot(last_completed_audit=self._audit("FAIL", days_ago=500), capa_records=capas),
            [], DEFAULT_POLICY, NOW,
        )
        assert result.score == 0


# ═══════════════════════════════════════════════════════════════════════════
# 5 · Overall score + eligibility
# ═══════════════════════════════════════════════════════════════════════════

class TestCombineScores:

    def test_weighted_sum(self):
        assert combine_scores(75, 90, 80, 50, DEFAULT_POLICY) == 77

    def test_half_rounds_up(self):
        assert round_half_up(40.5) == 41
        assert round_half_up(41.5) == 42
        assert combine_scores(81, 0, 0, 0, DEFAULT_POLICY) == 41

    def test_bounds(self):
        assert combine_scores(0, 0, 0, 0, DEFAULT_POLICY) == 0
        assert combine_scores(100, 100, 100, 100, DEFAULT_POLICY) == 100

    @pytest.mark.parametrize("score,level", [(95, "compliant"), (90, "compliant"),
                                             (89, "at-risk"), (70, "at-risk"), (69, "critical")])
    def test_status_level(self, score, level):
        assert compliance_status_level(score) == level


def _details(verified=0):
    return PersonnelDetails(total_members=2, has_owner=True, lbp_verified_count=verified,
                            lbp_pending_count=0, lbp_expired_count=0)


def _critical(code="INS_MISSING_PUBLIC_LIABILITY"):
    return ComplianceIssue(category=IssueCategory.INSURANCE, severity=IssueSeverity.CRITICAL,
                           code=code, message="missing")


class TestTierEligibility:

    def test_below_threshold_blocks(self):
        result = evaluate_tier_eligibility("ACCREDITED", 69, [], _details(), DEFAULT_POLICY)
        assert result.next_tier == "CERTIFIED"
        assert result.eligible_for_upgrade is False
        assert result.blockers == ("Overall compliance score (69%) below 70% threshold",)

    def test_at_threshold_without_issues_is_eligible(self):
        result = evaluate_tier_eligibility("ACCREDITED", 70, [], _details(), DEFAULT_POLICY)
        assert result.eligible_for_upgrade is True
        assert result.blockers == ()

    def test_critical_issues_block_with_count(self):
        issues = [_critical(), _critical("PERS_EXPIRED_LBP")]
        result = evaluate_tier_eligibility("ACCREDITED", 85, issues, _details(), DEFAULT_POLICY)
        assert result.eligible_for_upgrade is False
        assert result.blockers == ("2 critical issue(s) must be resolved",)

    def test_master_roofer_needs_two_verified_licences(self):
        result = evaluate_tier_eligibility("CERTIFIED", 95, [], _details(verified=1), DEFAULT_POLICY)
        assert result.next_tier == "MASTER_ROOFER"
        assert result.blockers == ("Master Roofer requires at least 2 verified LBP holders",)

        result = evaluate_tier_eligibility("CERTIFIED", 95, [], _details(verified=2), DEFAULT_POLICY)
        assert result.eligible_for_upgrade is True

    def test_top_tier_has_no_next_tier(self):
        result = evaluate_tier_eligibility("MASTER_ROOFER", 20, [_critical()], _details(), DEFAULT_POLICY)
        assert result.next_tier is None
        assert result.eligible_for_upgrade is False
        assert result.blockers == ()


class TestEvaluateCompliance:

    def _snapshot(self):
        return _snapshot(
            certification_tier="ACCREDITED",
            policies=_full_accredited_cover(pl_days=25),
            members=(
                MemberSnapshot(role="OWNER", lbp_number="BP1", lbp_verified=True),
                MemberSnapshot(role="STAFF"),
            ),
            documents=tuple(DocumentSnapshot(e, "APPROVED") for e in DEFAULT_POLICY.iso_elements),
            last_completed_audit=AuditSnapshot(audit_id=7, rating="PASS", completed_at=NOW - timedelta(days=10)),
        )

    def test_composes_every_category(self):
        result = evaluate_compliance(self._snapshot(), now=NOW, policy=DEFAULT_POLICY)
        breakdown = result.breakdown
        assert (breakdown.documentation.score, breakdown.insurance.score,
                breakdown.personnel.score, breakdown.audit.score) == (75, 90, 100, 100)
        # 37.5 + 22.5 + 15 + 10
        assert result.overall_score == 85
        assert result.tier_eligibility.eligible_for_upgrade is True
        assert _codes(result.issues) == ["INS_EXPIRING_PUBLIC_LIABILITY"]

    def test_same_snapshot_same_result(self):
        snapshot = self._snapshot()
        first = evaluate_compliance(snapshot, now=NOW, policy=DEFAULT_POLICY)
        second = evaluate_compliance(snapshot, now=NOW, policy=DEFAULT_POLICY)
        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_to_dict_shape(self):
        payload = evaluate_compliance(self._snapshot(), now=NOW, policy=DEFAULT_POLICY).to_dict()
        assert set(payload) == {"organization_id", "overall_score", "status_level",
                                "breakdown", "issues", "tier_eligibility"}
        assert payload["breakdown"]["documentation"]["weight"] == 0.5
        assert payload["issues"][0]["severity"] == "warning"
        assert payload["tier_eligibility"]["next_tier"] == "CERTIFIED"


# ═══════════════════════════════════════════════════════════════════════════
# 6 · Policy validation
# ═══════════════════════════════════════════════════════════════════════════

class TestCompliancePolicy:

    def test_default_tables(self):
        assert DEFAULT_POLICY.frequency_months("ACCREDITED") == 24
        assert DEFAULT_POLICY.frequency_months("MASTER_ROOFER") == 12
        assert DEFAULT_POLICY.due_days_for("MAJOR") == 30
        assert DEFAULT_POLICY.due_days_for("MINOR") == 60
        assert DEFAULT_POLICY.next_tier("ACCREDITED") == "CERTIFIED"
        assert DEFAULT_POLICY.next_tier("MASTER_ROOFER") is None

    def test_category_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            CompliancePolicy(category_weights={
                "documentation": 0.5, "insurance": 0.25, "personnel": 0.15, "audit": 0.05,
            })

    def test_iso_weights_must_be_positive(self):
        weights = dict(DEFAULT_POLICY.iso_element_weights, SERVICING=0)
        with pytest.raises(ValueError, match="SERVICING"):
            CompliancePolicy(iso_element_weights=weights)

    def test_higher_tier_cannot_require_less_cover(self):
        requirements = {t: dict(r) for t, r in DEFAULT_POLICY.insurance_requirements.items()}
        requirements["MASTER_ROOFER"]["PUBLIC_LIABILITY"] = 1_500_000
        with pytest.raises(ValueError, match="PUBLIC_LIABILITY"):
            CompliancePolicy(insurance_requirements=requirements)
