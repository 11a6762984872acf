"""
Compliance Rules — pure scoring functions over an OrganizationSnapshot.

Four independent category scorers feed the tier eligibility evaluator:

    score_documentation   ISO element coverage (weighted)
    score_insurance       cover held vs. the tier's minimums
    score_personnel       owner, licence holders, staff depth
    score_audit           last audit rating, staleness, overdue CAPAs

Each scorer returns its category result and appends ComplianceIssue records
to a shared list.  Nothing here touches the database or raises for business
conditions: a problem with the organization is an issue, not an exception.

Usage:
    from portal.services.compliance_rules import evaluate_compliance
    result = evaluate_compliance(snapshot, now=utcnow(), policy=current_policy())
    if not result.tier_eligibility.eligible_for_upgrade:
        ...
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from portal.services.compliance_policy import CompliancePolicy
from portal.services.snapshot import OrganizationSnapshot


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IssueCategory(str, Enum):
    DOCUMENTATION = "documentation"
    INSURANCE = "insurance"
    PERSONNEL = "personnel"
    AUDIT = "audit"


# Baseline audit score by the rating of the last completed audit
RATING_BASELINES: dict[str, int] = {
    "PASS": 100,
    "PASS_WITH_OBSERVATIONS": 85,
    "CONDITIONAL_PASS": 60,
    "FAIL": 30,
}
NO_AUDIT_BASELINE = 50


# ═════════════════════════════════════════════════════════════════════════════
# Result types
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ComplianceIssue:
    category: IssueCategory
    severity: IssueSeverity
    code: str
    message: str
    element: str | None = None
    action_required: str | None = None

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "element": self.element,
            "action_required": self.action_required,
        }


@dataclass(frozen=True)
class ElementScore:
    element: str
    status: str
    score: int
    weight: float
    document_count: int
    has_approved_doc: bool

    def to_dict(self) -> dict:
        return {
            "element": self.element,
            "status": self.status,
            "score": self.score,
            "weight": self.weight,
            "document_count": self.document_count,
            "has_approved_doc": self.has_approved_doc,
        }


@dataclass(frozen=True)
class PolicyScore:
    policy_type: str
    required: bool
    minimum_coverage: int | None
    actual_coverage: Decimal | None
    is_valid: bool
    expires_in_days: int | None
    score: int

    def to_dict(self) -> dict:
        return {
            "type": self.policy_type,
            "required": self.required,
            "minimum_coverage": self.minimum_coverage,
            "actual_coverage": float(self.actual_coverage) if self.actual_coverage is not None else None,
            "is_valid": self.is_valid,
            "expires_in_days": self.expires_in_days,
            "score": self.score,
        }


@dataclass(frozen=True)
class PersonnelDetails:
    total_members: int
    has_owner: bool
    lbp_verified_count: int
    lbp_pending_count: int
    lbp_expired_count: int

    def to_dict(self) -> dict:
        return {
            "total_members": self.total_members,
            "has_owner": self.has_owner,
            "lbp_verified_count": self.lbp_verified_count,
            "lbp_pending_count": self.lbp_pending_count,
            "lbp_expired_count": self.lbp_expired_count,
        }


@dataclass(frozen=True)
class AuditDetails:
    last_audit_date: datetime | None
    last_audit_rating: str | None
    days_since_last_audit: int | None
    open_capa_count: int
    overdue_capa_count: int

    def to_dict(self) -> dict:
        return {
            "last_audit_date": self.last_audit_date.isoformat() if self.last_audit_date else None,
            "last_audit_rating": self.last_audit_rating,
            "days_since_last_audit": self.days_since_last_audit,
            "open_capa_count": self.open_capa_count,
            "overdue_capa_count": self.overdue_capa_count,
        }


@dataclass(frozen=True)
class DocumentationResult:
    score: int
    elements: tuple[ElementScore, ...] = ()


@dataclass(frozen=True)
class InsuranceResult:
    score: int
    policies: tuple[PolicyScore, ...] = ()


@dataclass(frozen=True)
class PersonnelResult:
    score: int
    details: PersonnelDetails


@dataclass(frozen=True)
class AuditResult:
    score: int
    details: AuditDetails


@dataclass(frozen=True)
class TierEligibility:
    current_tier: str
    eligible_for_upgrade: bool
    next_tier: str | None = None
    blockers: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "current_tier": self.current_tier,
            "eligible_for_upgrade": self.eligible_for_upgrade,
            "next_tier": self.next_tier,
            "blockers": list(self.blockers),
        }


@dataclass(frozen=True)
class ComplianceBreakdown:
    documentation: DocumentationResult
    insurance: InsuranceResult
    personnel: PersonnelResult
    audit: AuditResult
    weights: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "documentation": {
                "score": self.documentation.score,
                "weight": self.weights.get("documentation"),
                "elements": [e.to_dict() for e in self.documentation.elements],
            },
            "insurance": {
                "score": self.insurance.score,
                "weight": self.weights.get("insurance"),
                "policies": [p.to_dict() for p in self.insurance.policies],
            },
            "personnel": {
                "score": self.personnel.score,
                "weight": self.weights.get("personnel"),
                "details": self.personnel.details.to_dict(),
            },
            "audit": {
                "score": self.audit.score,
                "weight": self.weights.get("audit"),
                "details": self.audit.details.to_dict(),
            },
        }


@dataclass(frozen=True)
class ComplianceResult:
    organization_id: int
    overall_score: int
    breakdown: ComplianceBreakdown
    issues: tuple[ComplianceIssue, ...]
    tier_eligibility: TierEligibility

    @property
    def status_level(self) -> str:
        return compliance_status_level(self.overall_score)

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "overall_score": self.overall_score,
            "status_level": self.status_level,
            "breakdown": self.breakdown.to_dict(),
            "issues": [i.to_dict() for i in self.issues],
            "tier_eligibility": self.tier_eligibility.to_dict(),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

_SECONDS_PER_DAY = 86400


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 away from zero for non-negative input."""
    return int(math.floor(value + 0.5))


def clamp_score(value: float) -> int:
    return max(0, min(100, int(value)))


def _days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / _SECONDS_PER_DAY)


def _days_since(moment: datetime, now: datetime) -> int:
    return math.floor((now - moment).total_seconds() / _SECONDS_PER_DAY)


def _money(amount) -> str:
    return f"${amount:,.0f}"


def _tier_label(tier: str) -> str:
    return tier.replace("_", " ").title()


def compliance_status_level(score: int) -> str:
    """Traffic-light level for dashboards: compliant / at-risk / critical."""
    if score >= 90:
        return "compliant"
    if score >= 70:
        return "at-risk"
    return "critical"


# ═════════════════════════════════════════════════════════════════════════════
# Category scorers
# ═════════════════════════════════════════════════════════════════════════════

def score_documentation(
    snapshot: OrganizationSnapshot,
    issues: list[ComplianceIssue],
    policy: CompliancePolicy,
) -> DocumentationResult:
    """Weighted ISO element coverage.

    Per element, first match wins:
        assessment exists        -> its score and status
        >= 1 APPROVED document   -> 75, PARTIAL
        any document             -> 25, PARTIAL
        nothing                  -> 0, NOT_ASSESSED
    """
    assessments = {a.iso_element: a for a in snapshot.assessments}

    elements: list[ElementScore] = []
    weighted_sum = 0.0
    total_weight = 0.0

    for element in policy.iso_elements:
        weight = policy.element_weight(element)
        docs = [d for d in snapshot.documents if d.iso_element == element]
        has_approved = any(d.status == "APPROVED" for d in docs)
        assessment = assessments.get(element)

        if assessment is not None:
            score, status = assessment.score, assessment.status
        elif has_approved:
            score, status = 75, "PARTIAL"
        elif docs:
            score, status = 25, "PARTIAL"
        else:
            score, status = 0, "NOT_ASSESSED"

        if score == 0:
            critical_element = weight >= policy.critical_element_weight
            issues.append(ComplianceIssue(
                category=IssueCategory.DOCUMENTATION,
                severity=IssueSeverity.WARNING if critical_element else IssueSeverity.INFO,
                code=f"DOC_MISSING_{element}",
                message=f"No documentation for {element.replace('_', ' ').lower()}",
                element=element,
                action_required="Upload and approve a document for this ISO element",
            ))
        elif score < 50 and not has_approved:
            issues.append(ComplianceIssue(
                category=IssueCategory.DOCUMENTATION,
                severity=IssueSeverity.INFO,
                code=f"DOC_PENDING_{element}",
                message=f"Documentation for {element.replace('_', ' ').lower()} awaiting approval",
                element=element,
                action_required="Submit the document for approval",
            ))

        elements.append(ElementScore(
            element=element,
            status=status,
            score=score,
            weight=weight,
            document_count=len(docs),
            has_approved_doc=has_approved,
        ))
        weighted_sum += score * weight
        total_weight += weight

    overall = round_half_up(weighted_sum / total_weight) if total_weight > 0 else 0
    return DocumentationResult(score=clamp_score(overall), elements=tuple(elements))


def score_insurance(
    snapshot: OrganizationSnapshot,
    issues: list[ComplianceIssue],
    policy: CompliancePolicy,
    now: datetime,
) -> InsuranceResult:
    """Cover held against the minimums for the organization's current tier.

    Policy types the tier does not require are reported with score 0 and
    is_valid False, and never counted towards the mean.  A held policy is
    valid only when its cover meets the tier minimum.
    """
    requirements = policy.requirements_for(snapshot.certification_tier)
    valid_policies = [p for p in snapshot.policies if p.expiry_date > now]

    scored: list[PolicyScore] = []
    for policy_type, minimum in requirements.items():
        required = minimum is not None
        held = next((p for p in valid_policies if p.policy_type == policy_type), None)
        label = policy_type.replace("_", " ").lower()

        if held is None:
            if required:
                issues.append(ComplianceIssue(
                    category=IssueCategory.INSURANCE,
                    severity=IssueSeverity.CRITICAL,
                    code=f"INS_MISSING_{policy_type}",
                    message=f"No valid {label} insurance (minimum {_money(minimum)} required)",
                    action_required="Upload a current insurance certificate",
                ))
            scored.append(PolicyScore(
                policy_type=policy_type,
                required=required,
                minimum_coverage=minimum,
                actual_coverage=None,
                is_valid=False,
                expires_in_days=None,
                score=0,
            ))
            continue

        expires_in = _days_until(held.expiry_date, now)
        if not required:
            score = 0
        elif held.coverage_amount >= minimum:
            score = 100
            if expires_in <= policy.expiry_warning_days:
                score = 70
                issues.append(ComplianceIssue(
                    category=IssueCategory.INSURANCE,
                    severity=IssueSeverity.WARNING,
                    code=f"INS_EXPIRING_{policy_type}",
                    message=f"{label.capitalize()} insurance expires in {expires_in} days",
                    action_required="Renew the policy before it lapses",
                ))
            elif expires_in <= policy.expiry_notice_days:
                score = 85
                issues.append(ComplianceIssue(
                    category=IssueCategory.INSURANCE,
                    severity=IssueSeverity.INFO,
                    code=f"INS_EXPIRING_SOON_{policy_type}",
                    message=f"{label.capitalize()} insurance expires in {expires_in} days",
                    action_required="Plan the policy renewal",
                ))
        else:
            score = 50
            issues.append(ComplianceIssue(
                category=IssueCategory.INSURANCE,
                severity=IssueSeverity.WARNING,
                code=f"INS_INSUFFICIENT_{policy_type}",
                message=(
                    f"{label.capitalize()} cover of {_money(held.coverage_amount)} "
                    f"is below the required {_money(minimum)}"
                ),
                action_required="Increase the cover to meet the tier minimum",
            ))

        scored.append(PolicyScore(
            policy_type=policy_type,
            required=required,
            minimum_coverage=minimum,
            actual_coverage=held.coverage_amount,
            is_valid=required and held.coverage_amount >= minimum,
            expires_in_days=expires_in,
            score=score,
        ))

    required_scores = [p.score for p in scored if p.required]
    overall = round_half_up(sum(required_scores) / len(required_scores)) if required_scores else 100
    return InsuranceResult(score=clamp_score(overall), policies=tuple(scored))


def score_personnel(
    snapshot: OrganizationSnapshot,
    issues: list[ComplianceIssue],
    now: datetime,
) -> PersonnelResult:
    """Additive points: owner 30, licence holders up to 50, staff depth up to 20."""
    members = snapshot.members
    has_owner = any(m.role == "OWNER" for m in members)
    holders = [m for m in members if m.lbp_number]
    verified = [m for m in holders if m.lbp_verified]
    pending = [m for m in holders if not m.lbp_verified and m.lbp_status != "CURRENT"]
    expired = [m for m in members if m.lbp_expiry is not None and m.lbp_expiry < now]

    score = 0

    if has_owner:
        score += 30
    else:
        issues.append(ComplianceIssue(
            category=IssueCategory.PERSONNEL,
            severity=IssueSeverity.WARNING,
            code="PERS_NO_OWNER",
            message="No owner recorded for the organization",
            action_required="Assign the OWNER role to a member",
        ))

    if holders:
        if len(verified) == len(holders):
            score += 50
        elif verified:
            score += 30
            issues.append(ComplianceIssue(
                category=IssueCategory.PERSONNEL,
                severity=IssueSeverity.WARNING,
                code="PERS_UNVERIFIED_LBP",
                message=f"{len(pending)} LBP licence(s) pending verification",
                action_required="Verify outstanding LBP numbers",
            ))
        else:
            score += 15
            issues.append(ComplianceIssue(
                category=IssueCategory.PERSONNEL,
                severity=IssueSeverity.WARNING,
                code="PERS_NO_VERIFIED_LBP",
                message="No LBP licences have been verified",
                action_required="Verify LBP numbers against the public register",
            ))
    else:
        issues.append(ComplianceIssue(
            category=IssueCategory.PERSONNEL,
            severity=IssueSeverity.WARNING,
            code="PERS_NO_LBP",
            message="No Licensed Building Practitioners on staff",
            action_required="Add at least one member with an LBP number",
        ))

    # Flat penalty regardless of how many licences have lapsed
    if expired:
        score -= 10
        issues.append(ComplianceIssue(
            category=IssueCategory.PERSONNEL,
            severity=IssueSeverity.CRITICAL,
            code="PERS_EXPIRED_LBP",
            message=f"{len(expired)} LBP licence(s) have expired",
            action_required="Renew expired licences or update member records",
        ))

    if len(members) >= 2:
        score += 20
    elif len(members) == 1:
        score += 10
        issues.append(ComplianceIssue(
            category=IssueCategory.PERSONNEL,
            severity=IssueSeverity.INFO,
            code="PERS_SINGLE_STAFF",
            message="Only one member recorded",
            action_required="Record all staff members",
        ))

    details = PersonnelDetails(
        total_members=len(members),
        has_owner=has_owner,
        lbp_verified_count=len(verified),
        lbp_pending_count=len(pending),
        lbp_expired_count=len(expired),
    )
    return PersonnelResult(score=clamp_score(score), details=details)


def score_audit(
    snapshot: OrganizationSnapshot,
    issues: list[ComplianceIssue],
    policy: CompliancePolicy,
    now: datetime,
) -> AuditResult:
    """Last audit outcome, staleness and overdue corrective actions."""
    last = snapshot.last_completed_audit
    days_since = None

    if last is None:
        score = NO_AUDIT_BASELINE
        issues.append(ComplianceIssue(
            category=IssueCategory.AUDIT,
            severity=IssueSeverity.INFO,
            code="AUDIT_NONE",
            message="No completed audit on record",
            action_required="Schedule an initial certification audit",
        ))
    else:
        score = RATING_BASELINES.get(last.rating, 100)
        if last.rating == "CONDITIONAL_PASS":
            issues.append(ComplianceIssue(
                category=IssueCategory.AUDIT,
                severity=IssueSeverity.WARNING,
                code="AUDIT_CONDITIONAL",
                message="Last audit was a conditional pass",
                action_required="Close out the audit's corrective actions",
            ))
        elif last.rating == "FAIL":
            issues.append(ComplianceIssue(
                category=IssueCategory.AUDIT,
                severity=IssueSeverity.CRITICAL,
                code="AUDIT_FAILED",
                message="Last audit failed",
                action_required="Resolve non-conformities and complete the follow-up audit",
            ))

        if last.completed_at is not None:
            days_since = _days_since(last.completed_at, now)
            if days_since > policy.audit_stale_days:
                score -= 20
                issues.append(ComplianceIssue(
                    category=IssueCategory.AUDIT,
                    severity=IssueSeverity.WARNING,
                    code="AUDIT_OVERDUE",
                    message=f"Last audit was {days_since} days ago",
                    action_required="Schedule a surveillance audit",
                ))

    open_count = sum(1 for c in snapshot.capa_records if c.status in ("OPEN", "IN_PROGRESS"))
    overdue_count = sum(1 for c in snapshot.capa_records if c.status == "OVERDUE")
    if overdue_count:
        score -= 10 * overdue_count
        issues.append(ComplianceIssue(
            category=IssueCategory.AUDIT,
            severity=IssueSeverity.CRITICAL,
            code="CAPA_OVERDUE",
            message=f"{overdue_count} corrective action(s) overdue",
            action_required="Complete overdue corrective actions",
        ))

    details = AuditDetails(
        last_audit_date=last.completed_at if last else None,
        last_audit_rating=last.rating if last else None,
        days_since_last_audit=days_since,
        open_capa_count=open_count,
        overdue_capa_count=overdue_count,
    )
    return AuditResult(score=clamp_score(score), details=details)


# ═════════════════════════════════════════════════════════════════════════════
# Composition
# ═════════════════════════════════════════════════════════════════════════════

def combine_scores(
    documentation: int,
    insurance: int,
    personnel: int,
    audit: int,
    policy: CompliancePolicy,
) -> int:
    """Weighted overall score, rounded half-up."""
    w = policy.category_weights
    raw = (
        documentation * w["documentation"]
        + insurance * w["insurance"]
        + personnel * w["personnel"]
        + audit * w["audit"]
    )
    return clamp_score(round_half_up(raw))


def evaluate_tier_eligibility(
    current_tier: str,
    overall_score: int,
    issues: list[ComplianceIssue] | tuple[ComplianceIssue, ...],
    personnel: PersonnelDetails,
    policy: CompliancePolicy,
) -> TierEligibility:
    """Can the organization move up one tier?  Blockers explain why not."""
    next_tier = policy.next_tier(current_tier)
    if next_tier is None:
        return TierEligibility(current_tier=current_tier, eligible_for_upgrade=False)

    blockers: list[str] = []

    required = policy.threshold_for(next_tier)
    if overall_score < required:
        blockers.append(f"Overall compliance score ({overall_score}%) below {required}% threshold")

    critical_count = sum(1 for i in issues if i.severity == IssueSeverity.CRITICAL)
    if critical_count:
        blockers.append(f"{critical_count} critical issue(s) must be resolved")

    min_verified = policy.min_verified_lbp.get(next_tier, 0)
    if personnel.lbp_verified_count < min_verified:
        blockers.append(
            f"{_tier_label(next_tier)} requires at least {min_verified} verified LBP holders"
        )

    return TierEligibility(
        current_tier=current_tier,
        eligible_for_upgrade=not blockers,
        next_tier=next_tier,
        blockers=tuple(blockers),
    )


def evaluate_compliance(
    snapshot: OrganizationSnapshot,
    *,
    now: datetime,
    policy: CompliancePolicy,
) -> ComplianceResult:
    """Run every scorer over ``snapshot`` and compose the result."""
    issues: list[ComplianceIssue] = []

    documentation = score_documentation(snapshot, issues, policy)
    insurance = score_insurance(snapshot, issues, policy, now)
    personnel = score_personnel(snapshot, issues, now)
    audit = score_audit(snapshot, issues, policy, now)

    overall = combine_scores(
        documentation.score, insurance.score, personnel.score, audit.score, policy,
    )
    eligibility = evaluate_tier_eligibility(
        snapshot.certification_tier, overall, issues, personnel.details, policy,
    )

    return ComplianceResult(
        organization_id=snapshot.organization_id,
        overall_score=overall,
        breakdown=ComplianceBreakdown(
            documentation=documentation,
            insurance=insurance,
            personnel=personnel,
            audit=audit,
            weights=dict(policy.category_weights),
        ),
        issues=tuple(issues),
        tier_eligibility=eligibility,
    )
