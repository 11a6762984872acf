"""
Compliance Policy Tables

Every lookup table the scoring engine and the audit workflow depend on,
gathered into one injectable, validated value:

  - ISO element weights            (documentation scorer)
  - category weights               (overall score)
  - insurance minimums per tier    (insurance scorer)
  - tier order + score thresholds  (tier eligibility)
  - audit frequency per tier       (next audit due)
  - CAPA due-day offsets           (audit completion)

Usage:
    from portal.services.compliance_policy import current_policy
    policy = current_policy()            # app.config["COMPLIANCE_POLICY"] or DEFAULT_POLICY
    policy.frequency_months("CERTIFIED") # -> 12

Tests and alternative programmes can build their own instance:
    CompliancePolicy(tier_score_thresholds={...})
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from flask import current_app, has_app_context

from portal.models.document import ISO_ELEMENTS
from portal.models.organization import CERTIFICATION_TIERS


# ═════════════════════════════════════════════════════════════════════════════
# Default tables
# ═════════════════════════════════════════════════════════════════════════════

_ISO_ELEMENT_WEIGHTS: dict[str, float] = {
    "QUALITY_POLICY": 1.5,
    "QUALITY_OBJECTIVES": 1.2,
    "ORG_STRUCTURE": 1.0,
    "PROCESS_MANAGEMENT": 1.3,
    "DOCUMENTATION": 1.0,
    "TRAINING_COMPETENCE": 1.4,
    "CONTRACT_REVIEW": 1.0,
    "DOCUMENT_CONTROL": 1.1,
    "PURCHASING": 0.8,
    "CUSTOMER_PRODUCT": 0.9,
    "TRACEABILITY": 1.2,
    "PROCESS_CONTROL": 1.3,
    "INSPECTION_TESTING": 1.4,
    "NONCONFORMING_PRODUCT": 1.1,
    "CORRECTIVE_ACTION": 1.2,
    "HANDLING_STORAGE": 0.7,
    "QUALITY_RECORDS": 1.0,
    "INTERNAL_AUDITS": 1.3,
    "SERVICING": 0.9,
}

_CATEGORY_WEIGHTS: dict[str, float] = {
    "documentation": 0.50,
    "insurance": 0.25,
    "personnel": 0.15,
    "audit": 0.10,
}

# None = policy type not required at that tier
_INSURANCE_REQUIREMENTS: dict[str, dict[str, int | None]] = {
    "ACCREDITED": {
        "PUBLIC_LIABILITY": 1_000_000,
        "PROFESSIONAL_INDEMNITY": 500_000,
        "STATUTORY_LIABILITY": 500_000,
        "EMPLOYERS_LIABILITY": None,
        "MOTOR_VEHICLE": None,
        "CONTRACT_WORKS": None,
    },
    "CERTIFIED": {
        "PUBLIC_LIABILITY": 2_000_000,
        "PROFESSIONAL_INDEMNITY": 1_000_000,
        "STATUTORY_LIABILITY": 1_000_000,
        "EMPLOYERS_LIABILITY": None,
        "MOTOR_VEHICLE": None,
        "CONTRACT_WORKS": None,
    },
    "MASTER_ROOFER": {
        "PUBLIC_LIABILITY": 5_000_000,
        "PROFESSIONAL_INDEMNITY": 2_000_000,
        "STATUTORY_LIABILITY": 1_000_000,
        "EMPLOYERS_LIABILITY": None,
        "MOTOR_VEHICLE": None,
        "CONTRACT_WORKS": None,
    },
}

# Score needed to be promoted INTO the tier
_TIER_SCORE_THRESHOLDS: dict[str, int] = {
    "ACCREDITED": 0,
    "CERTIFIED": 70,
    "MASTER_ROOFER": 90,
}

_AUDIT_FREQUENCY_MONTHS: dict[str, int] = {
    "ACCREDITED": 24,
    "CERTIFIED": 12,
    "MASTER_ROOFER": 12,
}

_CAPA_DUE_DAYS: dict[str, int] = {
    "CRITICAL": 30,
    "MAJOR": 30,
    "MINOR": 60,
}

# Verified licence holders needed to be promoted INTO the tier
_MIN_VERIFIED_LBP: dict[str, int] = {
    "MASTER_ROOFER": 2,
}


# ═════════════════════════════════════════════════════════════════════════════
# Policy value
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CompliancePolicy:
    """Validated bundle of compliance lookup tables.

    Raises:
        ValueError: on construction if the tables are inconsistent
                    (category weights not summing to 1.0, missing or
                    non-positive ISO weights, tiers missing from a table,
                    insurance minimums decreasing with tier).
    """

    iso_elements: tuple[str, ...] = ISO_ELEMENTS
    iso_element_weights: dict[str, float] = field(default_factory=lambda: dict(_ISO_ELEMENT_WEIGHTS))
    critical_element_weight: float = 1.3
    category_weights: dict[str, float] = field(default_factory=lambda: dict(_CATEGORY_WEIGHTS))
    tier_order: tuple[str, ...] = CERTIFICATION_TIERS
    tier_score_thresholds: dict[str, int] = field(default_factory=lambda: dict(_TIER_SCORE_THRESHOLDS))
    insurance_requirements: dict[str, dict[str, int | None]] = field(
        default_factory=lambda: {t: dict(r) for t, r in _INSURANCE_REQUIREMENTS.items()}
    )
    audit_frequency_months: dict[str, int] = field(default_factory=lambda: dict(_AUDIT_FREQUENCY_MONTHS))
    capa_due_days: dict[str, int] = field(default_factory=lambda: dict(_CAPA_DUE_DAYS))
    min_verified_lbp: dict[str, int] = field(default_factory=lambda: dict(_MIN_VERIFIED_LBP))
    follow_up_gap_days: int = 90
    expiry_warning_days: int = 30
    expiry_notice_days: int = 60
    audit_stale_days: int = 365

    def __post_init__(self):
        if set(self.category_weights) != {"documentation", "insurance", "personnel", "audit"}:
            raise ValueError("category_weights must define documentation, insurance, personnel and audit")
        if not math.isclose(sum(self.category_weights.values()), 1.0, abs_tol=1e-9):
            raise ValueError(
                f"category_weights must sum to 1.0 (got {sum(self.category_weights.values())})"
            )

        for element in self.iso_elements:
            weight = self.iso_element_weights.get(element)
            if weight is None or weight <= 0:
                raise ValueError(f"ISO element {element} needs a positive weight")

        if len(set(self.tier_order)) != len(self.tier_order) or not self.tier_order:
            raise ValueError("tier_order must list each tier exactly once")
        for name, table in (
            ("tier_score_thresholds", self.tier_score_thresholds),
            ("insurance_requirements", self.insurance_requirements),
            ("audit_frequency_months", self.audit_frequency_months),
        ):
            missing = [t for t in self.tier_order if t not in table]
            if missing:
                raise ValueError(f"{name} is missing tiers: {', '.join(missing)}")

        # A higher tier may never accept less cover than a lower one
        for lower, higher in zip(self.tier_order, self.tier_order[1:]):
            for policy_type, low_min in self.insurance_requirements[lower].items():
                high_min = self.insurance_requirements[higher].get(policy_type)
                if low_min is not None and (high_min is None or high_min < low_min):
                    raise ValueError(
                        f"{policy_type} minimum for {higher} is below the {lower} minimum"
                    )

    # ── Lookups ──────────────────────────────────────────────────────────

    def element_weight(self, element: str) -> float:
        return self.iso_element_weights[element]

    def requirements_for(self, tier: str) -> dict[str, int | None]:
        return self.insurance_requirements[tier]

    def frequency_months(self, tier: str) -> int:
        """Months between routine audits for ``tier``."""
        return self.audit_frequency_months[tier]

    def next_tier(self, tier: str) -> str | None:
        """Tier directly above ``tier``, or None at the top."""
        idx = self.tier_order.index(tier)
        if idx + 1 < len(self.tier_order):
            return self.tier_order[idx + 1]
        return None

    def threshold_for(self, tier: str) -> int:
        return self.tier_score_thresholds[tier]

    def due_days_for(self, severity: str) -> int:
        """CAPA due-date offset in days; unknown severities get the MINOR window."""
        return self.capa_due_days.get(severity, self.capa_due_days["MINOR"])


DEFAULT_POLICY = CompliancePolicy()


def current_policy() -> CompliancePolicy:
    """Return the policy configured on the app, falling back to DEFAULT_POLICY."""
    if has_app_context():
        configured = current_app.config.get("COMPLIANCE_POLICY")
        if configured is not None:
            return configured
    return DEFAULT_POLICY
