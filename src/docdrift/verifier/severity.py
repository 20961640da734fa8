"""Severity assignment for drifted results."""
from __future__ import annotations
from typing import Optional

from docdrift.models import ClaimType, Severity, Verdict, VerificationResult

SEVERITY_ORDER = [Severity.LOW.value, Severity.MEDIUM.value, Severity.HIGH.value]

BASE_SEVERITY = {
    ClaimType.DEPENDENCY_VERSION.value: Severity.HIGH.value,
    ClaimType.COMMAND.value: Severity.HIGH.value,
    ClaimType.API_ROUTE.value: Severity.HIGH.value,
    ClaimType.PATH_REFERENCE.value: Severity.HIGH.value,
    ClaimType.URL_REFERENCE.value: Severity.HIGH.value,
    ClaimType.CODE_EXAMPLE.value: Severity.MEDIUM.value,
    ClaimType.CONFIG.value: Severity.MEDIUM.value,
    ClaimType.ENVIRONMENT.value: Severity.MEDIUM.value,
    ClaimType.BEHAVIOR.value: Severity.MEDIUM.value,
    ClaimType.ARCHITECTURE.value: Severity.MEDIUM.value,
    ClaimType.CONVENTION.value: Severity.LOW.value,
}

SEMANTIC_TIERS = (3, 4)


def _shift(severity: str, steps: int) -> str:
    index = SEVERITY_ORDER.index(severity) + steps
    return SEVERITY_ORDER[min(max(index, 0), len(SEVERITY_ORDER) - 1)]


def assign_severity(result: VerificationResult, claim_type: str) -> Optional[str]:
    """Severity for a result.

    Explicit severities are kept. Drifted results without one get the base
    for the claim type, shifted by confidence for tiers 3 and 4.
    """
    if result.verdict != Verdict.DRIFTED.value:
        return result.severity
    if result.severity:
        return result.severity

    severity = BASE_SEVERITY.get(claim_type, Severity.MEDIUM.value)
    if result.tier in SEMANTIC_TIERS:
        if result.confidence < 0.5:
            severity = _shift(severity, -1)
        elif result.confidence >= 0.9:
            severity = _shift(severity, 1)
    return severity


def meets_min_severity(severity: Optional[str], min_severity: str) -> bool:
    """Whether a finding is at or above the configured minimum.

    Results without a severity (verified, uncertain) always pass.
    """
    if severity is None:
        return True
    return SEVERITY_ORDER.index(severity) >= SEVERITY_ORDER.index(min_severity)
