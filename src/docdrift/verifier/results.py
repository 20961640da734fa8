"""Construction helpers for deterministic verification results."""
from __future__ import annotations
from typing import Optional

from docdrift.models import Claim, Verdict, VerificationResult

UNCERTAIN_CONFIDENCE = 0.5


def make_result(
    claim: Claim,
    verdict: str,
    reasoning: str,
    evidence_files: Optional[list[str]] = None,
    severity: Optional[str] = None,
    specific_mismatch: Optional[str] = None,
    suggested_fix: Optional[str] = None,
    tier: int = 1,
    confidence: Optional[float] = None
) -> VerificationResult:
    """Result for tiers 1 and 2: confidence 1.0, or 0.5 when uncertain."""
    if confidence is None:
        confidence = UNCERTAIN_CONFIDENCE if verdict == Verdict.UNCERTAIN.value else 1.0
    return VerificationResult(
        claim_id=claim.id,
        repo_id=claim.repo_id,
        verdict=verdict,
        confidence=confidence,
        tier=tier,
        severity=severity,
        reasoning=reasoning,
        specific_mismatch=specific_mismatch,
        suggested_fix=suggested_fix,
        evidence_files=evidence_files or [],
    )


def replace_in_claim(claim: Claim, old: str, new: str) -> str:
    """Claim text with the first occurrence of ``old`` replaced."""
    return claim.claim_text.replace(old, new, 1)
