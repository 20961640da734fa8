"""Tier 3: semantic similarity between the claim and mapped entities."""
from __future__ import annotations
import logging
from typing import Optional

from docdrift.config import VerificationConfig
from docdrift.mapper import MappingResult
from docdrift.models import Claim, MappingMethod, Verdict, VerificationResult

logger = logging.getLogger(__name__)

TIER = 3


def semantic_similarities(mapping: MappingResult) -> list[tuple[str, float, str]]:
    """(entity_id, raw similarity, file) for semantic candidates, best first."""
    scored = []
    for m in mapping.mappings:
        if m.mapping_method != MappingMethod.SEMANTIC_SEARCH.value or not m.code_entity_id:
            continue
        similarity = mapping.similarities.get(m.code_entity_id, m.confidence)
        scored.append((m.code_entity_id, similarity, m.code_file))
    scored.sort(key=lambda s: (-s[1], s[2], s[0]))
    return scored


def verify_semantic(
    claim: Claim,
    mapping: Optional[MappingResult],
    config: VerificationConfig,
    contradictions: Optional[list[str]] = None
) -> Optional[VerificationResult]:
    """Verify when one semantic candidate clearly stands out.

    The top similarity must reach ``semantic_verify_threshold`` and the
    runner-up must trail by more than ``semantic_ambiguity_margin``. Any
    tier-2 contradiction blocks the verdict. Only ``verified`` is ever
    produced here; everything else escalates.
    """
    if mapping is None or mapping.is_ambiguous or contradictions:
        return None

    scored = semantic_similarities(mapping)
    if not scored:
        return None

    entity_id, top_similarity, code_file = scored[0]
    if top_similarity < config.semantic_verify_threshold:
        return None
    if len(scored) > 1 and top_similarity - scored[1][1] <= config.semantic_ambiguity_margin:
        logger.debug(
            f"Claim {claim.id}: semantic runner-up within {config.semantic_ambiguity_margin} of top, escalating"
        )
        return None

    return VerificationResult(
        claim_id=claim.id,
        repo_id=claim.repo_id,
        verdict=Verdict.VERIFIED.value,
        confidence=min(max(top_similarity, 0.0), 1.0),
        tier=TIER,
        reasoning=f"Claim closely matches '{code_file}' (similarity {top_similarity:.2f}).",
        evidence_files=[code_file],
    )
