"""Tier-4 routing and evidence assembly.

Path 1 hands the agent a compact, pre-built evidence bundle for a small
single-file mapping. Path 2 hands it candidate files and keywords to explore.
"""
from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from docdrift.config import DocDriftConfig
from docdrift.index import CodebaseIndex
from docdrift.models import Claim, ClaimMapping, CodeEntity

logger = logging.getLogger(__name__)

AVG_CHARS_PER_LINE = 60
AVG_IMPORT_LINE_CHARS = 80


class LineCounter(Protocol):
    async def get_entity_line_count(self, mapping_id: str) -> Optional[int]: ...


@dataclass
class RoutingDecision:
    claim_id: str
    path: int
    reason: str
    entity_token_estimate: Optional[int] = None


@dataclass
class FormattedEvidence:
    """Evidence text for an agent prompt plus what went into it."""
    formatted_evidence: str
    metadata: dict[str, Any] = field(default_factory=dict)


def estimate_tokens(line_count: int, chars_per_token: int) -> int:
    return math.ceil(line_count * AVG_CHARS_PER_LINE / chars_per_token)


async def route_claim(
    claim: Claim,
    mappings: list[ClaimMapping],
    store: LineCounter,
    config: DocDriftConfig
) -> RoutingDecision:
    """Choose Path 1 or Path 2 for a claim headed to tier 4.

    Args:
        claim: Claim being verified
        mappings: Current mappings for the claim
        store: Source of entity line counts (usually MapperStore)
        config: Full configuration

    Returns:
        RoutingDecision with the path, reason and token estimate
    """
    def path2(reason: str, estimate: Optional[int] = None) -> RoutingDecision:
        return RoutingDecision(claim_id=claim.id, path=2, reason=reason, entity_token_estimate=estimate)

    if not mappings:
        return path2("no_mapping")

    if len({m.code_file for m in mappings}) > 1:
        return path2("multi_file")

    entity_mappings = [m for m in mappings if m.code_entity_id]
    if not entity_mappings:
        return path2("file_only_mapping")

    chars_per_token = config.verification.chars_per_token
    total = 0
    for mapping in entity_mappings:
        line_count = await store.get_entity_line_count(mapping.id)
        if line_count is None:
            return path2("file_only_mapping")
        total += estimate_tokens(line_count, chars_per_token)

    total += config.verification.path1_max_import_lines * chars_per_token

    if total > config.mapping.path1_max_evidence_tokens:
        return path2("evidence_too_large", total)

    reason = "single_entity_mapped" if len(entity_mappings) == 1 else "multi_entity_small"
    return RoutingDecision(claim_id=claim.id, path=1, reason=reason, entity_token_estimate=total)


def _referenced_types(target: CodeEntity, entities: list[CodeEntity], limit: int) -> list[CodeEntity]:
    return [
        e for e in entities
        if e.entity_type == "type" and e.id != target.id
        and (e.name in target.raw_code or e.name in target.signature)
    ][:limit]


async def build_path1_evidence(
    claim: Claim,
    mappings: list[ClaimMapping],
    index: CodebaseIndex,
    config: DocDriftConfig
) -> FormattedEvidence:
    """Format the mapped entity with its file's imports and referenced types.

    Raises:
        ValueError: If no mapping points at an entity, or the entity is gone
    """
    entity_mappings = sorted(
        (m for m in mappings if m.code_entity_id),
        key=lambda m: -m.confidence,
    )
    if not entity_mappings:
        raise ValueError("Path 1 evidence requires an entity mapping")

    primary = entity_mappings[0]
    file_path = primary.code_file
    verification = config.verification
    chars_per_token = verification.chars_per_token

    entities = await index.get_entities_by_file(claim.repo_id, file_path)
    target = next((e for e in entities if e.id == primary.code_entity_id), None)
    if target is None:
        raise ValueError(f"Mapped entity {primary.code_entity_id} not found in {file_path}")

    entity_code = target.raw_code or target.signature
    entity_tokens = math.ceil(len(entity_code) / chars_per_token)

    import_entities = [
        e for e in entities
        if e.line_number <= verification.path1_max_import_lines and e.id != target.id
    ]
    imports_text = '\n'.join(
        text for text in (e.signature or e.raw_code for e in import_entities) if text
    )[:verification.path1_max_import_lines * AVG_IMPORT_LINE_CHARS]
    imports_tokens = math.ceil(len(imports_text) / chars_per_token)

    type_entities = _referenced_types(target, entities, verification.path1_max_type_signatures)
    type_lines = '\n'.join(e.signature for e in type_entities if e.signature).split('\n')
    types_text = '\n'.join(type_lines[:verification.path1_max_type_lines]).strip()

    parts = [f"--- File: {file_path} ---", ""]
    if imports_text:
        parts += ["// Imports", imports_text, ""]
    if types_text:
        parts += ["// Type Signatures", types_text, ""]
    parts.append(f"// Entity: {target.name} (lines {target.line_number}-{target.end_line_number})")
    parts.append(entity_code)

    return FormattedEvidence(
        formatted_evidence='\n'.join(parts),
        metadata={
            "path": 1,
            "file_path": file_path,
            "entity_name": target.name,
            "entity_lines": [target.line_number, target.end_line_number],
            "entity_token_estimate": entity_tokens,
            "imports_token_estimate": imports_tokens,
            "total_token_estimate": entity_tokens + imports_tokens + math.ceil(len(types_text) / chars_per_token),
        },
    )


async def build_path2_evidence(
    claim: Claim,
    mappings: list[ClaimMapping],
    index: CodebaseIndex,
    config: DocDriftConfig
) -> FormattedEvidence:
    """List candidate files, keywords and entity signatures for exploration."""
    max_files = config.mapping.max_agent_files_per_claim
    candidate_files = list(dict.fromkeys(m.code_file for m in mappings))[:max_files]

    signatures = []
    for mapping in mappings:
        if not mapping.code_entity_id or mapping.code_file not in candidate_files:
            continue
        entity = await index.get_entity_by_id(mapping.code_entity_id)
        if entity is not None and entity.signature:
            signatures.append(f"{entity.file_path}: {entity.signature}")

    parts = ["--- Candidate Files ---"]
    parts += candidate_files or ["(none mapped; search the repository)"]
    if claim.keywords:
        parts += ["", "--- Keywords ---", ", ".join(claim.keywords)]
    if signatures:
        parts += ["", "--- Entity Signatures ---", *signatures]

    return FormattedEvidence(
        formatted_evidence='\n'.join(parts),
        metadata={
            "path": 2,
            "candidate_files": candidate_files,
            "keywords": list(claim.keywords),
            "max_files": max_files,
        },
    )
