"""Claim-to-code mapping.

Runs the candidate strategies in order, applies the co-change boost,
deduplicates and ranks. Tied top candidates from one ambiguous lookup are
reported as ``ambiguous_suffix_match`` and never collapsed.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol

from docdrift.config import DocDriftConfig
from docdrift.index import CodebaseIndex
from docdrift.learning.co_change import CoChangeStore
from docdrift.mapper.store import MapperStore
from docdrift.mapper.strategies import (
    Candidate,
    direct_reference,
    semantic_search,
    symbol_search,
    wants_semantic_search,
)
from docdrift.models import (
    Claim,
    ClaimMapping,
    MappingMethod,
    MappingStatus,
    TaskType,
    Testability,
)

logger = logging.getLogger(__name__)

TIE_EPSILON = 1e-9

Strategy = Callable[[str, Claim], Awaitable[list[Candidate]]]


class TaskEnqueuer(Protocol):
    async def enqueue(
        self,
        repo_id: str,
        scan_run_id: str,
        task_type: str,
        payload: dict[str, Any],
        lease_seconds: Optional[int] = None,
    ) -> str: ...


@dataclass
class MappingResult:
    """Ranked candidates for one claim."""
    claim_id: str
    mappings: list[ClaimMapping]
    status: str
    ambiguous: list[ClaimMapping] = field(default_factory=list)
    similarities: dict[str, float] = field(default_factory=dict)
    pending_task_id: Optional[str] = None

    @property
    def top(self) -> Optional[ClaimMapping]:
        return self.mappings[0] if self.mappings else None

    @property
    def is_ambiguous(self) -> bool:
        return self.status == MappingStatus.AMBIGUOUS_SUFFIX_MATCH.value


def dedupe_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Keep the highest-confidence candidate per (code_file, code_entity_id)."""
    best: dict[tuple[str, Optional[str]], Candidate] = {}
    for candidate in candidates:
        key = (candidate.code_file, candidate.code_entity_id)
        existing = best.get(key)
        if existing is None or candidate.confidence > existing.confidence:
            best[key] = candidate
    return list(best.values())


def rank_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Confidence descending, then file, then entity id."""
    return sorted(
        candidates,
        key=lambda c: (-c.confidence, c.code_file, c.code_entity_id or ""),
    )


def find_ambiguous(ranked: list[Candidate]) -> list[Candidate]:
    """Top-tied candidates sharing a match key, or an empty list."""
    if len(ranked) < 2:
        return []

    top_confidence = ranked[0].confidence
    tied = [c for c in ranked if abs(c.confidence - top_confidence) <= TIE_EPSILON]

    by_key: dict[str, list[Candidate]] = {}
    for candidate in tied:
        if candidate.match_key:
            by_key.setdefault(candidate.match_key, []).append(candidate)

    for group in by_key.values():
        if len(group) >= 2:
            return group
    return []


def blend_confidence(confidence: float, boost: float, primary_weight: float, co_change_weight: float) -> float:
    return min(max(primary_weight * confidence + co_change_weight * boost, 0.0), 1.0)


class Mapper:
    """Maps claims to ranked code locations."""

    def __init__(
        self,
        index: CodebaseIndex,
        config: DocDriftConfig,
        store: Optional[MapperStore] = None,
        co_change: Optional[CoChangeStore] = None,
        task_queue: Optional[TaskEnqueuer] = None
    ):
        self.index = index
        self.config = config
        self.store = store
        self.co_change = co_change
        self.task_queue = task_queue

    def _strategies(self) -> list[Strategy]:
        mapping = self.config.mapping
        return [
            lambda repo_id, claim: direct_reference(repo_id, claim, self.index, mapping),
            lambda repo_id, claim: symbol_search(repo_id, claim, self.index, mapping),
        ]

    async def _collect(self, repo_id: str, claim: Claim) -> list[Candidate]:
        candidates: list[Candidate] = []
        for strategy in self._strategies():
            candidates.extend(await strategy(repo_id, claim))

        if wants_semantic_search(claim, len(candidates)):
            candidates.extend(await semantic_search(
                repo_id, claim, self.index, self.config.mapping, self.config.embeddings
            ))
        return candidates

    async def _apply_co_change(self, repo_id: str, claim: Claim, candidates: list[Candidate]) -> None:
        if self.co_change is None:
            return

        weights = self.config.mapping.weights
        for candidate in candidates:
            boost = await self.co_change.get_co_change_boost(repo_id, candidate.code_file, claim.source_file)
            candidate.co_change_boost = boost
            candidate.confidence = blend_confidence(candidate.confidence, boost, weights.primary, weights.co_change)

    async def map_claim(self, repo_id: str, claim: Claim, scan_run_id: Optional[str] = None) -> MappingResult:
        """Compute, rank and persist the candidate set for a claim.

        Args:
            repo_id: Repository UUID
            claim: Claim to map
            scan_run_id: Scan that llm_assisted tasks are scoped to

        Returns:
            MappingResult with status mapped, unmapped, ambiguous_suffix_match or manual
        """
        if self.store is not None:
            manual = await self.store.get_manual_mappings(claim.id)
            if manual:
                logger.debug(f"Claim {claim.id} is pinned to {len(manual)} manual mappings")
                return MappingResult(claim_id=claim.id, mappings=manual, status=MappingStatus.MANUAL.value)

        candidates = await self._collect(repo_id, claim)
        similarities = {
            c.code_entity_id: c.confidence
            for c in candidates
            if c.mapping_method == MappingMethod.SEMANTIC_SEARCH.value and c.code_entity_id
        }
        await self._apply_co_change(repo_id, claim, candidates)
        ranked = rank_candidates(dedupe_candidates(candidates))
        tied = find_ambiguous(ranked)

        if tied:
            status = MappingStatus.AMBIGUOUS_SUFFIX_MATCH.value
        elif ranked:
            status = MappingStatus.MAPPED.value
        else:
            status = MappingStatus.UNMAPPED.value

        mappings = [self._to_mapping(repo_id, claim, c) for c in ranked]
        if self.store is not None:
            mappings = await self.store.persist_mappings(repo_id, claim.id, mappings)

        tied_keys = {(c.code_file, c.code_entity_id) for c in tied}
        result = MappingResult(
            claim_id=claim.id,
            mappings=mappings,
            status=status,
            ambiguous=[m for m in mappings if (m.code_file, m.code_entity_id) in tied_keys],
            similarities=similarities,
        )

        if claim.testability == Testability.SEMANTIC.value and (not ranked or tied):
            result.pending_task_id = await self._enqueue_classification(repo_id, claim, ranked, scan_run_id)

        logger.debug(f"Mapped claim {claim.id}: {len(mappings)} candidates, status={status}")
        return result

    def _to_mapping(self, repo_id: str, claim: Claim, candidate: Candidate) -> ClaimMapping:
        return ClaimMapping(
            claim_id=claim.id,
            repo_id=repo_id,
            code_file=candidate.code_file,
            code_entity_id=candidate.code_entity_id,
            confidence=candidate.confidence,
            co_change_boost=candidate.co_change_boost,
            mapping_method=candidate.mapping_method,
        )

    async def _enqueue_classification(
        self,
        repo_id: str,
        claim: Claim,
        ranked: list[Candidate],
        scan_run_id: Optional[str]
    ) -> Optional[str]:
        if self.task_queue is None or scan_run_id is None:
            return None

        max_files = self.config.mapping.max_agent_files_per_claim
        candidate_files = list(dict.fromkeys(c.code_file for c in ranked))[:max_files]
        payload = {
            "claim_id": claim.id,
            "claim_text": claim.claim_text,
            "claim_type": claim.claim_type,
            "source_file": claim.source_file,
            "keywords": claim.keywords,
            "candidate_files": candidate_files,
            "max_files": max_files,
            "token_budget": self.config.mapping.path1_max_evidence_tokens,
        }
        return await self.task_queue.enqueue(
            repo_id=repo_id,
            scan_run_id=scan_run_id,
            task_type=TaskType.CLAIM_CLASSIFICATION.value,
            payload=payload,
        )

    async def refresh_mapping(self, claim: Claim, scan_run_id: Optional[str] = None) -> MappingResult:
        """Drop the computed mappings for a claim and map it again."""
        if self.store is not None:
            await self.store.delete_mappings_for_claim(claim.id)
        return await self.map_claim(claim.repo_id, claim, scan_run_id)

    async def apply_llm_mappings(self, repo_id: str, claim_id: str, result: dict[str, Any]) -> list[ClaimMapping]:
        """Persist the files an agent selected as llm_assisted mappings.

        Re-applying the same result replaces the earlier llm_assisted rows.
        """
        mappings = []
        for selection in result.get("selected", []) or []:
            code_file = selection.get("code_file") if isinstance(selection, dict) else None
            if not code_file:
                continue
            try:
                confidence = float(selection.get("confidence", 0.5))
            except (TypeError, ValueError):
                confidence = 0.5
            mappings.append(ClaimMapping(
                claim_id=claim_id,
                repo_id=repo_id,
                code_file=code_file,
                code_entity_id=selection.get("code_entity_id"),
                confidence=min(max(confidence, 0.0), 1.0),
                mapping_method=MappingMethod.LLM_ASSISTED,
            ))

        if self.store is not None:
            mappings = await self.store.replace_llm_mappings(claim_id, mappings)

        logger.info(f"Applied {len(mappings)} llm_assisted mappings to claim {claim_id}")
        return mappings
