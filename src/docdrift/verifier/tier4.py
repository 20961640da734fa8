"""Tier 4: LLM-assisted verification through the agent task queue."""
from __future__ import annotations
import logging
import uuid
from typing import Any, Optional, Protocol

from docdrift.agent.processor import TaskProcessor, execute_task
from docdrift.config import DocDriftConfig
from docdrift.index import CodebaseIndex
from docdrift.mapper import MappingResult
from docdrift.models import AgentTask, Claim, TaskType, Verdict, VerificationResult
from docdrift.verifier.routing import (
    LineCounter,
    build_path1_evidence,
    build_path2_evidence,
    route_claim,
)

logger = logging.getLogger(__name__)

TIER = 4

# Result ids derive from task ids so re-applying a task is a no-op
RESULT_NAMESPACE = uuid.UUID("6f1c5a8e-3b0d-4f6e-9a57-2c8d1e4b7f30")


class TaskQueue(Protocol):
    worker_id: str

    def for_worker(self, worker_id: str) -> TaskQueue: ...

    async def enqueue(
        self,
        repo_id: str,
        scan_run_id: str,
        task_type: str,
        payload: Optional[dict[str, Any]] = None,
        lease_seconds: Optional[int] = None
    ) -> str: ...

    async def claim(self, task_id: str) -> Optional[AgentTask]: ...

    async def complete(self, task_id: str, result: dict[str, Any]) -> bool: ...

    async def fail(self, task_id: str, error: str, error_detail: Optional[dict] = None) -> Optional[str]: ...


def result_id_for_task(task_id: str) -> str:
    return str(uuid.uuid5(RESULT_NAMESPACE, str(task_id)))


def claim_payload(claim: Claim) -> dict[str, Any]:
    """Claim as stored on a task; the embedding is left out."""
    return claim.model_dump(mode="json", exclude={"embedding"})


def result_from_agent(claim: Claim, task_id: str, scan_run_id: Optional[str], data: dict[str, Any]) -> VerificationResult:
    """Build a tier-4 result from a completed verification task's result."""
    metadata = data.get("metadata") or {}
    return VerificationResult(
        id=result_id_for_task(task_id),
        claim_id=claim.id,
        repo_id=claim.repo_id,
        scan_run_id=scan_run_id,
        verdict=data.get("verdict", Verdict.UNCERTAIN.value),
        confidence=min(max(float(data.get("confidence", 0.0)), 0.0), 1.0),
        tier=TIER,
        severity=data.get("severity") if data.get("verdict") == Verdict.DRIFTED.value else None,
        reasoning=data.get("reasoning"),
        specific_mismatch=data.get("specific_mismatch"),
        suggested_fix=data.get("suggested_fix"),
        evidence_files=list(data.get("evidence_files") or []),
        token_cost=metadata.get("tokens_used"),
        duration_ms=metadata.get("duration_ms"),
        verification_path=data.get("verification_path"),
    )


class Tier4Verifier:
    """Routes a claim, enqueues a verification task and, inline, runs it."""

    def __init__(
        self,
        index: CodebaseIndex,
        config: DocDriftConfig,
        queue: TaskQueue,
        line_counter: LineCounter,
        processor: Optional[TaskProcessor] = None
    ):
        self.index = index
        self.config = config
        self.queue = queue
        self.line_counter = line_counter
        self.processor = processor or TaskProcessor(config)

    async def build_payload(self, claim: Claim, mapping: Optional[MappingResult]) -> dict[str, Any]:
        mappings = mapping.mappings if mapping else []
        decision = await route_claim(claim, mappings, self.line_counter, self.config)

        if decision.path == 1:
            try:
                evidence = await build_path1_evidence(claim, mappings, self.index, self.config)
            except ValueError as e:
                logger.warning(f"Claim {claim.id}: Path 1 evidence unavailable ({e}); using Path 2")
                decision.path, decision.reason = 2, "file_only_mapping"
                evidence = await build_path2_evidence(claim, mappings, self.index, self.config)
        else:
            evidence = await build_path2_evidence(claim, mappings, self.index, self.config)

        logger.debug(f"Claim {claim.id} routed to Path {decision.path} ({decision.reason})")
        return {
            "claim_id": claim.id,
            "claim": claim_payload(claim),
            "verification_path": decision.path,
            "routing_reason": decision.reason,
            "entity_token_estimate": decision.entity_token_estimate,
            "evidence": {"formatted_evidence": evidence.formatted_evidence, **evidence.metadata},
            "mapped_files": [
                {"path": m.code_file, "confidence": m.confidence, "entity_id": m.code_entity_id}
                for m in mappings[:self.config.mapping.max_agent_files_per_claim]
            ],
            "max_files": self.config.mapping.max_agent_files_per_claim,
            "token_budget": self.config.mapping.path1_max_evidence_tokens,
        }

    async def verify(
        self,
        claim: Claim,
        mapping: Optional[MappingResult],
        scan_run_id: Optional[str]
    ) -> Optional[VerificationResult]:
        """Enqueue the verification task and, in inline mode, run it.

        Returns:
            The tier-4 result, or None when the claim stays pending
        """
        if scan_run_id is None:
            logger.debug(f"Claim {claim.id}: no scan run, tier 4 skipped")
            return None

        payload = await self.build_payload(claim, mapping)
        task_id = await self.queue.enqueue(
            repo_id=claim.repo_id,
            scan_run_id=scan_run_id,
            task_type=TaskType.VERIFICATION.value,
            payload=payload,
        )

        if self.config.agent.mode == "deferred":
            return None

        # One claimant identity per inline task
        claimant = self.queue.for_worker(f"{self.queue.worker_id}-inline-{task_id}")
        for attempt in range(1, self.config.agent.retry_per_job_max + 1):
            task = await claimant.claim(task_id)
            if task is None:
                logger.info(f"Verification task {task_id} is not claimable; claim {claim.id} stays pending")
                return None

            data = await execute_task(claimant, self.processor, task, self.config.agent.timeout_seconds)
            if data is not None:
                return result_from_agent(claim, task_id, scan_run_id, data)
            logger.debug(f"Verification task {task_id} attempt {attempt} produced no result")

        logger.warning(f"Verification task {task_id} exhausted retries; claim {claim.id} stays pending")
        return None
