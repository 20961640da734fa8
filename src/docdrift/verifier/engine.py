"""Tiered verification.

Tiers run in order and the first terminal result wins; later tiers are never
invoked. Every result is persisted, suppressed or not.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from docdrift.config import DocDriftConfig
from docdrift.errors import IndexInconsistency
from docdrift.index import CodebaseIndex
from docdrift.learning.suppression import SuppressionStore, config_suppresses
from docdrift.mapper import MappingResult, direct_reference
from docdrift.models import AgentTask, Claim, Severity, TaskType, Verdict, VerificationResult
from docdrift.verifier.result_store import ResultStore, apply_evidence_guards
from docdrift.verifier.results import make_result
from docdrift.verifier.severity import assign_severity
from docdrift.verifier.tier1 import Tier1Verifier
from docdrift.verifier.tier2 import Tier2Verifier
from docdrift.verifier.tier3 import verify_semantic
from docdrift.verifier.tier4 import Tier4Verifier, result_from_agent, result_id_for_task
from docdrift.verifier.url_check import UrlChecker

logger = logging.getLogger(__name__)


@dataclass
class ClaimContext:
    """State shared by the tiers while one claim is verified."""
    claim: Claim
    mapping: Optional[MappingResult]
    scan_run_id: Optional[str]
    contradictions: list[str] = field(default_factory=list)


TierStep = Callable[[ClaimContext], Awaitable[Optional[VerificationResult]]]


class Verifier:
    """Four-tier decision procedure for a mapped claim."""

    def __init__(
        self,
        index: CodebaseIndex,
        config: DocDriftConfig,
        result_store: Optional[ResultStore] = None,
        suppression: Optional[SuppressionStore] = None,
        tier4: Optional[Tier4Verifier] = None,
        url_checker: Optional[UrlChecker] = None
    ):
        self.index = index
        self.config = config
        self.result_store = result_store
        self.suppression = suppression
        self.tier1 = Tier1Verifier(index, config, url_checker or UrlChecker(config.url_check))
        self.tier2 = Tier2Verifier(index, config)
        self.tier4 = tier4

    def tiers(self) -> list[tuple[int, TierStep]]:
        steps: list[tuple[int, TierStep]] = [
            (1, self._tier1),
            (2, self._tier2),
            (3, self._tier3),
        ]
        if self.tier4 is not None:
            steps.append((4, self._tier4))
        return steps

    async def _tier1(self, ctx: ClaimContext) -> Optional[VerificationResult]:
        return await self.tier1.verify(ctx.claim, ctx.mapping)

    async def _tier2(self, ctx: ClaimContext) -> Optional[VerificationResult]:
        outcome = await self.tier2.verify(ctx.claim, ctx.mapping)
        ctx.contradictions.extend(outcome.contradictions)
        return outcome.result

    async def _tier3(self, ctx: ClaimContext) -> Optional[VerificationResult]:
        return verify_semantic(ctx.claim, ctx.mapping, self.config.verification, ctx.contradictions)

    async def _tier4(self, ctx: ClaimContext) -> Optional[VerificationResult]:
        return await self.tier4.verify(ctx.claim, ctx.mapping, ctx.scan_run_id)

    async def run_tiers(self, ctx: ClaimContext) -> Optional[VerificationResult]:
        for tier, step in self.tiers():
            result = await step(ctx)
            if result is not None:
                result.tier = tier
                return result
        return None

    async def verify(
        self,
        claim: Claim,
        mapping: Optional[MappingResult] = None,
        scan_run_id: Optional[str] = None
    ) -> Optional[VerificationResult]:
        """Verify one claim.

        Args:
            claim: Claim to verify
            mapping: Mapper output for the claim
            scan_run_id: Scan the result and any agent task belong to

        Returns:
            The persisted result, or None if the claim was left pending
        """
        ctx = ClaimContext(claim=claim, mapping=mapping, scan_run_id=scan_run_id)
        try:
            result = await self.run_tiers(ctx)
        except IndexInconsistency as e:
            logger.warning(f"Claim {claim.id}: {e}; re-checking with direct reference")
            result = await self.recheck_after_inconsistency(claim, e)

        if result is None:
            logger.debug(f"Claim {claim.id} left pending")
            return None

        return await self.finalize(claim, result, scan_run_id)

    async def recheck_after_inconsistency(self, claim: Claim, error: IndexInconsistency) -> VerificationResult:
        """Re-map a claim whose mapped path or entity vanished.

        Only a conclusive absence is drifted; anything else is uncertain.
        """
        candidates = await direct_reference(claim.repo_id, claim, self.index, self.config.mapping)
        files = list(dict.fromkeys(c.code_file for c in candidates))

        absent = error.path is not None and not await self.index.file_exists(claim.repo_id, error.path)
        if absent and not candidates:
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.HIGH.value,
                reasoning=f"'{error.path}' referenced by this claim no longer exists in the index.",
                evidence_files=[error.path],
                specific_mismatch=f"'{error.path}' was removed.",
            )
        return make_result(
            claim, Verdict.UNCERTAIN.value,
            reasoning="Mapped code changed during verification; could not confirm the claim.",
            evidence_files=files or ([error.path] if error.path else []),
        )

    def start_scan(self) -> None:
        """Reset per-scan state such as the URL per-domain caps."""
        if self.tier1.url_checker is not None:
            self.tier1.url_checker.reset()

    async def is_suppressed(self, claim: Claim) -> bool:
        if self.suppression is not None:
            return await self.suppression.is_suppressed(claim)
        return config_suppresses(self.config.suppress, claim)

    async def finalize(
        self,
        claim: Claim,
        result: VerificationResult,
        scan_run_id: Optional[str]
    ) -> VerificationResult:
        """Attach scan, severity and suppression, then persist."""
        result.scan_run_id = scan_run_id
        result.severity = assign_severity(result, claim.claim_type)
        result.suppressed = await self.is_suppressed(claim)

        if self.result_store is not None:
            result = await self.result_store.store_result(result)
        else:
            result = apply_evidence_guards(result)

        logger.info(
            f"Claim {claim.id}: {result.verdict} at tier {result.tier}"
            f"{' (suppressed)' if result.suppressed else ''}"
        )
        return result

    async def apply_agent_result(self, task: AgentTask) -> Optional[VerificationResult]:
        """Persist the result of a completed verification task.

        Applying the same task twice stores one result.
        """
        if task.type != TaskType.VERIFICATION.value or not task.result:
            return None

        claim_data = task.payload.get("claim")
        if not claim_data:
            logger.warning(f"Verification task {task.id} has no claim in its payload")
            return None

        if self.result_store is not None:
            existing = await self.result_store.get_result(result_id_for_task(task.id))
            if existing is not None:
                logger.debug(f"Verification task {task.id} already applied")
                return existing

        claim = Claim.model_validate(claim_data)
        result = result_from_agent(claim, task.id, task.scan_run_id, task.result)
        return await self.finalize(claim, result, task.scan_run_id)
