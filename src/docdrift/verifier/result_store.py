"""Persistence for verification results.

Results are append-only. Storing a result also moves the claim's
verification status and its pointer to the newest result.
"""
from __future__ import annotations
import logging
from typing import Optional

import asyncpg

from docdrift.models import Verdict, VerificationResult

logger = logging.getLogger(__name__)

NO_EVIDENCE_NOTE = " [Downgraded: drift reported with no supporting evidence]"
NO_EVIDENCE_PENALTY = 0.3


def apply_evidence_guards(result: VerificationResult) -> VerificationResult:
    """Drift needs evidence; verified without evidence is trusted less."""
    if result.evidence_files:
        return result

    if result.verdict == Verdict.DRIFTED.value:
        return result.model_copy(update={
            "verdict": Verdict.UNCERTAIN.value,
            "severity": None,
            "reasoning": (result.reasoning or "") + NO_EVIDENCE_NOTE,
        })
    if result.verdict == Verdict.VERIFIED.value:
        return result.model_copy(update={
            "confidence": max(result.confidence - NO_EVIDENCE_PENALTY, 0.0),
        })
    return result


def merge_latest(results: list[VerificationResult]) -> list[VerificationResult]:
    """One result per claim: the latest, unless an older one came from a higher tier.

    Args:
        results: Results ordered newest first within each claim
    """
    latest: dict[str, VerificationResult] = {}
    for result in results:
        existing = latest.get(result.claim_id)
        if existing is None or result.tier > existing.tier:
            latest[result.claim_id] = result
    return list(latest.values())


class ResultStore:
    """Database operations for verification_results."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def store_result(self, result: VerificationResult) -> VerificationResult:
        """Insert a result and point its claim at it.

        Storing the same result id twice is a no-op.

        Returns:
            The result as stored, after evidence guards
        """
        stored = apply_evidence_guards(result)

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("""
                        INSERT INTO verification_results (
                            id, claim_id, repo_id, scan_run_id,
                            verdict, confidence, tier, severity,
                            reasoning, specific_mismatch, suggested_fix,
                            evidence_files, token_cost, duration_ms,
                            verification_path, suppressed, created_at
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                    """,
                        stored.id, stored.claim_id, stored.repo_id, stored.scan_run_id,
                        stored.verdict, stored.confidence, stored.tier, stored.severity,
                        stored.reasoning, stored.specific_mismatch, stored.suggested_fix,
                        stored.evidence_files, stored.token_cost, stored.duration_ms,
                        stored.verification_path, stored.suppressed, stored.created_at
                    )

                    await conn.execute("""
                        UPDATE claims SET
                            verification_status = $2,
                            last_verified_at = NOW(),
                            last_verification_result_id = $3,
                            updated_at = NOW()
                        WHERE id = $1
                    """, stored.claim_id, stored.verdict, stored.id)
        except asyncpg.UniqueViolationError:
            logger.debug(f"Result {stored.id} already stored")
            return stored

        logger.debug(
            f"Stored result {stored.id} for claim {stored.claim_id}: "
            f"{stored.verdict} (tier {stored.tier})"
        )
        return stored

    async def get_result(self, result_id: str) -> Optional[VerificationResult]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM verification_results WHERE id = $1", result_id)
        return VerificationResult.from_row(row) if row else None

    async def merge_results(self, scan_run_id: str) -> list[VerificationResult]:
        """Latest result per claim for a scan run, preferring higher tiers."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM verification_results
                WHERE scan_run_id = $1
                ORDER BY claim_id, created_at DESC
            """, scan_run_id)
        return merge_latest([VerificationResult.from_row(row) for row in rows])

    async def get_latest_result(self, claim_id: str) -> Optional[VerificationResult]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM verification_results
                WHERE claim_id = $1
                ORDER BY created_at DESC
                LIMIT 1
            """, claim_id)
        return VerificationResult.from_row(row) if row else None
