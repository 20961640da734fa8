"""Scan run bookkeeping and claim loading."""
from __future__ import annotations
import logging
from typing import Optional

import asyncpg

from docdrift.errors import ExtractionError
from docdrift.models import Claim, ScanRun, ScanStatus, record_to_dict

logger = logging.getLogger(__name__)


class ScanStore:
    """Database operations for scan_runs and the claims a scan reads."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def create_scan_run(self, repo_id: str) -> ScanRun:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO scan_runs (repo_id, status)
                VALUES ($1, 'running')
                RETURNING *
            """, repo_id)
        scan = ScanRun.model_validate(record_to_dict(row))
        logger.info(f"Started scan run {scan.id} for repo {repo_id}")
        return scan

    async def load_claims(
        self,
        repo_id: str,
        claim_ids: Optional[list[str]] = None
    ) -> tuple[list[Claim], list[tuple[str, ExtractionError]]]:
        """Load claims, separating rows whose shape is invalid.

        Returns:
            (valid claims, [(claim_id, error)] for malformed rows)
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM claims
                WHERE repo_id = $1
                  AND ($2::uuid[] IS NULL OR id = ANY($2::uuid[]))
                ORDER BY source_file, line_number
            """, repo_id, claim_ids)

        claims: list[Claim] = []
        malformed: list[tuple[str, ExtractionError]] = []
        for row in rows:
            try:
                claims.append(Claim.from_row(row))
            except ExtractionError as e:
                logger.error(f"Skipping malformed claim {row['id']}: {e}")
                malformed.append((str(row["id"]), e))
        return claims, malformed

    async def finish_scan_run(self, scan: ScanRun) -> None:
        """Persist the final counters and status of a scan run."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE scan_runs SET
                    status = $2,
                    completed_at = NOW(),
                    claims_total = $3,
                    claims_verified = $4,
                    claims_drifted = $5,
                    claims_uncertain = $6,
                    claims_pending = $7,
                    claims_failed = $8
                WHERE id = $1
            """,
                scan.id, scan.status, scan.claims_total, scan.claims_verified,
                scan.claims_drifted, scan.claims_uncertain, scan.claims_pending, scan.claims_failed
            )
        logger.info(f"Scan run {scan.id} {scan.status}")

    async def fail_scan_run(self, scan_run_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("""
                UPDATE scan_runs SET status = $2, completed_at = NOW()
                WHERE id = $1
            """, scan_run_id, ScanStatus.FAILED.value)
        logger.error(f"Scan run {scan_run_id} failed")
