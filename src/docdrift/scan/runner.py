"""Drive one scan run: map and verify every claim under a bounded pool."""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from docdrift.config import DocDriftConfig
from docdrift.db.schema_manager import database_errors
from docdrift.errors import DatabaseError
from docdrift.mapper import Mapper
from docdrift.models import Claim, ScanRun, ScanStatus, Testability, Verdict, VerificationResult
from docdrift.scan.store import ScanStore
from docdrift.verifier import Verifier, meets_min_severity

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    """Outcome of a scan run as handed to reporters."""
    scan_run_id: str
    results: list[VerificationResult] = field(default_factory=list)
    visible: list[VerificationResult] = field(default_factory=list)
    suppressed: list[VerificationResult] = field(default_factory=list)
    pending_claim_ids: list[str] = field(default_factory=list)
    failed_claim_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results) + len(self.pending_claim_ids) + len(self.failed_claim_ids)

    @property
    def health_score(self) -> float:
        """Share of claims verified in this scan (0.0 for an empty scan)."""
        if self.total == 0:
            return 0.0
        verified = sum(1 for r in self.results if r.verdict == Verdict.VERIFIED.value)
        return verified / self.total


class ScanRunner:
    """Maps and verifies a repository's claims for one scan run."""

    def __init__(
        self,
        config: DocDriftConfig,
        mapper: Mapper,
        verifier: Verifier,
        scan_store: Optional[ScanStore] = None
    ):
        self.config = config
        self.mapper = mapper
        self.verifier = verifier
        self.scan_store = scan_store

    def is_scannable(self, claim: Claim) -> bool:
        if claim.testability == Testability.UNTESTABLE.value:
            return False
        return self.config.claim_type_enabled(claim.claim_type)

    async def process_claim(self, claim: Claim, scan_run_id: str) -> Optional[VerificationResult]:
        """Map then verify one claim. Returns None when it is left pending."""
        async with database_errors(f"Verifying claim {claim.id}"):
            mapping = await self.mapper.map_claim(claim.repo_id, claim, scan_run_id)
            return await self.verifier.verify(claim, mapping, scan_run_id)

    async def run(
        self,
        repo_id: str,
        claims: Optional[list[Claim]] = None,
        claim_ids: Optional[list[str]] = None
    ) -> ScanReport:
        """Run a scan over the given claims, or every stored claim of the repo.

        Args:
            repo_id: Repository UUID
            claims: Claims to verify; loaded from the database when omitted
            claim_ids: Restrict loading to these claims

        Returns:
            ScanReport with the visible/suppressed partition

        Raises:
            DatabaseError: The scan run is marked failed first
        """
        failed_ids: list[str] = []
        if self.scan_store is not None:
            scan = await self.scan_store.create_scan_run(repo_id)
            if claims is None:
                claims, malformed = await self.scan_store.load_claims(repo_id, claim_ids)
                failed_ids.extend(claim_id for claim_id, _ in malformed)
        else:
            scan = ScanRun(repo_id=repo_id)
        claims = claims or []

        scannable = [c for c in claims if self.is_scannable(c)]
        skipped = len(claims) - len(scannable)
        if skipped:
            logger.info(f"Skipping {skipped} untestable or disabled claims")

        self.verifier.start_scan()
        report = ScanReport(scan_run_id=scan.id, failed_claim_ids=failed_ids)
        semaphore = asyncio.Semaphore(self.config.agent.concurrency)

        async def run_one(claim: Claim) -> None:
            async with semaphore:
                try:
                    result = await self.process_claim(claim, scan.id)
                except DatabaseError:
                    raise
                except Exception as e:
                    logger.error(f"Claim {claim.id} failed: {e}", exc_info=True)
                    report.failed_claim_ids.append(claim.id)
                    return

            if result is None:
                report.pending_claim_ids.append(claim.id)
            else:
                report.results.append(result)

        logger.info(f"Scan {scan.id}: verifying {len(scannable)} claims for repo {repo_id}")
        tasks = [asyncio.create_task(run_one(c)) for c in scannable]
        try:
            await asyncio.gather(*tasks)
        except DatabaseError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self.scan_store is not None:
                try:
                    await self.scan_store.fail_scan_run(scan.id)
                except Exception as e:
                    logger.error(f"Could not mark scan {scan.id} failed: {e}")
            raise

        self._partition(report)
        await self._finish(scan, report)
        return report

    def _partition(self, report: ScanReport) -> None:
        min_severity = self.config.verification.min_severity
        for result in report.results:
            if result.suppressed:
                report.suppressed.append(result)
            elif meets_min_severity(result.severity, min_severity):
                report.visible.append(result)

    async def _finish(self, scan: ScanRun, report: ScanReport) -> None:
        verdicts = [r.verdict for r in report.results]
        scan.status = ScanStatus.COMPLETED.value
        scan.claims_total = report.total
        scan.claims_verified = verdicts.count(Verdict.VERIFIED.value)
        scan.claims_drifted = verdicts.count(Verdict.DRIFTED.value)
        scan.claims_uncertain = verdicts.count(Verdict.UNCERTAIN.value)
        scan.claims_pending = len(report.pending_claim_ids)
        scan.claims_failed = len(report.failed_claim_ids)

        if self.scan_store is not None:
            async with database_errors(f"Finishing scan {scan.id}"):
                await self.scan_store.finish_scan_run(scan)

        logger.info(
            f"Scan {scan.id} completed: {scan.claims_verified} verified, {scan.claims_drifted} drifted, "
            f"{scan.claims_uncertain} uncertain, {scan.claims_pending} pending, {scan.claims_failed} failed "
            f"(health {report.health_score:.2f})"
        )
