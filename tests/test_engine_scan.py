"""Tests for the tier pipeline, tier-4 hand-off, scan runs and the agent worker."""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from docdrift.agent import AgentTaskQueue
from docdrift.agent.worker import AgentWorker
from docdrift.config import SuppressEntry
from docdrift.errors import DatabaseError
from docdrift.mapper import Mapper
from docdrift.models import AgentTask, ScanRun
from docdrift.scan import ScanReport, ScanRunner
from docdrift.verifier import Tier4Verifier, Verifier
from docdrift.verifier.tier4 import result_id_for_task

AGENT_RESULT = {
    "type": "verification",
    "verdict": "drifted",
    "confidence": 0.9,
    "severity": "high",
    "reasoning": "Handler returns 401, not 403.",
    "evidence_files": ["src/auth.ts"],
    "verification_path": 2,
    "metadata": {"tokens_used": 900, "duration_ms": 1200},
}


def verification_task(claim, task_id=None, result=None):
    return AgentTask(
        id=task_id or str(uuid.uuid4()),
        repo_id=claim.repo_id,
        scan_run_id=str(uuid.uuid4()),
        type="verification",
        status="in_progress",
        payload={"claim_id": claim.id, "claim": claim.model_dump(mode="json")},
        result=result,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=10),
    )


def inline_queue(task):
    queue = MagicMock()
    queue.worker_id = "scan-worker"
    queue.for_worker = MagicMock(return_value=queue)
    queue.enqueue = AsyncMock(return_value=task.id)
    queue.claim = AsyncMock(return_value=task)
    queue.complete = AsyncMock(return_value=True)
    queue.fail = AsyncMock(return_value="pending")
    return queue


class TestVerifier:
    """Tier ordering, suppression and agent results."""

    @pytest.mark.asyncio
    async def test_config_suppression_marks_result(self, fake_index, config, make_claim):
        """Suppressed results are still produced, with the flag set."""
        config.suppress = [SuppressEntry(file="docs/legacy/*")]
        claim = make_claim("path_reference", {"path": "src/gone.ts"}, source_file="docs/legacy/old.md")

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "drifted"
        assert result.suppressed is True

    @pytest.mark.asyncio
    async def test_nothing_decides_without_tier4(self, fake_index, config, make_claim):
        """A behavior claim no deterministic tier decides stays pending."""
        claim = make_claim("behavior", {})
        assert await Verifier(fake_index, config).verify(claim) is None

    @pytest.mark.asyncio
    async def test_tier4_inline(self, fake_index, config, make_claim):
        """Inline mode runs the task and records a tier-4 result."""
        claim = make_claim("behavior", {}, claim_text="Invalid tokens return 403.")
        task = verification_task(claim)
        queue = inline_queue(task)
        processor = MagicMock()
        processor.process = AsyncMock(return_value=AGENT_RESULT)
        tier4 = Tier4Verifier(fake_index, config, queue, MagicMock(), processor)

        result = await Verifier(fake_index, config, tier4=tier4).verify(claim, scan_run_id=task.scan_run_id)

        assert result.tier == 4
        assert result.verdict == "drifted"
        assert result.id == result_id_for_task(task.id)
        assert result.token_cost == 900
        assert result.verification_path == 2
        payload = queue.enqueue.await_args.kwargs["payload"]
        assert payload["verification_path"] == 2
        assert payload["routing_reason"] == "no_mapping"
        assert "embedding" not in payload["claim"]

    @pytest.mark.asyncio
    async def test_tier4_inline_claims_under_own_identity(self, fake_index, config, make_claim):
        """Each inline task is claimed and completed by a claimant of its own."""
        claim = make_claim("behavior", {})
        task = verification_task(claim)
        queue = inline_queue(task)
        claimant = inline_queue(task)
        queue.for_worker = MagicMock(return_value=claimant)
        processor = MagicMock()
        processor.process = AsyncMock(return_value=AGENT_RESULT)
        tier4 = Tier4Verifier(fake_index, config, queue, MagicMock(), processor)

        await Verifier(fake_index, config, tier4=tier4).verify(claim, scan_run_id=task.scan_run_id)

        queue.for_worker.assert_called_once_with(f"scan-worker-inline-{task.id}")
        queue.enqueue.assert_awaited_once()
        queue.claim.assert_not_called()
        claimant.claim.assert_awaited_once_with(task.id)
        claimant.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tier4_deferred_leaves_pending(self, fake_index, config, make_claim):
        """Deferred mode enqueues and returns nothing."""
        config.agent.mode = "deferred"
        claim = make_claim("behavior", {})
        task = verification_task(claim)
        queue = inline_queue(task)
        tier4 = Tier4Verifier(fake_index, config, queue, MagicMock(), MagicMock())

        result = await Verifier(fake_index, config, tier4=tier4).verify(claim, scan_run_id=task.scan_run_id)

        assert result is None
        queue.enqueue.assert_awaited_once()
        queue.claim.assert_not_called()

    @pytest.mark.asyncio
    async def test_tier4_failure_leaves_pending(self, fake_index, config, make_claim):
        """A task that never yields a result leaves the claim pending."""
        claim = make_claim("behavior", {})
        task = verification_task(claim)
        queue = inline_queue(task)
        processor = MagicMock()
        processor.process = AsyncMock(side_effect=ValueError("bad reply"))
        tier4 = Tier4Verifier(fake_index, config, queue, MagicMock(), processor)

        result = await Verifier(fake_index, config, tier4=tier4).verify(claim, scan_run_id=task.scan_run_id)

        assert result is None
        assert queue.fail.await_count == config.agent.retry_per_job_max

    @pytest.mark.asyncio
    async def test_apply_agent_result_is_idempotent(self, fake_index, config, make_claim):
        """A task already applied returns the stored result."""
        claim = make_claim("behavior", {})
        task = verification_task(claim, result=AGENT_RESULT)
        store = MagicMock()
        store.get_result = AsyncMock(return_value=None)
        store.store_result = AsyncMock(side_effect=lambda r: r)
        verifier = Verifier(fake_index, config, result_store=store)

        first = await verifier.apply_agent_result(task)
        assert first.id == result_id_for_task(task.id)
        assert first.tier == 4

        store.get_result = AsyncMock(return_value=first)
        second = await verifier.apply_agent_result(task)

        assert second is first
        assert store.store_result.await_count == 1


class TestTierOrdering:
    """A terminal result stops escalation; repeated runs agree."""

    @pytest.mark.asyncio
    async def test_tier1_result_skips_later_tiers(self, fake_index, config, make_claim):
        """Tier 2 and tier 3 are never called after tier 1 decides."""
        fake_index.files = ["src/app.ts"]
        verifier = Verifier(fake_index, config)
        verifier._tier2 = AsyncMock(return_value=None)
        verifier._tier3 = AsyncMock(return_value=None)

        result = await verifier.verify(make_claim("path_reference", {"path": "src/app.ts"}))

        assert result.tier == 1
        verifier._tier2.assert_not_awaited()
        verifier._tier3.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tier2_result_skips_tier3(self, fake_index, config, make_claim):
        """Tier 3 is never called after tier 2 decides."""
        fake_index.contents[".env.example"] = "DATABASE_URL=postgres://\n"
        verifier = Verifier(fake_index, config)
        verifier._tier3 = AsyncMock(return_value=None)

        result = await verifier.verify(
            make_claim("environment", {"env_var": "DATABASE_URL"}, claim_text="Requires DATABASE_URL.")
        )

        assert result.tier == 2
        verifier._tier3.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rerun_on_unchanged_index_is_identical(self, fake_index, config, make_claim, make_entity):
        """Mapping and verifying twice gives the same candidates and verdicts."""
        fake_index.files = ["src/a/index.ts", "src/b/index.ts", "src/app.ts"]
        fake_index.entities = [make_entity("handler", "src/a.ts"), make_entity("handler", "src/b.ts")]
        claims = [
            make_claim("path_reference", {"path": "index.ts"}),
            make_claim("path_reference", {"path": "src/app.ts"}),
            make_claim("code_example", {"symbols": ["handler"]}),
            make_claim("api_route", {"method": "GET", "path": "/missing"}),
        ]
        mapper = Mapper(fake_index, config)
        verifier = Verifier(fake_index, config)

        def mapping_key(mapping):
            return mapping.status, [(m.code_file, m.code_entity_id, m.confidence) for m in mapping.mappings]

        def result_key(result):
            return result.verdict, result.severity, result.confidence, result.evidence_files, result.tier

        for claim in claims:
            first_mapping = await mapper.map_claim(claim.repo_id, claim)
            first = await verifier.verify(claim, first_mapping)
            second_mapping = await mapper.map_claim(claim.repo_id, claim)
            second = await verifier.verify(claim, second_mapping)

            assert mapping_key(first_mapping) == mapping_key(second_mapping)
            assert result_key(first) == result_key(second)


class TestScanRunner:
    """Scan runs over an in-memory index."""

    @pytest.mark.asyncio
    async def test_counts_and_partition(self, fake_index, config, make_claim):
        """Untestable claims are skipped and errors count as failed."""
        fake_index.files = ["src/app.ts"]
        config.suppress = [SuppressEntry(file="docs/legacy/*")]
        ok = make_claim("path_reference", {"path": "src/app.ts"})
        drifted = make_claim("path_reference", {"path": "src/missing.ts"})
        hidden = make_claim("path_reference", {"path": "src/old.ts"}, source_file="docs/legacy/a.md")
        untestable = make_claim("behavior", {}, testability="untestable")
        broken = make_claim("path_reference", {"path": "src/x.ts"})

        mapper = Mapper(fake_index, config)
        real_map = mapper.map_claim

        async def map_claim(repo_id, claim, scan_run_id=None):
            if claim.id == broken.id:
                raise RuntimeError("boom")
            return await real_map(repo_id, claim, scan_run_id)

        mapper.map_claim = map_claim
        runner = ScanRunner(config, mapper, Verifier(fake_index, config))

        report = await runner.run(ok.repo_id, claims=[ok, drifted, hidden, untestable, broken])

        assert report.total == 4
        assert report.failed_claim_ids == [broken.id]
        assert {r.claim_id for r in report.suppressed} == {hidden.id}
        assert {r.claim_id for r in report.visible} == {ok.id, drifted.id}
        assert report.health_score == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_min_severity_filters_visible(self, fake_index, config, make_claim):
        """Findings below min_severity are not shown."""
        fake_index.files = ["src/utils/helper.ts"]
        config.verification.min_severity = "high"
        claim = make_claim("path_reference", {"path": "src/utils/helpr.ts"})

        report = await ScanRunner(config, Mapper(fake_index, config), Verifier(fake_index, config)).run(
            claim.repo_id, claims=[claim]
        )

        assert report.results[0].severity == "medium"
        assert report.visible == []

    @pytest.mark.asyncio
    async def test_database_error_fails_scan(self, fake_index, config, make_claim):
        """A lost connection marks the scan failed and propagates."""
        claim = make_claim("path_reference", {"path": "src/app.ts"})
        scan = ScanRun(repo_id=claim.repo_id)
        store = MagicMock()
        store.create_scan_run = AsyncMock(return_value=scan)
        store.fail_scan_run = AsyncMock()
        store.finish_scan_run = AsyncMock()
        mapper = MagicMock()
        mapper.map_claim = AsyncMock(side_effect=ConnectionResetError("connection reset"))

        runner = ScanRunner(config, mapper, Verifier(fake_index, config), scan_store=store)
        with pytest.raises(DatabaseError):
            await runner.run(claim.repo_id, claims=[claim])

        store.fail_scan_run.assert_awaited_once_with(scan.id)
        store.finish_scan_run.assert_not_called()

    @pytest.mark.asyncio
    async def test_finished_scan_persisted(self, fake_index, config, make_claim):
        """Counters are written when the scan completes."""
        fake_index.files = ["src/app.ts"]
        claim = make_claim("path_reference", {"path": "src/app.ts"})
        scan = ScanRun(repo_id=claim.repo_id)
        store = MagicMock()
        store.create_scan_run = AsyncMock(return_value=scan)
        store.finish_scan_run = AsyncMock()

        runner = ScanRunner(config, Mapper(fake_index, config), Verifier(fake_index, config), scan_store=store)
        report = await runner.run(claim.repo_id, claims=[claim])

        finished = store.finish_scan_run.await_args.args[0]
        assert finished.status == "completed"
        assert finished.claims_total == 1
        assert finished.claims_verified == 1
        assert report.results[0].scan_run_id == scan.id


def test_empty_report_health():
    """An empty scan has zero health."""
    assert ScanReport(scan_run_id="s1").health_score == 0.0


class TestAgentWorker:
    """Completed tasks are applied back to the component that asked."""

    @pytest.mark.asyncio
    async def test_verification_applied(self, config, make_claim):
        """Verification results go to the Verifier."""
        claim = make_claim("behavior", {})
        task = verification_task(claim)
        verifier = MagicMock()
        verifier.apply_agent_result = AsyncMock()
        worker = AgentWorker(config, MagicMock(), MagicMock(), verifier=verifier)

        await worker.apply_result(task, AGENT_RESULT)

        applied = verifier.apply_agent_result.await_args.args[0]
        assert applied.id == task.id
        assert applied.result == AGENT_RESULT

    @pytest.mark.asyncio
    async def test_classification_applied(self, config, make_claim):
        """Classification results become llm_assisted mappings."""
        claim = make_claim("behavior", {})
        task = verification_task(claim).model_copy(update={"type": "claim_classification"})
        mapper = MagicMock()
        mapper.apply_llm_mappings = AsyncMock()
        worker = AgentWorker(config, MagicMock(), MagicMock(), mapper=mapper)
        result = {"selected": [{"code_file": "src/auth.ts", "confidence": 0.8}]}

        await worker.apply_result(task, result)

        mapper.apply_llm_mappings.assert_awaited_once_with(task.repo_id, claim.id, result)

    @pytest.mark.asyncio
    async def test_apply_failure_does_not_raise(self, config, make_claim):
        """A failing apply is logged; the completed result is still returned."""
        claim = make_claim("behavior", {})
        task = verification_task(claim)
        queue = inline_queue(task)
        processor = MagicMock()
        processor.process = AsyncMock(return_value=AGENT_RESULT)
        verifier = MagicMock()
        verifier.apply_agent_result = AsyncMock(side_effect=RuntimeError("db down"))
        worker = AgentWorker(config, queue, processor, verifier=verifier)

        assert await worker.process_task(task) == AGENT_RESULT
        queue.complete.assert_awaited_once()

    def test_pollers_have_distinct_identities(self, config):
        """Every poller claims under its own worker id on the shared pool."""
        config.agent.concurrency = 3
        pool = MagicMock()
        worker = AgentWorker(config, AgentTaskQueue(pool, "agent-worker", config.agent), MagicMock())

        queues = worker.poller_queues()

        assert [q.worker_id for q in queues] == ["agent-worker-0", "agent-worker-1", "agent-worker-2"]
        assert all(q.pool is pool and q.config is config.agent for q in queues)

    @pytest.mark.asyncio
    async def test_task_completed_by_its_claimant(self, config, make_claim):
        """The poller that claimed a task is the one that completes it."""
        claim = make_claim("behavior", {})
        task = verification_task(claim)
        shared = inline_queue(task)
        poller = inline_queue(task)
        processor = MagicMock()
        processor.process = AsyncMock(return_value=AGENT_RESULT)
        worker = AgentWorker(config, shared, processor)

        await worker.process_task(task, poller)

        poller.complete.assert_awaited_once_with(task.id, AGENT_RESULT)
        shared.complete.assert_not_called()
