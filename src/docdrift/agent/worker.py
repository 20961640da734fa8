"""
Agent worker - polls the task queue and runs LLM tasks.

Runs continuously alongside scans in ``agent.mode = deferred``. Completed
verification, classification and feedback-interpretation tasks are applied
back through the Verifier, Mapper and feedback store.
"""
from __future__ import annotations
import asyncio
import logging
import signal
import sys
from typing import Any, Optional

import asyncpg

from docdrift.agent.processor import TaskProcessor, execute_task
from docdrift.agent.queue import AgentTaskQueue
from docdrift.config import DocDriftConfig, load_config
from docdrift.db import create_pool, init_schema_tables
from docdrift.index import PgCodebaseIndex
from docdrift.learning.co_change import CoChangeStore
from docdrift.learning.feedback import FeedbackStore
from docdrift.learning.suppression import SuppressionStore
from docdrift.llm import set_llm_config
from docdrift.mapper import Mapper, MapperStore
from docdrift.models import AgentTask, TaskType
from docdrift.verifier import ResultStore, Tier4Verifier, Verifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
EXPIRE_INTERVAL_MULTIPLIER = 6


def configure_logging(level: str = "INFO") -> None:
    """Set the root log format once for the worker process."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )


class AgentWorker:
    """Concurrent pollers over the agent task queue."""

    def __init__(
        self,
        config: DocDriftConfig,
        queue: AgentTaskQueue,
        processor: TaskProcessor,
        verifier: Optional[Verifier] = None,
        mapper: Optional[Mapper] = None,
        feedback_store: Optional[FeedbackStore] = None,
        repo_id: Optional[str] = None
    ):
        self.config = config
        self.queue = queue
        self.processor = processor
        self.verifier = verifier
        self.mapper = mapper
        self.feedback_store = feedback_store
        self.repo_id = repo_id
        self.running = False
        self.semaphore = asyncio.Semaphore(config.agent.concurrency)

    async def apply_result(self, task: AgentTask, result: dict[str, Any]) -> None:
        """Feed a completed task's result back into the component that asked for it."""
        claim_id = task.payload.get("claim_id")

        if task.type == TaskType.VERIFICATION.value and self.verifier is not None:
            await self.verifier.apply_agent_result(task.model_copy(update={"result": result}))
        elif task.type == TaskType.CLAIM_CLASSIFICATION.value and self.mapper is not None and claim_id:
            await self.mapper.apply_llm_mappings(task.repo_id, claim_id, result)
        elif task.type == TaskType.FEEDBACK_INTERPRETATION.value and self.feedback_store is not None and claim_id:
            await self.feedback_store.apply_feedback_interpretation(task.repo_id, claim_id, result)

    async def process_task(self, task: AgentTask, queue: Optional[AgentTaskQueue] = None) -> Optional[dict[str, Any]]:
        """Execute one claimed task under the concurrency limit and apply its result.

        Args:
            task: Task claimed through ``queue``
            queue: The claimant that holds the lease (defaults to the worker's queue)
        """
        queue = queue or self.queue
        async with self.semaphore:
            result = await execute_task(queue, self.processor, task, self.config.agent.timeout_seconds)

        if result is None:
            return None

        try:
            await self.apply_result(task, result)
        except Exception as e:
            logger.error(f"Applying result of agent task {task.id} failed: {e}", exc_info=True)
        return result

    def poller_queues(self) -> list[AgentTaskQueue]:
        """One claimant identity per poller."""
        return [
            self.queue.for_worker(f"{self.queue.worker_id}-{i}")
            for i in range(self.config.agent.concurrency)
        ]

    async def _worker_loop(self, queue: AgentTaskQueue):
        """Claim and process tasks until stopped."""
        worker_id = queue.worker_id
        logger.info(f"Agent worker {worker_id} started")
        poll_interval = self.config.agent.poll_interval_seconds

        while self.running:
            try:
                task = await queue.claim_next(repo_id=self.repo_id)

                if task is None:
                    await asyncio.sleep(poll_interval)
                    continue

                await self.process_task(task, queue)

            except asyncio.CancelledError:
                logger.info(f"Agent worker {worker_id} cancelled")
                break
            except Exception as e:
                logger.error(f"Agent worker {worker_id} error: {e}", exc_info=True)
                await asyncio.sleep(poll_interval)

        logger.info(f"Agent worker {worker_id} stopped")

    async def _expiry_loop(self):
        """Periodically mark lapsed leases as expired."""
        interval = self.config.agent.poll_interval_seconds * EXPIRE_INTERVAL_MULTIPLIER

        while self.running:
            try:
                await self.queue.expire_stale()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Expiry loop error: {e}", exc_info=True)
                await asyncio.sleep(interval)

    async def run(self):
        """Start all pollers and run until cancelled."""
        self.running = True
        concurrency = self.config.agent.concurrency

        tasks = [
            asyncio.create_task(self._worker_loop(queue))
            for queue in self.poller_queues()
        ]
        tasks.append(asyncio.create_task(self._expiry_loop()))
        logger.info(f"Started {concurrency} agent workers")

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Agent worker pool cancelled - stopping workers")
            self.running = False

            for task in tasks:
                task.cancel()

            await asyncio.gather(*tasks, return_exceptions=True)

            logger.info("All agent workers stopped")

    def stop(self):
        self.running = False


def build_worker(pool: asyncpg.Pool, config: DocDriftConfig, worker_id: str) -> AgentWorker:
    """Wire the stores, Mapper and Verifier that completed tasks are applied through."""
    queue = AgentTaskQueue(pool, worker_id, config.agent)
    processor = TaskProcessor(config)
    index = PgCodebaseIndex(pool)
    mapper_store = MapperStore(pool)
    suppression = SuppressionStore(pool, config.suppress)

    mapper = Mapper(
        index,
        config,
        store=mapper_store,
        co_change=CoChangeStore(pool, config.co_change),
        task_queue=queue,
    )
    verifier = Verifier(
        index,
        config,
        result_store=ResultStore(pool),
        suppression=suppression,
        tier4=Tier4Verifier(index, config, queue, mapper_store, processor),
    )
    feedback_store = FeedbackStore(pool, suppression, config.learning, task_queue=queue)

    return AgentWorker(
        config,
        queue,
        processor,
        verifier=verifier,
        mapper=mapper,
        feedback_store=feedback_store,
    )


async def main_async(config_path: Optional[str] = None, worker_id: str = "agent-worker"):
    """Async main entry point."""
    config = load_config(config_path)
    configure_logging(config.log_level)
    logger.info(f"Loaded configuration: {config.log_redacted()}")

    set_llm_config(config.llm.model_dump())

    pool = await create_pool(config.database)
    async with pool.acquire() as conn:
        await init_schema_tables(conn, config.database.schema_name)

    worker = build_worker(pool, config, worker_id)
    run_task = asyncio.create_task(worker.run())

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        worker.stop()
        run_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await run_task
    except asyncio.CancelledError:
        pass
    finally:
        await pool.close()
        logger.info("Agent worker shutdown complete")


def main(config_path: Optional[str] = None):
    """CLI entry point."""
    try:
        asyncio.run(main_async(config_path))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
