"""Leased agent task queue.

Claiming is a single conditional UPDATE, so at most one worker holds a task
at a time. A lease that runs out makes the task claimable again; the old
holder can no longer complete it. Delivery is at-least-once.
"""

from __future__ import annotations
import asyncpg
import logging
import json
from typing import Optional, Any

from docdrift.config import AgentConfig
from docdrift.models import AgentTask, TaskStatus

logger = logging.getLogger(__name__)

# Claimable: any pending task, lapsed or not, or a lapsed lease
_CLAIMABLE = """
    status = 'pending'
    OR (status IN ('in_progress', 'expired') AND expires_at <= NOW())
"""


class AgentTaskQueue:
    """Manages agent task queue operations."""

    def __init__(self, pool: asyncpg.Pool, worker_id: str, config: Optional[AgentConfig] = None):
        self.pool = pool
        self.worker_id = worker_id
        self.config = config or AgentConfig()

    def for_worker(self, worker_id: str) -> AgentTaskQueue:
        """Same queue under another claimant identity.

        Lease checks compare identities, so every concurrent claimant needs its own.
        """
        return AgentTaskQueue(self.pool, worker_id, self.config)

    async def enqueue(
        self,
        repo_id: str,
        scan_run_id: str,
        task_type: str,
        payload: Optional[dict[str, Any]] = None,
        lease_seconds: Optional[int] = None
    ) -> str:
        """Enqueue a new agent task.

        Args:
            repo_id: Repository UUID
            scan_run_id: Scan the task belongs to
            task_type: One of TaskType
            payload: Task-specific data
            lease_seconds: How long the task stays claimable as pending

        Returns:
            task_id
        """
        payload = payload or {}
        lease = lease_seconds or self.config.lease_seconds

        async with self.pool.acquire() as conn:
            task_id = await conn.fetchval("""
                INSERT INTO agent_tasks (repo_id, scan_run_id, type, payload, expires_at)
                VALUES ($1, $2, $3, $4, NOW() + make_interval(secs => $5))
                RETURNING id
            """,
                repo_id,
                scan_run_id,
                task_type,
                json.dumps(payload),
                float(lease)
            )

        logger.info(f"Enqueued agent task {task_id}: {task_type} for scan {scan_run_id}")
        return str(task_id)

    async def claim_next(
        self,
        task_types: Optional[list[str]] = None,
        repo_id: Optional[str] = None,
        scan_run_id: Optional[str] = None
    ) -> Optional[AgentTask]:
        """Claim the oldest claimable task atomically.

        Args:
            task_types: Task types to claim (None = all)
            repo_id: Restrict to one repository
            scan_run_id: Restrict to one scan

        Returns:
            The claimed task, or None if nothing is available
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                UPDATE agent_tasks
                SET status = 'in_progress',
                    claimed_by = $1,
                    expires_at = NOW() + make_interval(secs => $2)
                WHERE id = (
                    SELECT id FROM agent_tasks
                    WHERE ({_CLAIMABLE})
                      AND ($3::text[] IS NULL OR type = ANY($3::text[]))
                      AND ($4::uuid IS NULL OR repo_id = $4::uuid)
                      AND ($5::uuid IS NULL OR scan_run_id = $5::uuid)
                    ORDER BY created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
            """,
                self.worker_id,
                float(self.config.lease_seconds),
                task_types,
                repo_id,
                scan_run_id
            )

        if row is None:
            return None

        task = AgentTask.from_row(row)
        logger.info(f"Claimed agent task {task.id} ({task.type}) as {self.worker_id}")
        return task

    async def claim(self, task_id: str) -> Optional[AgentTask]:
        """Claim a specific task if it is claimable.

        Returns:
            The claimed task, or None if another worker holds a live lease
            or the task is finished
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                UPDATE agent_tasks
                SET status = 'in_progress',
                    claimed_by = $2,
                    expires_at = NOW() + make_interval(secs => $3)
                WHERE id = $1
                  AND ({_CLAIMABLE})
                RETURNING *
            """, task_id, self.worker_id, float(self.config.lease_seconds))

        if row is None:
            logger.debug(f"Agent task {task_id} not claimable by {self.worker_id}")
            return None

        logger.info(f"Claimed agent task {task_id} as {self.worker_id}")
        return AgentTask.from_row(row)

    async def complete(self, task_id: str, result: dict[str, Any]) -> bool:
        """Mark a task completed while this worker holds the live lease.

        Returns:
            True if completed; False if the lease expired, another worker
            took over, or the task was already completed
        """
        async with self.pool.acquire() as conn:
            completed_id = await conn.fetchval("""
                UPDATE agent_tasks
                SET status = 'completed',
                    result = $3,
                    completed_at = NOW()
                WHERE id = $1
                  AND claimed_by = $2
                  AND status = 'in_progress'
                  AND expires_at > NOW()
                RETURNING id
            """, task_id, self.worker_id, json.dumps(result))

        if completed_id:
            logger.info(f"Completed agent task {task_id}")
        else:
            logger.warning(f"Failed to complete agent task {task_id} (already completed, expired or not owned)")

        return completed_id is not None

    async def fail(
        self,
        task_id: str,
        error: str,
        error_detail: Optional[dict] = None
    ) -> Optional[str]:
        """Record a failed attempt (with retry logic).

        The task returns to ``pending`` until ``retry_per_job_max`` attempts
        have been made, then becomes ``failed``.

        Args:
            task_id: Task ID
            error: Error message
            error_detail: Optional detailed error information

        Returns:
            The new status, or None if this worker does not hold the task
        """
        async with self.pool.acquire() as conn:
            status = await conn.fetchval("""
                UPDATE agent_tasks
                SET attempts = attempts + 1,
                    status = CASE WHEN attempts + 1 < $4 THEN 'pending' ELSE 'failed' END,
                    claimed_by = CASE WHEN attempts + 1 < $4 THEN NULL ELSE claimed_by END,
                    expires_at = CASE WHEN attempts + 1 < $4
                                      THEN NOW() + make_interval(secs => $6)
                                      ELSE expires_at END,
                    completed_at = CASE WHEN attempts + 1 < $4 THEN NULL ELSE NOW() END,
                    error = $3,
                    error_detail = $5
                WHERE id = $1
                  AND claimed_by = $2
                  AND status = 'in_progress'
                RETURNING status
            """,
                task_id,
                self.worker_id,
                error,
                self.config.retry_per_job_max,
                json.dumps(error_detail) if error_detail else None,
                float(self.config.lease_seconds)
            )

        if status is None:
            logger.warning(f"Failed to fail agent task {task_id} (not owned)")
        elif status == TaskStatus.FAILED.value:
            logger.error(f"Failed agent task {task_id}: {error}")
        else:
            logger.warning(f"Agent task {task_id} attempt failed, re-queued: {error}")

        return status

    async def expire_stale(self) -> int:
        """Mark lapsed tasks as expired. They stay claimable.

        Returns:
            Number of tasks expired
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE agent_tasks
                SET status = 'expired'
                WHERE status IN ('in_progress', 'pending')
                  AND expires_at <= NOW()
            """)

        try:
            expired = int(result.rsplit(' ', 1)[-1])
        except (ValueError, AttributeError):
            expired = 0
        if expired:
            logger.info(f"Expired {expired} stale agent tasks")
        return expired

    async def get_task(self, task_id: str) -> Optional[AgentTask]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM agent_tasks WHERE id = $1", task_id)
        return AgentTask.from_row(row) if row else None

    async def list_pending(self, repo_id: str, scan_run_id: Optional[str] = None) -> list[AgentTask]:
        """Pending and reclaimable tasks, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM agent_tasks
                WHERE repo_id = $1
                  AND ($2::uuid IS NULL OR scan_run_id = $2::uuid)
                  AND status IN ('pending', 'expired')
                ORDER BY created_at ASC
            """, repo_id, scan_run_id)
        return [AgentTask.from_row(row) for row in rows]

    async def get_queue_stats(self, scan_run_id: Optional[str] = None) -> dict[str, Any]:
        """Get queue statistics.

        Returns:
            Counts per status, plus the last completion time
        """
        async with self.pool.acquire() as conn:
            counts = await conn.fetchrow("""
                SELECT
                    COUNT(*) FILTER (WHERE status = 'pending') as pending,
                    COUNT(*) FILTER (WHERE status = 'in_progress') as in_progress,
                    COUNT(*) FILTER (WHERE status = 'completed') as completed,
                    COUNT(*) FILTER (WHERE status = 'failed') as failed,
                    COUNT(*) FILTER (WHERE status = 'expired') as expired,
                    MAX(completed_at) as last_completed_at
                FROM agent_tasks
                WHERE ($1::uuid IS NULL OR scan_run_id = $1::uuid)
            """, scan_run_id)

        return {
            "pending": counts["pending"] or 0,
            "in_progress": counts["in_progress"] or 0,
            "completed": counts["completed"] or 0,
            "failed": counts["failed"] or 0,
            "expired": counts["expired"] or 0,
            "last_completed_at": counts["last_completed_at"]
        }
