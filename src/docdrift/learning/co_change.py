"""Co-change history between code files and doc files.

A co-change is one commit that touched both files. The Mapper reads counts
from here to boost candidates whose code changes alongside the doc.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from docdrift.config import CoChangeConfig

logger = logging.getLogger(__name__)


def compute_boost(count: int, config: CoChangeConfig) -> float:
    """``min(count * per_commit, max_boost)``."""
    if count <= 0:
        return 0.0
    return min(count * config.per_commit, config.max_boost)


class CoChangeStore:
    """Records and counts code/doc co-changes."""

    def __init__(self, pool: asyncpg.Pool, config: Optional[CoChangeConfig] = None):
        self.pool = pool
        self.config = config or CoChangeConfig()

    async def record_co_changes(
        self,
        repo_id: str,
        code_files: list[str],
        doc_files: list[str],
        commit_sha: str,
        committed_at: Optional[datetime] = None
    ) -> int:
        """Record every (code_file, doc_file) pair touched by one commit.

        Duplicates are ignored. Failures are logged and never raised.

        Returns:
            Number of pairs submitted
        """
        if not code_files or not doc_files:
            return 0

        committed_at = committed_at or datetime.now(timezone.utc)
        rows = [
            (repo_id, code_file, doc_file, commit_sha, committed_at)
            for code_file in code_files
            for doc_file in doc_files
        ]

        try:
            async with self.pool.acquire() as conn:
                await conn.executemany("""
                    INSERT INTO co_changes (repo_id, code_file, doc_file, commit_sha, committed_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT DO NOTHING
                """, rows)
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning(f"Failed to record co-changes for commit {commit_sha}: {e}")
            return 0

        logger.debug(f"Recorded {len(rows)} co-change pairs for commit {commit_sha}")
        return len(rows)

    async def get_co_change_count(self, repo_id: str, code_file: str, doc_file: str) -> int:
        """Count co-changes for a pair inside the look-back window."""
        async with self.pool.acquire() as conn:
            count = await conn.fetchval("""
                SELECT COUNT(*)::int FROM co_changes
                WHERE repo_id = $1
                  AND code_file = $2
                  AND doc_file = $3
                  AND committed_at > NOW() - make_interval(days => $4)
            """, repo_id, code_file, doc_file, self.config.window_days)
        return count or 0

    async def get_co_change_boost(self, repo_id: str, code_file: str, doc_file: str) -> float:
        count = await self.get_co_change_count(repo_id, code_file, doc_file)
        return compute_boost(count, self.config)
