"""Persistence for claim mappings."""
from __future__ import annotations
import logging
from typing import Iterable, Optional

import asyncpg

from docdrift.models import ClaimMapping, MappingMethod

logger = logging.getLogger(__name__)

_INSERT_MAPPING = """
    INSERT INTO claim_mappings (
        claim_id, repo_id, code_file, code_entity_id,
        confidence, co_change_boost, mapping_method
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    RETURNING *
"""


class MapperStore:
    """Database operations for ``claim_mappings``."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _insert(self, conn: asyncpg.Connection, mapping: ClaimMapping) -> ClaimMapping:
        row = await conn.fetchrow(
            _INSERT_MAPPING,
            mapping.claim_id,
            mapping.repo_id,
            mapping.code_file,
            mapping.code_entity_id,
            mapping.confidence,
            mapping.co_change_boost,
            mapping.mapping_method,
        )
        return ClaimMapping.from_row(row)

    async def persist_mappings(
        self,
        repo_id: str,
        claim_id: str,
        mappings: list[ClaimMapping]
    ) -> list[ClaimMapping]:
        """Replace a claim's computed mappings. Manual mappings are kept.

        Returns:
            Stored mappings in the order given
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM claim_mappings WHERE claim_id = $1 AND mapping_method <> 'manual'",
                    claim_id
                )
                stored = [await self._insert(conn, m) for m in mappings]

        logger.debug(f"Persisted {len(stored)} mappings for claim {claim_id} (repo {repo_id})")
        return stored

    async def replace_llm_mappings(self, claim_id: str, mappings: list[ClaimMapping]) -> list[ClaimMapping]:
        """Swap the llm_assisted mappings of a claim, leaving the rest."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM claim_mappings WHERE claim_id = $1 AND mapping_method = 'llm_assisted'",
                    claim_id
                )
                return [await self._insert(conn, m) for m in mappings]

    async def get_mappings_for_claim(self, claim_id: str) -> list[ClaimMapping]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM claim_mappings WHERE claim_id = $1 "
                "ORDER BY confidence DESC, code_file, code_entity_id",
                claim_id
            )
        return [ClaimMapping.from_row(row) for row in rows]

    async def get_manual_mappings(self, claim_id: str) -> list[ClaimMapping]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM claim_mappings WHERE claim_id = $1 AND mapping_method = 'manual' "
                "ORDER BY confidence DESC, code_file",
                claim_id
            )
        return [ClaimMapping.from_row(row) for row in rows]

    async def pin_manual_mapping(
        self,
        repo_id: str,
        claim_id: str,
        code_file: str,
        code_entity_id: Optional[str] = None,
        confidence: float = 1.0
    ) -> ClaimMapping:
        """Pin a claim to a code location. Pinned claims skip the cascade."""
        mapping = ClaimMapping(
            claim_id=claim_id,
            repo_id=repo_id,
            code_file=code_file,
            code_entity_id=code_entity_id,
            confidence=confidence,
            mapping_method=MappingMethod.MANUAL,
        )
        async with self.pool.acquire() as conn:
            stored = await self._insert(conn, mapping)

        logger.info(f"Pinned claim {claim_id} to {code_file}")
        return stored

    async def unpin_manual_mapping(self, claim_id: str, mapping_id: Optional[str] = None) -> int:
        """Remove one manual mapping, or all of them when no id is given."""
        async with self.pool.acquire() as conn:
            if mapping_id:
                result = await conn.execute(
                    "DELETE FROM claim_mappings WHERE claim_id = $1 AND id = $2 AND mapping_method = 'manual'",
                    claim_id, mapping_id
                )
            else:
                result = await conn.execute(
                    "DELETE FROM claim_mappings WHERE claim_id = $1 AND mapping_method = 'manual'",
                    claim_id
                )
        return _rowcount(result)

    async def find_claims_by_code_files(self, repo_id: str, code_files: list[str]) -> list[ClaimMapping]:
        """Reverse lookup: mappings pointing at any of the given files."""
        if not code_files:
            return []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM claim_mappings WHERE repo_id = $1 AND code_file = ANY($2::text[]) "
                "ORDER BY claim_id",
                repo_id, code_files
            )
        return [ClaimMapping.from_row(row) for row in rows]

    async def delete_mappings_for_claim(self, claim_id: str, include_manual: bool = False) -> int:
        query = "DELETE FROM claim_mappings WHERE claim_id = $1"
        if not include_manual:
            query += " AND mapping_method <> 'manual'"
        async with self.pool.acquire() as conn:
            result = await conn.execute(query, claim_id)
        return _rowcount(result)

    async def update_code_file_paths(self, repo_id: str, renames: Iterable[tuple[str, str]]) -> int:
        """Follow file renames. Returns the number of mappings updated."""
        updated = 0
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for old_path, new_path in renames:
                    result = await conn.execute(
                        "UPDATE claim_mappings SET code_file = $3, last_validated_at = NOW() "
                        "WHERE repo_id = $1 AND code_file = $2",
                        repo_id, old_path, new_path
                    )
                    updated += _rowcount(result)

        if updated:
            logger.info(f"Updated {updated} mappings after renames in repo {repo_id}")
        return updated

    async def remove_mappings_for_files(self, repo_id: str, code_files: list[str]) -> int:
        if not code_files:
            return 0
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM claim_mappings WHERE repo_id = $1 AND code_file = ANY($2::text[])",
                repo_id, code_files
            )
        return _rowcount(result)

    async def get_entity_line_count(self, mapping_id: str) -> Optional[int]:
        """Line span of the mapped entity, or None for file-level mappings."""
        async with self.pool.acquire() as conn:
            return await conn.fetchval("""
                SELECT ce.end_line_number - ce.line_number + 1
                FROM claim_mappings cm
                LEFT JOIN code_entities ce ON cm.code_entity_id = ce.id
                WHERE cm.id = $1
            """, mapping_id)


def _rowcount(status: str) -> int:
    """Row count from an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(status.rsplit(' ', 1)[-1])
    except (ValueError, AttributeError):
        return 0
