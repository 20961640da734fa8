"""Suppression rules: matching, persistence and revocation.

Rules are scoped (claim, file, claim_type, pattern), may expire and are only
ever soft-deleted. Matching is evaluated in order of specificity.
"""
from __future__ import annotations
import fnmatch
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import asyncpg

from docdrift.config import SuppressEntry
from docdrift.models import Claim, ClaimType, SuppressionRule, SuppressionScope

logger = logging.getLogger(__name__)

SCOPE_ORDER = [
    SuppressionScope.CLAIM.value,
    SuppressionScope.FILE.value,
    SuppressionScope.CLAIM_TYPE.value,
    SuppressionScope.PATTERN.value,
]


def is_rule_active(rule: SuppressionRule, now: Optional[datetime] = None) -> bool:
    if rule.revoked:
        return False
    if rule.expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    expires_at = rule.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at > now


def rule_matches(rule: SuppressionRule, claim: Claim, now: Optional[datetime] = None) -> bool:
    """Check a single rule against a claim. Invalid regex never matches."""
    if rule.repo_id != claim.repo_id or not is_rule_active(rule, now):
        return False

    if rule.scope == SuppressionScope.CLAIM.value:
        return rule.target_claim_id == claim.id
    if rule.scope == SuppressionScope.FILE.value:
        return rule.target_file == claim.source_file
    if rule.scope == SuppressionScope.CLAIM_TYPE.value:
        return rule.target_claim_type == claim.claim_type
    if rule.scope == SuppressionScope.PATTERN.value:
        if not rule.target_pattern:
            return False
        try:
            return re.search(rule.target_pattern, claim.claim_text) is not None
        except re.error:
            logger.debug(f"Skipping suppression rule {rule.id}: invalid pattern {rule.target_pattern!r}")
            return False
    return False


def find_matching_rule(
    rules: Iterable[SuppressionRule],
    claim: Claim,
    now: Optional[datetime] = None
) -> Optional[SuppressionRule]:
    """First matching rule, most specific scope first."""
    by_scope: dict[str, list[SuppressionRule]] = {scope: [] for scope in SCOPE_ORDER}
    for rule in rules:
        by_scope.setdefault(rule.scope, []).append(rule)

    for scope in SCOPE_ORDER:
        for rule in by_scope[scope]:
            if rule_matches(rule, claim, now):
                return rule
    return None


def config_suppresses(entries: Iterable[SuppressEntry], claim: Claim) -> bool:
    """Static suppressions from the ``suppress`` config list.

    ``file`` is a glob on the source file, ``pattern`` a regex on the claim
    text, ``package`` matches dependency_version claims by package name.
    """
    for entry in entries:
        if entry.file and fnmatch.fnmatch(claim.source_file, entry.file):
            return True
        if entry.claim_type and entry.claim_type == claim.claim_type:
            return True
        if entry.package and claim.claim_type == ClaimType.DEPENDENCY_VERSION.value:
            if getattr(claim.extracted_value, "package", None) == entry.package:
                return True
        if entry.pattern:
            try:
                if re.search(entry.pattern, claim.claim_text):
                    return True
            except re.error:
                logger.warning(f"Invalid suppress pattern in config: {entry.pattern!r}")
    return False


def _rule_target(rule: SuppressionRule) -> Optional[str]:
    return {
        SuppressionScope.CLAIM.value: rule.target_claim_id,
        SuppressionScope.FILE.value: rule.target_file,
        SuppressionScope.CLAIM_TYPE.value: rule.target_claim_type,
        SuppressionScope.PATTERN.value: rule.target_pattern,
    }.get(rule.scope)


_TARGET_COLUMNS = {
    SuppressionScope.CLAIM.value: "target_claim_id::text",
    SuppressionScope.FILE.value: "target_file",
    SuppressionScope.CLAIM_TYPE.value: "target_claim_type",
    SuppressionScope.PATTERN.value: "target_pattern",
}


class SuppressionStore:
    """Persistence for suppression rules."""

    def __init__(self, pool: asyncpg.Pool, config_entries: Optional[list[SuppressEntry]] = None):
        self.pool = pool
        self.config_entries = config_entries or []

    async def list_active_rules(self, repo_id: str) -> list[SuppressionRule]:
        """Non-revoked, non-expired rules for a repo."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM suppression_rules
                WHERE repo_id = $1
                  AND revoked = false
                  AND (expires_at IS NULL OR expires_at > NOW())
                ORDER BY scope ASC, created_at DESC
            """, repo_id)
        return [SuppressionRule.from_row(row) for row in rows]

    async def is_suppressed(self, claim: Claim) -> bool:
        """Check config entries, then stored rules.

        A database error means the finding is shown.
        """
        if config_suppresses(self.config_entries, claim):
            return True

        try:
            rules = await self.list_active_rules(claim.repo_id)
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning(f"Suppression check failed for claim {claim.id}, treating as not suppressed: {e}")
            return False

        rule = find_matching_rule(rules, claim)
        if rule:
            logger.debug(f"Claim {claim.id} suppressed by {rule.scope} rule {rule.id}")
            return True
        return False

    async def find_active_rule(
        self,
        repo_id: str,
        scope: str,
        target: str
    ) -> Optional[SuppressionRule]:
        column = _TARGET_COLUMNS[scope]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"""
                SELECT * FROM suppression_rules
                WHERE repo_id = $1
                  AND scope = $2
                  AND {column} = $3
                  AND revoked = false
                  AND (expires_at IS NULL OR expires_at > NOW())
                ORDER BY created_at DESC
                LIMIT 1
            """, repo_id, scope, target)
        return SuppressionRule.from_row(row) if row else None

    async def create_rule(self, rule: SuppressionRule) -> SuppressionRule:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO suppression_rules (
                    id, repo_id, scope, target_claim_id, target_file, target_claim_type,
                    target_pattern, reason, source, expires_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING *
            """,
                rule.id,
                rule.repo_id,
                rule.scope,
                rule.target_claim_id,
                rule.target_file,
                rule.target_claim_type,
                rule.target_pattern,
                rule.reason,
                rule.source,
                rule.expires_at
            )

        created = SuppressionRule.from_row(row)
        logger.info(f"Created {created.source} suppression rule {created.id} ({created.scope}={_rule_target(created)})")
        return created

    async def upsert_rule(self, rule: SuppressionRule) -> SuppressionRule:
        """Create a rule, or extend the expiry of an active one with the same target.

        A permanent existing rule is left alone. The expiry is only ever pushed
        later, never earlier.
        """
        target = _rule_target(rule)
        existing = await self.find_active_rule(rule.repo_id, rule.scope, target) if target else None
        if existing is None:
            return await self.create_rule(rule)

        if existing.expires_at is None:
            return existing
        if rule.expires_at is not None and rule.expires_at <= existing.expires_at:
            return existing

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE suppression_rules SET expires_at = $2 WHERE id = $1 RETURNING *",
                existing.id, rule.expires_at
            )

        logger.info(f"Extended suppression rule {existing.id} to {rule.expires_at}")
        return SuppressionRule.from_row(row)

    async def revoke_rule(self, rule_id: str) -> bool:
        """Soft-delete a rule."""
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE suppression_rules SET revoked = true WHERE id = $1 AND revoked = false",
                rule_id
            )

        revoked = result == "UPDATE 1"
        if revoked:
            logger.info(f"Revoked suppression rule {rule_id}")
        return revoked


def expiry_from_days(days: Optional[int], now: Optional[datetime] = None) -> Optional[datetime]:
    if days is None:
        return None
    now = now or datetime.now(timezone.utc)
    return now + timedelta(days=days)
