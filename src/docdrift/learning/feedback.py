"""Developer feedback and the suppression rules it drives.

Feedback is append-only. Recording it can:
- create or extend a rule from a quick-pick reason
- create a permanent count-based rule after repeated silent dismissals
- revoke claim rules after repeated thumbs-up
- queue free text for agent interpretation
"""
from __future__ import annotations
import logging
import re
import uuid
from typing import Any, Literal, Optional, Protocol

import asyncpg
from pydantic import BaseModel, Field, ValidationError

from docdrift.config import LearningConfig
from docdrift.learning.quick_pick import build_quick_pick_rule, is_valid_quick_pick_reason
from docdrift.learning.suppression import SuppressionStore, expiry_from_days
from docdrift.models import (
    ClaimType,
    Feedback,
    FeedbackType,
    RuleSource,
    SuppressionRule,
    SuppressionScope,
    TaskType,
)

logger = logging.getLogger(__name__)

VALID_FEEDBACK_TYPES = [t.value for t in FeedbackType]
SILENT_DISMISSAL_TYPES = (FeedbackType.THUMBS_DOWN.value, FeedbackType.FIX_DISMISSED.value)


class TaskEnqueuer(Protocol):
    async def enqueue(
        self,
        repo_id: str,
        scan_run_id: str,
        task_type: str,
        payload: dict[str, Any],
        lease_seconds: Optional[int] = None,
    ) -> str: ...


class FeedbackInterpretation(BaseModel):
    """Agent's reading of free-text feedback."""
    action: Literal["suppress", "no_action"]
    scope: Optional[Literal["claim", "file", "claim_type", "pattern"]] = None
    target: Optional[str] = None
    reason: str = Field("", max_length=500)
    duration_days: Optional[int] = Field(None, ge=1, le=3650)


class FeedbackStore:
    """Records feedback and applies its learning effects."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        suppression: SuppressionStore,
        config: Optional[LearningConfig] = None,
        task_queue: Optional[TaskEnqueuer] = None
    ):
        self.pool = pool
        self.suppression = suppression
        self.config = config or LearningConfig()
        self.task_queue = task_queue

    async def record_feedback(self, feedback: Feedback | dict[str, Any]) -> Feedback:
        """Validate, insert and apply one feedback record.

        Raises:
            ValueError: On a missing id, unknown feedback_type or quick_pick_reason
        """
        if isinstance(feedback, dict):
            _validate_raw_feedback(feedback)
            try:
                feedback = Feedback.model_validate(feedback)
            except ValidationError as e:
                raise ValueError(f"Invalid feedback: {e}") from e

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO feedback (
                    repo_id, claim_id, verification_result_id, feedback_type,
                    quick_pick_reason, free_text, github_user, pr_number
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
            """,
                feedback.repo_id,
                feedback.claim_id,
                feedback.verification_result_id,
                feedback.feedback_type,
                feedback.quick_pick_reason,
                feedback.free_text,
                feedback.github_user,
                feedback.pr_number
            )

        stored = Feedback.from_row(row)
        logger.info(f"Recorded {stored.feedback_type} feedback on claim {stored.claim_id}")

        if stored.quick_pick_reason:
            await self._apply_quick_pick(stored)
        elif stored.feedback_type in SILENT_DISMISSAL_TYPES:
            await self.check_count_exclusion(stored.repo_id, stored.claim_id)

        if stored.feedback_type == FeedbackType.THUMBS_UP.value:
            await self.check_positive_revocation(stored.repo_id, stored.claim_id)

        if stored.free_text:
            await self._enqueue_interpretation(stored)

        return stored

    async def _apply_quick_pick(self, feedback: Feedback) -> SuppressionRule:
        source_file = await self._claim_source_file(feedback.claim_id)
        rule = build_quick_pick_rule(
            repo_id=feedback.repo_id,
            claim_id=feedback.claim_id,
            source_file=source_file or "",
            reason=feedback.quick_pick_reason,
        )
        return await self.suppression.upsert_rule(rule)

    async def _claim_source_file(self, claim_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT source_file FROM claims WHERE id = $1", claim_id)

    async def get_silent_dismissal_count(self, claim_id: str) -> int:
        """thumbs_down / fix_dismissed without a quick-pick reason."""
        async with self.pool.acquire() as conn:
            count = await conn.fetchval("""
                SELECT COUNT(*)::int FROM feedback
                WHERE claim_id = $1
                  AND feedback_type IN ('thumbs_down', 'fix_dismissed')
                  AND quick_pick_reason IS NULL
            """, claim_id)
        return count or 0

    async def get_silent_dismissal_prs(self, claim_id: str) -> list[int]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT pr_number FROM feedback
                WHERE claim_id = $1
                  AND feedback_type IN ('thumbs_down', 'fix_dismissed')
                  AND quick_pick_reason IS NULL
                  AND pr_number IS NOT NULL
                ORDER BY pr_number
            """, claim_id)
        return [row["pr_number"] for row in rows]

    async def check_count_exclusion(self, repo_id: str, claim_id: str) -> Optional[SuppressionRule]:
        """Create a permanent claim rule once silent dismissals reach the threshold."""
        count = await self.get_silent_dismissal_count(claim_id)
        if count < self.config.count_exclusion_threshold:
            return None

        async with self.pool.acquire() as conn:
            exists = await conn.fetchval("""
                SELECT 1 FROM suppression_rules
                WHERE repo_id = $1
                  AND scope = 'claim'
                  AND target_claim_id = $2
                  AND source = 'count_based'
                  AND revoked = false
                LIMIT 1
            """, repo_id, claim_id)
        if exists:
            return None

        prs = await self.get_silent_dismissal_prs(claim_id)
        pr_list = ", ".join(f"#{pr}" for pr in prs) if prs else "unknown"
        rule = SuppressionRule(
            repo_id=repo_id,
            scope=SuppressionScope.CLAIM,
            target_claim_id=claim_id,
            reason=f"Silently dismissed {count} times (PRs: {pr_list})",
            source=RuleSource.COUNT_BASED,
            expires_at=None,
        )
        return await self.suppression.create_rule(rule)

    async def check_positive_revocation(self, repo_id: str, claim_id: str) -> int:
        """Revoke claim rules that have collected enough thumbs-up since creation.

        Returns:
            Number of rules revoked
        """
        async with self.pool.acquire() as conn:
            rules = await conn.fetch("""
                SELECT id, created_at FROM suppression_rules
                WHERE repo_id = $1
                  AND scope = 'claim'
                  AND target_claim_id = $2
                  AND revoked = false
                  AND (expires_at IS NULL OR expires_at > NOW())
            """, repo_id, claim_id)

            to_revoke = []
            for rule in rules:
                positives = await conn.fetchval("""
                    SELECT COUNT(*)::int FROM feedback
                    WHERE claim_id = $1
                      AND feedback_type = 'thumbs_up'
                      AND created_at >= $2
                """, claim_id, rule["created_at"])
                if (positives or 0) >= self.config.revocation_threshold:
                    to_revoke.append(str(rule["id"]))

        revoked = 0
        for rule_id in to_revoke:
            if await self.suppression.revoke_rule(rule_id):
                revoked += 1
        return revoked

    async def _enqueue_interpretation(self, feedback: Feedback) -> Optional[str]:
        if self.task_queue is None:
            logger.debug(f"No task queue configured; free text on claim {feedback.claim_id} not interpreted")
            return None

        scan_run_id = None
        claim_row = None
        async with self.pool.acquire() as conn:
            if feedback.verification_result_id:
                scan_run_id = await conn.fetchval(
                    "SELECT scan_run_id FROM verification_results WHERE id = $1",
                    feedback.verification_result_id
                )
            claim_row = await conn.fetchrow(
                "SELECT claim_text, claim_type, source_file FROM claims WHERE id = $1",
                feedback.claim_id
            )
        if scan_run_id is None:
            logger.warning(
                f"Free-text feedback {feedback.id} has no scan run to attach to; skipping interpretation"
            )
            return None

        return await self.task_queue.enqueue(
            repo_id=feedback.repo_id,
            scan_run_id=str(scan_run_id),
            task_type=TaskType.FEEDBACK_INTERPRETATION.value,
            payload={
                "feedback_id": feedback.id,
                "claim_id": feedback.claim_id,
                "feedback_type": feedback.feedback_type,
                "free_text": feedback.free_text,
                "claim_text": claim_row["claim_text"] if claim_row else None,
                "claim_type": claim_row["claim_type"] if claim_row else None,
                "source_file": claim_row["source_file"] if claim_row else None,
            },
        )

    async def apply_feedback_interpretation(
        self,
        repo_id: str,
        claim_id: str,
        result: dict[str, Any]
    ) -> Optional[SuppressionRule]:
        """Create an agent_interpreted rule from a completed interpretation task.

        Pattern rules are only created when the regex compiles.
        """
        try:
            interpretation = FeedbackInterpretation.model_validate(result)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed feedback interpretation for claim {claim_id}: {e}")
            return None

        if interpretation.action != "suppress" or not interpretation.scope:
            return None

        target = interpretation.target
        if interpretation.scope == SuppressionScope.CLAIM.value:
            target = target or claim_id
        if not target:
            logger.warning(f"Feedback interpretation for claim {claim_id} has no target; ignoring")
            return None

        if interpretation.scope == SuppressionScope.PATTERN.value:
            try:
                re.compile(target)
            except re.error:
                logger.warning(f"Feedback interpretation proposed invalid pattern {target!r}; ignoring")
                return None
        if interpretation.scope == SuppressionScope.CLAIM.value:
            try:
                target = str(uuid.UUID(str(target)))
            except ValueError:
                logger.warning(f"Feedback interpretation proposed invalid claim id {target!r}; ignoring")
                return None
        if interpretation.scope == SuppressionScope.CLAIM_TYPE.value:
            if target not in {t.value for t in ClaimType}:
                logger.warning(f"Feedback interpretation proposed unknown claim type {target!r}; ignoring")
                return None

        rule = SuppressionRule(
            repo_id=repo_id,
            scope=interpretation.scope,
            target_claim_id=target if interpretation.scope == "claim" else None,
            target_file=target if interpretation.scope == "file" else None,
            target_claim_type=target if interpretation.scope == "claim_type" else None,
            target_pattern=target if interpretation.scope == "pattern" else None,
            reason=interpretation.reason or "Interpreted from developer feedback",
            source=RuleSource.AGENT_INTERPRETED,
            expires_at=expiry_from_days(interpretation.duration_days),
        )
        return await self.suppression.upsert_rule(rule)


def _validate_raw_feedback(data: dict[str, Any]) -> None:
    if not data.get("repo_id") or not data.get("claim_id"):
        raise ValueError("repo_id and claim_id are required")

    feedback_type = data.get("feedback_type")
    if isinstance(feedback_type, FeedbackType):
        feedback_type = feedback_type.value
    if feedback_type not in VALID_FEEDBACK_TYPES:
        raise ValueError(
            f"Invalid feedback_type: '{feedback_type}'. Expected one of: {', '.join(VALID_FEEDBACK_TYPES)}"
        )

    reason = data.get("quick_pick_reason")
    if hasattr(reason, "value"):
        reason = reason.value
    if reason is not None and not is_valid_quick_pick_reason(reason):
        raise ValueError(f"Invalid quick_pick_reason: '{reason}'")
