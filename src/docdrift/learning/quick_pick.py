"""Quick-pick feedback reasons and the suppression rules they create."""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from docdrift.learning.suppression import expiry_from_days
from docdrift.models import QuickPickReason, RuleSource, SuppressionRule, SuppressionScope


@dataclass(frozen=True)
class QuickPickAction:
    scope: SuppressionScope
    duration_days: int
    label: str


QUICK_PICK_ACTIONS: dict[str, QuickPickAction] = {
    QuickPickReason.NOT_RELEVANT_TO_THIS_FILE.value: QuickPickAction(
        SuppressionScope.CLAIM, 180, "Not relevant to this file"
    ),
    QuickPickReason.INTENTIONALLY_DIFFERENT.value: QuickPickAction(
        SuppressionScope.CLAIM, 90, "Intentionally different from docs"
    ),
    QuickPickReason.WILL_FIX_LATER.value: QuickPickAction(
        SuppressionScope.CLAIM, 90, "Known issue, will fix later"
    ),
    QuickPickReason.DOCS_ARE_ASPIRATIONAL.value: QuickPickAction(
        SuppressionScope.FILE, 90, "Doc file is aspirational (not current reality)"
    ),
    QuickPickReason.THIS_IS_CORRECT.value: QuickPickAction(
        SuppressionScope.CLAIM, 180, "False positive -- docs are correct"
    ),
}


def is_valid_quick_pick_reason(reason: str) -> bool:
    return reason in QUICK_PICK_ACTIONS


def build_quick_pick_rule(
    repo_id: str,
    claim_id: str,
    source_file: str,
    reason: str,
    now: Optional[datetime] = None
) -> SuppressionRule:
    """Build (but do not persist) the rule a quick-pick reason implies.

    Raises:
        ValueError: If the reason is unknown
    """
    action = QUICK_PICK_ACTIONS.get(reason)
    if action is None:
        raise ValueError(f"Invalid quick_pick_reason: '{reason}'")

    is_file_scope = action.scope == SuppressionScope.FILE
    return SuppressionRule(
        repo_id=repo_id,
        scope=action.scope,
        target_claim_id=None if is_file_scope else claim_id,
        target_file=source_file if is_file_scope else None,
        reason=action.label,
        source=RuleSource.QUICK_PICK,
        expires_at=expiry_from_days(action.duration_days, now),
    )
