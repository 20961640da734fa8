"""Feedback, suppression and co-change learning."""
from .co_change import CoChangeStore, compute_boost
from .confidence import effective_confidence
from .feedback import FeedbackInterpretation, FeedbackStore
from .quick_pick import QUICK_PICK_ACTIONS, build_quick_pick_rule, is_valid_quick_pick_reason
from .suppression import (
    SuppressionStore,
    config_suppresses,
    find_matching_rule,
    is_rule_active,
    rule_matches,
)

__all__ = [
    "CoChangeStore",
    "FeedbackInterpretation",
    "FeedbackStore",
    "QUICK_PICK_ACTIONS",
    "SuppressionStore",
    "build_quick_pick_rule",
    "compute_boost",
    "config_suppresses",
    "effective_confidence",
    "find_matching_rule",
    "is_rule_active",
    "is_valid_quick_pick_reason",
    "rule_matches",
]
