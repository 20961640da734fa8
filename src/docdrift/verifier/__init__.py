"""Tiered claim verification."""
from .engine import ClaimContext, Verifier
from .result_store import ResultStore, apply_evidence_guards, merge_latest
from .routing import (
    FormattedEvidence,
    RoutingDecision,
    build_path1_evidence,
    build_path2_evidence,
    route_claim,
)
from .severity import assign_severity, meets_min_severity
from .tier1 import Tier1Verifier
from .tier2 import Tier2Outcome, Tier2Verifier
from .tier3 import verify_semantic
from .tier4 import Tier4Verifier, result_from_agent, result_id_for_task
from .url_check import UrlChecker, UrlCheckOutcome
from .versions import compare_versions, version_satisfies

__all__ = [
    "ClaimContext",
    "FormattedEvidence",
    "ResultStore",
    "RoutingDecision",
    "Tier1Verifier",
    "Tier2Outcome",
    "Tier2Verifier",
    "Tier4Verifier",
    "UrlCheckOutcome",
    "UrlChecker",
    "Verifier",
    "apply_evidence_guards",
    "assign_severity",
    "build_path1_evidence",
    "build_path2_evidence",
    "compare_versions",
    "meets_min_severity",
    "merge_latest",
    "result_from_agent",
    "result_id_for_task",
    "route_claim",
    "verify_semantic",
    "version_satisfies",
]
