"""Error taxonomy for mapping and verification.

Mapping ambiguity is deliberately absent: it is a status on the candidate set
and an ``uncertain`` verdict, not an exception.
"""
from __future__ import annotations

from typing import Optional


class DocDriftError(Exception):
    """Base class for all docdrift errors."""


class ExtractionError(DocDriftError):
    """A claim record does not have the shape its claim_type requires."""

    def __init__(self, message: str, claim_id: Optional[str] = None):
        super().__init__(message)
        self.claim_id = claim_id


class IndexInconsistency(DocDriftError):
    """A path or entity referenced by a mapping is no longer in the index."""

    def __init__(self, message: str, repo_id: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.repo_id = repo_id
        self.path = path


class AgentTaskFailure(DocDriftError):
    """An agent task failed after exhausting its retries."""

    def __init__(self, message: str, task_id: Optional[str] = None, retryable: bool = True):
        super().__init__(message)
        self.task_id = task_id
        self.retryable = retryable


class DatabaseError(DocDriftError):
    """Database failure. Fatal to the current scan."""
