"""Read-only access to the codebase index."""
from .codebase import (
    CodebaseIndex,
    DependencyVersion,
    ManifestMetadata,
    PgCodebaseIndex,
    RouteCandidate,
    RouteEntity,
    ScriptInfo,
    SemanticHit,
)
from .helpers import Heading, parse_markdown_headings

__all__ = [
    "CodebaseIndex",
    "DependencyVersion",
    "Heading",
    "ManifestMetadata",
    "PgCodebaseIndex",
    "RouteCandidate",
    "RouteEntity",
    "ScriptInfo",
    "SemanticHit",
    "parse_markdown_headings",
]
