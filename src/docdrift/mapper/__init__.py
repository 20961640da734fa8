"""Claim-to-code mapping."""
from .mapper import (
    Mapper,
    MappingResult,
    blend_confidence,
    dedupe_candidates,
    find_ambiguous,
    rank_candidates,
)
from .store import MapperStore
from .strategies import (
    RUNNER_MANIFEST_MAP,
    Candidate,
    direct_reference,
    extract_symbol_from_import,
    semantic_search,
    symbol_search,
)

__all__ = [
    "Candidate",
    "Mapper",
    "MapperStore",
    "MappingResult",
    "RUNNER_MANIFEST_MAP",
    "blend_confidence",
    "dedupe_candidates",
    "direct_reference",
    "extract_symbol_from_import",
    "find_ambiguous",
    "rank_candidates",
    "semantic_search",
    "symbol_search",
]
