"""Edit-distance helpers for close-match suggestions."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Literal, Optional


@dataclass
class CloseMatch:
    name: str
    distance: int


@dataclass
class SimilarPath:
    path: str
    distance: int
    match_type: Literal["basename", "full_path"]


def levenshtein(a: str, b: str) -> int:
    """Levenshtein edit distance."""
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return previous[-1]


def find_close_match(target: str, candidates: Iterable[str], max_distance: int) -> Optional[CloseMatch]:
    """Closest candidate within ``max_distance``, excluding exact matches.

    Ties keep the first candidate seen.
    """
    best: Optional[CloseMatch] = None
    for candidate in candidates:
        distance = levenshtein(target, candidate)
        if 0 < distance <= max_distance and (best is None or distance < best.distance):
            best = CloseMatch(name=candidate, distance=distance)
    return best


def _basename(path: str) -> str:
    return path.rsplit('/', 1)[-1] or path


def find_similar_paths(target_path: str, file_tree: Iterable[str], max_results: int = 5) -> list[SimilarPath]:
    """Find likely renames of a missing file.

    Basename distance <= 2 is tried first. Full-path distance <= 3 is only
    consulted when no basename is close.
    """
    files = list(file_tree)
    target_basename = _basename(target_path)

    results = [
        SimilarPath(path=f, distance=d, match_type="basename")
        for f in files
        if 0 < (d := levenshtein(target_basename, _basename(f))) <= 2
    ]

    if not results:
        results = [
            SimilarPath(path=f, distance=d, match_type="full_path")
            for f in files
            if 0 < (d := levenshtein(target_path, f)) <= 3
        ]

    results.sort(key=lambda r: (r.distance, r.path))
    return results[:max_results]
