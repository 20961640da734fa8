"""Version comparison for dependency and runtime claims.

Handles npm-style range prefixes (``^ ~ >= > <= <``), ``v`` prefixes and
partial versions. Pre-release and build suffixes are ignored.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Literal, NamedTuple, Optional

ComparisonType = Literal["major_only", "major_minor", "exact", "range"]

_PREFIX_RE = re.compile(r'^([~^>=<!]+)')
_STRIP_RE = re.compile(r'^[v^~>=<!]+')


@dataclass
class VersionComparison:
    matches: bool
    comparison_type: ComparisonType
    documented_version: str
    actual_version: str
    source: str


class Semver(NamedTuple):
    major: int
    minor: int
    patch: int


def strip_version_prefix(version: str) -> str:
    """Strip ``v``, ``^``, ``~``, ``>=`` and similar prefixes."""
    return _STRIP_RE.sub('', version.strip()).strip()


def has_range_prefix(version: str) -> bool:
    return bool(_PREFIX_RE.match(version.strip()))


def extract_range_prefix(version: str) -> str:
    match = _PREFIX_RE.match(version.strip())
    return match.group(1) if match else ''


def parse_semver(version: str) -> Optional[Semver]:
    """Parse ``X[.Y[.Z]]``, padding missing parts with zeros."""
    core = re.split(r'[-+]', version, maxsplit=1)[0]
    parts = core.split('.')
    try:
        major = int(parts[0])
        minor = int(parts[1]) if len(parts) > 1 else 0
        patch = int(parts[2]) if len(parts) > 2 else 0
    except ValueError:
        return None
    return Semver(major, minor, patch)


def satisfies_caret(version: Semver, base: Semver) -> bool:
    """``^X.Y.Z``: no change to the leftmost non-zero part."""
    if version < base:
        return False
    if base.major != 0:
        return version.major == base.major
    if base.minor != 0:
        return version.major == 0 and version.minor == base.minor
    return version.major == 0 and version.minor == 0 and version.patch == base.patch


def satisfies_tilde(version: Semver, base: Semver) -> bool:
    """``~X.Y.Z``: patch-level changes only."""
    if version < base:
        return False
    return version.major == base.major and version.minor == base.minor


def satisfies_range(version: Semver, prefix: str, base: Semver) -> bool:
    if prefix == '^':
        return satisfies_caret(version, base)
    if prefix == '~':
        return satisfies_tilde(version, base)
    if prefix == '>=':
        return version >= base
    if prefix == '>':
        return version > base
    if prefix == '<=':
        return version <= base
    if prefix == '<':
        return version < base
    return version == base


def _segments_match(documented: str, actual: str) -> bool:
    doc_parts = documented.split('.')
    actual_parts = actual.split('.')
    if len(doc_parts) > len(actual_parts):
        return False
    return all(d == a for d, a in zip(doc_parts, actual_parts))


def compare_versions(documented: str, actual: str, source: str) -> VersionComparison:
    """Compare a documented version against what the manifest or lockfile declares.

    Args:
        documented: Version as written in the docs (``4``, ``4.18``, ``^4.18``)
        actual: Version from the index (``4.19.2`` or a manifest range ``^4.18.0``)
        source: ``lockfile`` or ``manifest``

    Returns:
        VersionComparison describing the outcome
    """
    def result(matches: bool, kind: ComparisonType) -> VersionComparison:
        return VersionComparison(
            matches=matches,
            comparison_type=kind,
            documented_version=documented,
            actual_version=actual,
            source=source,
        )

    clean_documented = strip_version_prefix(documented)
    clean_actual = strip_version_prefix(actual)

    # Documented range: does the actual version fall inside it?
    if has_range_prefix(documented):
        prefix = extract_range_prefix(documented)
        base = parse_semver(clean_documented)
        resolved = parse_semver(clean_actual)
        if base is None or resolved is None:
            return result(False, "range")
        return result(satisfies_range(resolved, prefix, base), "range")

    # Manifest range: does the documented version fit it?
    if source == "manifest" and has_range_prefix(actual):
        base = parse_semver(clean_actual)
        doc_segments = clean_documented.split('.')
        if base is None:
            return result(False, "range")

        if len(doc_segments) <= 2:
            doc = parse_semver(clean_documented)
            if doc is None:
                return result(False, "range")
            matches = doc.major == base.major
            if len(doc_segments) == 2:
                matches = matches and doc.minor == base.minor
            return result(matches, "range")

        doc = parse_semver(clean_documented)
        if doc is None:
            return result(False, "range")
        prefix = extract_range_prefix(actual)
        if prefix in ('^', '~', '>=', '>', '<=', '<'):
            return result(satisfies_range(doc, prefix, base), "range")
        return result(_segments_match(clean_documented, clean_actual), "range")

    segments = clean_documented.split('.')
    if len(segments) == 1:
        kind: ComparisonType = "major_only"
    elif len(segments) == 2:
        kind = "major_minor"
    else:
        return result(clean_actual == clean_documented, "exact")

    matches = clean_actual == clean_documented or clean_actual.startswith(clean_documented + '.')
    return result(matches, kind)


def version_satisfies(claimed: str, actual: str) -> bool:
    """Check a runtime version claim such as ``18+``, ``18.x`` or ``>=18``.

    Only as many segments as the claim specifies are compared. A trailing
    ``+`` (or a ``>=`` prefix) lets the last claimed segment be exceeded.
    """
    open_ended = claimed.strip().endswith('+') or claimed.strip().startswith('>=')
    clean_claimed = re.sub(r'[+x*]', '', claimed)
    clean_claimed = _STRIP_RE.sub('', clean_claimed).strip().rstrip('.')
    clean_actual = _STRIP_RE.sub('', actual.strip())

    if not clean_claimed or not clean_actual:
        return False

    try:
        claimed_parts = [int(p) for p in clean_claimed.split('.')]
        actual_parts = [int(p) for p in clean_actual.split('.')[:len(claimed_parts)]]
    except ValueError:
        return False

    if len(actual_parts) < len(claimed_parts):
        return False

    for i, (c, a) in enumerate(zip(claimed_parts, actual_parts)):
        if c == a:
            continue
        if open_ended and i == len(claimed_parts) - 1:
            return a >= c
        if open_ended and a > c:
            return True
        return False

    return True
