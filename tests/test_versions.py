"""Tests for version comparison and edit-distance helpers."""
import pytest

from docdrift.verifier.similarity import find_close_match, find_similar_paths, levenshtein
from docdrift.verifier.versions import compare_versions, parse_semver, version_satisfies


@pytest.mark.parametrize("documented,actual,source,matches", [
    ("^4.18", "4.19.2", "lockfile", True),
    ("^4.18", "5.0.0", "lockfile", False),
    ("~4.18.0", "4.18.9", "lockfile", True),
    ("~4.18.0", "4.19.0", "lockfile", False),
    ("4", "4.19.2", "lockfile", True),
    ("4.18", "4.19.2", "lockfile", False),
    ("4.19.2", "4.19.2", "lockfile", True),
    ("4.19", "^4.19.0", "manifest", True),
    ("4.18", "^4.19.0", "manifest", False),
    ("4.19.3", "^4.19.0", "manifest", True),
])
def test_compare_versions(documented, actual, source, matches):
    """Documented versions are checked against lockfile and manifest values."""
    assert compare_versions(documented, actual, source).matches is matches


def test_comparison_type():
    """The comparison type reflects the documented precision."""
    assert compare_versions("4", "4.1.0", "lockfile").comparison_type == "major_only"
    assert compare_versions("4.1", "4.1.0", "lockfile").comparison_type == "major_minor"
    assert compare_versions("4.1.0", "4.1.0", "lockfile").comparison_type == "exact"
    assert compare_versions("^4.1", "4.1.0", "lockfile").comparison_type == "range"


def test_caret_zero_major():
    """^0.2.3 allows only 0.2.x."""
    assert compare_versions("^0.2.3", "0.2.9", "lockfile").matches
    assert not compare_versions("^0.2.3", "0.3.0", "lockfile").matches


def test_parse_semver_pads_and_ignores_prerelease():
    """Missing parts become zero; pre-release suffixes are dropped."""
    assert parse_semver("4") == (4, 0, 0)
    assert parse_semver("1.2.3-beta.1") == (1, 2, 3)
    assert parse_semver("x.y") is None


@pytest.mark.parametrize("claimed,actual,ok", [
    ("18+", "20.1.0", True),
    ("18", "18.17.0", True),
    ("18", "20.0.0", False),
    (">=18", "18.0.0", True),
    ("18.x", "18.4.1", True),
    ("3.11", "3.10.4", False),
])
def test_version_satisfies(claimed, actual, ok):
    """Runtime claims compare only the claimed segments."""
    assert version_satisfies(claimed, actual) is ok


def test_levenshtein():
    """Classic edit distances."""
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein("same", "same") == 0


def test_find_close_match_excludes_exact():
    """Exact matches are not suggestions."""
    assert find_close_match("build", ["build"], 2) is None
    match = find_close_match("biuld", ["build", "test"], 2)
    assert match.name == "build"
    assert match.distance == 2


def test_find_similar_paths_prefers_basename():
    """Basename matches win over full-path matches."""
    results = find_similar_paths("src/utils/helpr.ts", ["src/utils/helper.ts"])
    assert results[0].path == "src/utils/helper.ts"
    assert results[0].match_type == "basename"
