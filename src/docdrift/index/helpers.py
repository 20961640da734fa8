"""Pure helpers shared by the index and the verifier.

Markdown headings, route path matching, path normalization and dependency
lookup. Nothing here touches the database.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Optional


@dataclass
class Heading:
    """A markdown heading with its GitHub-style anchor slug."""
    text: str
    level: int
    slug: str


_HEADING_RE = re.compile(r'^(#{1,6})\s+(.+)$')


def parse_markdown_headings(content: str) -> list[Heading]:
    """Extract headings with GitHub-style slugs.

    Inline bold, italic, code and link markup is stripped before slugging.
    Duplicate slugs get ``-1``, ``-2`` suffixes the way GitHub numbers them.

    Args:
        content: Markdown text

    Returns:
        Headings in document order
    """
    headings: list[Heading] = []
    slug_counts: dict[str, int] = {}

    for line in content.split('\n'):
        match = _HEADING_RE.match(line)
        if not match:
            continue

        level = len(match.group(1))
        text = match.group(2).strip()
        text = re.sub(r'\*\*(.+?)\*\*', r'\1', text)
        text = re.sub(r'\*(.+?)\*', r'\1', text)
        text = re.sub(r'`(.+?)`', r'\1', text)
        text = re.sub(r'\[(.+?)\]\([^)]*\)', r'\1', text)

        slug = text.lower()
        slug = re.sub(r'[^\w\s-]', '', slug)
        slug = re.sub(r'\s+', '-', slug)
        slug = re.sub(r'-+', '-', slug)
        slug = slug.strip('-')

        count = slug_counts.get(slug, 0)
        slug_counts[slug] = count + 1
        if count > 0:
            slug = f"{slug}-{count}"

        headings.append(Heading(text=text, level=level, slug=slug))

    return headings


def normalize_file_path(path: str) -> Optional[str]:
    """Normalize a repo-relative path for index lookups.

    Returns None for paths that climb out of the repo or name a directory.
    """
    if not path or '..' in path:
        return None
    if path.startswith('./'):
        path = path[2:]
    if path.endswith('/'):
        return None
    return path


def resolve_relative_path(base_dir: str, path: str) -> Optional[str]:
    """Resolve ``./`` and ``../`` segments of ``path`` against ``base_dir``.

    Returns None when the result would escape the repository root.
    """
    joined = f"{base_dir}/{path}" if base_dir else path
    resolved: list[str] = []
    for part in joined.split('/'):
        if part == '..':
            if not resolved:
                return None
            resolved.pop()
        elif part not in ('.', ''):
            resolved.append(part)
    return '/'.join(resolved) if resolved else None


def normalize_route_path(path: str) -> str:
    if len(path) > 1 and path.endswith('/'):
        return path[:-1]
    return path


def is_route_param(segment: str) -> bool:
    """Express ``:id``, OpenAPI ``{id}`` and Flask ``<int:id>`` segments."""
    return segment.startswith((':', '{', '<'))


def path_matches_parameterized(claimed_path: str, route_path: str) -> bool:
    """Check a documented path against a route, treating params as wildcards.

    ``/users/:id`` matches ``/users/{id}`` and ``/users/<int:id>``.
    """
    claimed_segments = [s for s in claimed_path.split('/') if s]
    route_segments = [s for s in route_path.split('/') if s]

    if len(claimed_segments) != len(route_segments):
        return False

    for claimed, route in zip(claimed_segments, route_segments):
        if claimed == route:
            continue
        if is_route_param(claimed) or is_route_param(route):
            continue
        return False

    return True


def compute_path_similarity(claimed_path: str, route_path: str) -> float:
    """Score how close a documented route path is to an indexed one.

    1.0 for an exact match, 0.9 when one is a prefix of the other, otherwise
    ``0.5 + 0.4 * overlap`` where overlap counts positional segment matches
    (params count half). No overlap scores 0.0.
    """
    claimed_norm = normalize_route_path(claimed_path)
    route_norm = normalize_route_path(route_path)

    if claimed_norm == route_norm:
        return 1.0

    if route_norm.startswith(claimed_norm + '/') or claimed_norm.startswith(route_norm + '/'):
        return 0.9

    claimed_segments = [s for s in claimed_norm.split('/') if s]
    route_segments = [s for s in route_norm.split('/') if s]
    max_len = max(len(claimed_segments), len(route_segments))
    if max_len == 0:
        return 0.0

    matching = 0.0
    for claimed, route in zip(claimed_segments, route_segments):
        if claimed == route:
            matching += 1
        elif is_route_param(claimed) or is_route_param(route):
            matching += 0.5

    overlap = matching / max_len
    if overlap == 0:
        return 0.0
    return 0.5 + 0.4 * overlap


def split_route_name(name: str) -> tuple[str, str]:
    """Route entities are named ``"METHOD /path"``."""
    method, _, path = name.partition(' ')
    return method, path


def find_package_version(deps: dict[str, str], package_name: str) -> Optional[str]:
    """Look up a package, falling back to a case-insensitive match (PyPI names)."""
    if deps.get(package_name):
        return deps[package_name]

    lower_name = package_name.lower()
    for name, version in deps.items():
        if name.lower() == lower_name:
            return version
    return None
