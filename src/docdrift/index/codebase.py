"""Read-only view of the codebase index.

The indexer owns ``repo_files``, ``code_entities`` and ``repo_manifests``;
docdrift only queries them. File contents come from an optional checkout on
disk because the tables hold parsed structure, not raw files.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import asyncpg

from docdrift.index.helpers import (
    Heading,
    compute_path_similarity,
    find_package_version,
    normalize_file_path,
    normalize_route_path,
    parse_markdown_headings,
    path_matches_parameterized,
    split_route_name,
)
from docdrift.models import CodeEntity, decode_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 512 * 1024


@dataclass
class DependencyVersion:
    """Resolved version of a declared dependency."""
    version: str
    source: str  # 'lockfile' or 'manifest'
    file_path: str


@dataclass
class ScriptInfo:
    name: str
    command: str
    file_path: str


@dataclass
class RouteEntity:
    id: str
    file_path: str
    line_number: int
    method: str
    path: str


@dataclass
class RouteCandidate:
    """A fuzzy route search hit."""
    method: str
    path: str
    file: str
    line: int
    similarity: float


@dataclass
class ManifestMetadata:
    file_path: str
    source: str
    dependencies: dict[str, str] = field(default_factory=dict)
    dev_dependencies: dict[str, str] = field(default_factory=dict)
    scripts: dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None
    version: Optional[str] = None
    engines: Optional[dict[str, str]] = None
    license: Optional[str] = None


@dataclass
class SemanticHit:
    """A code entity returned by vector search."""
    entity: CodeEntity
    similarity: float  # Cosine similarity (1 = identical)


class CodebaseIndex(Protocol):
    """Queries the Mapper and Verifier run against the index."""

    async def file_exists(self, repo_id: str, path: str) -> bool: ...

    async def get_file_tree(self, repo_id: str) -> list[str]: ...

    async def find_symbol(self, repo_id: str, name: str) -> list[CodeEntity]: ...

    async def get_entities_by_file(self, repo_id: str, file_path: str) -> list[CodeEntity]: ...

    async def get_entity_by_id(self, entity_id: str) -> Optional[CodeEntity]: ...

    async def find_route(self, repo_id: str, method: str, path: str) -> Optional[RouteEntity]: ...

    async def search_routes(self, repo_id: str, path: str) -> list[RouteCandidate]: ...

    async def get_dependency_version(self, repo_id: str, package_name: str) -> Optional[DependencyVersion]: ...

    async def script_exists(self, repo_id: str, script_name: str) -> bool: ...

    async def get_available_scripts(self, repo_id: str) -> list[ScriptInfo]: ...

    async def get_manifest_metadata(self, repo_id: str) -> Optional[ManifestMetadata]: ...

    async def search_semantic(self, repo_id: str, embedding: list[float], top_k: int = 5) -> list[SemanticHit]: ...

    async def get_headings(self, repo_id: str, file_path: str) -> list[Heading]: ...

    async def read_file_content(
        self, repo_id: str, file_path: str, max_bytes: int = DEFAULT_MAX_FILE_BYTES
    ) -> Optional[str]: ...


def _json_dict(value) -> dict:
    decoded = decode_json(value)
    return decoded if isinstance(decoded, dict) else {}


class PgCodebaseIndex:
    """CodebaseIndex backed by the indexer's PostgreSQL tables."""

    def __init__(self, pool: asyncpg.Pool, repo_root: Optional[str | Path] = None):
        self.pool = pool
        self.repo_root = Path(repo_root).resolve() if repo_root else None

    async def file_exists(self, repo_id: str, path: str) -> bool:
        normalized = normalize_file_path(path)
        if not normalized:
            return False

        async with self.pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM code_entities WHERE repo_id = $1 AND file_path = $2 LIMIT 1",
                repo_id, normalized
            )
            if found:
                return True
            found = await conn.fetchval(
                "SELECT 1 FROM repo_files WHERE repo_id = $1 AND path = $2 LIMIT 1",
                repo_id, normalized
            )
            return bool(found)

    async def get_file_tree(self, repo_id: str) -> list[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT path FROM (
                    SELECT file_path AS path FROM code_entities WHERE repo_id = $1
                    UNION
                    SELECT path FROM repo_files WHERE repo_id = $1
                ) AS all_files
                ORDER BY path
            """, repo_id)
        return [row["path"] for row in rows]

    async def find_symbol(self, repo_id: str, name: str) -> list[CodeEntity]:
        """Find entities by name: exact, then case-insensitive, then prefix.

        Args:
            repo_id: Repository UUID
            name: Symbol name

        Returns:
            Matching entities ordered by file and line
        """
        if not name:
            return []

        lookups = [
            "SELECT * FROM code_entities WHERE repo_id = $1 AND name = $2",
            "SELECT * FROM code_entities WHERE repo_id = $1 AND LOWER(name) = LOWER($2)",
            "SELECT * FROM code_entities WHERE repo_id = $1 AND starts_with(name, $2)",
        ]

        async with self.pool.acquire() as conn:
            for query in lookups:
                rows = await conn.fetch(f"{query} ORDER BY file_path, line_number", repo_id, name)
                if rows:
                    return [CodeEntity.from_row(row) for row in rows]
        return []

    async def get_entities_by_file(self, repo_id: str, file_path: str) -> list[CodeEntity]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM code_entities WHERE repo_id = $1 AND file_path = $2 ORDER BY line_number",
                repo_id, file_path
            )
        return [CodeEntity.from_row(row) for row in rows]

    async def get_entity_by_id(self, entity_id: str) -> Optional[CodeEntity]:
        try:
            entity_uuid = uuid.UUID(str(entity_id))
        except ValueError:
            return None

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM code_entities WHERE id = $1", entity_uuid)
        return CodeEntity.from_row(row) if row else None

    async def _route_rows(self, repo_id: str) -> list[asyncpg.Record]:
        async with self.pool.acquire() as conn:
            return await conn.fetch(
                "SELECT * FROM code_entities WHERE repo_id = $1 AND entity_type = 'route' "
                "ORDER BY file_path, line_number",
                repo_id
            )

    async def find_route(self, repo_id: str, method: str, path: str) -> Optional[RouteEntity]:
        """Find a route by exact name, then by parameterized match.

        Route entities are named ``"GET /users/:id"``. A route declared with
        method ``ALL`` matches any method.
        """
        normalized_method = method.upper()
        normalized_path = normalize_route_path(path)

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM code_entities WHERE repo_id = $1 AND entity_type = 'route' AND name = $2 LIMIT 1",
                repo_id, f"{normalized_method} {normalized_path}"
            )
        if row:
            return _to_route(row)

        for row in await self._route_rows(repo_id):
            row_method, row_path = split_route_name(row["name"])
            if row_method != normalized_method and row_method != "ALL":
                continue
            if path_matches_parameterized(normalized_path, row_path):
                return _to_route(row)

        return None

    async def search_routes(self, repo_id: str, path: str) -> list[RouteCandidate]:
        """Rank indexed routes by path similarity (threshold 0.3, top 10)."""
        results: list[RouteCandidate] = []
        for row in await self._route_rows(repo_id):
            method, route_path = split_route_name(row["name"])
            similarity = compute_path_similarity(path, route_path)
            if similarity > 0.3:
                results.append(RouteCandidate(
                    method=method,
                    path=route_path,
                    file=row["file_path"],
                    line=row["line_number"],
                    similarity=round(similarity, 2),
                ))

        results.sort(key=lambda r: -r.similarity)
        return results[:10]

    async def get_dependency_version(self, repo_id: str, package_name: str) -> Optional[DependencyVersion]:
        """Resolve a dependency, preferring lockfiles over manifests."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT file_path, source, dependencies, dev_dependencies
                FROM repo_manifests
                WHERE repo_id = $1
                ORDER BY CASE source WHEN 'lockfile' THEN 0 ELSE 1 END, file_path
            """, repo_id)

        for row in rows:
            version = (
                find_package_version(_json_dict(row["dependencies"]), package_name)
                or find_package_version(_json_dict(row["dev_dependencies"]), package_name)
            )
            if version:
                return DependencyVersion(version=version, source=row["source"], file_path=row["file_path"])
        return None

    async def script_exists(self, repo_id: str, script_name: str) -> bool:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT scripts FROM repo_manifests WHERE repo_id = $1", repo_id)
        return any(script_name in _json_dict(row["scripts"]) for row in rows)

    async def get_available_scripts(self, repo_id: str) -> list[ScriptInfo]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT file_path, scripts FROM repo_manifests WHERE repo_id = $1 ORDER BY file_path",
                repo_id
            )

        scripts = [
            ScriptInfo(name=name, command=str(command), file_path=row["file_path"])
            for row in rows
            for name, command in _json_dict(row["scripts"]).items()
        ]
        scripts.sort(key=lambda s: (s.file_path, s.name))
        return scripts

    async def get_manifest_metadata(self, repo_id: str) -> Optional[ManifestMetadata]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT file_path, dependencies, dev_dependencies, scripts, source,
                       name, version, engines, license
                FROM repo_manifests
                WHERE repo_id = $1 AND source = 'manifest'
                ORDER BY file_path
                LIMIT 1
            """, repo_id)

        if not row:
            return None

        engines = decode_json(row["engines"])
        return ManifestMetadata(
            file_path=row["file_path"],
            source=row["source"],
            dependencies=_json_dict(row["dependencies"]),
            dev_dependencies=_json_dict(row["dev_dependencies"]),
            scripts=_json_dict(row["scripts"]),
            name=row["name"],
            version=row["version"],
            engines=engines if isinstance(engines, dict) else None,
            license=row["license"],
        )

    async def search_semantic(self, repo_id: str, embedding: list[float], top_k: int = 5) -> list[SemanticHit]:
        """Cosine search over entity embeddings.

        Args:
            repo_id: Repository UUID
            embedding: Query embedding vector
            top_k: Number of results (clamped to 1-50)

        Returns:
            Hits ordered by similarity (highest first)
        """
        if not embedding:
            return []

        k = min(max(top_k, 1), 50)
        vec_str = "[" + ",".join(str(x) for x in embedding) + "]"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT id, repo_id, file_path, line_number, end_line_number, entity_type,
                       name, signature, raw_code,
                       1 - (embedding <=> $1::vector) AS similarity
                FROM code_entities
                WHERE repo_id = $2 AND embedding IS NOT NULL
                ORDER BY embedding <=> $1::vector
                LIMIT $3
            """, vec_str, repo_id, k)

        hits = []
        for row in rows:
            data = dict(row)
            similarity = float(data.pop("similarity"))
            hits.append(SemanticHit(entity=CodeEntity.from_row(data), similarity=similarity))
        return hits

    async def get_headings(self, repo_id: str, file_path: str) -> list[Heading]:
        content = await self.read_file_content(repo_id, file_path)
        if not content:
            return []
        return parse_markdown_headings(content)

    async def read_file_content(
        self, repo_id: str, file_path: str, max_bytes: int = DEFAULT_MAX_FILE_BYTES
    ) -> Optional[str]:
        """Read a file from the checkout, or None if absent, too large or outside it."""
        if self.repo_root is None:
            return None

        normalized = normalize_file_path(file_path)
        if not normalized:
            return None

        target = (self.repo_root / normalized).resolve()
        if not target.is_relative_to(self.repo_root) or not target.is_file():
            return None

        try:
            if target.stat().st_size > max_bytes:
                logger.debug(f"Skipping {normalized}: larger than {max_bytes} bytes")
                return None
            return target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Could not read {normalized}: {e}")
            return None


def _to_route(row) -> RouteEntity:
    method, path = split_route_name(row["name"])
    return RouteEntity(
        id=str(row["id"]),
        file_path=row["file_path"],
        line_number=row["line_number"],
        method=method,
        path=path,
    )
