"""Candidate search strategies for claim-to-code mapping.

Each strategy takes a claim and returns candidates; the Mapper unions them.
A strategy that finds nothing returns an empty list and never asserts drift.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Optional

from docdrift.config import EmbeddingsConfig, MappingConfig
from docdrift.embeddings import embed_query
from docdrift.index import CodebaseIndex
from docdrift.index.helpers import normalize_file_path
from docdrift.models import Claim, ClaimType, MappingMethod, Testability

logger = logging.getLogger(__name__)

RUNNER_MANIFEST_MAP: dict[str, list[str]] = {
    "npm": ["package.json"],
    "npx": ["package.json"],
    "yarn": ["package.json"],
    "pnpm": ["package.json"],
    "bun": ["package.json"],
    "pip": ["requirements.txt", "setup.py", "pyproject.toml"],
    "pip3": ["requirements.txt", "setup.py", "pyproject.toml"],
    "poetry": ["pyproject.toml"],
    "cargo": ["Cargo.toml"],
    "maven": ["pom.xml"],
    "mvn": ["pom.xml"],
    "gradle": ["build.gradle", "build.gradle.kts"],
    "go": ["go.mod"],
    "gem": ["Gemfile"],
    "bundle": ["Gemfile"],
    "composer": ["composer.json"],
    "dotnet": ["*.csproj", "*.fsproj"],
}

SYMBOL_SEARCH_TYPES = {
    ClaimType.CODE_EXAMPLE.value,
    ClaimType.BEHAVIOR.value,
    ClaimType.ARCHITECTURE.value,
}
SEMANTIC_SEARCH_TYPES = {ClaimType.BEHAVIOR.value, ClaimType.ARCHITECTURE.value}

FUZZY_ROUTE_MIN_SIMILARITY = 0.7

_SOURCE_EXT_RE = re.compile(r'\.(ts|js|tsx|jsx|py|rs|go)$')


@dataclass
class Candidate:
    """An unpersisted mapping candidate.

    Candidates that came from the same ambiguous lookup share a ``match_key``.
    """
    code_file: str
    confidence: float
    mapping_method: str
    code_entity_id: Optional[str] = None
    match_key: Optional[str] = None
    co_change_boost: float = 0.0


def extract_symbol_from_import(import_path: str) -> Optional[str]:
    """Last path segment of an import, without a source extension.

    ``express`` -> ``express``, ``@auth/handler`` -> ``handler``,
    ``../utils/helper.ts`` -> ``helper``
    """
    if not import_path:
        return None
    last = import_path.replace('"', '').replace("'", '').split('/')[-1]
    if not last or last in ('.', '..'):
        return None
    return _SOURCE_EXT_RE.sub('', last) or None


# ============ direct_reference ============

async def direct_reference(
    repo_id: str,
    claim: Claim,
    index: CodebaseIndex,
    config: MappingConfig
) -> list[Candidate]:
    """Map claims that name a file, script, dependency or route."""
    value = claim.extracted_value
    method = MappingMethod.DIRECT_REFERENCE.value

    if claim.claim_type == ClaimType.PATH_REFERENCE.value:
        path = normalize_file_path(value.path)
        if not path:
            return []
        if await index.file_exists(repo_id, path):
            return [Candidate(code_file=path, confidence=1.0, mapping_method=method)]

        suffix = "/" + path
        hits = [f for f in await index.get_file_tree(repo_id) if f == path or f.endswith(suffix)]
        if not hits:
            return []
        confidence = config.suffix_match_confidence / len(hits)
        return [
            Candidate(code_file=f, confidence=confidence, mapping_method=method, match_key=f"path:{path}")
            for f in hits
        ]

    if claim.claim_type == ClaimType.COMMAND.value:
        if await index.script_exists(repo_id, value.script):
            manifests = RUNNER_MANIFEST_MAP.get(value.runner or "", ["package.json"])
            return [Candidate(code_file=manifests[0], confidence=1.0, mapping_method=method)]
        return []

    if claim.claim_type == ClaimType.DEPENDENCY_VERSION.value:
        dep = await index.get_dependency_version(repo_id, value.package)
        if dep:
            return [Candidate(code_file=dep.file_path, confidence=1.0, mapping_method=method)]
        return []

    if claim.claim_type == ClaimType.API_ROUTE.value:
        route = await index.find_route(repo_id, value.method, value.path)
        if route:
            return [Candidate(
                code_file=route.file_path,
                code_entity_id=route.id,
                confidence=1.0,
                mapping_method=method,
            )]

        alternatives = await index.search_routes(repo_id, value.path)
        fuzzy = next((a for a in alternatives if a.similarity >= FUZZY_ROUTE_MIN_SIMILARITY), None)
        if fuzzy:
            return [Candidate(code_file=fuzzy.file, confidence=fuzzy.similarity, mapping_method=method)]
        return []

    return []


# ============ symbol_search ============

def symbol_names(claim: Claim) -> list[str]:
    """Names to look up, in order, without duplicates."""
    value = claim.extracted_value
    names: list[str] = []

    if claim.claim_type == ClaimType.CODE_EXAMPLE.value:
        names.extend(filter(None, (extract_symbol_from_import(i) for i in value.imports)))
        names.extend(value.symbols)
        if value.function_name:
            names.append(value.function_name)
    else:
        names.extend(claim.keywords)

    seen: set[str] = set()
    unique = []
    for name in names:
        if name and name not in seen:
            seen.add(name)
            unique.append(name)
    return unique


async def symbol_search(
    repo_id: str,
    claim: Claim,
    index: CodebaseIndex,
    config: MappingConfig
) -> list[Candidate]:
    """Look up entity names. N matches split the confidence N ways."""
    if claim.claim_type not in SYMBOL_SEARCH_TYPES:
        return []

    candidates: list[Candidate] = []
    for name in symbol_names(claim):
        entities = await index.find_symbol(repo_id, name)
        if not entities:
            continue

        confidence = config.symbol_unique_confidence / len(entities)
        match_key = f"symbol:{name}" if len(entities) > 1 else None
        candidates.extend(
            Candidate(
                code_file=entity.file_path,
                code_entity_id=entity.id,
                confidence=confidence,
                mapping_method=MappingMethod.SYMBOL_SEARCH.value,
                match_key=match_key,
            )
            for entity in entities
        )

    return candidates


# ============ semantic_search ============

def wants_semantic_search(claim: Claim, candidates_so_far: int) -> bool:
    if candidates_so_far >= 2:
        return False
    return (
        claim.claim_type in SEMANTIC_SEARCH_TYPES
        or claim.testability == Testability.SEMANTIC.value
    )


async def semantic_search(
    repo_id: str,
    claim: Claim,
    index: CodebaseIndex,
    config: MappingConfig,
    embeddings: Optional[EmbeddingsConfig] = None
) -> list[Candidate]:
    """Vector search over entity embeddings; confidence is the similarity."""
    embedding = claim.embedding
    if not embedding and embeddings is not None:
        embedding = await embed_query(claim.claim_text, embeddings)
    if not embedding:
        logger.debug(f"No embedding for claim {claim.id}; skipping semantic search")
        return []

    hits = [
        hit for hit in await index.search_semantic(repo_id, embedding, top_k=config.semantic_top_k)
        if hit.similarity >= config.semantic_threshold
    ]
    match_key = f"semantic:{claim.id}" if len(hits) > 1 else None
    return [
        Candidate(
            code_file=hit.entity.file_path,
            code_entity_id=hit.entity.id,
            confidence=min(max(hit.similarity, 0.0), 1.0),
            mapping_method=MappingMethod.SEMANTIC_SEARCH.value,
            match_key=match_key,
        )
        for hit in hits
    ]
