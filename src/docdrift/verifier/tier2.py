"""Tier 2: structural and pattern checks.

Signature diffs compare a documented signature with the indexed entity.
Pattern checks read well-known config files (tsconfig, .env files, tool
version files, changelogs) through the index.
"""
from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from docdrift.config import DocDriftConfig
from docdrift.errors import IndexInconsistency
from docdrift.index import CodebaseIndex
from docdrift.mapper import MappingResult
from docdrift.models import Claim, ClaimType, CodeEntity, Severity, Verdict, VerificationResult
from docdrift.verifier.results import make_result, replace_in_claim
from docdrift.verifier.similarity import find_close_match
from docdrift.verifier.versions import version_satisfies

logger = logging.getLogger(__name__)

TIER = 2

STRICT_PATTERNS = re.compile(r'\bstrict\s*(?:mode|:\s*true|typescript)\b', re.IGNORECASE)

ENV_FILES = [
    '.env.example', '.env.sample', '.env.template', '.env',
    '.env.local', '.env.development', '.env.production',
]
ENV_VAR_PATTERN = re.compile(r'\b([A-Z][A-Z0-9_]{2,})\b')
ENV_VAR_NAME = re.compile(r'^[A-Z][A-Z0-9_]+$')
ENV_VAR_FALSE_POSITIVES = frozenset([
    'README', 'TODO', 'NOTE', 'API', 'URL', 'HTTP', 'HTTPS', 'JSON', 'HTML', 'CSS',
    'SLA', 'SLO', 'SLI', 'TBD', 'MCP', 'CLI', 'SDK', 'JWT', 'TLS', 'SSL',
    'DNS', 'SQL', 'ORM', 'AWS', 'GCP', 'LLM', 'AST',
])

RUNTIME_PATTERN = re.compile(r'\b(Node\.?js|Python|Ruby|Go|Rust|Java|Deno|Bun)\b', re.IGNORECASE)
CLAIMED_VERSION_PATTERN = re.compile(r'\b(\d+(?:\.\d+)*\+?)')


@dataclass(frozen=True)
class VersionFile:
    path: str
    tool: re.Pattern
    strip_v: bool = False


VERSION_FILES = [
    VersionFile('.nvmrc', re.compile(r'\bNode\.?js\b', re.IGNORECASE), strip_v=True),
    VersionFile('.node-version', re.compile(r'\bNode\.?js\b', re.IGNORECASE), strip_v=True),
    VersionFile('.python-version', re.compile(r'\bPython\b', re.IGNORECASE)),
    VersionFile('.ruby-version', re.compile(r'\bRuby\b', re.IGNORECASE)),
    VersionFile('.tool-versions', re.compile(r'\b(?:Node\.?js|Python|Ruby|Go|Rust|Java)\b', re.IGNORECASE)),
]

TOOL_VERSION_ALIASES = {
    'node.js': ['nodejs', 'node'],
    'nodejs': ['nodejs', 'node'],
    'python': ['python'],
    'ruby': ['ruby'],
    'go': ['golang', 'go'],
    'rust': ['rust'],
    'java': ['java'],
}

ENGINE_KEYS = {
    'node.js': ['node'],
    'nodejs': ['node'],
    'python': ['python', 'requires-python'],
    'go': ['go'],
    'rust': ['rust-edition'],
}

LICENSE_KEYWORDS = {
    'MIT': ['mit'],
    'Apache-2.0': ['apache-2', 'apache 2', 'apache2', 'apache-2.0', 'apache 2.0'],
    'GPL-3.0': ['gpl-3', 'gpl 3', 'gplv3', 'gpl-3.0'],
    'GPL-2.0': ['gpl-2', 'gpl 2', 'gplv2', 'gpl-2.0'],
    'BSD-2-Clause': ['bsd-2', 'bsd 2-clause', 'bsd2'],
    'BSD-3-Clause': ['bsd-3', 'bsd 3-clause', 'bsd3'],
    'ISC': ['isc'],
    'LGPL-3.0': ['lgpl-3', 'lgpl 3', 'lgplv3'],
    'MPL-2.0': ['mpl-2', 'mpl 2', 'mpl-2.0'],
    'AGPL-3.0': ['agpl-3', 'agpl 3', 'agplv3'],
    'Unlicense': ['unlicense'],
}

CHANGELOG_VERSION_PATTERN = re.compile(r'^##\s+\[?v?(\d+\.\d+(?:\.\d+)?(?:-[\w.]+)?)\]?', re.MULTILINE)
CHANGELOG_FILE = re.compile(r'changelog', re.IGNORECASE)

DEPRECATION_MARKERS = re.compile(r'(?:@deprecated|@obsolete|//\s*DEPRECATED|#\s*DEPRECATED)', re.IGNORECASE)
MENTIONS_DEPRECATION = re.compile(r'\bdeprecated?\b', re.IGNORECASE)

_SIGNATURE_RE = re.compile(r'([A-Za-z_$][\w$]*)\s*\(([^()]*(?:\([^()]*\)[^()]*)*)\)')
_IMPLICIT_PARAMS = frozenset(['self', 'cls'])


@dataclass
class Tier2Outcome:
    """A terminal result, or None plus any non-terminal counter-evidence."""
    result: Optional[VerificationResult] = None
    contradictions: list[str] = field(default_factory=list)


@dataclass
class ParsedSignature:
    name: str
    params: list[str]


def _split_params(params: str) -> list[str]:
    """Split on top-level commas only."""
    parts, depth, current = [], 0, []
    for ch in params:
        if ch in '([{<':
            depth += 1
        elif ch in ')]}>':
            depth -= 1
        if ch == ',' and depth == 0:
            parts.append(''.join(current))
            current = []
        else:
            current.append(ch)
    parts.append(''.join(current))
    return [p.strip() for p in parts if p.strip()]


def _param_name(param: str) -> str:
    name = re.split(r'[:=]', param, maxsplit=1)[0].strip()
    name = name.lstrip('*.').rstrip('?').strip()
    # Typed declarations such as "int count" or "const opts"
    if ' ' in name:
        name = name.split()[-1]
    return name


def parse_signature(signature: str) -> Optional[ParsedSignature]:
    """Extract the callable name and parameter names from a signature string.

    Whitespace is ignored. ``self`` and ``cls`` are dropped.
    """
    if not signature:
        return None
    match = _SIGNATURE_RE.search(' '.join(signature.split()))
    if not match:
        return None
    params = [_param_name(p) for p in _split_params(match.group(2))]
    return ParsedSignature(
        name=match.group(1),
        params=[p for p in params if p and p not in _IMPLICIT_PARAMS],
    )


def extract_env_var(text: str) -> Optional[str]:
    match = ENV_VAR_PATTERN.search(text)
    if not match or match.group(1) in ENV_VAR_FALSE_POSITIVES:
        return None
    return match.group(1)


def detect_license(text: str) -> Optional[str]:
    lower = text.lower()
    for spdx, keywords in LICENSE_KEYWORDS.items():
        if any(kw in lower for kw in keywords):
            return spdx
    return None


def extract_tool_version(content: str, runtime: str) -> Optional[str]:
    """Version for a runtime from a ``.tool-versions`` file."""
    aliases = TOOL_VERSION_ALIASES.get(runtime, [runtime])
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        parts = stripped.split()
        if len(parts) >= 2 and parts[0].lower() in aliases:
            return parts[1]
    return None


def strip_json_comments(content: str) -> str:
    """Remove // and /* */ comments (tsconfig allows them), leaving strings intact."""
    return re.sub(
        r'("(?:\\.|[^"\\])*")|//[^\n]*|/\*[\s\S]*?\*/',
        lambda m: m.group(1) or '',
        content,
    )


class Tier2Verifier:
    """Signature diff and pattern checks."""

    def __init__(self, index: CodebaseIndex, config: DocDriftConfig):
        self.index = index
        self.config = config

    async def verify(self, claim: Claim, mapping: Optional[MappingResult] = None) -> Tier2Outcome:
        outcome = Tier2Outcome()
        mappings = mapping.mappings if mapping else []

        result = await self.signature_check(claim, mapping)
        if result:
            outcome.result = result
            return outcome

        claim_type = claim.claim_type
        checks = []
        if claim_type == ClaimType.CONVENTION.value:
            checks += [self.strict_mode_check, self.framework_check]
        if claim_type in (ClaimType.ENVIRONMENT.value, ClaimType.CONFIG.value):
            checks.append(self.env_var_check)
        if claim_type == ClaimType.ENVIRONMENT.value:
            checks.append(lambda c: self.tool_version_check(c, outcome.contradictions))
        if claim_type == ClaimType.CONVENTION.value:
            checks.append(self.license_check)
        if claim_type == ClaimType.DEPENDENCY_VERSION.value and CHANGELOG_FILE.search(claim.source_file):
            checks.append(self.changelog_check)

        for check in checks:
            result = await check(claim)
            if result:
                outcome.result = result
                return outcome

        if mappings:
            outcome.result = await self.deprecation_check(claim, mapping)
        return outcome

    # ---------- signature diff ----------

    async def _resolve_entity(self, claim: Claim, mapping: Optional[MappingResult], name: str) -> Optional[CodeEntity]:
        top = mapping.top if mapping else None
        if top is not None and top.code_entity_id:
            entity = await self.index.get_entity_by_id(top.code_entity_id)
            if entity is None:
                raise IndexInconsistency(
                    f"Mapped entity {top.code_entity_id} for claim {claim.id} is no longer indexed",
                    repo_id=claim.repo_id,
                    path=top.code_file,
                )
            if entity.name == name or not name:
                return entity

        entities = await self.index.find_symbol(claim.repo_id, name) if name else []
        return entities[0] if len(entities) == 1 else None

    async def signature_check(self, claim: Claim, mapping: Optional[MappingResult]) -> Optional[VerificationResult]:
        if claim.claim_type != ClaimType.CODE_EXAMPLE.value:
            return None

        value = claim.extracted_value
        documented = parse_signature(value.signature or "")
        if documented is None and value.prose_signature and value.function_name and value.signature:
            documented = parse_signature(f"{value.function_name}({value.signature})")
        if documented is None:
            return None

        entity = await self._resolve_entity(claim, mapping, documented.name)
        if entity is None or not entity.signature:
            return None
        actual = parse_signature(entity.signature)
        if actual is None:
            return None

        if actual.name == documented.name and actual.params == documented.params:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"Signature of '{actual.name}' matches '{entity.file_path}'.",
                evidence_files=[entity.file_path],
                tier=TIER,
            )

        differences = []
        if actual.name != documented.name:
            differences.append(f"name '{documented.name}' vs '{actual.name}'")
        if len(actual.params) != len(documented.params):
            differences.append(f"{len(documented.params)} parameters documented, {len(actual.params)} in code")
        elif actual.params != documented.params:
            differences.append(f"parameters ({', '.join(documented.params)}) vs ({', '.join(actual.params)})")

        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning=f"Documented signature differs from '{entity.file_path}': {'; '.join(differences)}.",
            evidence_files=[entity.file_path],
            specific_mismatch=f"Signature mismatch: {'; '.join(differences)}.",
            suggested_fix=' '.join(entity.signature.split()),
            tier=TIER,
        )

    # ---------- pattern checks ----------

    async def strict_mode_check(self, claim: Claim) -> Optional[VerificationResult]:
        if not STRICT_PATTERNS.search(claim.claim_text):
            return None

        content = await self.index.read_file_content(claim.repo_id, 'tsconfig.json')
        if content is None:
            return None
        try:
            tsconfig = json.loads(strip_json_comments(content))
        except json.JSONDecodeError:
            logger.debug(f"tsconfig.json in repo {claim.repo_id} is not valid JSON")
            return None

        options = tsconfig.get('compilerOptions') or {} if isinstance(tsconfig, dict) else {}
        if options.get('strict') is True:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning="TypeScript strict mode is enabled in tsconfig.json.",
                evidence_files=['tsconfig.json'],
                tier=TIER,
            )
        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning="Documentation claims strict mode but tsconfig.json does not set compilerOptions.strict to true.",
            evidence_files=['tsconfig.json'],
            specific_mismatch="compilerOptions.strict is not enabled.",
            tier=TIER,
        )

    async def framework_check(self, claim: Claim) -> Optional[VerificationResult]:
        framework = getattr(claim.extracted_value, 'framework', None)
        if not framework:
            return None

        entities = await self.index.find_symbol(claim.repo_id, framework)
        if not entities:
            return None
        return make_result(
            claim, Verdict.VERIFIED.value,
            reasoning=f"Framework '{framework}' is referenced in '{entities[0].file_path}'.",
            evidence_files=[entities[0].file_path],
            tier=TIER,
        )

    async def env_var_check(self, claim: Claim) -> Optional[VerificationResult]:
        env_var = getattr(claim.extracted_value, 'env_var', None) or extract_env_var(claim.claim_text)
        if not env_var:
            return None

        existing: list[str] = []
        known_names: list[str] = []
        for env_file in ENV_FILES:
            content = await self.index.read_file_content(claim.repo_id, env_file)
            if content is None:
                continue
            existing.append(env_file)
            for line in content.splitlines():
                stripped = line.strip()
                if not stripped or stripped.startswith('#'):
                    continue
                if stripped == env_var or stripped.startswith(env_var + '='):
                    return make_result(
                        claim, Verdict.VERIFIED.value,
                        reasoning=f"Environment variable '{env_var}' found in {env_file}.",
                        evidence_files=[env_file],
                        tier=TIER,
                    )
                name = stripped.split('=', 1)[0].strip()
                if ENV_VAR_NAME.match(name):
                    known_names.append(name)

        if not existing:
            return None

        close = find_close_match(env_var, list(dict.fromkeys(known_names)), 3)
        suggestion = f" Did you mean '{close.name}'?" if close else ""
        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning=f"Environment variable '{env_var}' not found in any .env file.{suggestion}",
            evidence_files=existing,
            specific_mismatch=f"'{env_var}' is documented but not present in env configuration files.{suggestion}",
            suggested_fix=replace_in_claim(claim, env_var, close.name) if close else None,
            tier=TIER,
        )

    async def tool_version_check(self, claim: Claim, contradictions: list[str]) -> Optional[VerificationResult]:
        runtime_match = RUNTIME_PATTERN.search(getattr(claim.extracted_value, 'runtime', None) or claim.claim_text)
        if not runtime_match:
            return None
        runtime = runtime_match.group(1)

        claimed = getattr(claim.extracted_value, 'version', None)
        if not claimed:
            version_match = CLAIMED_VERSION_PATTERN.search(claim.claim_text)
            claimed = version_match.group(1) if version_match else None

        for version_file in VERSION_FILES:
            if not version_file.tool.search(claim.claim_text) and not version_file.tool.search(runtime):
                continue
            content = await self.index.read_file_content(claim.repo_id, version_file.path)
            if content is None:
                continue

            if version_file.path == '.tool-versions':
                actual = extract_tool_version(content, runtime.lower())
            else:
                actual = content.strip()
                if version_file.strip_v:
                    actual = re.sub(r'^v', '', actual, flags=re.IGNORECASE)
            if not actual:
                continue

            if not claimed:
                return make_result(
                    claim, Verdict.VERIFIED.value,
                    reasoning=f"{runtime} version {actual} configured in {version_file.path}.",
                    evidence_files=[version_file.path],
                    tier=TIER,
                )
            if version_satisfies(claimed, actual):
                return make_result(
                    claim, Verdict.VERIFIED.value,
                    reasoning=f"{runtime} version {actual} in {version_file.path} satisfies documented '{claimed}'.",
                    evidence_files=[version_file.path],
                    tier=TIER,
                )
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.MEDIUM.value,
                reasoning=f"{runtime} version mismatch: docs say '{claimed}', {version_file.path} has '{actual}'.",
                evidence_files=[version_file.path],
                specific_mismatch=f"Documented version '{claimed}' doesn't match configured '{actual}'.",
                suggested_fix=replace_in_claim(claim, claimed, actual),
                tier=TIER,
            )

        manifest = await self.index.get_manifest_metadata(claim.repo_id)
        if not manifest or not manifest.engines or not claimed:
            return None

        runtime_key = re.sub(r'\s+', '', runtime.lower())
        for key in ENGINE_KEYS.get(runtime_key, [runtime_key]):
            constraint = manifest.engines.get(key)
            if not constraint:
                continue
            cleaned = re.sub(r'[>=<^~\s]', '', constraint)
            if version_satisfies(claimed, cleaned):
                return make_result(
                    claim, Verdict.VERIFIED.value,
                    reasoning=(
                        f"{runtime} engine constraint '{constraint}' in {manifest.file_path} "
                        f"is consistent with documented '{claimed}'."
                    ),
                    evidence_files=[manifest.file_path],
                    tier=TIER,
                )
            # A range constraint is not conclusive on its own
            contradictions.append(
                f"{runtime} engine constraint '{constraint}' in {manifest.file_path} "
                f"does not obviously match documented '{claimed}'"
            )
        return None

    async def license_check(self, claim: Claim) -> Optional[VerificationResult]:
        documented = detect_license(claim.claim_text)
        if not documented:
            return None

        manifest = await self.index.get_manifest_metadata(claim.repo_id)
        if not manifest or not manifest.license:
            return None

        actual = detect_license(manifest.license) or manifest.license
        if actual == documented:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"License '{documented}' matches '{manifest.license}' in {manifest.file_path}.",
                evidence_files=[manifest.file_path],
                tier=TIER,
            )
        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning=f"Documentation says '{documented}' but {manifest.file_path} has license '{manifest.license}'.",
            evidence_files=[manifest.file_path],
            specific_mismatch=f"License mismatch: documented '{documented}', manifest '{manifest.license}'.",
            tier=TIER,
        )

    async def changelog_check(self, claim: Claim) -> Optional[VerificationResult]:
        content = await self.index.read_file_content(claim.repo_id, claim.source_file)
        if not content:
            return None
        match = CHANGELOG_VERSION_PATTERN.search(content)
        if not match:
            return None

        manifest = await self.index.get_manifest_metadata(claim.repo_id)
        if not manifest or not manifest.version:
            return None

        changelog_version = match.group(1)
        manifest_version = manifest.version.lstrip('v')
        if changelog_version == manifest_version:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=(
                    f"CHANGELOG latest version '{changelog_version}' matches "
                    f"{manifest.file_path} version '{manifest_version}'."
                ),
                evidence_files=[claim.source_file, manifest.file_path],
                tier=TIER,
            )
        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning=(
                f"CHANGELOG latest entry is '{changelog_version}' but "
                f"{manifest.file_path} version is '{manifest_version}'."
            ),
            evidence_files=[claim.source_file, manifest.file_path],
            specific_mismatch=f"Version mismatch: CHANGELOG '{changelog_version}', manifest '{manifest_version}'.",
            tier=TIER,
        )

    async def deprecation_check(self, claim: Claim, mapping: MappingResult) -> Optional[VerificationResult]:
        if MENTIONS_DEPRECATION.search(claim.claim_text):
            return None

        for m in mapping.mappings:
            if not m.code_entity_id:
                continue
            entity = await self.index.get_entity_by_id(m.code_entity_id)
            if entity is None or not entity.raw_code:
                continue
            if DEPRECATION_MARKERS.search(entity.raw_code):
                return make_result(
                    claim, Verdict.DRIFTED.value,
                    severity=Severity.LOW.value,
                    reasoning=(
                        f"Symbol '{entity.name}' is marked deprecated in '{entity.file_path}' "
                        f"but the documentation references it without noting deprecation."
                    ),
                    evidence_files=[entity.file_path],
                    specific_mismatch=f"'{entity.name}' is deprecated in code but not in documentation.",
                    tier=TIER,
                )
        return None
