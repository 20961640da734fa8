"""Tier 1: deterministic checks against the codebase index.

Each claim type has one check. A check returns a result when the index
settles the claim, or None to let later tiers try.
"""
from __future__ import annotations
import logging
from typing import Awaitable, Callable, Optional

from docdrift.config import DocDriftConfig
from docdrift.index import CodebaseIndex
from docdrift.index.helpers import resolve_relative_path
from docdrift.mapper import MappingResult, RUNNER_MANIFEST_MAP, extract_symbol_from_import
from docdrift.models import Claim, ClaimType, Severity, Verdict, VerificationResult
from docdrift.verifier.results import make_result, replace_in_claim
from docdrift.verifier.similarity import find_close_match, find_similar_paths, levenshtein
from docdrift.verifier.url_check import UrlChecker
from docdrift.verifier.versions import compare_versions

logger = logging.getLogger(__name__)

RUNTIME_ALLOWLIST = frozenset([
    'assert', 'buffer', 'child_process', 'cluster', 'console', 'constants',
    'crypto', 'dgram', 'dns', 'domain', 'events', 'fs', 'http', 'http2',
    'https', 'module', 'net', 'os', 'path', 'perf_hooks', 'process',
    'punycode', 'querystring', 'readline', 'repl', 'stream', 'string_decoder',
    'sys', 'timers', 'tls', 'tty', 'url', 'util', 'v8', 'vm', 'worker_threads',
    'zlib',
    'node:assert', 'node:buffer', 'node:child_process', 'node:crypto',
    'node:events', 'node:fs', 'node:http', 'node:https', 'node:net',
    'node:os', 'node:path', 'node:process', 'node:stream', 'node:url',
    'node:util', 'node:worker_threads', 'node:zlib', 'node:test',
    'Node.js', 'Nodejs', 'node.js', 'nodejs', 'node',
    'Python', 'python', 'Ruby', 'ruby', 'Go', 'go', 'Rust', 'rust',
    'Java', 'java', 'Deno', 'deno', 'Bun', 'bun',
])

VERIFIABLE_RUNNERS = frozenset(['npm', 'yarn', 'pnpm', 'bun', 'pip', 'pip3', 'poetry', 'cargo'])

NPM_BUILTINS = frozenset([
    'install', 'i', 'ci', 'uninstall', 'remove', 'rm', 'un',
    'publish', 'pack', 'init', 'create', 'link', 'unlink',
    'view', 'info', 'show', 'config', 'set', 'get',
    'login', 'logout', 'adduser', 'whoami', 'token',
    'audit', 'fund', 'outdated', 'update', 'up', 'upgrade',
    'dedupe', 'prune', 'shrinkwrap',
    'cache', 'completion', 'doctor', 'ping', 'prefix', 'root',
    'exec', 'explore', 'explain', 'why',
    'help', 'search', 'star', 'stars', 'version',
    'owner', 'team', 'access', 'deprecate', 'dist-tag', 'unpublish',
    'repo', 'bugs', 'docs', 'home', 'rebuild', 'ls', 'list', 'll', 'bin', 'pkg',
    'add', 'dlx', 'self-update', 'setup', 'store', 'patch', 'patch-commit',
    'import', 'fetch', 'approve-builds', 'licenses', 'run-script',
])

PIP_BUILTINS = frozenset([
    'install', 'uninstall', 'freeze', 'list', 'show', 'search', 'download',
    'wheel', 'hash', 'check', 'config', 'cache', 'index', 'debug', 'inspect',
])

CARGO_BUILTINS = frozenset([
    'build', 'check', 'clean', 'doc', 'new', 'init', 'add', 'remove', 'run',
    'test', 'bench', 'update', 'search', 'publish', 'install', 'uninstall',
    'clippy', 'fmt', 'fix', 'tree', 'vendor', 'login', 'logout', 'owner',
    'package', 'yank', 'generate-lockfile',
])

POETRY_BUILTINS = frozenset([
    'new', 'init', 'install', 'update', 'add', 'remove', 'show', 'build',
    'publish', 'config', 'run', 'shell', 'check', 'search', 'lock', 'version',
    'export', 'env', 'cache', 'source', 'self',
])

RUNNER_BUILTINS: dict[str, frozenset[str]] = {
    'npm': NPM_BUILTINS,
    'yarn': NPM_BUILTINS,
    'pnpm': NPM_BUILTINS,
    'bun': NPM_BUILTINS,
    'pip': PIP_BUILTINS,
    'pip3': PIP_BUILTINS,
    'cargo': CARGO_BUILTINS,
    'poetry': POETRY_BUILTINS,
}

KNOWN_LANGUAGES = frozenset([
    'typescript', 'javascript', 'python', 'rust', 'go', 'java', 'ruby', 'bash', 'sh',
    'shell', 'json', 'yaml', 'toml', 'html', 'css', 'sql', 'graphql', 'dockerfile',
    'makefile', 'c', 'cpp', 'csharp', 'kotlin', 'swift', 'scala', 'php', 'r', 'lua',
    'perl', 'haskell', 'elixir', 'dart', 'zig', 'tsx', 'jsx', 'mjs', 'vue', 'svelte',
    'xml', 'markdown', 'plaintext', 'text', 'diff', 'csv', 'ini', 'protobuf', 'proto',
])

SELF_REFERENCE = '<self>'

Check = Callable[[Claim], Awaitable[Optional[VerificationResult]]]


def is_builtin_subcommand(runner: str, script: str) -> bool:
    builtins = RUNNER_BUILTINS.get(runner)
    if not builtins or not script.split():
        return False
    return script.split()[0].lower() in builtins


def manifest_file_for_runner(runner: Optional[str]) -> str:
    return RUNNER_MANIFEST_MAP.get(runner or '', ['package.json'])[0]


def doc_evidence(claim: Claim) -> list[str]:
    """The documenting file itself, for checks that prove an absence."""
    return [claim.source_file] if claim.source_file else []


def _dirname(path: str) -> str:
    return path.rsplit('/', 1)[0] if '/' in path else ''


class Tier1Verifier:
    """Deterministic per-type checks plus the mapping ambiguity gate."""

    def __init__(self, index: CodebaseIndex, config: DocDriftConfig, url_checker: Optional[UrlChecker] = None):
        self.index = index
        self.config = config
        self.url_checker = url_checker
        self.checks: dict[str, Check] = {
            ClaimType.PATH_REFERENCE.value: self.verify_path_reference,
            ClaimType.DEPENDENCY_VERSION.value: self.verify_dependency_version,
            ClaimType.COMMAND.value: self.verify_command,
            ClaimType.API_ROUTE.value: self.verify_api_route,
            ClaimType.CODE_EXAMPLE.value: self.verify_code_example,
            ClaimType.URL_REFERENCE.value: self.verify_url_reference,
        }

    async def verify(self, claim: Claim, mapping: Optional[MappingResult] = None) -> Optional[VerificationResult]:
        ambiguous = mapping is not None and mapping.is_ambiguous
        check = self.checks.get(claim.claim_type)
        if check is not None:
            result = await check(claim)
            # Tied candidates are never collapsed into a verified result
            if result is not None and not (ambiguous and result.verdict == Verdict.VERIFIED.value):
                return result

        if ambiguous:
            return self.ambiguity_result(claim, mapping)
        return None

    def ambiguity_result(self, claim: Claim, mapping: MappingResult) -> VerificationResult:
        files = list(dict.fromkeys(m.code_file for m in mapping.ambiguous))
        return make_result(
            claim,
            Verdict.UNCERTAIN.value,
            reasoning=f"Claim matches {len(files)} equally likely locations. Cannot determine which is intended.",
            evidence_files=files,
            specific_mismatch=f"Ambiguous: {', '.join(files[:3])}{'...' if len(files) > 3 else ''}",
        )

    # ---------- path_reference ----------

    async def _check_anchor(
        self,
        claim: Claim,
        file_path: str,
        anchor: str,
        found_prefix: str
    ) -> VerificationResult:
        headings = await self.index.get_headings(claim.repo_id, file_path)
        match = next((h for h in headings if h.slug == anchor), None)
        if match:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"{found_prefix} anchor '#{anchor}' matches heading '{match.text}'.",
                evidence_files=[file_path],
            )

        closest = min(headings, key=lambda h: levenshtein(anchor, h.slug), default=None)
        suggestion = ""
        if closest is not None and levenshtein(anchor, closest.slug) <= 3:
            suggestion = f" Did you mean '#{closest.slug}'?"
        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning=f"Anchor '#{anchor}' not found in '{file_path}'.{suggestion}",
            evidence_files=[file_path],
            specific_mismatch=f"Anchor '#{anchor}' does not match any heading in '{file_path}'.",
        )

    async def verify_path_reference(self, claim: Claim) -> Optional[VerificationResult]:
        path = claim.extracted_value.path
        anchor = claim.extracted_value.anchor
        repo_id = claim.repo_id

        if path == SELF_REFERENCE:
            if not anchor or not claim.source_file:
                return None
            return await self._check_anchor(claim, claim.source_file, anchor, "Self-reference")

        if await self.index.file_exists(repo_id, path):
            if anchor:
                return await self._check_anchor(claim, path, anchor, f"File '{path}' exists and")
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"File '{path}' exists in the repository.",
                evidence_files=[path],
            )

        doc_dir = _dirname(claim.source_file)

        if path.startswith(('./', '../')):
            resolved = resolve_relative_path(doc_dir, path)
            if resolved and await self.index.file_exists(repo_id, resolved):
                return make_result(
                    claim, Verdict.VERIFIED.value,
                    reasoning=f"Relative path '{path}' resolves to '{resolved}' from '{claim.source_file}'.",
                    evidence_files=[resolved],
                )

        if '/' not in path:
            if doc_dir:
                sibling = f"{doc_dir}/{path}"
                if await self.index.file_exists(repo_id, sibling):
                    return make_result(
                        claim, Verdict.VERIFIED.value,
                        reasoning=f"File '{path}' resolves to '{sibling}' relative to the doc directory.",
                        evidence_files=[sibling],
                    )

            matches = [f for f in await self.index.get_file_tree(repo_id) if f == path or f.endswith('/' + path)]
            if len(matches) == 1:
                return make_result(
                    claim, Verdict.VERIFIED.value,
                    reasoning=f"File '{path}' found at '{matches[0]}' (unique basename match).",
                    evidence_files=matches,
                )
            if len(matches) > 1:
                return make_result(
                    claim, Verdict.UNCERTAIN.value,
                    reasoning=f"Bare filename '{path}' matches {len(matches)} files. Cannot determine which is intended.",
                    evidence_files=matches[:5],
                    specific_mismatch=f"Ambiguous: {', '.join(matches[:3])}{'...' if len(matches) > 3 else ''}",
                )

        similar = find_similar_paths(path, await self.index.get_file_tree(repo_id), max_results=5)
        if similar:
            best = similar[0]
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.MEDIUM.value,
                reasoning=f"File '{path}' not found. Similar: '{best.path}'.",
                evidence_files=[best.path],
                suggested_fix=replace_in_claim(claim, path, best.path),
                specific_mismatch=f"File path '{path}' does not exist. Likely renamed.",
            )

        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.HIGH.value,
            reasoning=f"File '{path}' not found.",
            evidence_files=doc_evidence(claim),
            specific_mismatch=f"File path '{path}' does not exist.",
        )

    # ---------- dependency_version ----------

    async def verify_dependency_version(self, claim: Claim) -> Optional[VerificationResult]:
        package = claim.extracted_value.package
        documented = claim.extracted_value.version

        dep = await self.index.get_dependency_version(claim.repo_id, package)
        if dep is None:
            if package in RUNTIME_ALLOWLIST:
                return make_result(
                    claim, Verdict.VERIFIED.value,
                    reasoning=f"Package '{package}' is a runtime or builtin module.",
                )

            manifest = await self.index.get_manifest_metadata(claim.repo_id)
            if manifest and manifest.name == package:
                # The project's own version; the changelog check covers it
                return None
            known = []
            if manifest:
                known = list(manifest.dependencies) + list(manifest.dev_dependencies)
            close = find_close_match(package, known, 3)
            suggestion = f" Did you mean '{close.name}'?" if close else ""
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.HIGH.value,
                reasoning=f"Package '{package}' not found.{suggestion}",
                evidence_files=[manifest.file_path] if manifest else doc_evidence(claim),
                specific_mismatch=f"Package is not a dependency.{suggestion}",
            )

        if not documented:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"Package '{package}' is a dependency.",
                evidence_files=[dep.file_path],
            )

        comparison = compare_versions(documented, dep.version, dep.source)
        if comparison.matches:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"Package '{package}' version '{dep.version}' matches documented '{documented}'.",
                evidence_files=[dep.file_path],
            )

        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.MEDIUM.value,
            reasoning=f"Doc says '{package} {documented}' but actual is '{dep.version}'.",
            evidence_files=[dep.file_path],
            suggested_fix=replace_in_claim(claim, documented, dep.version),
            specific_mismatch=f"Version mismatch: documented '{documented}', actual '{dep.version}'.",
        )

    # ---------- command ----------

    async def verify_command(self, claim: Claim) -> Optional[VerificationResult]:
        runner = claim.extracted_value.runner
        script = claim.extracted_value.script

        if runner and runner not in VERIFIABLE_RUNNERS:
            return None
        if runner and is_builtin_subcommand(runner, script):
            return None

        manifest_file = manifest_file_for_runner(runner)
        if await self.index.script_exists(claim.repo_id, script):
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"Script '{script}' exists in {runner or 'package manager'}.",
                evidence_files=[manifest_file],
            )

        available = await self.index.get_available_scripts(claim.repo_id)
        close = find_close_match(script, [s.name for s in available], 2)
        if close:
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.HIGH.value,
                reasoning=f"Script '{script}' not found. Close match: '{close.name}'.",
                evidence_files=[manifest_file],
                suggested_fix=replace_in_claim(claim, script, close.name),
                specific_mismatch=f"Script '{script}' not found.",
            )

        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.HIGH.value,
            reasoning=f"Script '{script}' not found.",
            evidence_files=[manifest_file],
            specific_mismatch=f"Script '{script}' not found.",
        )

    # ---------- api_route ----------

    async def verify_api_route(self, claim: Claim) -> Optional[VerificationResult]:
        method = claim.extracted_value.method
        path = claim.extracted_value.path

        route = await self.index.find_route(claim.repo_id, method, path)
        if route:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"Route '{method} {path}' found in '{route.file_path}'.",
                evidence_files=[route.file_path],
            )

        alternatives = await self.index.search_routes(claim.repo_id, path)
        if alternatives:
            best = alternatives[0]
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.MEDIUM.value,
                reasoning=f"Route '{method} {path}' not found. Similar: '{best.method} {best.path}'.",
                evidence_files=[best.file],
                suggested_fix=replace_in_claim(claim, f"{method} {path}", f"{best.method} {best.path}"),
                specific_mismatch=f"Route does not exist. Closest: '{best.method} {best.path}'.",
            )

        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=Severity.HIGH.value,
            reasoning=f"Route '{method} {path}' not found.",
            evidence_files=doc_evidence(claim),
            specific_mismatch="Route not found.",
        )

    # ---------- code_example ----------

    async def verify_code_example(self, claim: Claim) -> Optional[VerificationResult]:
        value = claim.extracted_value

        if value.prose_signature:
            if not value.function_name:
                return None
            entities = await self.index.find_symbol(claim.repo_id, value.function_name)
            if not entities:
                return None
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"Function '{value.function_name}' found in '{entities[0].file_path}'.",
                evidence_files=[entities[0].file_path],
            )

        language = value.language
        if language and language.lower() not in KNOWN_LANGUAGES:
            close = find_close_match(language.lower(), sorted(KNOWN_LANGUAGES), 2)
            if close:
                return make_result(
                    claim, Verdict.DRIFTED.value,
                    severity=Severity.LOW.value,
                    reasoning=f"Code block language tag '{language}' is not recognized. Did you mean '{close.name}'?",
                    evidence_files=doc_evidence(claim),
                    suggested_fix=replace_in_claim(claim, language, close.name),
                    specific_mismatch=f"Unknown language tag '{language}'.",
                )

        if not value.imports and not value.symbols:
            return None

        issues: list[str] = []
        resolved_files: list[str] = []

        for import_path in value.imports:
            name = extract_symbol_from_import(import_path)
            if not name:
                continue
            entities = await self.index.find_symbol(claim.repo_id, name)
            if entities:
                resolved_files.append(entities[0].file_path)
            else:
                issues.append(f"Import '{import_path}' does not resolve.")

        for name in value.symbols:
            entities = await self.index.find_symbol(claim.repo_id, name)
            if entities:
                resolved_files.append(entities[0].file_path)
            else:
                issues.append(f"Symbol '{name}' not found.")

        evidence = list(dict.fromkeys(resolved_files))
        if not issues:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning="All imports and symbols resolve correctly.",
                evidence_files=evidence,
            )

        # Nothing resolved: tutorial code or an external library
        if not evidence:
            return None

        total = len(value.imports) + len(value.symbols)
        severity = Severity.HIGH.value if len(issues) > total / 2 else Severity.MEDIUM.value
        return make_result(
            claim, Verdict.DRIFTED.value,
            severity=severity,
            reasoning=f"Code example has issues: {'; '.join(issues)}",
            evidence_files=evidence,
            specific_mismatch='; '.join(issues),
        )

    # ---------- url_reference ----------

    async def verify_url_reference(self, claim: Claim) -> Optional[VerificationResult]:
        url = claim.extracted_value.url
        if self.url_checker is None or not self.config.url_check.enabled:
            return None
        if self.url_checker.is_excluded(url):
            return None

        outcome = await self.url_checker.check(url)
        if outcome.rate_limited:
            return make_result(
                claim, Verdict.UNCERTAIN.value,
                reasoning=f"Rate limit reached for this domain ({self.config.url_check.max_per_domain} checks per scan).",
                evidence_files=[url],
            )

        status = outcome.status_code
        if status is None:
            return make_result(
                claim, Verdict.UNCERTAIN.value,
                reasoning=f"URL '{url}' could not be checked: {outcome.error}",
                evidence_files=[url],
            )
        if 200 <= status < 400:
            return make_result(
                claim, Verdict.VERIFIED.value,
                reasoning=f"URL '{url}' is reachable (HTTP {status}).",
                evidence_files=[url],
            )
        if status in (404, 410):
            return make_result(
                claim, Verdict.DRIFTED.value,
                severity=Severity.HIGH.value,
                reasoning=f"URL '{url}' returned HTTP {status}.",
                evidence_files=[url],
                specific_mismatch=f"Dead link: HTTP {status}.",
            )
        return make_result(
            claim, Verdict.UNCERTAIN.value,
            reasoning=f"URL '{url}' returned HTTP {status}; cannot determine whether it is dead.",
            evidence_files=[url],
        )
