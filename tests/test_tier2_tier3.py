"""Tests for tier-2 pattern checks and tier-3 semantic verification."""
import pytest

from docdrift.config import VerificationConfig
from docdrift.errors import IndexInconsistency
from docdrift.index import ManifestMetadata
from docdrift.mapper import MappingResult
from docdrift.models import ClaimMapping
from docdrift.verifier import Tier2Verifier, Verifier, verify_semantic
from docdrift.verifier.tier2 import detect_license, extract_env_var, parse_signature, strip_json_comments


def mapping_for(claim, *mappings, status="mapped", similarities=None, ambiguous=None):
    return MappingResult(
        claim_id=claim.id,
        mappings=list(mappings),
        status=status,
        ambiguous=ambiguous or [],
        similarities=similarities or {},
    )


def semantic_mapping(claim, entity_id, code_file, confidence):
    return ClaimMapping(
        claim_id=claim.id,
        repo_id=claim.repo_id,
        code_file=code_file,
        code_entity_id=entity_id,
        confidence=confidence,
        mapping_method="semantic_search",
    )


def test_parse_signature():
    """Parameter names are extracted; types, defaults and self are dropped."""
    parsed = parse_signature("def connect(self, host: str, port: int = 5432)")
    assert parsed.name == "connect"
    assert parsed.params == ["host", "port"]

    parsed = parse_signature("function render(props: { a: number, b: string }, ctx?)")
    assert parsed.params == ["props", "ctx"]

    assert parse_signature("no call here") is None


def test_small_helpers():
    """Env var, license and JSON-comment helpers."""
    assert extract_env_var("Set DATABASE_URL before starting") == "DATABASE_URL"
    assert extract_env_var("See the README for more") is None
    assert detect_license("Released under the MIT license") == "MIT"
    assert detect_license("Apache 2.0 licensed") == "Apache-2.0"
    assert strip_json_comments('{"a": "//keep", // drop\n "b": 1 /* x */}') == '{"a": "//keep", \n "b": 1 }'


class TestTier2:
    """Pattern checks run by claim type."""

    @pytest.mark.asyncio
    async def test_signature_mismatch(self, fake_index, config, make_claim, make_entity):
        """A documented parameter list that differs is drifted."""
        entity = make_entity("connect", "src/db.ts", signature="function connect(host, port, options)")
        fake_index.entities = [entity]
        claim = make_claim("code_example", {"signature": "connect(host, port)"})

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "drifted"
        assert outcome.result.tier == 2
        assert outcome.result.evidence_files == ["src/db.ts"]

    @pytest.mark.asyncio
    async def test_signature_match(self, fake_index, config, make_claim, make_entity):
        """Matching names and params verify."""
        fake_index.entities = [make_entity("connect", "src/db.ts", signature="function connect(host, port)")]
        claim = make_claim("code_example", {"signature": "connect(host: string, port: number)"})

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "verified"

    @pytest.mark.asyncio
    async def test_vanished_entity_raises(self, fake_index, config, make_claim):
        """A mapped entity missing from the index is an inconsistency."""
        claim = make_claim("code_example", {"signature": "connect(host)"})
        mapping = mapping_for(claim, ClaimMapping(
            claim_id=claim.id, repo_id=claim.repo_id, code_file="src/db.ts",
            code_entity_id="gone", confidence=0.95, mapping_method="symbol_search",
        ))

        with pytest.raises(IndexInconsistency) as exc_info:
            await Tier2Verifier(fake_index, config).verify(claim, mapping)
        assert exc_info.value.path == "src/db.ts"

    @pytest.mark.asyncio
    async def test_vanished_entity_rechecked(self, fake_index, config, make_claim):
        """The engine turns an inconsistency into an uncertain result."""
        claim = make_claim("code_example", {"signature": "connect(host)"})
        fake_index.files = ["src/db.ts"]
        mapping = mapping_for(claim, ClaimMapping(
            claim_id=claim.id, repo_id=claim.repo_id, code_file="src/db.ts",
            code_entity_id="gone", confidence=0.95, mapping_method="symbol_search",
        ))

        result = await Verifier(fake_index, config).verify(claim, mapping)

        assert result.verdict == "uncertain"

    @pytest.mark.asyncio
    async def test_strict_mode(self, fake_index, config, make_claim):
        """tsconfig strict: false contradicts a strict-mode claim."""
        fake_index.contents["tsconfig.json"] = '{\n  // base\n  "compilerOptions": {"strict": false}\n}'
        claim = make_claim("convention", {}, claim_text="The project uses strict mode TypeScript.")

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "drifted"
        assert outcome.result.evidence_files == ["tsconfig.json"]

    @pytest.mark.asyncio
    async def test_env_var_typo(self, fake_index, config, make_claim):
        """A missing env var suggests the close name from .env.example."""
        fake_index.contents[".env.example"] = "# db\nDATABASE_URL=\nREDIS_URL=\n"
        claim = make_claim(
            "config", {"env_var": "DATABSE_URL"}, claim_text="Set DATABSE_URL to your database."
        )

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "drifted"
        assert outcome.result.suggested_fix == "Set DATABASE_URL to your database."

    @pytest.mark.asyncio
    async def test_env_var_present(self, fake_index, config, make_claim):
        """A declared env var verifies."""
        fake_index.contents[".env.example"] = "DATABASE_URL=postgres://\n"
        claim = make_claim("environment", {"env_var": "DATABASE_URL"}, claim_text="Requires DATABASE_URL.")

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "verified"
        assert outcome.result.evidence_files == [".env.example"]

    @pytest.mark.asyncio
    async def test_nvmrc_version(self, fake_index, config, make_claim):
        """.nvmrc decides a Node.js version claim."""
        fake_index.contents[".nvmrc"] = "v20.11.0\n"
        claim = make_claim(
            "environment", {"runtime": "Node.js", "version": "18"}, claim_text="Requires Node.js 18."
        )

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "drifted"
        assert outcome.result.suggested_fix == "Requires Node.js 20.11.0."

    @pytest.mark.asyncio
    async def test_engines_contradiction_is_not_terminal(self, fake_index, config, make_claim):
        """An engines constraint that disagrees is recorded, not decided."""
        fake_index.manifest = ManifestMetadata(
            file_path="package.json", source="manifest", engines={"node": ">=20"}
        )
        claim = make_claim(
            "environment", {"runtime": "Node.js", "version": "16"}, claim_text="Works on Node.js 16."
        )

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result is None
        assert len(outcome.contradictions) == 1

    @pytest.mark.asyncio
    async def test_license_mismatch(self, fake_index, config, make_claim):
        """A documented license that differs from the manifest is drifted."""
        fake_index.manifest = ManifestMetadata(file_path="package.json", source="manifest", license="Apache-2.0")
        claim = make_claim("convention", {}, claim_text="This project is MIT licensed.")

        outcome = await Tier2Verifier(fake_index, config).verify(claim)

        assert outcome.result.verdict == "drifted"

    @pytest.mark.asyncio
    async def test_changelog_matches_manifest(self, fake_index, config, make_claim):
        """The newest CHANGELOG entry matching package.json verifies."""
        fake_index.contents["CHANGELOG.md"] = "# Changelog\n\n## [2.1.0] - 2024-01-01\n\n## 2.0.0\n"
        fake_index.manifest = ManifestMetadata(
            file_path="package.json", source="manifest", name="my-app", version="2.1.0"
        )
        claim = make_claim(
            "dependency_version", {"package": "my-app", "version": "2.1.0"}, source_file="CHANGELOG.md"
        )

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "verified"
        assert result.tier == 2

    @pytest.mark.asyncio
    async def test_deprecated_entity(self, fake_index, config, make_claim, make_entity):
        """Referencing a deprecated symbol without saying so is drifted low."""
        entity = make_entity("oldApi", "src/api.ts", raw_code="/** @deprecated use newApi */\nfunction oldApi() {}")
        fake_index.entities = [entity]
        claim = make_claim("behavior", {}, claim_text="Call oldApi to fetch data.")
        mapping = mapping_for(claim, ClaimMapping(
            claim_id=claim.id, repo_id=claim.repo_id, code_file="src/api.ts",
            code_entity_id=entity.id, confidence=0.95, mapping_method="symbol_search",
        ))

        outcome = await Tier2Verifier(fake_index, config).verify(claim, mapping)

        assert outcome.result.verdict == "drifted"
        assert outcome.result.severity == "low"


class TestTier3:
    """Semantic verification only ever verifies."""

    def test_clear_winner_verified(self, make_claim):
        """A top similarity above threshold with a clear margin verifies."""
        claim = make_claim("behavior", {})
        mapping = mapping_for(
            claim,
            semantic_mapping(claim, "e1", "src/auth.ts", 0.9),
            semantic_mapping(claim, "e2", "src/user.ts", 0.7),
            similarities={"e1": 0.91, "e2": 0.7},
        )

        result = verify_semantic(claim, mapping, VerificationConfig())

        assert result.verdict == "verified"
        assert result.tier == 3
        assert result.confidence == pytest.approx(0.91)
        assert result.evidence_files == ["src/auth.ts"]

    def test_runner_up_within_margin_escalates(self, make_claim):
        """Two close candidates are not decided here."""
        claim = make_claim("behavior", {})
        mapping = mapping_for(
            claim,
            semantic_mapping(claim, "e1", "src/auth.ts", 0.9),
            semantic_mapping(claim, "e2", "src/user.ts", 0.88),
            similarities={"e1": 0.9, "e2": 0.88},
        )
        assert verify_semantic(claim, mapping, VerificationConfig()) is None

    def test_below_threshold_escalates(self, make_claim):
        """Similarity under the threshold never verifies."""
        claim = make_claim("behavior", {})
        mapping = mapping_for(claim, semantic_mapping(claim, "e1", "src/auth.ts", 0.8))
        assert verify_semantic(claim, mapping, VerificationConfig()) is None

    def test_contradiction_blocks(self, make_claim):
        """Tier-2 counter-evidence blocks a semantic verify."""
        claim = make_claim("behavior", {})
        mapping = mapping_for(claim, semantic_mapping(claim, "e1", "src/auth.ts", 0.95))
        assert verify_semantic(claim, mapping, VerificationConfig(), ["engines disagree"]) is None

    def test_ambiguous_mapping_blocks(self, make_claim):
        """An ambiguous candidate set is never verified."""
        claim = make_claim("behavior", {})
        top = semantic_mapping(claim, "e1", "src/auth.ts", 0.95)
        mapping = mapping_for(claim, top, status="ambiguous_suffix_match", ambiguous=[top])
        assert verify_semantic(claim, mapping, VerificationConfig()) is None
