"""Tests for severity assignment, evidence guards and tier-4 routing."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from docdrift.models import ClaimMapping, VerificationResult
from docdrift.verifier import (
    apply_evidence_guards,
    assign_severity,
    build_path1_evidence,
    build_path2_evidence,
    meets_min_severity,
    merge_latest,
    route_claim,
)
from docdrift.verifier.routing import estimate_tokens


def result(verdict, tier=1, confidence=1.0, severity=None, evidence=("src/a.ts",), claim_id="c1"):
    return VerificationResult(
        claim_id=claim_id,
        repo_id="r1",
        verdict=verdict,
        tier=tier,
        confidence=confidence,
        severity=severity,
        reasoning="because",
        evidence_files=list(evidence),
    )


def entity_mapping(claim, entity_id, code_file="src/auth.ts", confidence=0.95):
    return ClaimMapping(
        claim_id=claim.id,
        repo_id=claim.repo_id,
        code_file=code_file,
        code_entity_id=entity_id,
        confidence=confidence,
        mapping_method="symbol_search",
    )


class TestSeverity:
    """Severity depends on claim type, tier and confidence."""

    def test_explicit_severity_kept(self):
        """Tier results that set a severity keep it."""
        assert assign_severity(result("drifted", severity="low"), "command") == "low"

    def test_base_severity_by_type(self):
        """Drift without a severity takes the claim type's base."""
        assert assign_severity(result("drifted"), "command") == "high"
        assert assign_severity(result("drifted"), "convention") == "low"

    def test_semantic_tiers_shift_by_confidence(self):
        """Low confidence lowers and high confidence raises tier-4 severity."""
        assert assign_severity(result("drifted", tier=4, confidence=0.3), "behavior") == "low"
        assert assign_severity(result("drifted", tier=4, confidence=0.95), "behavior") == "high"
        assert assign_severity(result("drifted", tier=4, confidence=0.7), "behavior") == "medium"

    def test_non_drift_has_no_severity(self):
        """Verified results carry no severity."""
        assert assign_severity(result("verified"), "command") is None

    def test_min_severity(self):
        """Findings below the minimum are filtered; no-severity results pass."""
        assert meets_min_severity("high", "medium")
        assert not meets_min_severity("low", "medium")
        assert meets_min_severity(None, "high")


class TestEvidenceGuards:
    """Results without evidence are downgraded."""

    def test_drift_without_evidence_becomes_uncertain(self):
        """Unsupported drift is never reported."""
        guarded = apply_evidence_guards(result("drifted", severity="high", evidence=()))
        assert guarded.verdict == "uncertain"
        assert guarded.severity is None
        assert "Downgraded" in guarded.reasoning

    def test_verified_without_evidence_loses_confidence(self):
        """Unsupported verified results are trusted less."""
        guarded = apply_evidence_guards(result("verified", confidence=0.9, evidence=()))
        assert guarded.verdict == "verified"
        assert guarded.confidence == pytest.approx(0.6)

    def test_with_evidence_unchanged(self):
        """Results with evidence pass through."""
        original = result("drifted", severity="medium")
        assert apply_evidence_guards(original) is original

    def test_merge_latest_prefers_higher_tier(self):
        """An older tier-4 result outranks a newer tier-1 result."""
        newer = result("uncertain", tier=1, claim_id="c1")
        older = result("drifted", tier=4, claim_id="c1")
        other = result("verified", tier=1, claim_id="c2")

        merged = merge_latest([newer, older, other])

        by_claim = {r.claim_id: r for r in merged}
        assert by_claim["c1"] is older
        assert by_claim["c2"] is other


class TestRouting:
    """Path 1 for small single-file mappings, Path 2 otherwise."""

    def test_estimate_tokens(self):
        """60 chars per line over chars-per-token, rounded up."""
        assert estimate_tokens(10, 4) == 150
        assert estimate_tokens(1, 7) == 9

    @pytest.mark.asyncio
    async def test_no_mapping(self, config, make_claim):
        """Unmapped claims explore."""
        claim = make_claim("behavior", {})
        decision = await route_claim(claim, [], MagicMock(), config)
        assert decision.path == 2
        assert decision.reason == "no_mapping"

    @pytest.mark.asyncio
    async def test_multi_file(self, config, make_claim):
        """Mappings across files explore."""
        claim = make_claim("behavior", {})
        mappings = [entity_mapping(claim, "e1", "src/a.ts"), entity_mapping(claim, "e2", "src/b.ts")]
        decision = await route_claim(claim, mappings, MagicMock(), config)
        assert decision.reason == "multi_file"

    @pytest.mark.asyncio
    async def test_single_small_entity(self, config, make_claim):
        """A small single entity goes to Path 1."""
        claim = make_claim("behavior", {})
        store = MagicMock()
        store.get_entity_line_count = AsyncMock(return_value=40)

        decision = await route_claim(claim, [entity_mapping(claim, "e1")], store, config)

        assert decision.path == 1
        assert decision.reason == "single_entity_mapped"
        assert decision.entity_token_estimate == estimate_tokens(40, 4) + 30 * 4

    @pytest.mark.asyncio
    async def test_large_entity(self, config, make_claim):
        """Entities over the token budget explore."""
        claim = make_claim("behavior", {})
        store = MagicMock()
        store.get_entity_line_count = AsyncMock(return_value=5000)

        decision = await route_claim(claim, [entity_mapping(claim, "e1")], store, config)

        assert decision.path == 2
        assert decision.reason == "evidence_too_large"

    @pytest.mark.asyncio
    async def test_path1_evidence(self, fake_index, config, make_claim, make_entity):
        """Path 1 evidence carries imports, referenced types and the entity."""
        imports = make_entity("express", "src/auth.ts", entity_type="config", line_number=1,
                              signature="import express from 'express'", raw_code="")
        session = make_entity("Session", "src/auth.ts", entity_type="type", line_number=5,
                              signature="interface Session { user: string }")
        target = make_entity("login", "src/auth.ts", line_number=40, end_line_number=52,
                             raw_code="function login(): Session { return s; }")
        fake_index.entities = [imports, session, target]
        claim = make_claim("behavior", {})

        evidence = await build_path1_evidence(claim, [entity_mapping(claim, target.id)], fake_index, config)

        text = evidence.formatted_evidence
        assert text.startswith("--- File: src/auth.ts ---")
        assert "// Imports" in text
        assert "// Type Signatures\ninterface Session" in text
        assert "// Entity: login (lines 40-52)" in text
        assert evidence.metadata["path"] == 1

    @pytest.mark.asyncio
    async def test_path1_requires_entity(self, fake_index, config, make_claim):
        """Path 1 without an entity mapping is an error."""
        claim = make_claim("behavior", {})
        mapping = ClaimMapping(claim_id=claim.id, repo_id=claim.repo_id, code_file="src/a.ts",
                               confidence=1.0, mapping_method="direct_reference")
        with pytest.raises(ValueError):
            await build_path1_evidence(claim, [mapping], fake_index, config)

    @pytest.mark.asyncio
    async def test_path2_evidence(self, fake_index, config, make_claim, make_entity):
        """Path 2 lists candidate files, keywords and signatures."""
        entity = make_entity("login", "src/auth.ts")
        fake_index.entities = [entity]
        claim = make_claim("behavior", {}, keywords=["login", "session"])

        evidence = await build_path2_evidence(
            claim, [entity_mapping(claim, entity.id), entity_mapping(claim, None, "src/user.ts")],
            fake_index, config,
        )

        text = evidence.formatted_evidence
        assert "--- Candidate Files ---\nsrc/auth.ts\nsrc/user.ts" in text
        assert "--- Keywords ---\nlogin, session" in text
        assert "src/auth.ts: function login()" in text
        assert evidence.metadata["candidate_files"] == ["src/auth.ts", "src/user.ts"]
