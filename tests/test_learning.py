"""Tests for suppression rules, feedback learning, co-change and confidence decay."""
import json
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from docdrift.config import CoChangeConfig, SuppressEntry
from docdrift.learning import (
    FeedbackStore,
    SuppressionStore,
    build_quick_pick_rule,
    compute_boost,
    config_suppresses,
    effective_confidence,
    find_matching_rule,
    is_rule_active,
)
from docdrift.models import SuppressionRule, VerificationResult

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def rule(claim, scope, **targets):
    return SuppressionRule(
        repo_id=claim.repo_id,
        scope=scope,
        reason="test",
        source="quick_pick",
        **targets,
    )


class TestSuppressionMatching:
    """A rule applies while active and when its scope target matches."""

    def test_each_scope(self, make_claim):
        """claim, file, claim_type and pattern scopes."""
        claim = make_claim("command", {"script": "build"}, claim_text="Run npm run build", source_file="docs/dev.md")

        assert find_matching_rule([rule(claim, "claim", target_claim_id=claim.id)], claim, NOW)
        assert find_matching_rule([rule(claim, "file", target_file="docs/dev.md")], claim, NOW)
        assert find_matching_rule([rule(claim, "claim_type", target_claim_type="command")], claim, NOW)
        assert find_matching_rule([rule(claim, "pattern", target_pattern=r"npm run \w+")], claim, NOW)
        assert find_matching_rule([rule(claim, "file", target_file="README.md")], claim, NOW) is None

    def test_revoked_and_expired_inactive(self, make_claim):
        """Revoked or expired rules never match."""
        claim = make_claim("command", {"script": "build"})
        revoked = rule(claim, "claim", target_claim_id=claim.id, revoked=True)
        expired = rule(claim, "claim", target_claim_id=claim.id, expires_at=NOW - timedelta(days=1))
        future = rule(claim, "claim", target_claim_id=claim.id, expires_at=NOW + timedelta(days=1))

        assert not is_rule_active(revoked, NOW)
        assert not is_rule_active(expired, NOW)
        assert is_rule_active(future, NOW)
        assert find_matching_rule([revoked, expired], claim, NOW) is None

    def test_most_specific_scope_first(self, make_claim):
        """A claim rule wins over a pattern rule."""
        claim = make_claim("command", {"script": "build"}, claim_text="npm run build")
        pattern = rule(claim, "pattern", target_pattern="build")
        exact = rule(claim, "claim", target_claim_id=claim.id)

        assert find_matching_rule([pattern, exact], claim, NOW) is exact

    def test_invalid_pattern_never_matches(self, make_claim):
        """A broken regex is skipped."""
        claim = make_claim("command", {"script": "build"})
        assert find_matching_rule([rule(claim, "pattern", target_pattern="(unclosed")], claim, NOW) is None

    def test_config_entries(self, make_claim):
        """Static suppressions match by glob, type, package or pattern."""
        dep = make_claim("dependency_version", {"package": "lodash"}, source_file="docs/legacy/deps.md")

        assert config_suppresses([SuppressEntry(file="docs/legacy/*")], dep)
        assert config_suppresses([SuppressEntry(package="lodash")], dep)
        assert config_suppresses([SuppressEntry(claim_type="dependency_version")], dep)
        assert not config_suppresses([SuppressEntry(package="react")], dep)

    @pytest.mark.asyncio
    async def test_store_shows_finding_on_database_error(self, make_claim):
        """A failing rule lookup means not suppressed."""
        claim = make_claim("command", {"script": "build"})
        store = SuppressionStore(MagicMock())
        store.list_active_rules = AsyncMock(side_effect=OSError("connection refused"))

        assert await store.is_suppressed(claim) is False


class TestQuickPick:
    """Quick-pick reasons create scoped, expiring rules."""

    def test_claim_scope(self):
        """will_fix_later suppresses the claim for 90 days."""
        built = build_quick_pick_rule("r1", "c1", "README.md", "will_fix_later", now=NOW)
        assert built.scope == "claim"
        assert built.target_claim_id == "c1"
        assert built.expires_at == NOW + timedelta(days=90)

    def test_file_scope(self):
        """docs_are_aspirational suppresses the whole doc file."""
        built = build_quick_pick_rule("r1", "c1", "docs/roadmap.md", "docs_are_aspirational", now=NOW)
        assert built.scope == "file"
        assert built.target_file == "docs/roadmap.md"
        assert built.target_claim_id is None

    def test_unknown_reason(self):
        """Unknown reasons are rejected."""
        with pytest.raises(ValueError):
            build_quick_pick_rule("r1", "c1", "README.md", "because")


class TestFeedbackInterpretation:
    """Applying an interpreted free-text comment."""

    @pytest.mark.asyncio
    async def test_creates_agent_rule(self):
        """A valid file-scope suggestion becomes an agent_interpreted rule."""
        suppression = MagicMock()
        suppression.upsert_rule = AsyncMock(side_effect=lambda r: r)
        store = FeedbackStore(MagicMock(), suppression)

        created = await store.apply_feedback_interpretation("r1", "c1", {
            "action": "suppress",
            "scope": "file",
            "target": "docs/roadmap.md",
            "reason": "Roadmap is aspirational",
            "duration_days": 30,
        })

        assert created.source == "agent_interpreted"
        assert created.target_file == "docs/roadmap.md"
        assert created.expires_at is not None

    @pytest.mark.asyncio
    async def test_rejects_invalid_pattern(self):
        """A regex that does not compile is ignored."""
        suppression = MagicMock()
        suppression.upsert_rule = AsyncMock()
        store = FeedbackStore(MagicMock(), suppression)

        created = await store.apply_feedback_interpretation("r1", "c1", {
            "action": "suppress", "scope": "pattern", "target": "([",
        })

        assert created is None
        suppression.upsert_rule.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejects_non_uuid_claim_target(self):
        """A claim-scope target that is not a claim id is ignored."""
        suppression = MagicMock()
        suppression.upsert_rule = AsyncMock()
        store = FeedbackStore(MagicMock(), suppression)

        created = await store.apply_feedback_interpretation("r1", "c1", {
            "action": "suppress", "scope": "claim", "target": "the auth claim",
        })

        assert created is None
        suppression.upsert_rule.assert_not_called()

    @pytest.mark.asyncio
    async def test_claim_scope_defaults_to_feedback_claim(self):
        """Without a target the rule points at the claim the feedback was on."""
        claim_id = str(uuid.uuid4())
        suppression = MagicMock()
        suppression.upsert_rule = AsyncMock(side_effect=lambda r: r)
        store = FeedbackStore(MagicMock(), suppression)

        created = await store.apply_feedback_interpretation("r1", claim_id, {
            "action": "suppress", "scope": "claim",
        })

        assert created.target_claim_id == claim_id

    @pytest.mark.asyncio
    async def test_no_action(self):
        """no_action creates nothing."""
        suppression = MagicMock()
        suppression.upsert_rule = AsyncMock()
        store = FeedbackStore(MagicMock(), suppression)

        assert await store.apply_feedback_interpretation("r1", "c1", {"action": "no_action"}) is None

    @pytest.mark.asyncio
    async def test_record_rejects_bad_type(self):
        """Unknown feedback types fail validation before touching the database."""
        store = FeedbackStore(MagicMock(), MagicMock())
        with pytest.raises(ValueError, match="feedback_type"):
            await store.record_feedback({"repo_id": "r1", "claim_id": "c1", "feedback_type": "meh"})


def test_compute_boost():
    """Two points per commit, capped at ten."""
    config = CoChangeConfig()
    assert compute_boost(0, config) == 0.0
    assert compute_boost(3, config) == pytest.approx(0.06)
    assert compute_boost(50, config) == pytest.approx(0.1)


def test_effective_confidence_half_life():
    """Confidence halves after one half-life."""
    result = VerificationResult(
        claim_id="c1", repo_id="r1", verdict="verified", confidence=0.8,
        created_at=NOW - timedelta(days=180),
    )
    assert effective_confidence(result, 180, now=NOW) == pytest.approx(0.4)
    assert effective_confidence(result, 180, now=NOW - timedelta(days=180)) == pytest.approx(0.8)


async def insert_claim(pool, repo_id, source_file="README.md"):
    async with pool.acquire() as conn:
        return str(await conn.fetchval("""
            INSERT INTO claims (repo_id, source_file, claim_text, claim_type, extracted_value)
            VALUES ($1, $2, 'Run npm run build', 'command', $3)
            RETURNING id
        """, repo_id, source_file, json.dumps({"script": "build"})))


@pytest.mark.integration
class TestFeedbackIntegration:
    """Feedback effects against PostgreSQL."""

    @pytest.mark.asyncio
    async def test_quick_pick_then_revocation(self, db_pool):
        """A quick-pick rule is revoked after two thumbs-up."""
        repo_id = str(uuid.uuid4())
        claim_id = await insert_claim(db_pool, repo_id)
        suppression = SuppressionStore(db_pool)
        store = FeedbackStore(db_pool, suppression)

        await store.record_feedback({
            "repo_id": repo_id, "claim_id": claim_id,
            "feedback_type": "thumbs_down", "quick_pick_reason": "will_fix_later",
        })
        rules = await suppression.list_active_rules(repo_id)
        assert len(rules) == 1
        assert rules[0].target_claim_id == claim_id

        await store.record_feedback({"repo_id": repo_id, "claim_id": claim_id, "feedback_type": "thumbs_up"})
        assert len(await suppression.list_active_rules(repo_id)) == 1
        await store.record_feedback({"repo_id": repo_id, "claim_id": claim_id, "feedback_type": "thumbs_up"})
        assert await suppression.list_active_rules(repo_id) == []

    @pytest.mark.asyncio
    async def test_silent_dismissals_create_permanent_rule(self, db_pool):
        """Two silent dismissals create one count_based rule."""
        repo_id = str(uuid.uuid4())
        claim_id = await insert_claim(db_pool, repo_id)
        suppression = SuppressionStore(db_pool)
        store = FeedbackStore(db_pool, suppression)

        for pr in (12, 15, 18):
            await store.record_feedback({
                "repo_id": repo_id, "claim_id": claim_id, "feedback_type": "fix_dismissed", "pr_number": pr,
            })

        rules = await suppression.list_active_rules(repo_id)
        assert len(rules) == 1
        assert rules[0].source == "count_based"
        assert rules[0].expires_at is None
        assert "#12, #15" in rules[0].reason

    @pytest.mark.asyncio
    async def test_upsert_extends_expiry(self, db_pool):
        """Re-picking a reason pushes the expiry later, never earlier."""
        repo_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        suppression = SuppressionStore(db_pool)
        first = await suppression.upsert_rule(build_quick_pick_rule(repo_id, str(uuid.uuid4()), "a.md",
                                                                    "docs_are_aspirational", now=now))
        later = await suppression.upsert_rule(build_quick_pick_rule(repo_id, str(uuid.uuid4()), "a.md",
                                                                    "docs_are_aspirational",
                                                                    now=now + timedelta(days=10)))
        earlier = await suppression.upsert_rule(build_quick_pick_rule(repo_id, str(uuid.uuid4()), "a.md",
                                                                      "docs_are_aspirational",
                                                                      now=now - timedelta(days=10)))

        assert later.id == first.id
        assert later.expires_at > first.expires_at
        assert earlier.expires_at == later.expires_at
