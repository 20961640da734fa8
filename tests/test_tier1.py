"""Tests for deterministic tier-1 checks and the ambiguity gate."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from docdrift.index import DependencyVersion, ManifestMetadata, RouteCandidate, RouteEntity
from docdrift.index.helpers import Heading
from docdrift.mapper import Mapper
from docdrift.verifier import Tier1Verifier, UrlCheckOutcome, Verifier


@pytest.fixture
def tier1(fake_index, config):
    return Tier1Verifier(fake_index, config)


class TestPathReference:
    """File path checks."""

    @pytest.mark.asyncio
    async def test_existing_file_verified(self, tier1, fake_index, make_claim):
        """An indexed path is verified with itself as evidence."""
        fake_index.files = ["src/app.ts"]
        claim = make_claim("path_reference", {"path": "src/app.ts"})

        result = await tier1.verify(claim)

        assert result.verdict == "verified"
        assert result.evidence_files == ["src/app.ts"]
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_renamed_file_never_verified(self, fake_index, config, make_claim):
        """src/config/index.ts renamed to src/config/config.ts is drifted."""
        fake_index.files = ["src/config/config.ts", "src/app.ts"]
        claim = make_claim("path_reference", {"path": "src/config/index.ts"})

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "drifted"
        assert result.tier == 1
        assert result.severity == "high"

    @pytest.mark.asyncio
    async def test_similar_path_suggested(self, tier1, fake_index, make_claim):
        """A near-miss basename produces a suggested fix."""
        fake_index.files = ["src/utils/helper.ts"]
        claim = make_claim(
            "path_reference", {"path": "src/utils/helpr.ts"},
            claim_text="See src/utils/helpr.ts for helpers.",
        )

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "medium"
        assert result.suggested_fix == "See src/utils/helper.ts for helpers."

    @pytest.mark.asyncio
    async def test_relative_path_resolved_from_doc(self, tier1, fake_index, make_claim):
        """./ paths resolve against the document's directory."""
        fake_index.files = ["docs/guide/setup.md"]
        claim = make_claim("path_reference", {"path": "./setup.md"}, source_file="docs/guide/intro.md")

        result = await tier1.verify(claim)

        assert result.verdict == "verified"
        assert result.evidence_files == ["docs/guide/setup.md"]

    @pytest.mark.asyncio
    async def test_bare_filename_ambiguous(self, fake_index, config, make_claim):
        """index.ts matching two files is uncertain and flagged ambiguous."""
        fake_index.files = ["src/a/index.ts", "src/b/index.ts"]
        claim = make_claim("path_reference", {"path": "index.ts"})

        mapping = await Mapper(fake_index, config).map_claim(claim.repo_id, claim)
        result = await Verifier(fake_index, config).verify(claim, mapping)

        assert mapping.is_ambiguous
        assert {m.code_file for m in mapping.ambiguous} == {"src/a/index.ts", "src/b/index.ts"}
        assert result.verdict == "uncertain"
        assert set(result.evidence_files) == {"src/a/index.ts", "src/b/index.ts"}

    @pytest.mark.asyncio
    async def test_anchor_mismatch(self, tier1, fake_index, make_claim):
        """A missing anchor is drifted with a heading suggestion."""
        fake_index.files = ["docs/setup.md"]
        fake_index.headings["docs/setup.md"] = [Heading(text="Installation", level=2, slug="installation")]
        claim = make_claim("path_reference", {"path": "docs/setup.md", "anchor": "instalation"})

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert "#installation" in result.reasoning

    @pytest.mark.asyncio
    async def test_deleted_file_drifted_through_verifier(self, fake_index, config, make_claim):
        """A path with no similar file stays drifted with the doc as evidence."""
        fake_index.files = ["src/app.ts"]
        claim = make_claim("path_reference", {"path": "lib/legacy/loader.js"})

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "high"
        assert result.evidence_files == ["README.md"]


class TestDependencyVersion:
    """Dependency version checks."""

    @pytest.mark.asyncio
    async def test_range_satisfied_verified(self, fake_index, config, make_claim):
        """express ^4.18 against a locked 4.19.2 is verified at tier 1."""
        fake_index.dependencies["express"] = DependencyVersion("4.19.2", "lockfile", "package-lock.json")
        claim = make_claim("dependency_version", {"package": "express", "version": "^4.18"})

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "verified"
        assert result.tier == 1
        assert result.evidence_files == ["package-lock.json"]

    @pytest.mark.asyncio
    async def test_version_mismatch(self, tier1, fake_index, make_claim):
        """A documented major that differs is drifted with a fix."""
        fake_index.dependencies["react"] = DependencyVersion("18.2.0", "lockfile", "package-lock.json")
        claim = make_claim(
            "dependency_version", {"package": "react", "version": "17"},
            claim_text="Built on react 17.",
        )

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "medium"
        assert result.suggested_fix == "Built on react 18.2.0."

    @pytest.mark.asyncio
    async def test_missing_package_suggests_close_match(self, tier1, fake_index, make_claim):
        """An unknown package names the closest declared dependency."""
        fake_index.manifest = ManifestMetadata(
            file_path="package.json", source="manifest", dependencies={"lodash": "^4.17.0"}
        )
        claim = make_claim("dependency_version", {"package": "lodahs"})

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "high"
        assert "lodash" in result.reasoning

    @pytest.mark.asyncio
    async def test_runtime_module_verified(self, tier1, make_claim):
        """Builtin runtime modules are not dependencies but are fine."""
        claim = make_claim("dependency_version", {"package": "fs"})
        result = await tier1.verify(claim)
        assert result.verdict == "verified"

    @pytest.mark.asyncio
    async def test_own_package_deferred(self, tier1, fake_index, make_claim):
        """The project's own name is left for later tiers."""
        fake_index.manifest = ManifestMetadata(file_path="package.json", source="manifest", name="my-app")
        claim = make_claim("dependency_version", {"package": "my-app", "version": "2.0"})
        assert await tier1.verify(claim) is None

    @pytest.mark.asyncio
    async def test_removed_package_drifted_through_verifier(self, fake_index, config, make_claim):
        """A package gone from the manifest is drifted with the manifest as evidence."""
        fake_index.manifest = ManifestMetadata(
            file_path="package.json", source="manifest", dependencies={"express": "^4.18.0"}
        )
        claim = make_claim("dependency_version", {"package": "moment", "version": "2.29"})

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "high"
        assert result.evidence_files == ["package.json"]


class TestCommandAndRoute:
    """Script and route checks."""

    @pytest.mark.asyncio
    async def test_script_exists(self, tier1, fake_index, make_claim):
        """A declared script is verified against the runner's manifest."""
        fake_index.scripts = {"build": "tsc"}
        claim = make_claim("command", {"runner": "npm", "script": "build"})

        result = await tier1.verify(claim)

        assert result.verdict == "verified"
        assert result.evidence_files == ["package.json"]

    @pytest.mark.asyncio
    async def test_script_close_match(self, tier1, fake_index, make_claim):
        """A typo'd script suggests the close match."""
        fake_index.scripts = {"test": "jest"}
        claim = make_claim("command", {"runner": "npm", "script": "tset"}, claim_text="Run npm run tset")

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert result.suggested_fix == "Run npm run test"

    @pytest.mark.asyncio
    async def test_builtin_subcommand_skipped(self, tier1, make_claim):
        """npm install is not a script and is left for later tiers."""
        claim = make_claim("command", {"runner": "npm", "script": "install"})
        assert await tier1.verify(claim) is None

    @pytest.mark.asyncio
    async def test_route_found(self, tier1, fake_index, make_claim):
        """An exact route is verified."""
        fake_index.routes = [RouteEntity("r1", "src/routes/users.ts", 12, "GET", "/users")]
        claim = make_claim("api_route", {"method": "get", "path": "/users"})

        result = await tier1.verify(claim)

        assert result.verdict == "verified"
        assert result.evidence_files == ["src/routes/users.ts"]

    @pytest.mark.asyncio
    async def test_route_alternative(self, tier1, fake_index, make_claim):
        """A missing route with a close alternative is drifted medium."""
        fake_index.route_candidates = [RouteCandidate("GET", "/api/users", "src/routes/users.ts", 5, 0.8)]
        claim = make_claim("api_route", {"method": "GET", "path": "/users"})

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "medium"
        assert result.evidence_files == ["src/routes/users.ts"]

    @pytest.mark.asyncio
    async def test_removed_route_drifted_through_verifier(self, fake_index, config, make_claim):
        """A route with no alternative is drifted high."""
        claim = make_claim("api_route", {"method": "DELETE", "path": "/sessions"})

        result = await Verifier(fake_index, config).verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "high"
        assert result.evidence_files == ["README.md"]


class TestCodeExample:
    """Import and symbol resolution in code examples."""

    @pytest.mark.asyncio
    async def test_all_symbols_resolve(self, tier1, fake_index, make_claim, make_entity):
        """Resolved imports and symbols verify the example."""
        fake_index.entities = [make_entity("createServer", "src/server.ts")]
        claim = make_claim("code_example", {"language": "typescript", "symbols": ["createServer"]})

        result = await tier1.verify(claim)

        assert result.verdict == "verified"
        assert result.evidence_files == ["src/server.ts"]

    @pytest.mark.asyncio
    async def test_nothing_resolves_deferred(self, tier1, make_claim):
        """Tutorial code with no local symbols goes to later tiers."""
        claim = make_claim("code_example", {"language": "typescript", "symbols": ["someLibraryFn"]})
        assert await tier1.verify(claim) is None

    @pytest.mark.asyncio
    async def test_partial_resolution_drifted(self, tier1, fake_index, make_claim, make_entity):
        """Some symbols missing is drifted."""
        fake_index.entities = [make_entity("createServer", "src/server.ts")]
        claim = make_claim(
            "code_example", {"language": "typescript", "symbols": ["createServer", "startWorker"]}
        )

        result = await tier1.verify(claim)

        assert result.verdict == "drifted"
        assert "startWorker" in result.specific_mismatch

    @pytest.mark.asyncio
    @pytest.mark.parametrize("extracted_value", [
        {"symbols": ["handler"]},
        {"prose_signature": True, "function_name": "handler"},
    ])
    async def test_ambiguous_symbol_never_verified(self, fake_index, config, make_claim, make_entity, extracted_value):
        """A symbol defined in two files is uncertain, not verified against either."""
        fake_index.entities = [make_entity("handler", "src/a.ts"), make_entity("handler", "src/b.ts")]
        claim = make_claim("code_example", extracted_value)

        mapping = await Mapper(fake_index, config).map_claim(claim.repo_id, claim)
        result = await Verifier(fake_index, config).verify(claim, mapping)

        assert mapping.is_ambiguous
        assert result.verdict == "uncertain"
        assert result.tier == 1
        assert set(result.evidence_files) == {"src/a.ts", "src/b.ts"}


class TestUrlReference:
    """URL checks use the injected checker."""

    @pytest.mark.asyncio
    async def test_dead_link(self, fake_index, config, make_claim):
        """HTTP 404 is drifted high."""
        config.url_check.enabled = True
        checker = MagicMock()
        checker.is_excluded.return_value = False
        checker.check = AsyncMock(return_value=UrlCheckOutcome(url="https://x.dev/a", status_code=404))
        claim = make_claim("url_reference", {"url": "https://x.dev/a"})

        result = await Tier1Verifier(fake_index, config, checker).verify(claim)

        assert result.verdict == "drifted"
        assert result.severity == "high"

    @pytest.mark.asyncio
    async def test_rate_limited_uncertain(self, fake_index, config, make_claim):
        """Hitting the per-domain cap is uncertain."""
        config.url_check.enabled = True
        checker = MagicMock()
        checker.is_excluded.return_value = False
        checker.check = AsyncMock(return_value=UrlCheckOutcome(url="https://x.dev/a", rate_limited=True))
        claim = make_claim("url_reference", {"url": "https://x.dev/a"})

        result = await Tier1Verifier(fake_index, config, checker).verify(claim)

        assert result.verdict == "uncertain"
        assert result.confidence == 0.5

    @pytest.mark.asyncio
    async def test_disabled_skips(self, tier1, make_claim):
        """With URL checks off the claim is left for later tiers."""
        claim = make_claim("url_reference", {"url": "https://x.dev/a"})
        assert await tier1.verify(claim) is None
