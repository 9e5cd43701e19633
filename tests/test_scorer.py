"""Tests for scoring, risk classification and run orchestration."""

import re
import threading
from pathlib import Path

import pytest

from repocompat import config
from repocompat.config_manager import AnalysisConfiguration, CompatibilityRule, default_configuration
from repocompat.dependencies import DependencyGraphAnalyzer
from repocompat.errors import AnalysisCancelled, ConfigurationBootstrapError
from repocompat.models import (
    ApiBreakingChange,
    ApiCompatibility,
    ChangeAnalysis,
    ComparisonResult,
    ConfigChange,
    DependencyChangeSet,
    DependencyUpdate,
    FileChange,
    RepositoryDescriptor,
    RepositoryResult,
)
from repocompat.scorer import (
    NOT_COMPARABLE,
    CompatibilityScorer,
    calculate_compatibility_score,
    classify_risk,
    generate_analysis_id,
    generate_summary,
    rule_matches,
)
from repocompat.snapshot import RepositorySnapshotBuilder
from repocompat.storage import ResultStore

from conftest import FakeAdapter


def _modified(path, impact="breaking"):
    return FileChange(path=path, change_type="modified", file_kind="utility", impact=impact)


def _deleted(path):
    return FileChange(path=path, change_type="deleted", file_kind="utility", impact="breaking")


class TestScore:
    """Penalty arithmetic."""

    def test_no_changes_scores_100(self):
        assert calculate_compatibility_score(ChangeAnalysis(), DependencyChangeSet()) == 100

    def test_each_penalty(self):
        changes = ChangeAnalysis(
            modified_files=[_modified("a.ts"), _modified("b.ts", "additive")],
            deleted_files=[_deleted("c.ts")],
            configuration_changes=[ConfigChange("next.config.js", impact="breaking")],
        )
        deps = DependencyChangeSet(
            removed=["lodash"],
            updated=[
                DependencyUpdate("react", "^18.0.0", "^19.0.0", True),
                DependencyUpdate("axios", "^1.4.0", "^1.5.0", False),
            ],
        )
        # 100 - 10 - 15 - 15 - 20 - 10
        assert calculate_compatibility_score(changes, deps) == 30

    def test_score_is_clamped_at_zero(self):
        changes = ChangeAnalysis(deleted_files=[_deleted(f"f{i}.ts") for i in range(20)])
        assert calculate_compatibility_score(changes, DependencyChangeSet()) == 0

    def test_matching_rule_penalized_once(self):
        rule = CompatibilityRule("api", pattern="**/api/**/*.{ts,js}", severity="error")
        changes = ChangeAnalysis(added_files=[
            FileChange("src/app/api/a/route.ts", "added", "service", "additive"),
            FileChange("src/app/api/b/route.js", "added", "service", "additive"),
        ])
        assert calculate_compatibility_score(changes, DependencyChangeSet(), rules=[rule]) == 75

    def test_disabled_and_unmatched_rules_are_free(self):
        rules = [
            CompatibilityRule("off", pattern="**/*", severity="error", enabled=False),
            CompatibilityRule("db", pattern="**/migrations/**/*.sql", severity="warning"),
        ]
        changes = ChangeAnalysis(added_files=[FileChange("src/x.ts", "added", "utility", "additive")])
        assert calculate_compatibility_score(changes, DependencyChangeSet(), rules=rules) == 100


@pytest.mark.parametrize(
    "pattern, path, matches",
    [
        ("**/components/**/*.{tsx,jsx}", "src/components/Button.tsx", True),
        ("**/components/**/*.{tsx,jsx}", "components/Button.jsx", True),
        ("**/components/**/*.{tsx,jsx}", "src/components/ui/forms/Input.tsx", True),
        ("**/components/**/*.{tsx,jsx}", "src/components/Button.ts", False),
        ("**/api/**/*.{ts,js}", "src/app/api/users/[id]/route.ts", True),
        ("**/api/**/*.{ts,js}", "src/apiClient.ts", False),
        ("package.json", "package.json", True),
        ("package.json", "apps/web/package.json", False),
        ("src/*.ts", "src/lib/a.ts", False),
    ],
)
def test_rule_matches(pattern, path, matches):
    assert rule_matches(pattern, path) is matches


@pytest.mark.parametrize(
    "score, issues, risk",
    [
        (40, 3, "high"),
        (80, 2, "low"),
        (60, 6, "medium"),
        (90, 11, "high"),
        (75, 5, "low"),
        (74, 0, "medium"),
        (100, 6, "medium"),
    ],
)
def test_classify_risk(score, issues, risk):
    assert classify_risk(score, issues) == risk


def test_analysis_id_format():
    first, second = generate_analysis_id(), generate_analysis_id()

    assert re.match(r"^analysis-\d{13}-[a-z0-9]{9}$", first)
    assert first != second


class TestSummary:
    """Run summary and recommended actions."""

    def test_empty_run(self):
        summary = generate_summary({})

        assert summary.total_changes == 0
        assert summary.risk_level == "low"
        assert summary.recommended_actions == []

    def test_actions(self):
        comparison = ComparisonResult(
            base="a",
            target="b",
            changes=ChangeAnalysis(added_files=[
                FileChange("src/components/Card.tsx", "added", "component", "additive"),
                FileChange("src/services/pay.ts", "added", "service", "additive"),
            ]),
            api_compatibility=ApiCompatibility(
                backward_compatible=False,
                breaking_changes=[ApiBreakingChange("/api/x", "GET", "removed", "gone", "high", "m")],
            ),
            potential_issues=["one", "two"],
            compatibility_score=40,
        )

        summary = generate_summary({"a-vs-b": comparison})

        assert summary.total_changes == 2
        assert summary.new_components == 1
        assert summary.new_services == 1
        assert summary.risk_level == "high"
        assert summary.recommended_actions == [
            "Review 1 new components for integration opportunities",
            "Evaluate 1 new services for platform enhancement",
            "Conduct thorough testing before integration due to high risk level",
            "Address 2 potential issues before proceeding with integration",
            "Plan a major version release: 1 breaking API changes detected",
        ]


def _no_rules() -> AnalysisConfiguration:
    cfg = default_configuration()
    cfg.compatibility_rules = []
    return cfg


@pytest.fixture
def scorer(snapshot_builder, isolated_home):
    return CompatibilityScorer(configuration=_no_rules(), snapshot_builder=snapshot_builder, max_workers=2)


class TestPerformAnalysis:
    """End-to-end runs over the fixture projects."""

    def test_fixture_comparison(self, scorer, base_descriptor, target_descriptor):
        result = scorer.perform_analysis([base_descriptor, target_descriptor], [("base", "target")])

        comparison = result.comparisons["base-vs-target"]
        assert comparison.comparable
        assert comparison.compatibility_score == 15
        assert comparison.risk_level == "high"
        assert comparison.new_features == [
            "New component: Card", "New service: health",
        ]
        assert "New dependency added: zod" in comparison.improvements
        assert "Configuration improvement: tailwind.config.js" in comparison.improvements
        assert comparison.potential_issues == [
            "Potential breaking change: src/components/Button.tsx",
            "Deleted file may cause issues: next.config.js",
            "Deleted file may cause issues: src/utils/legacy.ts",
            "Breaking configuration change: next.config.js",
            "Removed dependency may cause issues: lodash",
            "Breaking dependency change: react (^18.2.0 → ^19.0.0)",
            "Breaking API change: POST /api/users/{id}: New required parameter 'role' was added",
        ]
        assert comparison.api_compatibility.version_compatibility == ["2.0.0"]

        summary = result.summary
        assert summary.total_changes == 9
        assert summary.new_components == 1
        assert summary.new_services == 1
        assert summary.new_utilities == 0
        assert summary.dependency_changes == 3
        assert summary.configuration_changes == 3
        assert summary.risk_level == "high"

    def test_default_rules_clamp_to_zero(self, snapshot_builder, isolated_home, base_descriptor, target_descriptor):
        scorer = CompatibilityScorer(configuration=default_configuration(), snapshot_builder=snapshot_builder)

        result = scorer.perform_analysis([base_descriptor, target_descriptor], [("base", "target")], persist=False)

        assert result.comparisons["base-vs-target"].compatibility_score == 0

    def test_identical_repositories(self, scorer, base_project_path: Path):
        one = RepositoryDescriptor(name="one", url=str(base_project_path))
        two = RepositoryDescriptor(name="two", url=str(base_project_path))

        result = scorer.perform_analysis([one, two], [("one", "two")], persist=False)

        comparison = result.comparisons["one-vs-two"]
        assert comparison.compatibility_score == 100
        assert comparison.risk_level == "low"
        assert comparison.potential_issues == []
        assert comparison.api_compatibility.backward_compatible
        assert result.summary.risk_level == "low"

    def test_inaccessible_repository_is_not_comparable(self, scorer, base_descriptor, temp_dir: Path):
        missing = RepositoryDescriptor(name="missing", url=str(temp_dir / "nope"))

        result = scorer.perform_analysis([base_descriptor, missing], [("base", "missing")], persist=False)

        assert result.repositories["missing"].is_accessible is False
        comparison = result.comparisons["base-vs-missing"]
        assert comparison.comparable is False
        assert comparison.compatibility_score == 0
        assert comparison.risk_level == "high"
        assert comparison.potential_issues == [NOT_COMPARABLE]

    def test_vulnerable_dependency_reported(self, isolated_home, extractor, base_descriptor,
                                            target_descriptor, sample_audit_report):
        analyzer = DependencyGraphAnalyzer(FakeAdapter(audit_report=sample_audit_report))
        scorer = CompatibilityScorer(
            configuration=_no_rules(),
            snapshot_builder=RepositorySnapshotBuilder(extractor, analyzer),
        )

        comparison = scorer.perform_analysis(
            [base_descriptor, target_descriptor], [("base", "target")], persist=False,
        ).comparisons["base-vs-target"]

        assert [i.id for i in comparison.security_issues] == ["dep-vuln-zod-1"]
        assert "Vulnerable dependency change: zod@new (1 high advisories)" in comparison.potential_issues

    def test_result_is_persisted(self, scorer, base_descriptor, target_descriptor):
        result = scorer.perform_analysis([base_descriptor, target_descriptor], [("base", "target")])

        loaded = scorer.load_result(result.id)
        assert loaded.id == result.id
        assert loaded.comparisons["base-vs-target"].compatibility_score == 15
        assert scorer.list_results()[0]["id"] == result.id

    def test_default_pairs_compare_against_last(self, scorer, base_descriptor, target_descriptor):
        result = scorer.perform_analysis([base_descriptor, target_descriptor], persist=False)

        assert list(result.comparisons) == ["base-vs-target"]

    def test_unknown_pair_raises(self, scorer, base_descriptor):
        with pytest.raises(ConfigurationBootstrapError):
            scorer.perform_analysis([base_descriptor], [("base", "ghost")], persist=False)

    def test_cancelled_run(self, scorer, base_descriptor, target_descriptor):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(AnalysisCancelled):
            scorer.perform_analysis([base_descriptor, target_descriptor], [("base", "target")], cancel)

    def test_cache_cleared_after_run(self, isolated_home, extractor, base_descriptor, target_descriptor):
        adapter = FakeAdapter(tree={"dependencies": {"react": {"version": "18.2.0"}}})
        scorer = CompatibilityScorer(
            configuration=_no_rules(),
            snapshot_builder=RepositorySnapshotBuilder(extractor, DependencyGraphAnalyzer(adapter)),
        )

        scorer.perform_analysis([base_descriptor, target_descriptor], [("base", "target")], persist=False)
        scorer.perform_analysis([base_descriptor, target_descriptor], [("base", "target")], persist=False)

        assert adapter.calls.count(("ls", "base_project")) == 2


class TestCompareRepositories:
    """Direct pairwise comparison."""

    def test_inaccessible_side_returns_not_comparable(self, scorer):
        comparison = scorer.compare_repositories(
            RepositoryResult("a", name="a"),
            RepositoryResult("b", name="b", is_accessible=False, error="clone failed"),
        )

        assert comparison.comparable is False
        assert (comparison.base, comparison.target) == ("a", "b")
        assert comparison.compatibility_score == 0
        assert comparison.risk_level == "high"
        assert comparison.potential_issues == [NOT_COMPARABLE]

    def test_unnamed_results_fall_back_to_repository(self, scorer):
        comparison = scorer.compare_repositories(
            RepositoryResult("a", is_accessible=False), RepositoryResult("b", is_accessible=False),
        )

        assert (comparison.base, comparison.target) == ("a", "b")

    def test_comparison_does_not_touch_config_file(self, snapshot_builder, isolated_home,
                                                  base_project_path: Path):
        scorer = CompatibilityScorer(snapshot_builder=snapshot_builder)
        assert config.CONFIG_FILE.exists()
        config.CONFIG_FILE.unlink()

        snapshot = snapshot_builder.build_snapshot(RepositoryDescriptor(name="one", url=str(base_project_path)))
        comparison = scorer.compare_repositories(snapshot, snapshot)

        assert comparison.compatibility_score == 100
        assert not config.CONFIG_FILE.exists()


class _BlockingBuilder:
    """Snapshot builder whose workers wait for the cancellation token."""

    def __init__(self):
        self.started = threading.Event()
        self.saw_cancel = []

    def build_snapshot(self, descriptor, cancel_event=None):
        self.started.set()
        self.saw_cancel.append(cancel_event.wait(5))
        return RepositoryResult(descriptor.name, name=descriptor.name)


def test_interrupt_cancels_running_snapshots(isolated_home, monkeypatch):
    builder = _BlockingBuilder()
    scorer = CompatibilityScorer(configuration=_no_rules(), snapshot_builder=builder, max_workers=2)

    def interrupted(futures):
        builder.started.wait(5)
        raise KeyboardInterrupt

    monkeypatch.setattr("repocompat.scorer.as_completed", interrupted)
    descriptors = [RepositoryDescriptor(name=n, url=".") for n in ("one", "two")]

    with pytest.raises(KeyboardInterrupt):
        scorer.collect(descriptors)

    # workers that had started saw the token; queued ones were dropped
    assert builder.saw_cancel
    assert all(builder.saw_cancel)
