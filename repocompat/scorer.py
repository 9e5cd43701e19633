"""Run orchestration: snapshot, compare, score, classify, summarize, persist."""

from __future__ import annotations

import functools
import logging
import random
import re
import string
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config_manager
from .config_manager import AnalysisConfiguration, CompatibilityRule
from .dependencies import DependencyGraphAnalyzer, compare, vulnerability_issues
from .endpoints import EndpointCompatibilityValidator, route_sources
from .errors import AnalysisCancelled, ComparisonError, ConfigurationBootstrapError, RepoCompatError
from .models import (
    AnalysisResult,
    AnalysisSummary,
    ApiCompatibility,
    ChangeAnalysis,
    ComparisonResult,
    DependencyChangeSet,
    RepositoryDescriptor,
    RepositoryResult,
)
from .snapshot import RepositorySnapshotBuilder
from .storage import ResultStore

logger = logging.getLogger(__name__)

# Score penalties
BREAKING_FILE_PENALTY = 10
DELETED_FILE_PENALTY = 15
REMOVED_DEPENDENCY_PENALTY = 20
BREAKING_DEPENDENCY_PENALTY = 10
BREAKING_CONFIG_PENALTY = 15
RULE_PENALTIES = {"error": 25, "warning": 10}

NOT_COMPARABLE = "Repository not accessible for comparison"


# ===================================================================
# Pure scoring functions
# ===================================================================

def _expand_braces(pattern: str) -> List[str]:
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end():]
    out: List[str] = []
    for option in match.group(1).split(","):
        out.extend(_expand_braces(head + option + tail))
    return out


@functools.lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> "re.Pattern[str]":
    """Glob to regex: ``**/`` spans directories, ``*`` stays within one segment."""
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


def rule_matches(pattern: str, path: str) -> bool:
    return any(_glob_regex(p).match(path) for p in _expand_braces(pattern))


def matched_rules(rules: Iterable[CompatibilityRule], changes: ChangeAnalysis) -> List[CompatibilityRule]:
    paths = changes.all_paths()
    return [
        rule for rule in rules
        if rule.enabled and any(rule_matches(rule.pattern, p) for p in paths)
    ]


def calculate_compatibility_score(
    changes: ChangeAnalysis,
    dependency_comparison: DependencyChangeSet,
    api_compatibility: Optional[ApiCompatibility] = None,
    rules: Optional[Sequence[CompatibilityRule]] = None,
) -> int:
    """Start at 100, subtract fixed penalties, clamp to [0, 100]."""
    score = 100
    score -= BREAKING_FILE_PENALTY * sum(1 for f in changes.modified_files if f.impact == "breaking")
    score -= DELETED_FILE_PENALTY * len(changes.deleted_files)
    score -= REMOVED_DEPENDENCY_PENALTY * len(dependency_comparison.removed)
    score -= BREAKING_DEPENDENCY_PENALTY * sum(1 for u in dependency_comparison.updated if u.is_breaking)
    score -= BREAKING_CONFIG_PENALTY * sum(
        1 for c in changes.configuration_changes if c.impact == "breaking"
    )
    for rule in matched_rules(rules or [], changes):
        score -= RULE_PENALTIES.get(rule.severity, 0)
    return max(0, min(100, score))


def classify_risk(score: float, issue_count: int) -> str:
    if score < 50 or issue_count > 10:
        return "high"
    if score < 75 or issue_count > 5:
        return "medium"
    return "low"


def not_comparable(base: str, target: str) -> ComparisonResult:
    return ComparisonResult(
        base=base,
        target=target,
        potential_issues=[NOT_COMPARABLE],
        compatibility_score=0,
        risk_level=classify_risk(0, 1),
        comparable=False,
    )


def generate_analysis_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"analysis-{int(time.time() * 1000)}-{suffix}"


def generate_summary(comparisons: Dict[str, ComparisonResult]) -> AnalysisSummary:
    summary = AnalysisSummary()
    total_issues = 0
    breaking_api = 0
    scores = []
    for comparison in comparisons.values():
        changes = comparison.changes
        summary.total_changes += changes.total_files_changed
        summary.new_components += sum(1 for f in changes.added_files if f.file_kind == "component")
        summary.new_services += sum(1 for f in changes.added_files if f.file_kind == "service")
        summary.new_utilities += sum(1 for f in changes.added_files if f.file_kind == "utility")
        summary.dependency_changes += len(changes.dependency_changes)
        summary.configuration_changes += len(changes.configuration_changes)
        total_issues += len(comparison.potential_issues)
        if not comparison.api_compatibility.backward_compatible:
            breaking_api += len(comparison.api_compatibility.breaking_changes)
        scores.append(comparison.compatibility_score)

    average = sum(scores) / len(scores) if scores else 100
    summary.risk_level = classify_risk(average, total_issues)

    actions = summary.recommended_actions
    if summary.new_components:
        actions.append(f"Review {summary.new_components} new components for integration opportunities")
    if summary.new_services:
        actions.append(f"Evaluate {summary.new_services} new services for platform enhancement")
    if summary.dependency_changes:
        actions.append(
            f"Review {summary.dependency_changes} dependency changes for security and compatibility"
        )
    if summary.risk_level == "high":
        actions.append("Conduct thorough testing before integration due to high risk level")
    if total_issues:
        actions.append(f"Address {total_issues} potential issues before proceeding with integration")
    if breaking_api:
        actions.append(f"Plan a major version release: {breaking_api} breaking API changes detected")
    return summary


# ===================================================================
# Orchestrator
# ===================================================================

class CompatibilityScorer:
    """Drives one analysis run across configured repositories.

    All collaborators are injected; defaults are built once per scorer. Without
    an explicit configuration the saved one is loaded here, so comparisons
    never touch the config file.
    """

    def __init__(
        self,
        configuration: Optional[AnalysisConfiguration] = None,
        snapshot_builder: Optional[RepositorySnapshotBuilder] = None,
        endpoint_validator: Optional[EndpointCompatibilityValidator] = None,
        store: Optional[ResultStore] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.configuration = configuration if configuration is not None else config_manager.load_configuration()
        self.snapshot_builder = snapshot_builder or RepositorySnapshotBuilder()
        self.endpoint_validator = endpoint_validator or EndpointCompatibilityValidator()
        self._store = store
        self._max_workers = max_workers

    @property
    def dependency_analyzer(self) -> DependencyGraphAnalyzer:
        return self.snapshot_builder.dependency_analyzer

    @property
    def store(self) -> ResultStore:
        if self._store is None:
            self._store = ResultStore()
        return self._store

    @property
    def max_workers(self) -> int:
        return self._max_workers or self.configuration.max_workers or 1

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def perform_analysis(
        self,
        repositories: Optional[List[RepositoryDescriptor]] = None,
        pairs: Optional[List[Tuple[str, str]]] = None,
        cancel_event: Optional[threading.Event] = None,
        persist: bool = True,
    ) -> AnalysisResult:
        """Run a full analysis.

        Args:
            repositories: descriptors to snapshot; defaults to every configured repository.
            pairs: ``(base, target)`` names to compare; defaults to the configured pairs.
            cancel_event: set it to stop the run between steps.
            persist: write the result to the result store.

        Raises:
            ConfigurationBootstrapError: the run configuration could not be loaded.
            AnalysisCancelled: *cancel_event* was set.
        """
        try:
            cfg = self.configuration
            if repositories is None:
                repositories = [
                    config_manager.repository_descriptor(name, cfg) for name in cfg.repositories
                ]
        except ConfigurationBootstrapError:
            raise
        except (RepoCompatError, OSError, ValueError) as exc:
            raise ConfigurationBootstrapError(f"Analysis configuration failed: {exc}") from exc

        names = [d.name for d in repositories]
        if pairs is None:
            pairs = [(b, t) for b, t in cfg.pairs if b in names and t in names]
            if not pairs and len(names) >= 2:
                pairs = [(name, names[-1]) for name in names[:-1]]
        unknown = sorted({n for pair in pairs for n in pair} - set(names))
        if unknown:
            raise ConfigurationBootstrapError(
                f"Comparison pairs reference unknown repositories: {', '.join(unknown)}"
            )

        logger.info("Starting analysis of %d repositories (%d pairs)", len(repositories), len(pairs))
        try:
            results = self.collect(repositories, cancel_event)
            self._check_cancel(cancel_event)

            comparisons: Dict[str, ComparisonResult] = {}
            for base_name, target_name in pairs:
                self._check_cancel(cancel_event)
                comparisons[f"{base_name}-vs-{target_name}"] = self.compare_repositories(
                    results[base_name], results[target_name],
                )
        finally:
            self.dependency_analyzer.clear_cache()

        result = AnalysisResult(
            id=generate_analysis_id(),
            timestamp=datetime.now(),
            repositories=results,
            comparisons=comparisons,
            summary=generate_summary(comparisons),
        )
        logger.info("Analysis %s completed: %s", result.id, result.short_summary())
        if persist:
            self.save_result(result)
        return result

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelled("Analysis cancelled")

    def collect(
        self,
        descriptors: List[RepositoryDescriptor],
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, RepositoryResult]:
        """Snapshot every repository in parallel; a failing worker yields a degraded result.

        An interrupt in the calling thread (Ctrl-C) sets *cancel_event*, so
        running clones, audits and extractions stop before the pool is joined.
        """
        if cancel_event is None:
            cancel_event = threading.Event()
        results: Dict[str, RepositoryResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.snapshot_builder.build_snapshot, d, cancel_event): d
                for d in descriptors
            }
            try:
                for future in as_completed(futures):
                    descriptor = futures[future]
                    try:
                        results[descriptor.name] = future.result()
                    except Exception as exc:  # all-settled: one repository never aborts the batch
                        logger.warning("Snapshot of %s failed: %s", descriptor.name, exc, exc_info=True)
                        results[descriptor.name] = RepositoryResult(
                            repository=descriptor.name,
                            name=descriptor.name,
                            branch=descriptor.branch,
                            is_accessible=False,
                            error=str(exc),
                        )
            except BaseException:
                cancel_event.set()
                executor.shutdown(wait=False, cancel_futures=True)
                raise
        return {d.name: results[d.name] for d in descriptors}

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare_repositories(self, base: RepositoryResult, target: RepositoryResult) -> ComparisonResult:
        """Diff, validate and score *target* against *base*.

        Never raises for an unusable snapshot: the pair comes back as a
        zero-score, non-comparable result instead.
        """
        try:
            return self._compare(base, target)
        except ComparisonError as exc:
            logger.warning("Skipping %s vs %s: %s", base.name or base.repository,
                           target.name or target.repository, exc)
            return not_comparable(base.name or base.repository, target.name or target.repository)

    def _compare(self, base: RepositoryResult, target: RepositoryResult) -> ComparisonResult:
        if not base.is_accessible or not target.is_accessible:
            missing = [r.name or r.repository for r in (base, target) if not r.is_accessible]
            raise ComparisonError(f"Not comparable, inaccessible: {', '.join(missing)}")

        base_manifest = base.dependencies.manifest
        target_manifest = target.dependencies.manifest
        changes = self.snapshot_builder.diff(
            base.structure, target.structure, base_manifest, target_manifest,
        )
        if base_manifest is not None and target_manifest is not None:
            dependency_comparison = compare(base_manifest, target_manifest)
        else:
            dependency_comparison = DependencyChangeSet()

        api = self.endpoint_validator.validate(
            route_sources(target.structure), route_sources(base.structure),
        )
        structures = self.snapshot_builder.compare_structures(base.structure, target.structure)

        comparison = ComparisonResult(
            base=base.name,
            target=target.name,
            changes=changes,
            dependency_comparison=dependency_comparison,
            api_compatibility=api,
            findings=self.endpoint_validator.findings(api),
            new_features=(
                [f"New component: {c}" for c in structures["new_components"]]
                + [f"New service: {s}" for s in structures["new_services"]]
                + [f"New utility: {u}" for u in structures["new_utilities"]]
            ),
            improvements=identify_improvements(changes, dependency_comparison),
            potential_issues=identify_potential_issues(changes, dependency_comparison, api),
            security_issues=vulnerability_issues(target.dependencies.vulnerabilities),
        )
        if base.working_path and target.working_path and base_manifest and target_manifest:
            for audit in self.dependency_analyzer.analyze_dependency_impact(
                Path(base.working_path), Path(target.working_path),
            ):
                if audit.vulnerabilities:
                    comparison.potential_issues.append(
                        f"Vulnerable dependency change: {audit.package}@{audit.version} "
                        f"({audit.vulnerabilities} {audit.severity} advisories)"
                    )

        comparison.compatibility_score = calculate_compatibility_score(
            changes, dependency_comparison, api, self.configuration.compatibility_rules,
        )
        comparison.risk_level = classify_risk(
            comparison.compatibility_score, len(comparison.potential_issues),
        )
        return comparison

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_result(self, result: AnalysisResult) -> Path:
        return self.store.save(result)

    def load_result(self, result_id: str) -> AnalysisResult:
        return self.store.load(result_id)

    def list_results(self, limit: Optional[int] = None) -> List[Dict[str, object]]:
        return self.store.list_results(limit)


def identify_improvements(changes: ChangeAnalysis, dependency_comparison: DependencyChangeSet) -> List[str]:
    improvements: List[str] = []
    for change in changes.added_files:
        if change.file_kind == "component" and change.complexity == "high":
            improvements.append(f"New complex component: {change.path}")
        elif change.file_kind == "service":
            improvements.append(f"New service functionality: {change.path}")
        elif change.file_kind == "utility":
            improvements.append(f"New utility function: {change.path}")
    for name in dependency_comparison.added:
        improvements.append(f"New dependency added: {name}")
    for update in dependency_comparison.updated:
        if not update.is_breaking:
            improvements.append(
                f"Dependency updated: {update.name} ({update.old_version} → {update.new_version})"
            )
    for config_change in changes.configuration_changes:
        if config_change.impact == "additive":
            improvements.append(f"Configuration improvement: {config_change.file}")
    return improvements


def identify_potential_issues(
    changes: ChangeAnalysis,
    dependency_comparison: DependencyChangeSet,
    api: Optional[ApiCompatibility] = None,
) -> List[str]:
    issues: List[str] = []
    for change in changes.modified_files:
        if change.impact == "breaking":
            issues.append(f"Potential breaking change: {change.path}")
    for change in changes.deleted_files:
        issues.append(f"Deleted file may cause issues: {change.path}")
    for config_change in changes.configuration_changes:
        if config_change.impact == "breaking":
            issues.append(f"Breaking configuration change: {config_change.file}")
    for name in dependency_comparison.removed:
        issues.append(f"Removed dependency may cause issues: {name}")
    for update in dependency_comparison.updated:
        if update.is_breaking:
            issues.append(
                f"Breaking dependency change: {update.name} ({update.old_version} → {update.new_version})"
            )
    if api is not None:
        for change in api.breaking_changes:
            issues.append(f"Breaking API change: {change.method} {change.endpoint}: {change.description}")
    return issues
