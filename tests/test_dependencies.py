"""Tests for manifest comparison, dependency trees and audits."""

import json
from pathlib import Path

import pytest

from repocompat.dependencies import (
    DependencyGraphAnalyzer,
    compare,
    is_breaking_version_change,
    major_version,
    parse_audit_output,
    vulnerability_issues,
)
from repocompat.errors import ManifestMissingError
from repocompat.models import DependencyRecord, PackageManifest

from conftest import FakeAdapter


@pytest.mark.parametrize(
    "old, new",
    [
        ({}, {}),
        ({"a": "1"}, {}),
        ({}, {"a": "1"}),
        ({"a": "1", "b": "2"}, {"a": "1", "c": "3"}),
        ({"a": "1", "b": "2", "c": "3"}, {"b": "2.1", "c": "3", "d": "0.1"}),
    ],
)
def test_compare_key_set_algebra(old, new):
    """added/removed/updated/unchanged partition the union of names."""
    changes = compare(old, new)

    assert set(changes.added) == set(new) - set(old)
    assert set(changes.removed) == set(old) - set(new)
    shared = set(old) & set(new)
    assert set(changes.unchanged) | set(changes.updated_names) == shared
    assert not set(changes.unchanged) & set(changes.updated_names)
    for update in changes.updated:
        assert old[update.name] != new[update.name]


def test_compare_swapped_package():
    changes = compare({"a": "^1.0.0", "b": "^2.0.0"}, {"a": "^1.0.0", "c": "^1.0.0"})

    assert changes.added == ["c"]
    assert changes.removed == ["b"]
    assert changes.updated == []
    assert changes.unchanged == ["a"]


def test_compare_merges_runtime_and_dev_scopes():
    base = PackageManifest(dependencies={"react": "^18.0.0"}, dev_dependencies={"jest": "^28.0.0"})
    target = [
        DependencyRecord("react", "^18.0.0", "runtime"),
        DependencyRecord("jest", "^29.0.0", "dev"),
    ]

    changes = compare(base, target)

    assert changes.unchanged == ["react"]
    assert changes.updated_names == ["jest"]
    assert changes.updated[0].is_breaking


@pytest.mark.parametrize(
    "old, new, breaking",
    [
        ("1.2.3", "2.0.0", True),
        ("1.2.3", "1.3.0", False),
        ("^18.2.0", "^19.0.0", True),
        ("~4.17.21", "4.18.0", False),
        ("0.1.0", "0.2.0", False),
        (">=2.0.0", "3.0.0-beta.1", True),
        ("2.0.0", "1.9.0", False),
        ("latest", "next", False),
    ],
)
def test_is_breaking_version_change(old, new, breaking):
    assert is_breaking_version_change(old, new) is breaking


def test_major_version_of_garbage_is_zero():
    assert major_version("workspace:*") == 0
    assert major_version("") == 0


class TestManifests:
    """Reading package.json files."""

    def test_read_manifest(self, analyzer, base_project_path: Path):
        manifest = analyzer.read_manifest(base_project_path)

        assert manifest.name == "storefront"
        assert manifest.version == "1.4.0"
        assert manifest.dev_dependencies == {"typescript": "^5.0.0"}

    def test_read_manifest_accepts_file_path(self, analyzer, base_project_path: Path):
        manifest = analyzer.read_manifest(base_project_path / "package.json")
        assert "lodash" in manifest.dependencies

    def test_missing_manifest(self, analyzer, temp_dir: Path):
        with pytest.raises(ManifestMissingError):
            analyzer.read_manifest(temp_dir)

    def test_invalid_manifest(self, analyzer, temp_dir: Path):
        (temp_dir / "package.json").write_text("{ not json")
        with pytest.raises(ManifestMissingError):
            analyzer.read_manifest(temp_dir)

    def test_parse_manifest_records(self, analyzer, base_project_path: Path):
        records = analyzer.parse_manifest(base_project_path)
        scopes = {r.name: r.scope for r in records}
        assert scopes["react"] == "runtime"
        assert scopes["typescript"] == "dev"

    def test_compare_manifests_end_to_end(self, analyzer, base_project_path, target_project_path):
        changes = analyzer.compare_manifests(base_project_path, target_project_path)

        assert changes.added == ["zod"]
        assert changes.removed == ["lodash"]
        assert changes.updated_names == ["react"]
        assert changes.updated[0].is_breaking
        assert changes.unchanged == ["axios", "typescript"]

    def test_analyze_without_manifest(self, analyzer, temp_dir: Path):
        info = analyzer.analyze(temp_dir)

        assert info.manifest is None
        assert info.vulnerabilities == []
        assert info.dependency_tree == []


class TestTree:
    """Resolved tree and its fallback."""

    def test_tree_from_package_manager(self, base_project_path: Path):
        adapter = FakeAdapter(tree={
            "name": "storefront",
            "dependencies": {
                "react": {"version": "18.2.0", "dependencies": {"loose-envify": {"version": "1.4.0"}}},
                "axios": {"version": "1.4.0"},
            },
        })
        tree = DependencyGraphAnalyzer(adapter).build_tree(base_project_path)

        react = [n for n in tree if n.name == "react"][0]
        assert react.is_direct and react.depth == 0
        assert react.dependencies[0].name == "loose-envify"
        assert react.dependencies[0].depth == 1
        assert react.dependencies[0].is_direct is False

    def test_tree_falls_back_to_direct_dependencies(self, analyzer, base_project_path: Path):
        tree = analyzer.build_tree(base_project_path)

        assert {n.name: n.version for n in tree} == {
            "axios": "1.4.0", "lodash": "4.17.21", "react": "18.2.0", "typescript": "5.0.0",
        }

    def test_tree_is_cached_until_cleared(self, base_project_path: Path):
        adapter = FakeAdapter(tree={"dependencies": {"react": {"version": "18.2.0"}}})
        analyzer = DependencyGraphAnalyzer(adapter)

        analyzer.build_tree(base_project_path)
        analyzer.build_tree(base_project_path)
        assert adapter.calls.count(("ls", "base_project")) == 1

        analyzer.clear_cache()
        analyzer.build_tree(base_project_path)
        assert adapter.calls.count(("ls", "base_project")) == 2

    def test_degraded_tree_is_cached(self, temp_dir: Path):
        adapter = FakeAdapter()
        analyzer = DependencyGraphAnalyzer(adapter)

        assert analyzer.build_tree(temp_dir) == []
        assert analyzer.build_tree(temp_dir) == []
        assert adapter.calls == [("ls", temp_dir.name)]


class TestAudit:
    """Vulnerability audits."""

    def test_parse_audit_output(self, sample_audit_report):
        reports = parse_audit_output(sample_audit_report)

        assert len(reports) == 1
        report = reports[0]
        assert report.package == "zod"
        assert report.severity == "high"
        assert report.patched_versions == "3.22.3"
        assert report.cve == "CVE-2023-4316"
        assert report.recommendation == "Update to version 3.22.3"

    def test_nonzero_exit_with_report_is_used(self, target_project_path: Path, sample_audit_report):
        adapter = FakeAdapter(audit_report=sample_audit_report, audit_returncode=1)

        vulns = DependencyGraphAnalyzer(adapter).audit_vulnerabilities(target_project_path)

        assert [v.package for v in vulns] == ["zod"]

    def test_unparseable_audit_is_empty(self, target_project_path: Path):
        adapter = FakeAdapter(raw_audit="npm ERR! code ENOLOCK", audit_returncode=1)

        assert DependencyGraphAnalyzer(adapter).audit_vulnerabilities(target_project_path) == []

    def test_audit_unavailable_is_empty(self, analyzer, target_project_path: Path):
        assert analyzer.audit_vulnerabilities(target_project_path) == []

    @pytest.mark.parametrize("adapter", [FakeAdapter(), FakeAdapter(raw_audit="not json")], ids=["unavailable", "unparseable"])
    def test_empty_audit_is_cached(self, adapter, target_project_path: Path):
        analyzer = DependencyGraphAnalyzer(adapter)

        analyzer.audit_vulnerabilities(target_project_path)
        analyzer.audit_vulnerabilities(target_project_path)

        assert adapter.calls == [("audit", "target_project")]

    def test_default_adapter_never_runs_npm(self, target_project_path: Path):
        assert DependencyGraphAnalyzer().audit_vulnerabilities(target_project_path) == []

    def test_analyze_summarizes_per_package(self, target_project_path: Path, sample_audit_report):
        adapter = FakeAdapter(audit_report=sample_audit_report)

        info = DependencyGraphAnalyzer(adapter).analyze(target_project_path)

        assert len(info.audit_results) == 1
        audit = info.audit_results[0]
        assert (audit.package, audit.version, audit.vulnerabilities, audit.severity) == (
            "zod", "^3.22.0", 1, "high",
        )

    def test_dependency_impact(self, base_project_path, target_project_path, sample_audit_report):
        adapter = FakeAdapter(audit_report=sample_audit_report)

        results = DependencyGraphAnalyzer(adapter).analyze_dependency_impact(
            base_project_path, target_project_path,
        )

        by_name = {r.package: r for r in results}
        assert set(by_name) == {"zod", "react"}
        assert by_name["zod"].version == "new"
        assert by_name["zod"].recommendation == "update"
        assert by_name["react"].vulnerabilities == 0
        assert by_name["react"].recommendation == "monitor"
        assert adapter.calls == [("audit", "target_project")]

    def test_vulnerability_issues(self, sample_audit_report):
        issues = vulnerability_issues(parse_audit_output(sample_audit_report))

        assert len(issues) == 1
        assert issues[0].id == "dep-vuln-zod-1"
        assert issues[0].severity == "error"
        assert issues[0].rule_id == "dependency-vulnerability"
        assert issues[0].file == "package.json"


def test_manifest_roundtrips_through_json(temp_dir: Path, analyzer):
    payload = {"name": "x", "dependencies": {"a": "1.0.0"}, "peerDependencies": {"react": ">=17"}}
    (temp_dir / "package.json").write_text(json.dumps(payload))

    manifest = analyzer.read_manifest(temp_dir)

    assert manifest.version == "0.0.0"
    assert manifest.peer_dependencies == {"react": ">=17"}
    assert manifest.combined() == {"a": "1.0.0"}
