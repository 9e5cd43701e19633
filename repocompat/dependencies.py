"""Dependency manifest comparison, dependency trees and vulnerability audits.

The host package manager is reached only through a
:class:`PackageManagerAdapter`, so everything here can run against a fake
adapter without spawning processes.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from . import config
from .errors import AuditUnavailableError, ExternalCommandTimeout, ManifestMissingError
from .process import run_command
from .models import (
    AnalysisIssue,
    DependencyAnalysisInfo,
    DependencyAuditResult,
    DependencyChangeSet,
    DependencyRecord,
    DependencyTreeNode,
    DependencyUpdate,
    PackageManifest,
    VulnerabilityReport,
)

logger = logging.getLogger(__name__)

SEVERITY_ORDER = ("critical", "high", "moderate", "low")

_RANGE_PREFIX_RE = re.compile(r"[\^~>=<]")
_LEADING_INT_RE = re.compile(r"^\s*(\d+)")

ManifestLike = Union[PackageManifest, Dict[str, str], Iterable[DependencyRecord]]


# ===================================================================
# Package-manager adapters
# ===================================================================

@dataclass(frozen=True)
class AdapterOutput:
    returncode: int
    stdout: str
    stderr: str = ""


class PackageManagerAdapter(ABC):
    """Narrow interface onto the host package manager."""

    name: str = "abstract"

    @abstractmethod
    def list_tree(self, project_path: Path, cancel_event: Optional[threading.Event] = None) -> AdapterOutput:
        """Resolved dependency tree as JSON on stdout."""
        ...

    @abstractmethod
    def audit(self, project_path: Path, cancel_event: Optional[threading.Event] = None) -> AdapterOutput:
        """Registry security audit as JSON on stdout."""
        ...


class NpmAdapter(PackageManagerAdapter):
    """Runs ``npm ls`` / ``npm audit`` in the project directory."""

    name = "npm"

    def __init__(self, executable: str = "npm", timeout: Optional[float] = None) -> None:
        self.executable = executable
        self.timeout = timeout

    def _run(self, args: List[str], cwd: Path, cancel_event: Optional[threading.Event] = None) -> AdapterOutput:
        binary = shutil.which(self.executable)
        if binary is None:
            raise AuditUnavailableError(f"{self.executable} executable not found in PATH")
        limit = self.timeout if self.timeout is not None else config.NPM_TIMEOUT
        proc = run_command(
            [binary, *args],
            cwd=cwd,
            timeout=limit,
            cancel_event=cancel_event,
            label=f"{self.executable} {args[0]}",
        )
        return AdapterOutput(proc.returncode, proc.stdout, proc.stderr)

    def list_tree(self, project_path: Path, cancel_event: Optional[threading.Event] = None) -> AdapterOutput:
        return self._run(["ls", "--json", "--all"], project_path, cancel_event)

    def audit(self, project_path: Path, cancel_event: Optional[threading.Event] = None) -> AdapterOutput:
        return self._run(["audit", "--json"], project_path, cancel_event)


# ===================================================================
# Pure helpers
# ===================================================================

def major_version(version: str) -> int:
    cleaned = _RANGE_PREFIX_RE.sub("", version or "")
    match = _LEADING_INT_RE.match(cleaned)
    return int(match.group(1)) if match else 0


def is_breaking_version_change(old_version: str, new_version: str) -> bool:
    """True iff the leading numeric component increases.

    Pre-1.0 minor bumps are deliberately not treated as breaking.
    """
    return major_version(new_version) > major_version(old_version)


def max_severity(severities: Iterable[str]) -> Optional[str]:
    found = set(severities)
    for level in SEVERITY_ORDER:
        if level in found:
            return level
    return None


def _version_map(manifest: ManifestLike) -> Dict[str, str]:
    if isinstance(manifest, PackageManifest):
        return manifest.combined()
    if isinstance(manifest, dict):
        return dict(manifest)
    versions: Dict[str, str] = {}
    records = list(manifest)
    for scope in ("runtime", "dev"):
        for record in records:
            if record.scope == scope:
                versions[record.name] = record.version_range
    return versions


def compare(base: ManifestLike, target: ManifestLike) -> DependencyChangeSet:
    """Key-set algebra over the union of runtime and dev dependencies."""
    old = _version_map(base)
    new = _version_map(target)
    changes = DependencyChangeSet(
        added=sorted(set(new) - set(old)),
        removed=sorted(set(old) - set(new)),
    )
    for name in sorted(set(old) & set(new)):
        if old[name] == new[name]:
            changes.unchanged.append(name)
        else:
            changes.updated.append(DependencyUpdate(
                name=name,
                old_version=old[name],
                new_version=new[name],
                is_breaking=is_breaking_version_change(old[name], new[name]),
            ))
    return changes


def parse_tree_output(data: Dict[str, Any], depth: int = 0, is_direct: bool = True) -> List[DependencyTreeNode]:
    nodes: List[DependencyTreeNode] = []
    for name, info in (data.get("dependencies") or {}).items():
        info = info if isinstance(info, dict) else {}
        nodes.append(DependencyTreeNode(
            name=name,
            version=info.get("version") or "unknown",
            dependencies=parse_tree_output(info, depth + 1, False),
            depth=depth,
            is_direct=is_direct,
        ))
    return nodes


def _fix_version(fix_available: Any) -> str:
    if isinstance(fix_available, dict):
        return fix_available.get("version") or "unknown"
    if fix_available is True:
        return "latest"
    if isinstance(fix_available, str) and fix_available:
        return fix_available
    return "unknown"


def parse_audit_output(data: Dict[str, Any]) -> List[VulnerabilityReport]:
    """Flatten ``npm audit --json`` into one report per advisory."""
    reports: List[VulnerabilityReport] = []
    for package, info in (data.get("vulnerabilities") or {}).items():
        if not isinstance(info, dict):
            continue
        patched = _fix_version(info.get("fixAvailable"))
        for via in info.get("via") or []:
            # string entries point at another vulnerable package
            if not isinstance(via, dict) or not via.get("title"):
                continue
            cve = via.get("cve")
            if isinstance(cve, list):
                cve = cve[0] if cve else None
            reports.append(VulnerabilityReport(
                package=package,
                version=info.get("range") or "unknown",
                severity=via.get("severity") or "moderate",
                title=via["title"],
                description=via.get("url") or "No description available",
                recommendation=f"Update to version {patched if patched != 'unknown' else 'latest'}",
                patched_versions=patched,
                cve=cve,
            ))
    return reports


# ===================================================================
# Analyzer
# ===================================================================

class DependencyGraphAnalyzer:
    """Manifest parsing plus memoized tree / audit lookups per project path.

    Caches live for the analyzer's lifetime; call :meth:`clear_cache`
    between runs.
    """

    def __init__(self, adapter: Optional[PackageManagerAdapter] = None) -> None:
        self.adapter = adapter or NpmAdapter()
        self._tree_cache: Dict[str, List[DependencyTreeNode]] = {}
        self._audit_cache: Dict[str, List[VulnerabilityReport]] = {}

    # Re-exported so callers only need the analyzer instance
    compare = staticmethod(compare)
    is_breaking_version_change = staticmethod(is_breaking_version_change)

    @staticmethod
    def _key(project_path: Path) -> str:
        return str(Path(project_path).resolve())

    @staticmethod
    def manifest_path(project_path: Path) -> Path:
        path = Path(project_path)
        return path if path.name == config.MANIFEST_NAME else path / config.MANIFEST_NAME

    def read_manifest(self, path: Path) -> PackageManifest:
        """Load a ``package.json`` file (or the one inside a directory).

        Raises:
            ManifestMissingError: the file is absent or not valid JSON.
        """
        manifest_file = self.manifest_path(path)
        try:
            data = json.loads(manifest_file.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ManifestMissingError(f"No {config.MANIFEST_NAME} at {manifest_file}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ManifestMissingError(f"Failed to parse {manifest_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestMissingError(f"Failed to parse {manifest_file}: not an object")
        return PackageManifest(
            name=data.get("name") or "unknown",
            version=data.get("version") or "0.0.0",
            description=data.get("description"),
            dependencies=dict(data.get("dependencies") or {}),
            dev_dependencies=dict(data.get("devDependencies") or {}),
            peer_dependencies=dict(data.get("peerDependencies") or {}),
        )

    def parse_manifest(self, path: Path) -> List[DependencyRecord]:
        return self.read_manifest(path).records()

    def compare_manifests(self, base_path: Path, target_path: Path) -> DependencyChangeSet:
        return compare(self.read_manifest(base_path), self.read_manifest(target_path))

    # ------------------------------------------------------------------
    # Tree and audit
    # ------------------------------------------------------------------

    def build_tree(
        self,
        project_path: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[DependencyTreeNode]:
        """Resolved tree from the package manager, else direct dependencies only.

        The outcome, degraded or not, is memoized per path until :meth:`clear_cache`.
        """
        key = self._key(project_path)
        if key in self._tree_cache:
            logger.debug("Dependency tree cache hit for %s", key)
            return self._tree_cache[key]
        return self._tree_cache.setdefault(key, self._resolve_tree(Path(project_path), cancel_event))

    def _resolve_tree(self, project_path: Path, cancel_event: Optional[threading.Event]) -> List[DependencyTreeNode]:
        try:
            output = self.adapter.list_tree(project_path, cancel_event)
            data = json.loads(output.stdout)
            if not isinstance(data, dict) or "dependencies" not in data:
                raise ValueError("no dependencies in output")
            return parse_tree_output(data)
        except (AuditUnavailableError, ExternalCommandTimeout, ValueError, OSError) as exc:
            logger.debug("Falling back to direct dependencies for %s: %s", project_path, exc)
        try:
            manifest = self.read_manifest(project_path)
        except ManifestMissingError:
            return []
        return [
            DependencyTreeNode(name=name, version=re.sub(r"[\^~]", "", version))
            for name, version in manifest.combined().items()
        ]

    def audit_vulnerabilities(
        self,
        project_path: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[VulnerabilityReport]:
        """Advisories from the registry audit, or [] when unavailable.

        An unavailable or unreadable audit is memoized as [] too, so a hanging
        package manager costs one timeout per path and run.
        """
        key = self._key(project_path)
        if key in self._audit_cache:
            logger.debug("Audit cache hit for %s", key)
            return self._audit_cache[key]
        return self._audit_cache.setdefault(key, self._run_audit(Path(project_path), cancel_event))

    def _run_audit(self, project_path: Path, cancel_event: Optional[threading.Event]) -> List[VulnerabilityReport]:
        try:
            output = self.adapter.audit(project_path, cancel_event)
        except (AuditUnavailableError, ExternalCommandTimeout, OSError) as exc:
            logger.warning("Dependency audit unavailable for %s: %s", project_path, exc)
            return []

        # A non-zero exit still carries the JSON report when advisories exist
        raw = output.stdout.strip() or output.stderr.strip()
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Could not parse audit output for %s", project_path)
            return []
        if not isinstance(data, dict):
            logger.warning("Unexpected audit output for %s", project_path)
            return []
        return parse_audit_output(data)

    def analyze_dependency_impact(self, base_path: Path, target_path: Path) -> List[DependencyAuditResult]:
        """Audit summary for dependencies that are new or updated in the target."""
        try:
            comparison = self.compare_manifests(base_path, target_path)
        except ManifestMissingError as exc:
            logger.warning("Dependency impact skipped: %s", exc)
            return []
        vulnerabilities = self.audit_vulnerabilities(target_path)

        results: List[DependencyAuditResult] = []
        for name in comparison.added:
            found = [v for v in vulnerabilities if v.package == name]
            results.append(DependencyAuditResult(
                package=name,
                version="new",
                vulnerabilities=len(found),
                severity=max_severity(v.severity for v in found) or "low",
                recommendation="update" if found else "monitor",
            ))
        for update in comparison.updated:
            found = [v for v in vulnerabilities if v.package == update.name]
            results.append(DependencyAuditResult(
                package=update.name,
                version=update.new_version,
                vulnerabilities=len(found),
                severity=max_severity(v.severity for v in found) or "low",
                recommendation="monitor" if update.is_breaking else "update",
            ))
        return results

    def dependency_findings(self, project_path: Path) -> List[AnalysisIssue]:
        return vulnerability_issues(self.audit_vulnerabilities(project_path))

    def analyze(
        self,
        project_path: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> DependencyAnalysisInfo:
        """Everything known about one project's dependencies.

        Degrades to partial information instead of failing; only
        :class:`AnalysisCancelled` escapes, when *cancel_event* is set.
        """
        try:
            manifest = self.read_manifest(Path(project_path))
        except ManifestMissingError as exc:
            logger.info("%s", exc)
            return DependencyAnalysisInfo()

        vulnerabilities = self.audit_vulnerabilities(project_path, cancel_event)
        audit_results = []
        for package in sorted({v.package for v in vulnerabilities}):
            found = [v for v in vulnerabilities if v.package == package]
            audit_results.append(DependencyAuditResult(
                package=package,
                version=manifest.combined().get(package, found[0].version),
                vulnerabilities=len(found),
                severity=max_severity(v.severity for v in found) or "low",
                recommendation="update",
            ))
        return DependencyAnalysisInfo(
            manifest=manifest,
            vulnerabilities=vulnerabilities,
            audit_results=audit_results,
            dependency_tree=self.build_tree(project_path, cancel_event),
        )

    def clear_cache(self) -> None:
        self._tree_cache.clear()
        self._audit_cache.clear()


def vulnerability_issues(vulnerabilities: Iterable[VulnerabilityReport]) -> List[AnalysisIssue]:
    """One security issue per advisory; high and critical are errors."""
    issues: List[AnalysisIssue] = []
    for index, vuln in enumerate(vulnerabilities, start=1):
        issues.append(AnalysisIssue(
            id=f"dep-vuln-{vuln.package}-{index}",
            rule_id="dependency-vulnerability",
            severity="error" if vuln.severity in ("critical", "high") else "warning",
            message=f"Security vulnerability in {vuln.package}@{vuln.version}: {vuln.title}",
            file=config.MANIFEST_NAME,
            suggestion=vuln.recommendation,
        ))
    return issues
