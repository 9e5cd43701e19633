"""Repository snapshots and the structural diff between two of them."""

from __future__ import annotations

import difflib
import logging
import re
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from . import config
from .dependencies import DependencyGraphAnalyzer
from .errors import AnalysisCancelled, ExternalCommandTimeout, RepoCompatError, RepositoryInaccessibleError
from .git_helper import GitHelper
from .models import (
    ChangeAnalysis,
    ConfigChange,
    DependencyChangeHint,
    FileChange,
    PackageManifest,
    ProjectStructure,
    RepositoryDescriptor,
    RepositoryResult,
    SourceUnit,
)
from .parser import Extractor, SourceStructureExtractor, is_config_path, is_test_path

logger = logging.getLogger(__name__)

CONFIG_FILES = {
    "next.config.js",
    "next.config.ts",
    "tailwind.config.js",
    "tailwind.config.ts",
    "tsconfig.json",
}


def _check_cancel(cancel_event: Optional[threading.Event], what: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled(f"{what} cancelled")


# ===================================================================
# Working copies
# ===================================================================

class WorkingCopyProvider(ABC):
    """Hands the builder a file-system path for a repository descriptor."""

    @abstractmethod
    def materialize(
        self,
        descriptor: RepositoryDescriptor,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Return a readable working copy or raise :class:`RepositoryInaccessibleError`."""
        ...

    def cleanup(self) -> int:
        """Remove anything this provider created. Returns the number of copies removed."""
        return 0


class LocalWorkingCopyProvider(WorkingCopyProvider):
    """Uses ``local_path`` (or a plain path in ``url``) as-is."""

    def materialize(
        self,
        descriptor: RepositoryDescriptor,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        path = Path(descriptor.local_path or descriptor.url).expanduser()
        if not path.is_dir():
            raise RepositoryInaccessibleError(f"Repository path does not exist: {path}")
        return path


class GitWorkingCopyProvider(WorkingCopyProvider):
    """Shallow-clones remote repositories into the workspace directory.

    An existing clone is refreshed with ``fetch`` + ``reset --hard`` instead
    of being cloned again.
    """

    def __init__(self, workspace_dir: Optional[Path] = None) -> None:
        self.workspace_dir = workspace_dir or config.WORKSPACE_DIR
        self._created: List[Path] = []
        self._lock = threading.Lock()

    def destination_for(self, descriptor: RepositoryDescriptor) -> Path:
        slug = re.sub(r"[^A-Za-z0-9._-]+", "_", f"{descriptor.name}-{descriptor.branch}")
        return Path(self.workspace_dir) / slug

    def materialize(
        self,
        descriptor: RepositoryDescriptor,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        if not GitHelper.check_git_available():
            raise RepositoryInaccessibleError("git executable not found in PATH")

        destination = self.destination_for(descriptor)
        _check_cancel(cancel_event, f"Checkout of {descriptor.name}")
        existing = (destination / ".git").exists()
        try:
            if existing:
                logger.info("Updating working copy %s (%s)", destination, descriptor.branch)
                GitHelper.update(destination, descriptor.branch, cancel_event)
            else:
                logger.info("Cloning %s (%s) into %s", descriptor.url, descriptor.branch, destination)
                GitHelper.clone(
                    descriptor.url, descriptor.branch, destination, descriptor.access_token, cancel_event,
                )
                with self._lock:
                    self._created.append(destination)
        except (AnalysisCancelled, ExternalCommandTimeout):
            if not existing:
                shutil.rmtree(destination, ignore_errors=True)
            raise
        except subprocess.CalledProcessError as exc:
            message = (exc.stderr or "").strip() or f"git exited with status {exc.returncode}"
            if descriptor.access_token:
                message = message.replace(descriptor.access_token, "***")
            else:
                message += " (no access token configured)"
            raise RepositoryInaccessibleError(
                f"Failed to materialize {descriptor.name}: {message}"
            ) from exc
        return destination

    def cleanup(self) -> int:
        with self._lock:
            created, self._created = self._created, []
        removed = 0
        for path in created:
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
                removed += 1
        return removed


# ===================================================================
# Snapshot builder
# ===================================================================

class RepositorySnapshotBuilder:
    """Builds :class:`RepositoryResult` snapshots and diffs them.

    ``build_snapshot`` never raises: inaccessibility is reported through
    ``is_accessible`` / ``error`` on the returned result.
    """

    def __init__(
        self,
        extractor: Optional[Extractor] = None,
        dependency_analyzer: Optional[DependencyGraphAnalyzer] = None,
        remote_provider: Optional[WorkingCopyProvider] = None,
        local_provider: Optional[WorkingCopyProvider] = None,
    ) -> None:
        self.extractor = extractor or SourceStructureExtractor()
        self.dependency_analyzer = dependency_analyzer or DependencyGraphAnalyzer()
        self.remote_provider = remote_provider or GitWorkingCopyProvider()
        self.local_provider = local_provider or LocalWorkingCopyProvider()

    def build_snapshot(
        self,
        descriptor: RepositoryDescriptor,
        cancel_event: Optional[threading.Event] = None,
    ) -> RepositoryResult:
        result = RepositoryResult(
            repository=descriptor.name,
            name=descriptor.name,
            branch=descriptor.branch,
        )
        provider = self.remote_provider if descriptor.is_remote else self.local_provider
        try:
            _check_cancel(cancel_event, f"Snapshot of {descriptor.name}")
            path = provider.materialize(descriptor, cancel_event)
            _check_cancel(cancel_event, f"Snapshot of {descriptor.name}")
            result.structure = self.extractor.extract(path, cancel_event)
            result.dependencies = self.dependency_analyzer.analyze(path, cancel_event)
        except (RepoCompatError, OSError) as exc:
            logger.warning("Repository %s is not accessible: %s", descriptor.name, exc)
            result.is_accessible = False
            result.error = str(exc)
            return result

        result.working_path = str(path)
        if GitHelper.is_repository(path):
            result.commit_ref = GitHelper.latest_commit(path)
            result.branch = GitHelper.current_branch(path) or descriptor.branch
        else:
            result.commit_ref = "local"
        return result

    def cleanup(self) -> int:
        """Remove working copies created during this process."""
        removed = self.remote_provider.cleanup() + self.local_provider.cleanup()
        if removed:
            logger.info("Removed %d working copies", removed)
        return removed

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def diff(
        self,
        base: ProjectStructure,
        target: ProjectStructure,
        base_manifest: Optional[PackageManifest] = None,
        target_manifest: Optional[PackageManifest] = None,
    ) -> ChangeAnalysis:
        """Compare two snapshots by path.

        Source units are modified when their structural fingerprints differ;
        other tracked files when their content hashes differ.
        """
        changes = ChangeAnalysis()
        base_paths = _tracked_paths(base)
        target_paths = _tracked_paths(target)

        for path in sorted(target_paths - base_paths):
            unit = target.unit_for(path)
            changes.added_files.append(FileChange(
                path=path,
                change_type="added",
                file_kind=file_kind(path, unit),
                impact="additive",
                lines_added=target.line_counts.get(path, 0),
                complexity=unit.complexity.score if unit else "low",
            ))

        for path in sorted(base_paths - target_paths):
            unit = base.unit_for(path)
            changes.deleted_files.append(FileChange(
                path=path,
                change_type="deleted",
                file_kind=file_kind(path, unit),
                impact="breaking",
                lines_removed=base.line_counts.get(path, 0),
                complexity=unit.complexity.score if unit else "low",
            ))

        for path in sorted(base_paths & target_paths):
            old_unit = base.unit_for(path)
            new_unit = target.unit_for(path)
            if old_unit is not None and new_unit is not None:
                if old_unit.fingerprint() == new_unit.fingerprint():
                    continue
                impact, details = classify_impact(old_unit, new_unit)
            elif base.checksums.get(path) != target.checksums.get(path):
                impact, details = "neutral", ["content changed"]
            else:
                continue
            added, removed = _line_delta(base, target, path)
            changes.modified_files.append(FileChange(
                path=path,
                change_type="modified",
                file_kind=file_kind(path, new_unit),
                impact=impact,
                lines_added=added,
                lines_removed=removed,
                complexity=new_unit.complexity.score if new_unit else "low",
                details=details,
            ))

        changes.configuration_changes = config_change_hints(base, target)
        if base_manifest is not None or target_manifest is not None:
            changes.dependency_changes = dependency_change_hints(
                base_manifest or PackageManifest(), target_manifest or PackageManifest(),
            )
        return changes

    @staticmethod
    def compare_structures(base: ProjectStructure, target: ProjectStructure) -> Dict[str, List[str]]:
        """New and removed component / service / utility names."""
        out: Dict[str, List[str]] = {}
        for kind, label in (("component", "components"), ("service", "services"), ("utility", "utilities")):
            old = set(base.names(kind))
            new = set(target.names(kind))
            out[f"new_{label}"] = sorted(new - old)
            out[f"removed_{label}"] = sorted(old - new)
        return out


# ===================================================================
# Pure helpers
# ===================================================================

def _tracked_paths(structure: ProjectStructure) -> set:
    return set(structure.checksums) | {u.path for u in structure.units()}


def file_kind(path: str, unit: Optional[SourceUnit] = None) -> str:
    name = PurePosixPath(path).name
    if name in CONFIG_FILES or is_config_path(name) or name.endswith(".json"):
        return "config"
    if is_test_path(path):
        return "test"
    if unit is not None:
        return unit.kind
    return "utility"


def classify_impact(base_unit: SourceUnit, target_unit: SourceUnit) -> Tuple[str, List[str]]:
    """Return ``(impact, details)`` for a unit present in both snapshots."""
    old = base_unit.member_signatures()
    new = target_unit.member_signatures()
    breaking: List[str] = []
    additive: List[str] = []
    neutral: List[str] = []

    for name, sig in old.items():
        current = new.get(name)
        if current is None:
            if sig.required:
                breaking.append(f"removed {name}")
            else:
                neutral.append(f"removed optional {name}")
        elif current.type != sig.type:
            breaking.append(f"type of {name} changed from {sig.type} to {current.type}")
        elif current.required and not sig.required:
            breaking.append(f"{name} is now required")
        elif sig.required and not current.required:
            additive.append(f"{name} is now optional")

    for name, sig in new.items():
        if name in old:
            continue
        if sig.required and sig.role in ("prop", "param") and _owner_existed(name, old):
            breaking.append(f"added required {name}")
        else:
            additive.append(f"added {name}")

    if breaking:
        return "breaking", breaking + additive + neutral
    if additive:
        return "additive", additive + neutral
    return "neutral", neutral or ["internal structure changed"]


def _owner_existed(name: str, old: Dict[str, object]) -> bool:
    """Whether the member that owns signature *name* was already public in *old*.

    ``function:f(p)`` belongs to ``function:f``; ``type:T.p`` to type ``T``;
    component props belong to the unit itself.
    """
    if "(" in name:
        return name.split("(", 1)[0] in old
    if name.startswith("type:"):
        prefix = name.rsplit(".", 1)[0] + "."
        return any(key.startswith(prefix) for key in old)
    return True


def _line_delta(base: ProjectStructure, target: ProjectStructure, path: str) -> Tuple[int, int]:
    """Exact +/- line counts when both working copies are on disk, else count delta."""
    base_file = Path(base.root) / path if base.root else None
    target_file = Path(target.root) / path if target.root else None
    if base_file is not None and target_file is not None and base_file.is_file() and target_file.is_file():
        try:
            old_lines = base_file.read_text(encoding="utf-8", errors="ignore").splitlines()
            new_lines = target_file.read_text(encoding="utf-8", errors="ignore").splitlines()
        except OSError:
            pass
        else:
            added = removed = 0
            for line in difflib.unified_diff(old_lines, new_lines, lineterm="", n=0):
                if line.startswith("+") and not line.startswith("+++"):
                    added += 1
                elif line.startswith("-") and not line.startswith("---"):
                    removed += 1
            return added, removed
    delta = target.line_counts.get(path, 0) - base.line_counts.get(path, 0)
    return max(delta, 0), max(-delta, 0)


def config_change_hints(base: ProjectStructure, target: ProjectStructure) -> List[ConfigChange]:
    def configs(structure: ProjectStructure) -> Dict[str, Optional[str]]:
        return {
            f: structure.checksums.get(f)
            for f in structure.files
            if PurePosixPath(f).name in CONFIG_FILES
        }

    old = configs(base)
    new = configs(target)
    hints: List[ConfigChange] = []
    for path in sorted(set(old) | set(new)):
        if path not in old:
            hints.append(ConfigChange(path, ["Configuration file added"], "additive"))
        elif path not in new:
            hints.append(ConfigChange(path, ["Configuration file removed"], "breaking"))
        elif old[path] != new[path]:
            hints.append(ConfigChange(path, ["Configuration file modified"], "neutral"))
    return hints


def dependency_change_hints(base: PackageManifest, target: PackageManifest) -> List[DependencyChangeHint]:
    old = base.combined()
    new = target.combined()
    hints: List[DependencyChangeHint] = []
    for name in sorted(set(old) | set(new)):
        if name not in old:
            hints.append(DependencyChangeHint(name, "added", new_version=new[name]))
        elif name not in new:
            hints.append(DependencyChangeHint(name, "removed", old_version=old[name]))
        elif old[name] != new[name]:
            hints.append(DependencyChangeHint(name, "updated", old[name], new[name]))
    return hints
