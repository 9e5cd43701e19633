"""Pytest configuration and fixtures for RepoCompat tests."""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, Optional

import pytest

from repocompat.dependencies import AdapterOutput, DependencyGraphAnalyzer, PackageManagerAdapter
from repocompat.errors import AuditUnavailableError
from repocompat.models import RepositoryDescriptor
from repocompat.parser import SourceStructureExtractor
from repocompat.snapshot import RepositorySnapshotBuilder

FIXTURES = Path(__file__).parent / "fixtures"


class FakeAdapter(PackageManagerAdapter):
    """Package manager stand-in returning canned JSON.

    ``tree`` / ``audit_report`` set to ``None`` behave like a missing binary.
    """

    name = "fake"

    def __init__(
        self,
        tree: Optional[Dict[str, Any]] = None,
        audit_report: Optional[Dict[str, Any]] = None,
        audit_returncode: int = 0,
        raw_audit: Optional[str] = None,
    ):
        self.tree = tree
        self.audit_report = audit_report
        self.audit_returncode = audit_returncode
        self.raw_audit = raw_audit
        self.calls = []

    def list_tree(self, project_path: Path, cancel_event=None) -> AdapterOutput:
        self.calls.append(("ls", Path(project_path).name))
        if self.tree is None:
            raise AuditUnavailableError("fake package manager has no tree")
        return AdapterOutput(0, json.dumps(self.tree))

    def audit(self, project_path: Path, cancel_event=None) -> AdapterOutput:
        self.calls.append(("audit", Path(project_path).name))
        if self.raw_audit is not None:
            return AdapterOutput(self.audit_returncode, self.raw_audit)
        if self.audit_report is None:
            raise AuditUnavailableError("fake package manager has no audit")
        return AdapterOutput(self.audit_returncode, json.dumps(self.audit_report))


@pytest.fixture(autouse=True)
def _no_package_manager(monkeypatch):
    """Never spawn the real npm binary from tests.

    ``npm audit`` reaches the registry and can take a long time to give up,
    so the default adapter behaves as if npm were not installed.
    """

    def _unavailable(self, args, cwd, cancel_event=None):
        raise AuditUnavailableError("npm disabled in tests")

    monkeypatch.setattr("repocompat.dependencies.NpmAdapter._run", _unavailable)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def isolated_home(temp_dir: Path, monkeypatch) -> Path:
    """Point every piece of local state at a temporary directory."""
    home = temp_dir / "home"
    monkeypatch.setattr("repocompat.config.BASE_DIR", home)
    monkeypatch.setattr("repocompat.config.CONFIG_FILE", home / "config.toml")
    monkeypatch.setattr("repocompat.config.CREDENTIALS_FILE", home / "credentials.toml")
    monkeypatch.setattr("repocompat.config.RESULTS_DIR", home / "results")
    monkeypatch.setattr("repocompat.config.WORKSPACE_DIR", home / "workspace")
    return home


@pytest.fixture
def base_project_path(temp_dir: Path) -> Path:
    """Copy of the base fixture project outside any git checkout."""
    dest = temp_dir / "base_project"
    shutil.copytree(FIXTURES / "base_project", dest)
    return dest


@pytest.fixture
def target_project_path(temp_dir: Path) -> Path:
    """Copy of the target fixture project outside any git checkout."""
    dest = temp_dir / "target_project"
    shutil.copytree(FIXTURES / "target_project", dest)
    return dest


@pytest.fixture
def extractor() -> SourceStructureExtractor:
    return SourceStructureExtractor(max_workers=2)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def analyzer(fake_adapter: FakeAdapter) -> DependencyGraphAnalyzer:
    return DependencyGraphAnalyzer(adapter=fake_adapter)


@pytest.fixture
def snapshot_builder(extractor: SourceStructureExtractor, analyzer: DependencyGraphAnalyzer) -> RepositorySnapshotBuilder:
    return RepositorySnapshotBuilder(extractor=extractor, dependency_analyzer=analyzer)


@pytest.fixture
def base_descriptor(base_project_path: Path) -> RepositoryDescriptor:
    return RepositoryDescriptor(name="base", url=str(base_project_path), local_path=str(base_project_path))


@pytest.fixture
def target_descriptor(target_project_path: Path) -> RepositoryDescriptor:
    return RepositoryDescriptor(name="target", url=str(target_project_path), local_path=str(target_project_path))


@pytest.fixture
def sample_audit_report() -> Dict[str, Any]:
    """Trimmed ``npm audit --json`` output with one direct advisory."""
    return {
        "auditReportVersion": 2,
        "vulnerabilities": {
            "zod": {
                "name": "zod",
                "severity": "high",
                "range": "<=3.22.2",
                "via": [
                    {
                        "source": 1096410,
                        "name": "zod",
                        "title": "Denial of service in email validation",
                        "url": "https://github.com/advisories/GHSA-m95q-7qp3-xv42",
                        "severity": "high",
                        "cve": ["CVE-2023-4316"],
                    }
                ],
                "fixAvailable": {"name": "zod", "version": "3.22.3", "isSemVerMajor": False},
            },
            "react-dom": {
                "name": "react-dom",
                "severity": "moderate",
                "range": "<18.0.0",
                "via": ["zod"],
                "fixAvailable": True,
            },
        },
    }
