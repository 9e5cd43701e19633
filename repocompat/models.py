"""Core data models shared by extraction, diffing, scoring and persistence."""

from __future__ import annotations

import hashlib
import json
import typing
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

# ===================================================================
# Serialization helpers
# ===================================================================


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses / datetimes into JSON-safe values."""
    if is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return {k: to_jsonable(v) for k, v in asdict(value).items()}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


def _build(tp: Any, data: Any) -> Any:
    """Rebuild a value of annotated type *tp* from its JSON form."""
    if data is None:
        return None
    origin = typing.get_origin(tp)
    args = typing.get_args(tp)
    if origin is typing.Union:
        inner = [a for a in args if a is not type(None)]
        return _build(inner[0], data) if inner else data
    if origin in (list, List):
        return [_build(args[0], item) for item in data] if args else list(data)
    if origin in (dict, Dict):
        return {k: _build(args[1], v) for k, v in data.items()} if args else dict(data)
    if origin is tuple:
        return tuple(data)
    if tp is datetime:
        return datetime.fromisoformat(data) if isinstance(data, str) else data
    if isinstance(tp, type) and is_dataclass(tp):
        return from_dict(tp, data)
    return data


def from_dict(cls: Any, data: Dict[str, Any]) -> Any:
    """Construct dataclass *cls* from a dict produced by :func:`to_jsonable`."""
    hints = typing.get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        if not f.init or f.name not in data:
            continue
        kwargs[f.name] = _build(hints[f.name], data[f.name])
    return cls(**kwargs)


# ===================================================================
# Source structure
# ===================================================================


@dataclass
class ComplexityMetrics:
    cyclomatic_complexity: int = 1
    lines_of_code: int = 0
    nesting_depth: int = 0
    structural_factor: float = 0
    secondary_factor: float = 0
    score: str = "low"


@dataclass
class IdiomMatch:
    name: str
    description: str
    confidence: float


@dataclass
class PropDefinition:
    name: str
    type: str = "any"
    optional: bool = False
    default_value: Optional[str] = None


@dataclass
class HookUsage:
    name: str
    kind: str  # "built-in" | "custom"
    usage: str = ""


@dataclass
class ImportStatement:
    module: str
    names: List[str] = field(default_factory=list)
    is_default: bool = False
    is_namespace: bool = False


@dataclass
class ExportStatement:
    name: str
    export_type: str = "named"  # "default" | "named"
    is_function: bool = False
    is_class: bool = False
    is_interface: bool = False
    is_type: bool = False


@dataclass
class ParameterDefinition:
    name: str
    type: str = "any"
    optional: bool = False
    default_value: Optional[str] = None


@dataclass
class MethodDefinition:
    name: str
    parameters: List[ParameterDefinition] = field(default_factory=list)
    return_type: str = "any"
    is_async: bool = False
    is_static: bool = False
    visibility: str = "public"
    complexity: int = 1


@dataclass
class FunctionDefinition:
    name: str
    parameters: List[ParameterDefinition] = field(default_factory=list)
    return_type: str = "any"
    is_async: bool = False
    is_exported: bool = False
    complexity: int = 1
    purity: str = "unknown"  # "pure" | "impure" | "unknown"


@dataclass
class ConstantDefinition:
    name: str
    type: str = "any"
    value: Optional[str] = None
    is_exported: bool = False


@dataclass
class PropertyDefinition:
    name: str
    type: str = "any"
    optional: bool = False


@dataclass
class TypeDefinition:
    name: str
    kind: str  # "interface" | "type" | "enum" | "class"
    properties: List[PropertyDefinition] = field(default_factory=list)
    is_exported: bool = False


class MemberSignature(NamedTuple):
    """One entry of a unit's public surface, used for impact classification."""

    type: str
    required: bool
    role: str  # "export" | "prop" | "param" | "member"


@dataclass
class SourceUnit:
    """Structural facts for one parsed source file."""

    path: str
    kind: str  # "component" | "service" | "utility"
    name: str
    exports: List[ExportStatement] = field(default_factory=list)
    imports: List[ImportStatement] = field(default_factory=list)
    props: List[PropDefinition] = field(default_factory=list)
    hooks: List[HookUsage] = field(default_factory=list)
    methods: List[MethodDefinition] = field(default_factory=list)
    functions: List[FunctionDefinition] = field(default_factory=list)
    constants: List[ConstantDefinition] = field(default_factory=list)
    types: List[TypeDefinition] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    idioms: List[IdiomMatch] = field(default_factory=list)
    complexity: ComplexityMetrics = field(default_factory=ComplexityMetrics)
    reusability_score: int = 0
    structure_type: str = "unknown"

    def member_signatures(self) -> Dict[str, MemberSignature]:
        """Return the unit's public surface keyed by a stable member name."""
        sigs: Dict[str, MemberSignature] = {}
        for exp in self.exports:
            kind = "class" if exp.is_class else "function" if exp.is_function else "type" if (
                exp.is_interface or exp.is_type
            ) else "value"
            sigs[f"export:{exp.name}"] = MemberSignature(kind, True, "export")
        for prop in self.props:
            sigs[f"prop:{prop.name}"] = MemberSignature(prop.type, not prop.optional, "prop")
        for method in self.methods:
            if method.visibility != "public":
                continue
            sigs[f"method:{method.name}"] = MemberSignature(method.return_type, True, "member")
            for param in method.parameters:
                sigs[f"method:{method.name}({param.name})"] = MemberSignature(
                    param.type, not (param.optional or param.default_value is not None), "param",
                )
        for fn in self.functions:
            if not fn.is_exported:
                continue
            sigs[f"function:{fn.name}"] = MemberSignature(fn.return_type, True, "member")
            for param in fn.parameters:
                sigs[f"function:{fn.name}({param.name})"] = MemberSignature(
                    param.type, not (param.optional or param.default_value is not None), "param",
                )
        for typedef in self.types:
            if not typedef.is_exported:
                continue
            for prop in typedef.properties:
                sigs[f"type:{typedef.name}.{prop.name}"] = MemberSignature(
                    prop.type, not prop.optional, "prop",
                )
        return sigs

    def fingerprint(self) -> str:
        """Stable hash over the structural facts of this unit."""
        payload = {
            "kind": self.kind,
            "signatures": sorted(
                (k, list(v)) for k, v in self.member_signatures().items()
            ),
            "hooks": sorted(h.name for h in self.hooks),
            "dependencies": sorted(self.dependencies),
            "imports": sorted(i.module for i in self.imports),
            "complexity": [
                self.complexity.cyclomatic_complexity,
                self.complexity.lines_of_code,
                self.complexity.nesting_depth,
            ],
        }
        blob = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {k: to_jsonable(v) for k, v in asdict(self).items()}


@dataclass
class ProjectStructure:
    """Snapshot of one repository's source tree."""

    root: str = ""
    directories: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    components: List[SourceUnit] = field(default_factory=list)
    services: List[SourceUnit] = field(default_factory=list)
    utilities: List[SourceUnit] = field(default_factory=list)
    tests: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    checksums: Dict[str, str] = field(default_factory=dict)
    line_counts: Dict[str, int] = field(default_factory=dict)

    def units(self) -> List[SourceUnit]:
        return [*self.components, *self.services, *self.utilities]

    def unit_for(self, path: str) -> Optional[SourceUnit]:
        for unit in self.units():
            if unit.path == path:
                return unit
        return None

    def names(self, kind: str) -> List[str]:
        bucket = {
            "component": self.components,
            "service": self.services,
            "utility": self.utilities,
        }[kind]
        return [u.name for u in bucket]

    def to_dict(self) -> Dict[str, Any]:
        return {k: to_jsonable(v) for k, v in asdict(self).items()}


# ===================================================================
# Change analysis
# ===================================================================


@dataclass
class FileChange:
    path: str
    change_type: str  # "added" | "modified" | "deleted"
    file_kind: str  # "component" | "service" | "utility" | "config" | "test"
    impact: str  # "breaking" | "additive" | "neutral"
    lines_added: int = 0
    lines_removed: int = 0
    complexity: str = "low"
    details: List[str] = field(default_factory=list)


@dataclass
class ConfigChange:
    file: str
    changes: List[str] = field(default_factory=list)
    impact: str = "neutral"


@dataclass
class DependencyChangeHint:
    name: str
    change_type: str  # "added" | "updated" | "removed"
    old_version: Optional[str] = None
    new_version: Optional[str] = None


@dataclass
class ChangeAnalysis:
    added_files: List[FileChange] = field(default_factory=list)
    modified_files: List[FileChange] = field(default_factory=list)
    deleted_files: List[FileChange] = field(default_factory=list)
    dependency_changes: List[DependencyChangeHint] = field(default_factory=list)
    configuration_changes: List[ConfigChange] = field(default_factory=list)

    @property
    def total_files_changed(self) -> int:
        return len(self.added_files) + len(self.modified_files) + len(self.deleted_files)

    def all_paths(self) -> List[str]:
        return [c.path for c in (*self.added_files, *self.modified_files, *self.deleted_files)]


# ===================================================================
# Dependencies
# ===================================================================


@dataclass
class DependencyRecord:
    name: str
    version_range: str
    scope: str = "runtime"  # "runtime" | "dev"


@dataclass
class PackageManifest:
    name: str = "unknown"
    version: str = "0.0.0"
    description: Optional[str] = None
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    peer_dependencies: Dict[str, str] = field(default_factory=dict)

    def records(self) -> List[DependencyRecord]:
        out = [DependencyRecord(n, v, "runtime") for n, v in self.dependencies.items()]
        out.extend(DependencyRecord(n, v, "dev") for n, v in self.dev_dependencies.items())
        return out

    def combined(self) -> Dict[str, str]:
        """Runtime and dev maps merged; dev wins on a name clash."""
        return {**self.dependencies, **self.dev_dependencies}


@dataclass
class DependencyUpdate:
    name: str
    old_version: str
    new_version: str
    is_breaking: bool = False


@dataclass
class DependencyChangeSet:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    updated: List[DependencyUpdate] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def updated_names(self) -> List[str]:
        return [u.name for u in self.updated]


@dataclass
class DependencyTreeNode:
    name: str
    version: str
    dependencies: List["DependencyTreeNode"] = field(default_factory=list)
    depth: int = 0
    is_direct: bool = True


@dataclass
class VulnerabilityReport:
    package: str
    version: str
    severity: str  # "low" | "moderate" | "high" | "critical"
    title: str
    description: str = ""
    recommendation: str = ""
    patched_versions: str = "unknown"
    cve: Optional[str] = None


@dataclass
class DependencyAuditResult:
    package: str
    version: str
    vulnerabilities: int
    severity: str
    recommendation: str  # "update" | "monitor"


@dataclass
class AnalysisIssue:
    id: str
    rule_id: str
    severity: str  # "error" | "warning" | "info"
    message: str
    file: str = ""
    suggestion: str = ""
    auto_fixable: bool = False


@dataclass
class DependencyAnalysisInfo:
    manifest: Optional[PackageManifest] = None
    vulnerabilities: List[VulnerabilityReport] = field(default_factory=list)
    audit_results: List[DependencyAuditResult] = field(default_factory=list)
    dependency_tree: List[DependencyTreeNode] = field(default_factory=list)


# ===================================================================
# Endpoints
# ===================================================================


@dataclass
class ParameterInfo:
    name: str
    type: str = "string"
    required: bool = False
    location: str = "query"  # "query" | "body" | "path" | "header"
    description: Optional[str] = None


@dataclass
class ResponseSchema:
    status_code: int = 200
    content_type: str = "application/json"
    schema: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuthRequirement:
    required: bool = False
    scheme: str = "none"  # "bearer" | "basic" | "api-key" | "oauth" | "none"


@dataclass
class EndpointDescriptor:
    path: str
    method: str
    parameters: List[ParameterInfo] = field(default_factory=list)
    response_schema: ResponseSchema = field(default_factory=ResponseSchema)
    auth: AuthRequirement = field(default_factory=AuthRequirement)
    deprecated: bool = False
    version: str = "1.0.0"
    source_file: str = ""

    @property
    def key(self) -> str:
        return f"{self.method.upper()} {self.path}"


@dataclass
class ApiBreakingChange:
    endpoint: str
    method: str
    change_type: str  # "removed" | "modified" | "parameter-changed"
    description: str
    impact: str  # "low" | "medium" | "high"
    migration: str


@dataclass
class ApiDeprecation:
    endpoint: str
    method: str
    description: str
    migration: str


@dataclass
class EndpointCompatibilityResult:
    endpoint: str
    method: str
    is_compatible: bool = True
    breaking_changes: List[ApiBreakingChange] = field(default_factory=list)
    deprecations: List[ApiDeprecation] = field(default_factory=list)
    risk_level: str = "low"
    migration_required: bool = False
    recommendations: List[str] = field(default_factory=list)


@dataclass
class ApiCompatibility:
    backward_compatible: bool = True
    breaking_changes: List[ApiBreakingChange] = field(default_factory=list)
    deprecations: List[ApiDeprecation] = field(default_factory=list)
    version_compatibility: List[str] = field(default_factory=list)


@dataclass
class CompatibilityFinding:
    category: str  # "breaking-change" | "deprecation" | "data-format" | "auth-flow"
    severity: str
    description: str
    migration_guidance: str


# ===================================================================
# Repositories and results
# ===================================================================


@dataclass
class RepositoryDescriptor:
    """Where a repository lives. ``access_token`` is never serialized."""

    name: str
    url: str = "."
    branch: str = "main"
    local_path: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)

    @property
    def is_remote(self) -> bool:
        return "://" in self.url or self.url.startswith("git@")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "branch": self.branch,
            "local_path": self.local_path,
        }


@dataclass
class RepositoryResult:
    repository: str
    name: str = ""
    branch: str = ""
    commit_ref: str = ""
    structure: ProjectStructure = field(default_factory=ProjectStructure)
    dependencies: DependencyAnalysisInfo = field(default_factory=DependencyAnalysisInfo)
    analysis_date: datetime = field(default_factory=datetime.now)
    is_accessible: bool = True
    error: Optional[str] = None
    working_path: Optional[str] = None


@dataclass
class ComparisonResult:
    base: str
    target: str
    changes: ChangeAnalysis = field(default_factory=ChangeAnalysis)
    dependency_comparison: DependencyChangeSet = field(default_factory=DependencyChangeSet)
    api_compatibility: ApiCompatibility = field(default_factory=ApiCompatibility)
    findings: List[CompatibilityFinding] = field(default_factory=list)
    new_features: List[str] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)
    potential_issues: List[str] = field(default_factory=list)
    security_issues: List[AnalysisIssue] = field(default_factory=list)
    compatibility_score: int = 100
    risk_level: str = "low"
    comparable: bool = True


@dataclass
class AnalysisSummary:
    total_changes: int = 0
    new_components: int = 0
    new_services: int = 0
    new_utilities: int = 0
    dependency_changes: int = 0
    configuration_changes: int = 0
    risk_level: str = "low"
    recommended_actions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AnalysisResult:
    """Immutable record of one completed analysis run."""

    id: str
    timestamp: datetime
    repositories: Dict[str, RepositoryResult]
    comparisons: Dict[str, ComparisonResult]
    summary: AnalysisSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "repositories": to_jsonable(self.repositories),
            "comparisons": to_jsonable(self.comparisons),
            "summary": to_jsonable(self.summary),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return from_dict(cls, data)

    def short_summary(self) -> str:
        return f"{self.summary.total_changes} changes, {self.summary.risk_level} risk"
