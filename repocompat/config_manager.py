"""Analysis configuration and repository credentials, stored as TOML."""

from __future__ import annotations

import json
import logging
import os
import re
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from . import config
from .errors import ConfigurationBootstrapError
from .models import RepositoryDescriptor

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1

ANALYSIS_RULE_TYPES = ("file-pattern", "dependency", "structure", "performance")
TOKEN_TYPES = ("github", "gitlab", "bitbucket", "generic")

_GITHUB_RE = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")


# ===================================================================
# Configuration records
# ===================================================================

@dataclass
class RepositoryConfig:
    url: str = "."
    branch: str = "main"
    local_path: str = ""


@dataclass
class AnalysisRule:
    id: str
    name: str = ""
    description: str = ""
    type: str = "file-pattern"
    pattern: str = "**/*"
    weight: float = 1.0
    enabled: bool = True


@dataclass
class CompatibilityRule:
    id: str
    name: str = ""
    description: str = ""
    type: str = "apiCompatibility"
    pattern: str = "**/*"
    severity: str = "warning"  # "error" | "warning" | "info"
    enabled: bool = True


@dataclass
class PrioritizationCriteria:
    business_value: Dict[str, List[str]] = field(default_factory=lambda: {
        "high": ["dashboard", "ranking", "auth", "admin"],
        "medium": ["ui", "performance", "security"],
        "low": ["documentation", "testing", "tooling"],
    })
    technical_complexity: Dict[str, List[str]] = field(default_factory=lambda: {
        "high": ["database", "authentication", "api-breaking"],
        "medium": ["components", "services", "configuration"],
        "low": ["styling", "documentation", "minor-fixes"],
    })
    risk_level: Dict[str, List[str]] = field(default_factory=lambda: {
        "high": ["breaking-changes", "security", "data-migration"],
        "medium": ["api-changes", "ui-changes", "configuration"],
        "low": ["additions", "improvements", "optimizations"],
    })


@dataclass
class SecurityConfig:
    token_storage: str = "file"
    encrypt_tokens: bool = False
    token_expiration_days: int = 90
    allowed_repositories: List[str] = field(default_factory=list)
    require_two_factor: bool = False


@dataclass
class AnalysisConfiguration:
    version: int = CONFIG_VERSION
    repositories: Dict[str, RepositoryConfig] = field(default_factory=dict)
    pairs: List[List[str]] = field(default_factory=list)
    analysis_rules: List[AnalysisRule] = field(default_factory=list)
    compatibility_rules: List[CompatibilityRule] = field(default_factory=list)
    prioritization: PrioritizationCriteria = field(default_factory=PrioritizationCriteria)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    max_workers: int = 4

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_configuration() -> AnalysisConfiguration:
    return AnalysisConfiguration(
        repositories={
            "essencia": RepositoryConfig(url="https://github.com/your-org/essencia.git"),
            "fnp-ranking": RepositoryConfig(url="https://github.com/your-org/fnp-ranking.git"),
            "current": RepositoryConfig(url=".", local_path="."),
        },
        pairs=[["essencia", "current"], ["fnp-ranking", "current"]],
        analysis_rules=[
            AnalysisRule("component-analysis", "Component Analysis",
                         "Analyze React components for improvements",
                         "file-pattern", "**/*.{tsx,jsx}", 1.0),
            AnalysisRule("service-analysis", "Service Analysis",
                         "Analyze service layer improvements",
                         "file-pattern", "**/services/**/*.{ts,js}", 1.2),
            AnalysisRule("api-analysis", "API Analysis",
                         "Analyze API endpoint improvements",
                         "file-pattern", "**/api/**/*.{ts,js}", 1.5),
            AnalysisRule("dependency-analysis", "Dependency Analysis",
                         "Analyze package.json changes",
                         "dependency", "package.json", 1.3),
        ],
        compatibility_rules=[
            CompatibilityRule("white-label-theme", "White Label Theme Compatibility",
                              "Ensure changes are compatible with white-label theming",
                              "whiteLabelCompatibility", "**/components/**/*.{tsx,jsx}", "error"),
            CompatibilityRule("api-backward-compatibility", "API Backward Compatibility",
                              "Ensure API changes maintain backward compatibility",
                              "apiCompatibility", "**/api/**/*.{ts,js}", "error"),
            CompatibilityRule("database-migration", "Database Migration Safety",
                              "Ensure database changes have proper migrations",
                              "databaseCompatibility", "**/migrations/**/*.{ts,js,sql}", "warning"),
        ],
        max_workers=config.MAX_WORKERS,
    )


# ===================================================================
# Merge / load / save
# ===================================================================

def _known(cls: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _merge_record(cls: Any, default: Any, raw: Any) -> Any:
    if not isinstance(raw, dict):
        return default
    return cls(**{**asdict(default), **_known(cls, raw)})


def merge_with_defaults(raw: Dict[str, Any]) -> AnalysisConfiguration:
    """Build a configuration from a partial mapping, field by field.

    Raises:
        ConfigurationBootstrapError: unsupported version or malformed section.
    """
    defaults = default_configuration()
    version = raw.get("version", CONFIG_VERSION)
    if not isinstance(version, int) or version > CONFIG_VERSION:
        raise ConfigurationBootstrapError(f"Unsupported configuration version: {version!r}")

    try:
        # A repositories section replaces the defaults; each entry is completed field by field
        repositories = defaults.repositories
        if "repositories" in raw:
            repositories = {
                name: _merge_record(RepositoryConfig, RepositoryConfig(), repo)
                for name, repo in raw["repositories"].items()
            }

        analysis_rules = defaults.analysis_rules
        if "analysis_rules" in raw:
            analysis_rules = [AnalysisRule(**_known(AnalysisRule, r)) for r in raw["analysis_rules"]]

        compatibility_rules = defaults.compatibility_rules
        if "compatibility_rules" in raw:
            compatibility_rules = [
                CompatibilityRule(**_known(CompatibilityRule, r)) for r in raw["compatibility_rules"]
            ]

        pairs = defaults.pairs
        if "pairs" in raw:
            pairs = [list(p) for p in raw["pairs"] if len(p) == 2]

        return AnalysisConfiguration(
            version=CONFIG_VERSION,
            repositories=repositories,
            pairs=pairs,
            analysis_rules=analysis_rules,
            compatibility_rules=compatibility_rules,
            prioritization=_merge_record(
                PrioritizationCriteria, defaults.prioritization, raw.get("prioritization"),
            ),
            security=_merge_record(SecurityConfig, defaults.security, raw.get("security")),
            max_workers=int(raw.get("max_workers", defaults.max_workers)),
        )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigurationBootstrapError(f"Malformed configuration: {exc}") from exc


def load_configuration(path: Optional[Path] = None) -> AnalysisConfiguration:
    """Load the configuration, writing defaults on first use.

    Raises:
        ConfigurationBootstrapError: the file exists but cannot be used.
    """
    path = Path(path or config.CONFIG_FILE)
    if not path.exists():
        defaults = default_configuration()
        save_configuration(defaults, path)
        logger.info("Wrote default configuration to %s", path)
        return defaults
    try:
        with open(path, "r") as f:
            raw = toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        raise ConfigurationBootstrapError(f"Failed to load configuration from {path}: {exc}") from exc
    return merge_with_defaults(raw)


def save_configuration(cfg: AnalysisConfiguration, path: Optional[Path] = None) -> Path:
    path = Path(path or config.CONFIG_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        toml.dump(cfg.to_dict(), f)
    return path


def export_configuration(destination: Path) -> Path:
    """Write the current configuration to *destination* (TOML or JSON by suffix)."""
    cfg = load_configuration()
    destination = Path(destination)
    if destination.suffix == ".json":
        destination.write_text(json.dumps(cfg.to_dict(), indent=2), encoding="utf-8")
        return destination
    return save_configuration(cfg, destination)


def import_configuration(source: Path) -> AnalysisConfiguration:
    source = Path(source)
    try:
        if source.suffix == ".json":
            raw = json.loads(source.read_text(encoding="utf-8"))
        else:
            raw = toml.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError, toml.TomlDecodeError) as exc:
        raise ConfigurationBootstrapError(f"Failed to import configuration from {source}: {exc}") from exc
    cfg = merge_with_defaults(raw)
    save_configuration(cfg)
    return cfg


def reset_configuration() -> AnalysisConfiguration:
    cfg = default_configuration()
    save_configuration(cfg)
    return cfg


def update_repository_config(name: str, **changes: Any) -> RepositoryConfig:
    cfg = load_configuration()
    current = cfg.repositories.get(name, RepositoryConfig())
    cfg.repositories[name] = _merge_record(RepositoryConfig, current, changes)
    save_configuration(cfg)
    return cfg.repositories[name]


def update_analysis_rule(rule: AnalysisRule) -> None:
    """Add *rule*, or replace the existing rule with the same id."""
    cfg = load_configuration()
    for index, existing in enumerate(cfg.analysis_rules):
        if existing.id == rule.id:
            cfg.analysis_rules[index] = rule
            break
    else:
        cfg.analysis_rules.append(rule)
    save_configuration(cfg)


def remove_analysis_rule(rule_id: str) -> bool:
    cfg = load_configuration()
    remaining = [r for r in cfg.analysis_rules if r.id != rule_id]
    if len(remaining) == len(cfg.analysis_rules):
        return False
    cfg.analysis_rules = remaining
    save_configuration(cfg)
    return True


def analysis_rules_by_type(rule_type: str) -> List[AnalysisRule]:
    return [r for r in load_configuration().analysis_rules if r.type == rule_type and r.enabled]


# ===================================================================
# Credentials
# ===================================================================

@dataclass
class RepositoryCredentials:
    repository: str
    access_token: str
    token_type: str = "github"
    scopes: List[str] = field(default_factory=lambda: ["repo"])
    expires_at: str = ""  # ISO timestamp, empty for no expiry

    @property
    def is_expired(self) -> bool:
        if not self.expires_at:
            return False
        return datetime.fromisoformat(self.expires_at) <= datetime.now()


def load_credentials(path: Optional[Path] = None) -> List[RepositoryCredentials]:
    """Stored credentials, with expired entries filtered out."""
    path = Path(path or config.CREDENTIALS_FILE)
    if not path.exists():
        return []
    try:
        with open(path, "r") as f:
            raw = toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        raise ConfigurationBootstrapError(f"Failed to load credentials from {path}: {exc}") from exc
    creds = [
        RepositoryCredentials(**_known(RepositoryCredentials, entry))
        for entry in raw.get("credentials", [])
    ]
    return [c for c in creds if not c.is_expired]


def save_credentials(credentials: List[RepositoryCredentials], path: Optional[Path] = None) -> Path:
    path = Path(path or config.CREDENTIALS_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        toml.dump({"credentials": [asdict(c) for c in credentials]}, f)
    os.chmod(path, 0o600)
    return path


def set_repository_credentials(
    repository: str,
    access_token: str,
    token_type: str = "github",
    scopes: Optional[List[str]] = None,
    expiration_days: Optional[int] = None,
) -> RepositoryCredentials:
    credentials = [c for c in load_credentials() if c.repository != repository]
    entry = RepositoryCredentials(
        repository=repository,
        access_token=access_token,
        token_type=token_type,
        scopes=scopes or ["repo"],
        expires_at=(
            (datetime.now() + timedelta(days=expiration_days)).isoformat() if expiration_days else ""
        ),
    )
    credentials.append(entry)
    save_credentials(credentials)
    return entry


def get_repository_credentials(repository: str) -> Optional[RepositoryCredentials]:
    for cred in load_credentials():
        if cred.repository == repository:
            return cred
    return None


def remove_repository_credentials(repository: str) -> bool:
    credentials = load_credentials()
    remaining = [c for c in credentials if c.repository != repository]
    if len(remaining) == len(credentials):
        return False
    save_credentials(remaining)
    return True


def validate_github_token(token: str, repository_url: str) -> bool:
    match = _GITHUB_RE.search(repository_url)
    if not match:
        return False
    owner, repo = match.groups()
    req = urllib.request.Request(
        f"https://api.github.com/repos/{owner}/{repo}",
        headers={
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
        },
        method="GET",
    )
    try:
        with urllib.request.urlopen(req, timeout=config.HTTP_TIMEOUT) as resp:
            return resp.status == 200
    except (urllib.error.URLError, TimeoutError):
        return False


def validate_repository_access(repository_url: str) -> bool:
    """True when usable, unexpired credentials exist for *repository_url*."""
    creds = get_repository_credentials(repository_url)
    if creds is None:
        return False
    if creds.token_type == "github":
        return validate_github_token(creds.access_token, repository_url)
    return True


def repository_descriptor(name: str, cfg: AnalysisConfiguration) -> RepositoryDescriptor:
    """Descriptor for a configured repository, with its access token attached."""
    repo = cfg.repositories.get(name)
    if repo is None:
        raise ConfigurationBootstrapError(f"Repository '{name}' is not configured")
    creds = get_repository_credentials(repo.url)
    return RepositoryDescriptor(
        name=name,
        url=repo.url,
        branch=repo.branch,
        local_path=repo.local_path or None,
        access_token=creds.access_token if creds else None,
    )
