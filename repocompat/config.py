"""Configuration paths and runtime limits for local RepoCompat state."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("REPOCOMPAT_HOME", str(Path.home() / ".repocompat"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
CREDENTIALS_FILE = BASE_DIR / "credentials.toml"
RESULTS_DIR = BASE_DIR / "results"
WORKSPACE_DIR = BASE_DIR / "workspace"

SOURCE_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx"}
MANIFEST_NAME = "package.json"

# Timeouts in seconds for long-running external calls
GIT_TIMEOUT = float(os.environ.get("REPOCOMPAT_GIT_TIMEOUT", "120"))
GIT_QUERY_TIMEOUT = 10.0
NPM_TIMEOUT = float(os.environ.get("REPOCOMPAT_NPM_TIMEOUT", "90"))
HTTP_TIMEOUT = 10.0

MAX_WORKERS = int(os.environ.get("REPOCOMPAT_MAX_WORKERS", "4"))


def ensure_base_dirs() -> None:
    """Create base directories for local storage if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
    RESULTS_DIR.mkdir(parents=True, exist_ok=True)
    WORKSPACE_DIR.mkdir(parents=True, exist_ok=True)
