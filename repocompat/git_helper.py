"""Thin wrapper around the git CLI used to materialize and inspect working copies.

Every call carries an explicit timeout; a timeout surfaces as
:class:`ExternalCommandTimeout` so callers can tell it apart from a failed
command.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

from . import config
from .errors import ExternalCommandTimeout
from .process import run_command

logger = logging.getLogger(__name__)

# Query commands finish quickly; anything touching the network gets the long timeout.
QUERY_COMMANDS = {"rev-parse", "status", "branch", "show", "log"}

# Fail instead of waiting on a credential prompt for private or missing remotes.
GIT_ENV_OVERRIDES = {"GIT_TERMINAL_PROMPT": "0"}


class GitHelper:
    """Static helpers for git commands run against a working copy."""

    @staticmethod
    def check_git_available() -> bool:
        return shutil.which("git") is not None

    @staticmethod
    def timeout_for(args: List[str]) -> float:
        if args and args[0] in QUERY_COMMANDS:
            return config.GIT_QUERY_TIMEOUT
        return config.GIT_TIMEOUT

    @staticmethod
    def run_git_command(
        args: List[str],
        cwd: Optional[Path] = None,
        check: bool = True,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> subprocess.CompletedProcess:
        """Run ``git <args>`` without an interactive terminal.

        Raises:
            ExternalCommandTimeout: the command exceeded its timeout.
            AnalysisCancelled: *cancel_event* was set while git ran.
            subprocess.CalledProcessError: non-zero exit with ``check=True``.
        """
        limit = timeout if timeout is not None else GitHelper.timeout_for(args)
        result = run_command(
            ["git", *args],
            cwd=cwd,
            timeout=limit,
            cancel_event=cancel_event,
            env={**os.environ, **GIT_ENV_OVERRIDES},
            label=f"git {args[0]}",
        )
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, result.args, result.stdout, result.stderr)
        return result

    @staticmethod
    def is_repository(path: Path) -> bool:
        if not GitHelper.check_git_available() or not Path(path).is_dir():
            return False
        try:
            result = GitHelper.run_git_command(
                ["rev-parse", "--is-inside-work-tree"], cwd=path, check=False,
            )
        except ExternalCommandTimeout:
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    @staticmethod
    def latest_commit(path: Path) -> str:
        """Return the HEAD commit hash, or ``"unknown"``."""
        try:
            result = GitHelper.run_git_command(["rev-parse", "HEAD"], cwd=path, check=False)
        except ExternalCommandTimeout:
            return "unknown"
        return result.stdout.strip() if result.returncode == 0 else "unknown"

    @staticmethod
    def current_branch(path: Path) -> Optional[str]:
        try:
            result = GitHelper.run_git_command(
                ["rev-parse", "--abbrev-ref", "HEAD"], cwd=path, check=False,
            )
        except ExternalCommandTimeout:
            return None
        branch = result.stdout.strip()
        return branch if result.returncode == 0 and branch else None

    @staticmethod
    def authenticated_url(url: str, token: Optional[str]) -> str:
        """Embed *token* as the userinfo part of an http(s) URL."""
        if not token:
            return url
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https"):
            return url
        host = parts.netloc.rsplit("@", 1)[-1]
        return urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))

    @staticmethod
    def clone(
        url: str,
        branch: str,
        destination: Path,
        token: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        GitHelper.run_git_command([
            "clone", "--branch", branch, "--depth", "1",
            GitHelper.authenticated_url(url, token), str(destination),
        ], cancel_event=cancel_event)

    @staticmethod
    def update(path: Path, branch: str, cancel_event: Optional[threading.Event] = None) -> None:
        GitHelper.run_git_command(["fetch", "--depth", "1", "origin", branch], cwd=path, cancel_event=cancel_event)
        GitHelper.run_git_command(["reset", "--hard", f"origin/{branch}"], cwd=path, cancel_event=cancel_event)
