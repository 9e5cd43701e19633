"""Run external commands with a timeout and a cancellation token."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .errors import AnalysisCancelled, ExternalCommandTimeout

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while a command runs.
POLL_INTERVAL = 0.2


def run_command(
    command: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    env: Optional[Dict[str, str]] = None,
    label: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run *command* to completion, capturing text output.

    The process is killed as soon as *cancel_event* is set or *timeout*
    seconds pass.

    Raises:
        AnalysisCancelled: *cancel_event* was set while the command ran.
        ExternalCommandTimeout: the command exceeded *timeout*.
    """
    label = label or command[0]
    deadline = time.monotonic() + timeout if timeout is not None else None
    with subprocess.Popen(
        command,
        cwd=str(cwd) if cwd is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=env,
    ) as proc:
        while True:
            wait = POLL_INTERVAL
            if deadline is not None:
                wait = max(min(wait, deadline - time.monotonic()), 0)
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _kill(proc)
                    raise AnalysisCancelled(f"{label} cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    _kill(proc)
                    raise ExternalCommandTimeout(label, timeout)
    return subprocess.CompletedProcess(command, proc.returncode, stdout or "", stderr or "")


def _kill(proc: subprocess.Popen) -> None:
    logger.debug("Killing pid %s", proc.pid)
    proc.kill()
    proc.communicate()
