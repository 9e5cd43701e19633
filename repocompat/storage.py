"""Append-only JSON store for completed analysis results."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .errors import ResultNotFoundError
from .models import AnalysisResult

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ResultStore:
    """One ``<id>.json`` file per run. Existing files are never rewritten."""

    def __init__(self, results_dir: Optional[Path] = None):
        self.results_dir = Path(results_dir or config.RESULTS_DIR)
        self.results_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, result_id: str) -> Path:
        if not _ID_RE.match(result_id):
            raise ResultNotFoundError(f"Invalid analysis id: {result_id!r}")
        return self.results_dir / f"{result_id}.json"

    def save(self, result: AnalysisResult) -> Path:
        """Persist *result*.

        Raises:
            FileExistsError: a result with the same id is already stored.
        """
        path = self._path(result.id)
        with open(path, "x", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
        logger.info("Saved analysis %s to %s", result.id, path)
        return path

    def load(self, result_id: str) -> AnalysisResult:
        path = self._path(result_id)
        if not path.exists():
            raise ResultNotFoundError(f"No analysis result with id '{result_id}'")
        data = json.loads(path.read_text(encoding="utf-8"))
        return AnalysisResult.from_dict(data)

    def list_results(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stored runs as summary dicts, most recent first."""
        entries = []
        for result_file in self.results_dir.glob("*.json"):
            try:
                data = json.loads(result_file.read_text(encoding="utf-8"))
                summary = data.get("summary", {})
                entries.append({
                    "id": data["id"],
                    "timestamp": data["timestamp"],
                    "total_changes": summary.get("total_changes", 0),
                    "risk_level": summary.get("risk_level", "low"),
                    "summary": (
                        f"{summary.get('total_changes', 0)} changes, "
                        f"{summary.get('risk_level', 'low')} risk"
                    ),
                })
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable result file %s: %s", result_file, exc)
                continue

        entries.sort(key=lambda e: e["timestamp"], reverse=True)
        return entries[:limit] if limit else entries

    def latest(self) -> Optional[AnalysisResult]:
        entries = self.list_results(limit=1)
        return self.load(entries[0]["id"]) if entries else None
