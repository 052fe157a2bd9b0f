"""
Tool usage metrics, one JSON file per (namespaced) tool name.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


class UsageEvent(BaseModel):
    timestamp: str


class UsageMetric(BaseModel):
    """Usage statistics for one tool."""

    usage_count: int = 0
    last_used: str | None = None
    history: list[UsageEvent] = Field(default_factory=list)

    def record(self, when: datetime | None = None) -> None:
        stamp = (when or datetime.now(timezone.utc)).isoformat()
        self.usage_count += 1
        self.last_used = stamp
        self.history.append(UsageEvent(timestamp=stamp))
        if len(self.history) > HISTORY_LIMIT:
            del self.history[:-HISTORY_LIMIT]


class UsageMetrics:
    """Persists UsageMetric records under a directory."""

    def __init__(self, metrics_dir: str | Path) -> None:
        self.metrics_dir = Path(metrics_dir)
        self._cache: dict[str, UsageMetric] = {}

    def _path(self, tool_name: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "-", tool_name)
        return self.metrics_dir / f"{safe}.json"

    def _load(self, tool_name: str) -> UsageMetric:
        path = self._path(tool_name)
        if not path.exists():
            return UsageMetric()
        try:
            return UsageMetric.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.error(f"Error loading metrics for {tool_name}: {e}")
            return UsageMetric()

    def track(self, tool_name: str) -> UsageMetric | None:
        """Record one invocation of a tool and persist it."""
        if not tool_name:
            logger.error("Cannot track usage: missing tool name")
            return None

        metric = self._cache.get(tool_name) or self._load(tool_name)
        metric.record()
        self._cache[tool_name] = metric

        try:
            self.metrics_dir.mkdir(parents=True, exist_ok=True)
            self._path(tool_name).write_text(metric.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Error saving metrics for {tool_name}: {e}")
        else:
            logger.debug(f"Updated metrics for {tool_name}")
        return metric

    def get(self, tool_name: str) -> UsageMetric | None:
        if tool_name in self._cache:
            return self._cache[tool_name]
        if not self._path(tool_name).exists():
            return None
        return self._load(tool_name)

    def get_all(self) -> dict[str, UsageMetric]:
        """All persisted metrics, keyed by file stem."""
        metrics: dict[str, UsageMetric] = {}
        try:
            files = sorted(self.metrics_dir.glob("*.json"))
        except OSError as e:
            logger.error(f"Error getting metrics: {e}")
            return metrics

        for path in files:
            try:
                metrics[path.stem] = UsageMetric.model_validate_json(
                    path.read_text(encoding="utf-8")
                )
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Skipping unreadable metrics file {path.name}: {e}")
        return metrics
