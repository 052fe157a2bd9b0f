"""Tests for tool usage metrics."""

from __future__ import annotations

from mcp_aggregator.metrics import HISTORY_LIMIT, UsageMetric, UsageMetrics


class TestUsageMetric:
    """Tests for a single tool's metric."""

    def test_history_capped(self):
        """Test history keeps only the most recent entries."""
        metric = UsageMetric()
        for _ in range(HISTORY_LIMIT + 5):
            metric.record()
        assert metric.usage_count == HISTORY_LIMIT + 5
        assert len(metric.history) == HISTORY_LIMIT
        assert metric.last_used == metric.history[-1].timestamp


class TestUsageMetrics:
    """Tests for persisted metrics."""

    def test_track_persists(self, metrics):
        """Test tracked usage survives a new metrics object."""
        metrics.track("alpha_search")
        metrics.track("alpha_search")

        reloaded = UsageMetrics(metrics.metrics_dir)
        metric = reloaded.get("alpha_search")
        assert metric is not None
        assert metric.usage_count == 2
        assert len(metric.history) == 2

    def test_unsafe_names_sanitized(self, metrics):
        """Test tool names cannot escape the metrics directory."""
        metrics.track("../evil/name")
        files = list(metrics.metrics_dir.iterdir())
        assert len(files) == 1
        assert files[0].parent == metrics.metrics_dir

    def test_get_all(self, metrics):
        """Test all metrics are returned keyed by tool."""
        metrics.track("a_one")
        metrics.track("b_two")
        assert set(metrics.get_all()) == {"a_one", "b_two"}

    def test_unknown_tool(self, metrics):
        """Test unknown tools have no metric."""
        assert metrics.get("nope") is None
        assert metrics.track("") is None
