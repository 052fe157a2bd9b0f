"""Tests for the instance registry."""

from __future__ import annotations

import json
import time
from unittest.mock import patch

import pytest

from mcp_aggregator.registry import (
    Capabilities,
    EventKind,
    InstanceRegistry,
    InstanceStatus,
    PidState,
)


def register(registry, pid=None, backend_name="alpha"):
    return registry.register(
        pid,
        backend_name,
        "cli",
        {"command": "server", "type": "process", "toolFilters": ["search"]},
        {"args": ["--x"]},
        "stdio",
    )


class TestRegistration:
    """Tests for registering and querying instances."""

    def test_register_and_get(self, registry):
        """Test a registered instance is queryable and persisted."""
        instance_id = register(registry, pid=1234)
        instance = registry.get(instance_id)

        assert instance is not None
        assert instance.backend_name == "alpha"
        assert instance.status is InstanceStatus.RUNNING
        assert instance.pid_state is PidState.KNOWN
        assert instance.display.command == "server"
        assert instance.display.filters["tools"] == ["search"]
        assert instance.display.args == ["--x"]
        assert (registry.instances_dir / f"{instance_id}.json").exists()

    def test_register_without_pid(self, registry):
        """Test a pid-less registration has an unknown pid state."""
        instance = registry.get(register(registry))
        assert instance.pid is None
        assert instance.pid_state is PidState.UNKNOWN

    def test_ids_unique(self, registry):
        """Test ids are unique for the same backend."""
        ids = {register(registry) for _ in range(20)}
        assert len(ids) == 20

    def test_invalid_snapshot_kept_verbatim(self, registry):
        """Test an unparseable snapshot is stored but not interpreted."""
        instance_id = registry.register(None, "alpha", "cli", "{broken", None, "stdio")
        instance = registry.get(instance_id)
        assert instance.config_snapshot == "{broken"
        assert instance.display.type == "unknown"

    def test_get_by_backend(self, registry):
        """Test filtering instances by backend name."""
        register(registry, backend_name="alpha")
        register(registry, backend_name="beta")
        assert [i.backend_name for i in registry.get_by_backend("beta")] == ["beta"]
        assert registry.get_by_backend("gamma") == []

    def test_updates(self, registry):
        """Test pid, status and capability updates."""
        instance_id = register(registry)
        before = registry.get(instance_id).last_health_check

        assert registry.update_pid(instance_id, 4321)
        assert registry.update_capabilities(instance_id, Capabilities(tool_count=1, tool_names=["a"]))
        time.sleep(0.01)
        assert registry.update_status(instance_id, "error")

        instance = registry.get(instance_id)
        assert instance.pid == 4321
        assert instance.pid_state is PidState.KNOWN
        assert instance.capabilities.tool_names == ["a"]
        assert instance.status is InstanceStatus.ERROR
        assert instance.last_health_check > before

    def test_update_unknown_id(self, registry):
        """Test mutations on unknown ids report failure."""
        assert registry.update_pid("nope", 1) is False
        assert registry.update_status("nope", "stopped") is False
        assert registry.remove("nope") is False
        assert registry.kill("nope") is False

    def test_remove(self, registry):
        """Test removal deletes the record and its file."""
        instance_id = register(registry)
        assert registry.remove(instance_id)
        assert registry.get(instance_id) is None
        assert not (registry.instances_dir / f"{instance_id}.json").exists()

    def test_status_summary(self, registry):
        """Test the aggregate status view."""
        a = register(registry, backend_name="alpha")
        register(registry, backend_name="beta")
        registry.update_status(a, "error")

        summary = registry.status_summary()
        assert summary["total_instances"] == 2
        assert summary["running_count"] == 1
        assert summary["error_count"] == 1
        assert set(summary["backends"]) == {"alpha", "beta"}
        assert summary["instances_by_backend"]["alpha"][0]["status"] == "error"


class TestPersistence:
    """Tests for on-disk state."""

    def test_reload_from_disk(self, tmp_path, registry, processes):
        """Test a new registry sees instances saved by a previous one."""
        instance_id = register(registry, pid=77)

        reloaded = InstanceRegistry(registry.instances_dir, alive_probe=processes.is_alive)
        instance = reloaded.get(instance_id)
        assert instance is not None
        assert instance.pid == 77

    def test_corrupt_file_skipped(self, registry, processes):
        """Test unreadable instance files do not break loading."""
        instance_id = register(registry)
        (registry.instances_dir / "broken.json").write_text("{not json")
        (registry.instances_dir / "wrong.json").write_text(json.dumps({"id": 1}))

        reloaded = InstanceRegistry(registry.instances_dir, alive_probe=processes.is_alive)
        assert [i.id for i in reloaded.get_all()] == [instance_id]


class TestCleanup:
    """Tests for stale instance cleanup."""

    def test_removes_dead_and_stopped(self, registry, processes):
        """Test stopped instances and dead pids are removed."""
        processes.alive = {10}
        live = register(registry, pid=10)
        dead = register(registry, pid=11)
        stopped = register(registry, pid=10)
        registry.update_status(stopped, "stopped")

        removed = registry.cleanup_stale()

        assert set(removed) == {dead, stopped}
        assert [i.id for i in registry.get_all()] == [live]

    def test_idempotent(self, registry, processes):
        """Test a second cleanup removes nothing."""
        register(registry, pid=11)
        registry.cleanup_stale()
        assert registry.cleanup_stale() == []

    def test_unknown_pid_within_grace_kept(self, registry):
        """Test a fresh pid-less instance survives cleanup."""
        instance_id = register(registry)
        assert registry.cleanup_stale() == []
        assert registry.get(instance_id) is not None

    def test_unknown_pid_past_grace_removed(self, tmp_path, processes):
        """Test a pid-less instance is stale after the grace window."""
        registry = InstanceRegistry(
            tmp_path / "instances", stale_pid_grace=0, alive_probe=processes.is_alive
        )
        instance_id = register(registry)
        time.sleep(0.01)
        assert registry.cleanup_stale() == [instance_id]


class TestHealthCheck:
    """Tests for the health-check sweep."""

    @pytest.mark.asyncio
    async def test_dead_instance_marked_error_then_cleaned(self, registry, processes):
        """Test a dead backend goes running -> error -> removed."""
        processes.alive = {100}
        instance_id = register(registry, pid=100)

        processes.alive = set()
        result = await registry.check_health()

        instance = registry.get(instance_id)
        assert result.failed == [instance_id]
        assert instance.status is InstanceStatus.ERROR
        assert instance.pid_state is PidState.DEAD

        assert registry.cleanup_stale() == [instance_id]

    @pytest.mark.asyncio
    async def test_unknown_pid_not_flipped(self, registry, processes):
        """Test instances without a pid are not declared dead."""
        instance_id = register(registry)
        result = await registry.check_health()
        assert result.checked == 0
        assert registry.get(instance_id).status is InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_usage_batched(self, registry, processes):
        """Test one usage query covers every live pid."""
        processes.alive = {1, 2, 3}
        ids = [register(registry, pid=pid) for pid in (1, 2, 3)]

        result = await registry.check_health()

        assert processes.usage_calls == [[1, 2, 3]]
        assert result.usage_updated == 3
        for instance_id in ids:
            assert registry.get(instance_id).resource_usage["memory"] == "20.0 MB"

    @pytest.mark.asyncio
    async def test_usage_failure_recorded(self, registry, processes):
        """Test a failed usage query does not fail the sweep."""
        processes.alive = {1}
        instance_id = register(registry, pid=1)

        async def broken(pids):
            raise RuntimeError("ps missing")

        registry._usage_query = broken
        result = await registry.check_health()

        assert result.usage_error == "ps missing"
        assert registry.get(instance_id).status is InstanceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_start_stop(self, registry):
        """Test the periodic sweep task lifecycle."""
        registry.start_health_check()
        assert registry.health_check_running
        registry.stop_health_check()
        assert not registry.health_check_running
        registry.stop_health_check()


class TestKill:
    """Tests for killing instances."""

    def test_kill_known_pid(self, registry):
        """Test SIGTERM is sent and the instance is stopped."""
        instance_id = register(registry, pid=555)
        with patch("mcp_aggregator.registry.terminate_pid") as terminate:
            assert registry.kill(instance_id)
        terminate.assert_called_once_with(555)
        assert registry.get(instance_id).status is InstanceStatus.STOPPED

    def test_kill_unknown_pid(self, registry):
        """Test no signal is sent without a known pid."""
        instance_id = register(registry)
        with patch("mcp_aggregator.registry.terminate_pid") as terminate:
            assert registry.kill(instance_id)
        terminate.assert_not_called()
        assert registry.get(instance_id).status is InstanceStatus.STOPPED

    def test_kill_failure(self, registry):
        """Test a failed signal still marks the instance stopped."""
        instance_id = register(registry, pid=555)
        with patch(
            "mcp_aggregator.registry.terminate_pid", side_effect=ProcessLookupError("gone")
        ):
            assert registry.kill(instance_id) is False
        assert registry.get(instance_id).status is InstanceStatus.STOPPED


class TestEvents:
    """Tests for change notifications."""

    def test_events_emitted(self, registry):
        """Test each mutation emits its event plus a collection event."""
        events = []
        registry.subscribe(events.append)

        instance_id = register(registry)
        registry.update_status(instance_id, "stopped")
        registry.remove(instance_id)

        kinds = [e.kind for e in events]
        assert kinds == [
            EventKind.ADDED,
            EventKind.COLLECTION_CHANGED,
            EventKind.STATUS_CHANGED,
            EventKind.COLLECTION_CHANGED,
            EventKind.REMOVED,
            EventKind.COLLECTION_CHANGED,
        ]
        assert events[0].instance.id == instance_id
        assert events[-1].snapshot == []

    def test_unsubscribe(self, registry):
        """Test unsubscribed listeners receive nothing further."""
        events = []
        subscription = registry.subscribe(events.append)
        register(registry)
        subscription.unsubscribe()
        subscription.unsubscribe()
        register(registry)
        assert len(events) == 2

    def test_failing_listener_isolated(self, registry):
        """Test a raising listener does not break mutations or other listeners."""
        events = []

        def broken(event):
            raise RuntimeError("boom")

        registry.subscribe(broken)
        registry.subscribe(events.append)

        instance_id = register(registry)

        assert registry.get(instance_id) is not None
        assert len(events) == 2
