"""
Instance registry - disk-backed record of every tracked process.

Each instance (a backend child process or the gateway itself) is persisted as
``<instances_dir>/<id>.json`` after every mutation, so state survives gateway
restarts and a later run can reconcile it with ``cleanup_stale()``.

A background health-check sweep verifies liveness of known pids and refreshes
resource usage with one batched query per sweep.

Changes are published to subscribers::

    >>> sub = registry.subscribe(lambda event: print(event.kind.value))
    >>> registry.register(None, "search", "cli", {}, {}, "stdio")
    instance_added
    instances_changed
    >>> sub.unsubscribe()
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import secrets
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from mcp_aggregator.procinfo import (
    ResourceUsage,
    is_pid_alive,
    query_resource_usage,
    terminate_pid,
)

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_CHECK_INTERVAL = 30.0
DEFAULT_STALE_PID_GRACE = 60 * 60.0


class InstanceStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class PidState(str, Enum):
    """What we know about an instance's process id."""

    UNKNOWN = "unknown"
    KNOWN = "known"
    DEAD = "dead"


class Capabilities(BaseModel):
    """Tools a backend reported when it was first probed."""

    tool_count: int = 0
    tool_names: list[str] = Field(default_factory=list)


class DisplayInfo(BaseModel):
    type: str = "unknown"
    enabled: bool = True
    filters: dict[str, list[str]] = Field(
        default_factory=lambda: {"tools": [], "servers": [], "groups": []}
    )
    command: str | None = None
    args: list[str] = Field(default_factory=list)


class Instance(BaseModel):
    """A tracked backend or gateway process."""

    id: str
    pid: int | None = None
    pid_state: PidState = PidState.UNKNOWN
    backend_name: str
    launch_source: str
    start_time: float
    status: InstanceStatus = InstanceStatus.RUNNING
    last_health_check: float
    resource_usage: dict[str, Any] | None = None
    display: DisplayInfo = Field(default_factory=DisplayInfo)
    context: dict[str, Any] = Field(default_factory=dict)
    connection_type: str = "stdio"
    config_snapshot: str = "{}"
    capabilities: Capabilities | None = None

    @property
    def is_running(self) -> bool:
        return self.status is InstanceStatus.RUNNING


class EventKind(str, Enum):
    ADDED = "instance_added"
    REMOVED = "instance_removed"
    STATUS_CHANGED = "instance_status_changed"
    UPDATED = "instance_updated"
    COLLECTION_CHANGED = "instances_changed"


@dataclass(frozen=True)
class RegistryEvent:
    """One change notification.

    ``instance`` is None for collection-wide events; ``snapshot`` always holds
    every tracked instance at the time of the change.
    """

    kind: EventKind
    instance: Instance | None
    snapshot: list[Instance]


Listener = Callable[[RegistryEvent], None]


class Subscription:
    """Handle returned by InstanceRegistry.subscribe()."""

    def __init__(self, registry: InstanceRegistry, listener: Listener) -> None:
        self._registry = registry
        self.listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._registry._subscriptions.remove(self)
            self.active = False


@dataclass
class SweepResult:
    """Outcome of one health-check sweep."""

    checked: int = 0
    failed: list[str] = field(default_factory=list)
    usage_updated: int = 0
    usage_error: str | None = None


AliveProbe = Callable[[int | None], bool]
UsageQuery = Callable[[Iterable[int]], Awaitable[dict[int, ResourceUsage]]]


def _generate_id(backend_name: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "-", backend_name).strip(".") or "instance"
    return f"{safe}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _parse_snapshot(config_snapshot: str | dict[str, Any] | None) -> tuple[str, dict[str, Any]]:
    if config_snapshot is None:
        return "{}", {}
    if isinstance(config_snapshot, dict):
        return json.dumps(config_snapshot, default=str), config_snapshot
    try:
        parsed = json.loads(config_snapshot)
    except json.JSONDecodeError as e:
        logger.info(f"Failed to parse config snapshot: {e}")
        return config_snapshot, {}
    return config_snapshot, parsed if isinstance(parsed, dict) else {}


class InstanceRegistry:
    """Authoritative record of tracked instances.

    One registry is created per gateway process and passed to its
    collaborators. All mutations happen on the event loop thread, so the
    in-memory map needs no lock.
    """

    def __init__(
        self,
        instances_dir: str | Path,
        *,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        stale_pid_grace: float = DEFAULT_STALE_PID_GRACE,
        alive_probe: AliveProbe = is_pid_alive,
        usage_query: UsageQuery = query_resource_usage,
    ) -> None:
        self.instances_dir = Path(instances_dir)
        self.health_check_interval = health_check_interval
        self.stale_pid_grace = stale_pid_grace
        self._alive_probe = alive_probe
        self._usage_query = usage_query
        self._instances: dict[str, Instance] = {}
        self._subscriptions: list[Subscription] = []
        self._health_task: asyncio.Task[None] | None = None

        self._ensure_directory()
        self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _ensure_directory(self) -> None:
        try:
            self.instances_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create instances directory {self.instances_dir}: {e}")

    def _path(self, instance_id: str) -> Path:
        return self.instances_dir / f"{instance_id}.json"

    def _load(self) -> None:
        try:
            files = sorted(self.instances_dir.glob("*.json"))
        except OSError as e:
            logger.error(f"Failed to list instance records: {e}")
            return

        for path in files:
            try:
                instance = Instance.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Skipping unreadable instance file {path.name}: {e}")
                continue
            self._instances[instance.id] = instance

        if self._instances:
            logger.debug(f"Loaded {len(self._instances)} instance record(s)")

    def _save(self, instance: Instance) -> None:
        path = self._path(instance.id)
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            tmp_path.write_text(instance.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning(f"Failed to save instance {instance.id}: {e}")
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)

    # =========================================================================
    # Events
    # =========================================================================

    def subscribe(self, listener: Listener) -> Subscription:
        """Receive a RegistryEvent for every mutation until unsubscribed."""
        subscription = Subscription(self, listener)
        self._subscriptions.append(subscription)
        return subscription

    def _emit(self, kind: EventKind, instance: Instance | None) -> None:
        if not self._subscriptions:
            return
        snapshot = self.get_all()
        self._emit_one(kind, instance, snapshot)
        if kind is not EventKind.COLLECTION_CHANGED:
            self._emit_one(EventKind.COLLECTION_CHANGED, None, snapshot)

    def _emit_one(
        self, kind: EventKind, instance: Instance | None, snapshot: list[Instance]
    ) -> None:
        event = RegistryEvent(kind=kind, instance=instance, snapshot=snapshot)
        for subscription in list(self._subscriptions):
            try:
                subscription.listener(event)
            except Exception as e:
                logger.error(f"Registry listener failed on {kind.value}: {e}")

    # =========================================================================
    # Mutations
    # =========================================================================

    def register(
        self,
        pid: int | None,
        backend_name: str,
        launch_source: str,
        config_snapshot: str | dict[str, Any] | None,
        context: dict[str, Any] | None,
        connection_type: str,
        capabilities: Capabilities | None = None,
    ) -> str:
        """Start tracking a process and return its instance id.

        Args:
            pid: Process id, or None when not yet known
            backend_name: Backend (or gateway) name
            launch_source: Who launched the process, e.g. "cli" or "self"
            config_snapshot: Backend config as a JSON string or dict
            context: Launch context (args, cwd, ...)
            connection_type: Transport kind, e.g. "stdio"
            capabilities: Tool summary from the initial probe
        """
        snapshot_str, parsed = _parse_snapshot(config_snapshot)
        context = dict(context or {})
        now = time.time()

        instance = Instance(
            id=_generate_id(backend_name),
            pid=pid,
            pid_state=PidState.KNOWN if pid else PidState.UNKNOWN,
            backend_name=backend_name,
            launch_source=launch_source,
            start_time=now,
            last_health_check=now,
            display=DisplayInfo(
                type=str(parsed.get("type") or "unknown"),
                enabled=parsed.get("enabled") is not False,
                filters={
                    "tools": list(parsed.get("toolFilters") or []),
                    "servers": list(parsed.get("serverFilters") or []),
                    "groups": list(parsed.get("groupFilters") or []),
                },
                command=parsed.get("command"),
                args=list(parsed.get("args") or context.get("args") or []),
            ),
            context=context,
            connection_type=connection_type,
            config_snapshot=snapshot_str,
            capabilities=capabilities,
        )

        self._instances[instance.id] = instance
        self._save(instance)
        self._emit(EventKind.ADDED, instance)
        return instance.id

    def update_pid(self, instance_id: str, pid: int) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False

        instance.pid = pid
        instance.pid_state = PidState.KNOWN
        self._save(instance)
        self._emit(EventKind.UPDATED, instance)
        return True

    def update_capabilities(self, instance_id: str, capabilities: Capabilities) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False

        instance.capabilities = capabilities
        self._save(instance)
        self._emit(EventKind.UPDATED, instance)
        return True

    def update_status(self, instance_id: str, status: InstanceStatus | str) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False

        instance.status = InstanceStatus(status)
        instance.last_health_check = time.time()
        self._save(instance)
        self._emit(EventKind.STATUS_CHANGED, instance)
        return True

    def remove(self, instance_id: str) -> bool:
        instance = self._instances.pop(instance_id, None)
        if instance is None:
            return False

        try:
            self._path(instance_id).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete instance file for {instance_id}: {e}")

        self._emit(EventKind.REMOVED, instance)
        return True

    def kill(self, instance_id: str) -> bool:
        """Terminate an instance's process and mark it stopped.

        Without a live pid there is nothing to signal; the instance is only
        marked stopped. Returns False when the signal could not be delivered.
        """
        instance = self._instances.get(instance_id)
        if instance is None:
            return False

        if instance.pid is None or instance.pid_state is not PidState.KNOWN:
            logger.info(f"No live pid for instance {instance_id}, marking as stopped")
            self.update_status(instance_id, InstanceStatus.STOPPED)
            return True

        try:
            terminate_pid(instance.pid)
        except OSError as e:
            logger.info(f"Failed to kill instance {instance_id} (PID {instance.pid}): {e}")
            self.update_status(instance_id, InstanceStatus.STOPPED)
            return False

        self.update_status(instance_id, InstanceStatus.STOPPED)
        return True

    def cleanup_stale(self) -> list[str]:
        """Remove instances that are no longer running.

        Removes stopped/error instances, running instances whose process is
        gone, and running instances whose pid never became known within the
        grace window. Returns the removed ids.
        """
        now = time.time()
        stale: list[str] = []

        for instance in self._instances.values():
            if not instance.is_running:
                stale.append(instance.id)
            elif instance.pid is None:
                if now - instance.last_health_check > self.stale_pid_grace:
                    stale.append(instance.id)
            elif instance.pid_state is PidState.DEAD or not self._alive_probe(instance.pid):
                stale.append(instance.id)

        for instance_id in stale:
            self.remove(instance_id)

        if stale:
            logger.info(f"Cleaned up {len(stale)} stale instance(s)")
        return stale

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, instance_id: str) -> Instance | None:
        return self._instances.get(instance_id)

    def get_all(self) -> list[Instance]:
        return list(self._instances.values())

    def get_by_backend(self, backend_name: str) -> list[Instance]:
        return [i for i in self._instances.values() if i.backend_name == backend_name]

    def status_summary(self) -> dict[str, Any]:
        """Aggregate view of all instances, grouped by backend."""
        instances = self.get_all()
        by_backend: dict[str, list[dict[str, Any]]] = {}
        for instance in instances:
            by_backend.setdefault(instance.backend_name, []).append(
                instance.model_dump(mode="json", exclude={"config_snapshot", "context"})
            )

        return {
            "total_instances": len(instances),
            "running_count": sum(1 for i in instances if i.status is InstanceStatus.RUNNING),
            "error_count": sum(1 for i in instances if i.status is InstanceStatus.ERROR),
            "instances_by_backend": by_backend,
            "backends": list(by_backend),
            "timestamp": time.time(),
        }

    # =========================================================================
    # Health checks
    # =========================================================================

    async def check_health(self) -> SweepResult:
        """Run one health-check sweep over all running instances.

        Instances whose pid is still unknown are left alone: they cannot be
        verified dead.
        """
        result = SweepResult()
        alive: dict[int, list[Instance]] = {}
        now = time.time()

        for instance in list(self._instances.values()):
            if not instance.is_running or instance.pid is None:
                continue

            result.checked += 1
            if not self._alive_probe(instance.pid):
                logger.warning(f"Instance {instance.id} (PID: {instance.pid}) is no longer running")
                instance.pid_state = PidState.DEAD
                self.update_status(instance.id, InstanceStatus.ERROR)
                result.failed.append(instance.id)
                continue

            instance.last_health_check = now
            alive.setdefault(instance.pid, []).append(instance)

        if not alive:
            return result

        try:
            usage = await self._usage_query(alive.keys())
        except Exception as e:
            logger.debug(f"Resource usage query failed: {e}")
            result.usage_error = str(e)
            usage = {}

        for pid, instances in alive.items():
            for instance in instances:
                # Removed or stopped while the query was running
                if self._instances.get(instance.id) is not instance or not instance.is_running:
                    continue
                if pid in usage:
                    instance.resource_usage = usage[pid].summary()
                    result.usage_updated += 1
                self._save(instance)
                self._emit_one(EventKind.UPDATED, instance, self.get_all())

        if result.usage_updated:
            self._emit_one(EventKind.COLLECTION_CHANGED, None, self.get_all())
        return result

    @property
    def health_check_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def start_health_check(self) -> None:
        """Start the periodic sweep on the running event loop."""
        self.stop_health_check()
        self._health_task = asyncio.create_task(self._health_loop(), name="registry-health-check")

    def stop_health_check(self) -> None:
        """Stop the periodic sweep. Safe to call when it is not running."""
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                result = await self.check_health()
            except Exception as e:
                logger.error(f"Health check sweep failed: {e}")
                continue
            if result.usage_error:
                logger.warning(f"Resource usage unavailable this sweep: {result.usage_error}")
