"""
Process probing helpers used by the registry and the backend connector.

Liveness checks are non-invasive (no signal is delivered). Resource usage for
any number of pids is fetched with a single ``ps`` invocation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Iterable
from pathlib import Path

import psutil
from pydantic import BaseModel

logger = logging.getLogger(__name__)

PS_FIELDS = ("pid", "pcpu", "pmem", "rss", "vsz", "etime")
PS_TIMEOUT = 10.0


class ResourceUsage(BaseModel):
    """Resource usage of one process as reported by ps."""

    pid: int
    cpu_percent: float
    mem_percent: float
    rss_kb: int
    vsz_kb: int
    elapsed: str

    @property
    def memory(self) -> str:
        return f"{self.rss_kb / 1024:.1f} MB"

    @property
    def cpu(self) -> str:
        return f"{self.cpu_percent}%"

    @property
    def uptime(self) -> str:
        return self.elapsed

    def summary(self) -> dict[str, object]:
        return {
            **self.model_dump(),
            "memory": self.memory,
            "cpu": self.cpu,
            "uptime": self.uptime,
        }


class ResourceQueryError(RuntimeError):
    """The batched resource usage query could not be run."""


def is_pid_alive(pid: int | None) -> bool:
    """Check whether a process exists without signalling it."""
    if not pid or pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        # Exists but we may not inspect it
        return True


def terminate_pid(pid: int) -> None:
    """Send SIGTERM to a process. Raises OSError on failure."""
    os.kill(pid, signal.SIGTERM)


def parse_ps_output(output: str) -> dict[int, ResourceUsage]:
    """Parse headerless ``ps -o pid=,pcpu=,...`` output."""
    usage: dict[int, ResourceUsage] = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) != len(PS_FIELDS):
            continue
        try:
            pid = int(parts[0])
            usage[pid] = ResourceUsage(
                pid=pid,
                cpu_percent=float(parts[1]),
                mem_percent=float(parts[2]),
                rss_kb=int(parts[3]),
                vsz_kb=int(parts[4]),
                elapsed=parts[5],
            )
        except ValueError:
            logger.debug(f"Unparseable ps line: {line!r}")
    return usage


async def query_resource_usage(pids: Iterable[int]) -> dict[int, ResourceUsage]:
    """Fetch resource usage for all pids with one ``ps`` call.

    Pids that have exited by the time ps runs are simply absent from the
    result.

    Raises:
        ResourceQueryError: If ps cannot be started or times out
    """
    pid_list = sorted({pid for pid in pids if pid and pid > 0})
    if not pid_list:
        return {}

    fields = ",".join(f"{name}=" for name in PS_FIELDS)
    try:
        proc = await asyncio.create_subprocess_exec(
            "ps",
            "-o",
            fields,
            "-p",
            ",".join(str(pid) for pid in pid_list),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        raise ResourceQueryError(f"Cannot run ps: {e}") from e

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=PS_TIMEOUT)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise ResourceQueryError(f"ps timed out after {PS_TIMEOUT}s") from e

    # ps exits non-zero when some of the pids are gone; the rest is still valid
    return parse_ps_output(stdout.decode(errors="replace"))


def child_pids() -> set[int]:
    """Pids of this process's direct children."""
    try:
        return {child.pid for child in psutil.Process().children(recursive=False)}
    except psutil.Error:
        return set()


def find_new_child_pid(command: str, exclude: set[int]) -> int | None:
    """Find a direct child spawned from ``command`` whose pid is not excluded.

    Matches on the executable's basename in the first two command line
    entries, so interpreter-launched scripts (``node /usr/bin/npx``) match too.
    """
    wanted = Path(command).name
    try:
        children = psutil.Process().children(recursive=False)
    except psutil.Error:
        return None

    for child in children:
        if child.pid in exclude:
            continue
        try:
            cmdline = child.cmdline()
        except psutil.Error:
            continue
        if any(Path(part).name == wanted for part in cmdline[:2]):
            return child.pid
    return None
