"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import mcp.types as types
import pytest

from mcp_aggregator.backend import BackendConnection
from mcp_aggregator.config import BackendDefinition, GatewayConfig
from mcp_aggregator.metrics import UsageMetrics
from mcp_aggregator.registry import InstanceRegistry
from mcp_aggregator.store import ConfigStore


class FakeProcesses:
    """Controls which pids the registry sees as alive."""

    def __init__(self) -> None:
        self.alive: set[int] = set()
        self.usage_calls: list[list[int]] = []

    def is_alive(self, pid: int | None) -> bool:
        return pid in self.alive

    async def query_usage(self, pids):
        from mcp_aggregator.procinfo import ResourceUsage

        pids = sorted(pids)
        self.usage_calls.append(pids)
        return {
            pid: ResourceUsage(
                pid=pid, cpu_percent=1.5, mem_percent=0.4, rss_kb=20480, vsz_kb=40960,
                elapsed="01:02",
            )
            for pid in pids
        }


@pytest.fixture
def processes() -> FakeProcesses:
    return FakeProcesses()


@pytest.fixture
def registry(tmp_path, processes) -> InstanceRegistry:
    """A registry over a temporary directory with fake process probing."""
    return InstanceRegistry(
        tmp_path / "instances",
        alive_probe=processes.is_alive,
        usage_query=processes.query_usage,
    )


@pytest.fixture
def metrics(tmp_path) -> UsageMetrics:
    return UsageMetrics(tmp_path / "metrics")


@pytest.fixture
def sample_backend() -> BackendDefinition:
    """Create a sample backend definition for testing."""
    return BackendDefinition(
        name="test-backend",
        command="npx -y @test/server",
        args=["--verbose"],
        alwaysAllow=["search"],
    )


@pytest.fixture
def gateway_config(tmp_path) -> GatewayConfig:
    """Create a gateway configuration rooted in a temporary directory."""
    return GatewayConfig(home_dir=tmp_path / "home")


@pytest.fixture
def write_config(tmp_path):
    """Write a backend/toolbox config file and return its store."""

    def _write(data: dict) -> ConfigStore:
        path = tmp_path / "home" / "config.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return ConfigStore(path)

    return _write


def make_tool(name: str, description: str = "") -> types.Tool:
    return types.Tool(
        name=name,
        description=description,
        inputSchema={"type": "object", "properties": {}},
    )


def make_connection(
    name: str,
    tools: list[str],
    registry: InstanceRegistry | None = None,
    call_result: types.CallToolResult | None = None,
) -> BackendConnection:
    """A BackendConnection backed by a mocked ClientSession."""
    session = MagicMock()
    session.list_tools = AsyncMock(
        return_value=types.ListToolsResult(tools=[make_tool(t, f"{t} tool") for t in tools])
    )
    session.call_tool = AsyncMock(
        return_value=call_result
        or types.CallToolResult(content=[types.TextContent(type="text", text=f"{name} ok")])
    )
    return BackendConnection(
        definition=BackendDefinition(name=name, command="server"),
        registry=registry or MagicMock(),
        session=session,
    )
