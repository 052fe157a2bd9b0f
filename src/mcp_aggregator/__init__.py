"""
MCP Aggregator - One MCP endpoint for many tool-serving backends
================================================================

A gateway that spawns multiple MCP servers as child processes and exposes
all of their tools through a single upstream stdio endpoint, while tracking
every process it launches across restarts.

Features:
    - Tool namespacing: <backend>_<tool>, collision-free
    - Server, tool and toolbox filters
    - Disk-backed instance registry with periodic health checks
    - Backend faults surface as tool errors, never as protocol errors
    - Usage metrics per tool

Example:
    >>> from mcp_aggregator import Gateway, GatewayConfig, StartOptions
    >>> gateway = Gateway(GatewayConfig())
    >>> exit_code = await gateway.run(StartOptions(servers="search,fetch"))

Or via CLI:
    $ mcp-aggregator --servers search,fetch
"""

from mcp_aggregator.config import BackendDefinition, GatewayConfig, StartOptions
from mcp_aggregator.gateway import Gateway
from mcp_aggregator.registry import InstanceRegistry
from mcp_aggregator.version import __version__

__all__ = [
    "BackendDefinition",
    "Gateway",
    "GatewayConfig",
    "InstanceRegistry",
    "StartOptions",
    "__version__",
]
