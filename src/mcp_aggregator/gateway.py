"""
Main Gateway server - exposes every backend's tools through one MCP endpoint.

Features:
    - Single upstream stdio endpoint for many backend processes
    - Collision-free tool namespacing (<backend>_<tool>)
    - Server, tool and toolbox filters
    - Instance tracking with periodic health checks
    - Optional HTTP status endpoint: /health and /instances
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import mcp.types as types
from aiohttp import web
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server

from mcp_aggregator.aggregator import ToolAggregator
from mcp_aggregator.backend import BackendConnector
from mcp_aggregator.config import StartOptions, parse_filters
from mcp_aggregator.metrics import UsageMetrics
from mcp_aggregator.registry import InstanceRegistry, InstanceStatus
from mcp_aggregator.settings import SettingsCache
from mcp_aggregator.store import ConfigStore
from mcp_aggregator.version import __version__

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from mcp_aggregator.config import BackendDefinition, GatewayConfig
    from mcp_aggregator.store import GroupExpander

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-aggregator"
SELF_LAUNCH_SOURCE = "self"
UPSTREAM_CLOSE_TIMEOUT = 2.0

UpstreamTransport = Callable[[], "AbstractAsyncContextManager[tuple[Any, Any]]"]


class StartupError(RuntimeError):
    """The gateway cannot start at all."""


@dataclass
class FilterSet:
    """Effective filters for one gateway run."""

    servers: list[str] | None = None
    tools: list[str] | None = None
    groups: list[str] | None = None

    @classmethod
    def from_options(
        cls, options: StartOptions, expander: GroupExpander | None = None
    ) -> FilterSet:
        """Parse filter options, expanding groups into the server filter."""
        servers = parse_filters(options.server, options.servers)
        tools = parse_filters(options.tool, options.tools)
        groups = parse_filters(options.group, options.groups)

        if groups and expander is not None:
            expanded: dict[str, None] = {}
            for group in groups:
                try:
                    expanded.update(dict.fromkeys(expander.expand(group)))
                except Exception as e:
                    logger.error(f"Error expanding group '{group}': {e}")
            expanded.update(dict.fromkeys(servers or []))
            servers = list(expanded) or None
            if servers is None:
                logger.warning(
                    f"Groups {', '.join(groups)} matched no servers; server filter not applied"
                )

        return cls(servers=servers, tools=tools, groups=groups)

    def allows_server(self, name: str) -> bool:
        return self.servers is None or name in self.servers

    def as_snapshot(self) -> dict[str, list[str]]:
        return {
            "servers": list(self.servers or []),
            "tools": list(self.tools or []),
            "groups": list(self.groups or []),
        }


class Gateway:
    """MCP aggregating gateway.

    Example:
        >>> config = GatewayConfig.from_yaml("gateway.yaml")
        >>> gateway = Gateway(config)
        >>> exit_code = await gateway.run(StartOptions(groups="research"))
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        store: ConfigStore | None = None,
        registry: InstanceRegistry | None = None,
        group_expander: GroupExpander | None = None,
        upstream_transport: UpstreamTransport = stdio_server,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Gateway configuration
            store: Backend/toolbox config store (defaults to config.config_path)
            registry: Instance registry (created on first use when omitted)
            group_expander: Toolbox expansion (defaults to the store)
            upstream_transport: Async context manager yielding (read, write) streams
        """
        self.config = config
        assert config.config_path is not None and config.metrics_dir is not None
        self.store = store or ConfigStore(config.config_path)
        self.settings = SettingsCache(self.store, ttl=config.settings_ttl)
        self.group_expander: GroupExpander = group_expander or self.store
        self.metrics = UsageMetrics(config.metrics_dir)
        self.aggregator = ToolAggregator(self.metrics, registry)
        self.connector: BackendConnector | None = None
        self.filters = FilterSet()
        self.instance_id: str | None = None
        self.exit_code = 0

        self.server: Server[Any, Any] = Server(SERVER_NAME, version=__version__)
        self._bind_handlers()

        self._registry = registry
        self._upstream_transport = upstream_transport
        self._serve_task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()
        self._signals_installed: list[signal.Signals] = []
        self._status_runner: web.AppRunner | None = None
        self._started = False
        self._stopped = False

    @property
    def registry(self) -> InstanceRegistry:
        """The instance registry, created on first use."""
        if self._registry is None:
            assert self.config.instances_dir is not None
            self._registry = InstanceRegistry(
                self.config.instances_dir,
                health_check_interval=self.config.health_check_interval,
                stale_pid_grace=self.config.stale_pid_grace,
            )
            self.aggregator.registry = self._registry
        return self._registry

    @property
    def upstream_pending(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, options: StartOptions | None = None) -> None:
        """Start the gateway.

        Raises:
            StartupError: If required directories cannot be created
        """
        options = options or StartOptions()
        self._started = True

        self._ensure_directories()

        self.registry.cleanup_stale()
        logger.info("Cleaned up stale instances")

        self.filters = FilterSet.from_options(options, self.group_expander)
        if self.filters.servers:
            logger.info(f"Filtering to servers: {', '.join(self.filters.servers)}")
        if self.filters.tools:
            logger.info(f"Filtering to tools: {', '.join(self.filters.tools)}")
        self.aggregator.tool_filter = set(self.filters.tools) if self.filters.tools else None

        self.aggregator.load_builtins()

        self.instance_id = self.registry.register(
            os.getpid(),
            SERVER_NAME,
            SELF_LAUNCH_SOURCE,
            {
                "name": SERVER_NAME,
                "version": __version__,
                "options": options.model_dump(exclude_none=True),
                "toolFilters": self.filters.tools or [],
                "serverFilters": self.filters.servers or [],
                "groupFilters": self.filters.groups or [],
            },
            {"args": sys.argv[1:], "cwd": os.getcwd()},
            "stdio",
        )
        logger.info(f"Registered self with instance ID {self.instance_id} and PID {os.getpid()}")

        self.connector = BackendConnector(
            self.registry,
            connect_timeout=self.config.connect_timeout,
            pid_poll_interval=self.config.pid_poll_interval,
            pid_poll_timeout=self.config.pid_poll_timeout,
            filters=self.filters.as_snapshot(),
        )
        connections = await self.connector.connect_all(self.selected_backends())
        for connection in connections.values():
            self.aggregator.add_backend(connection)

        self.registry.start_health_check()
        await self._start_status_server()

        logger.info("Starting upstream server...")
        self._serve_task = asyncio.create_task(self._serve_upstream(), name="upstream")
        self._install_signal_handlers()

        logger.info("=" * 60)
        logger.info(f"MCP AGGREGATOR v{__version__}")
        logger.info(f"Backends: {len(self.aggregator.backends)}")
        for name in self.aggregator.backends:
            logger.info(f"  {name}")
        logger.info("=" * 60)

    def selected_backends(self) -> list[BackendDefinition]:
        """Enabled backend definitions that survive the server filter."""
        servers = self.settings.get_servers()
        if not servers:
            logger.info("No backends configured")
            return []

        selected = []
        for server in servers:
            if not server.enabled:
                logger.info(f"Skipping disabled backend: {server.name}")
                continue
            if not self.filters.allows_server(server.name):
                continue
            selected.append(server)

        if self.filters.servers is not None:
            logger.info(f"Filtered to {len(selected)} backends out of {len(servers)} total")
        return selected

    async def stop(self) -> int:
        """Shut down in order and return the process exit code.

        Calls stop new tool calls, mark self stopped, kill launched children,
        close upstream, close backend sessions, stop the health check.
        """
        if self._stopped:
            return self.exit_code
        self._stopped = True
        logger.info("Shutting down...")

        ok = True
        try:
            self.aggregator.close()

            if self.instance_id is not None:
                self.registry.update_status(self.instance_id, InstanceStatus.STOPPED)
                logger.info(f"Updated own instance {self.instance_id} status to stopped")

            killed = 0
            owned = self.connector.owned_instance_ids if self.connector else []
            for instance_id in owned:
                instance = self.registry.get(instance_id)
                if instance is None or not instance.is_running:
                    continue
                if self.registry.kill(instance_id):
                    killed += 1
                    logger.info(f"Killed child instance {instance_id} (PID {instance.pid})")
            logger.info(f"Killed {killed} child instance(s)")

            await self._close_upstream()

            if self.connector is not None:
                await self.connector.close()

            await self._stop_status_server()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
            ok = False
        finally:
            if self._registry is not None:
                self._registry.stop_health_check()
            self._remove_signal_handlers()

        if not ok:
            self.exit_code = 1
        logger.info("Gateway stopped")
        return self.exit_code

    def request_stop(self) -> None:
        """Ask run() to shut the gateway down (signal-safe)."""
        self._shutdown.set()

    async def wait_closed(self) -> None:
        """Wait until a shutdown is requested or the upstream session ends."""
        if self._serve_task is None:
            return

        shutdown = asyncio.create_task(self._shutdown.wait())
        try:
            await asyncio.wait({self._serve_task, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown.cancel()

        if self._serve_task.done() and not self._serve_task.cancelled():
            error = self._serve_task.exception()
            if error is not None:
                logger.error(f"Upstream server failed: {error}")
                self.exit_code = 1
            else:
                logger.info("Upstream session ended")

    async def run(self, options: StartOptions | None = None) -> int:
        """Start, serve until shutdown, stop. Returns the exit code."""
        try:
            await self.start(options)
        except Exception as e:
            logger.error(f"Failed to start server: {e}")
            self.exit_code = 1
            await self.stop()
            return 1

        await self.wait_closed()
        return await self.stop()

    def _ensure_directories(self) -> None:
        for directory in self.config.required_dirs:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StartupError(f"Failed to create directory {directory}: {e}") from e
        logger.debug("Directories created successfully")

    # =========================================================================
    # Upstream MCP server
    # =========================================================================

    def _bind_handlers(self) -> None:
        handlers = self.server.request_handlers
        handlers[types.ListToolsRequest] = self._handle_list_tools
        handlers[types.CallToolRequest] = self._handle_call_tool
        # Advertised by the protocol, not implemented here
        handlers[types.ListResourcesRequest] = self._handle_list_resources
        handlers[types.ListResourceTemplatesRequest] = self._handle_list_resource_templates
        handlers[types.ListPromptsRequest] = self._handle_list_prompts

    async def _handle_list_tools(self, _request: types.ListToolsRequest) -> types.ServerResult:
        logger.info("Handling ListTools request")
        tools = await self.aggregator.list_tools()
        return types.ServerResult(types.ListToolsResult(tools=[t.to_mcp_tool() for t in tools]))

    async def _handle_call_tool(self, request: types.CallToolRequest) -> types.ServerResult:
        logger.info(f"Handling CallTool request for tool: {request.params.name}")
        result = await self.aggregator.call_tool(request.params.name, request.params.arguments)
        return types.ServerResult(result)

    async def _handle_list_resources(self, _request: types.ListResourcesRequest) -> types.ServerResult:
        return types.ServerResult(types.ListResourcesResult(resources=[]))

    async def _handle_list_resource_templates(
        self, _request: types.ListResourceTemplatesRequest
    ) -> types.ServerResult:
        return types.ServerResult(types.ListResourceTemplatesResult(resourceTemplates=[]))

    async def _handle_list_prompts(self, _request: types.ListPromptsRequest) -> types.ServerResult:
        return types.ServerResult(types.ListPromptsResult(prompts=[]))

    async def _serve_upstream(self) -> None:
        async with self._upstream_transport() as (read_stream, write_stream):
            logger.info("Ready to handle requests")
            await self.server.run(
                read_stream, write_stream, self.server.create_initialization_options()
            )

    async def _close_upstream(self) -> None:
        task = self._serve_task
        if task is None or task.done():
            return
        task.cancel()
        # A blocked stdin read only returns on the next line or EOF
        done, _ = await asyncio.wait({task}, timeout=UPSTREAM_CLOSE_TIMEOUT)
        if not done:
            logger.warning("Upstream transport did not close in time")
        logger.info("Server stopped")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    # =========================================================================
    # Status endpoint
    # =========================================================================

    def create_status_app(self) -> web.Application:
        """Create the aiohttp status application."""
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/instances", self._handle_instances)
        return app

    async def _start_status_server(self) -> None:
        if self.config.status_port is None:
            return
        runner = web.AppRunner(self.create_status_app())
        await runner.setup()
        site = web.TCPSite(runner, self.config.status_host, self.config.status_port)
        await site.start()
        self._status_runner = runner
        logger.info(
            f"Status endpoint on http://{self.config.status_host}:{self.config.status_port}/health"
        )

    async def _stop_status_server(self) -> None:
        if self._status_runner is not None:
            await self._status_runner.cleanup()
            self._status_runner = None

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Health check endpoint."""
        backends_status: dict[str, dict[str, Any]] = {}

        for name, connection in self.aggregator.backends.items():
            instance = (
                self.registry.get(connection.instance_id) if connection.instance_id else None
            )
            backends_status[name] = {
                "status": instance.status.value if instance else "unknown",
                "pid": connection.pid,
                "resource_usage": instance.resource_usage if instance else None,
                "tools_count": (
                    instance.capabilities.tool_count
                    if instance and instance.capabilities
                    else None
                ),
            }

        status = {
            "status": "healthy" if self.aggregator.accepting else "stopping",
            "version": __version__,
            "backends": backends_status,
        }

        return web.json_response(status)

    async def _handle_instances(self, _request: web.Request) -> web.Response:
        return web.json_response(self.registry.status_summary())
