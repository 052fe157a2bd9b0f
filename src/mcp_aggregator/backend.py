"""
MCP backend management - spawns backend processes and holds their client sessions.

Each backend runs as a child process speaking MCP over stdio. The stdio
transport does not expose the child's pid, so instances are registered with
an unknown pid which is filled in by a short background poll.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from collections.abc import Callable, Iterable
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

import anyio
import mcp.types as types
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from mcp_aggregator.procinfo import child_pids, find_new_child_pid
from mcp_aggregator.registry import Capabilities, InstanceStatus
from mcp_aggregator.tools import RESERVED_NAMESPACE

if TYPE_CHECKING:
    from mcp_aggregator.config import BackendDefinition
    from mcp_aggregator.registry import InstanceRegistry

logger = logging.getLogger(__name__)

LAUNCH_SOURCE = "cli"
CONNECTION_TYPE = "stdio"

SELF_COMMANDS = {"mcp-aggregator", "mcp_aggregator"}
LAUNCHERS = {"node", "uv", "uvx", "pipx", "env"}

TRANSPORT_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    BrokenPipeError,
    ConnectionError,
)

PidLocator = Callable[[str, set[int]], int | None]


def is_self_reference(argv: list[str]) -> bool:
    """Check whether a command line would start this gateway again."""
    if not argv:
        return False

    executable = Path(argv[0]).name
    if executable in SELF_COMMANDS:
        return True

    if re.fullmatch(r"python[0-9.]*", executable) or executable in LAUNCHERS:
        return any(
            Path(arg).name in SELF_COMMANDS or arg.startswith("mcp_aggregator.")
            for arg in argv[1:]
        )
    return False


def is_transport_error(error: BaseException) -> bool:
    if isinstance(error, TRANSPORT_ERRORS):
        return True
    return isinstance(error, McpError) and error.error.code == types.CONNECTION_CLOSED


@dataclass
class BackendConnection:
    """A live client session with one backend process."""

    definition: BackendDefinition
    registry: InstanceRegistry
    session: ClientSession | None = None
    instance_id: str | None = None
    pid: int | None = None
    closed: bool = False

    @property
    def name(self) -> str:
        """Backend name from config."""
        return self.definition.name

    async def list_tools(self) -> list[types.Tool]:
        result = await self._request(lambda session: session.list_tools())
        return list(result.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> types.CallToolResult:
        """Forward a tool call. Transport failures are recorded and re-raised."""
        return await self._request(lambda session: session.call_tool(name, arguments or {}))

    async def _request(self, send: Callable[[ClientSession], Any]) -> Any:
        if self.session is None or self.closed:
            raise ConnectionError(f"Backend '{self.name}' is not connected")
        try:
            return await send(self.session)
        except Exception as e:
            if is_transport_error(e):
                self.handle_transport_error(e)
            raise

    async def handle_message(self, message: Any) -> None:
        """ClientSession message handler; exceptions signal transport errors."""
        if isinstance(message, Exception):
            self.handle_transport_error(message)

    def handle_transport_closed(self) -> None:
        logger.info(f"[{self.name}] Transport closed")
        self.closed = True
        self._mark_instances(InstanceStatus.STOPPED)

    def handle_transport_error(self, error: BaseException) -> None:
        logger.error(f"[{self.name}] Transport error: {error}")
        self._mark_instances(InstanceStatus.ERROR)

    def _mark_instances(self, status: InstanceStatus) -> None:
        # Nothing of ours is in the registry before registration
        if self.instance_id is None:
            return
        for instance in self.registry.get_by_backend(self.name):
            if instance.pid == self.pid and instance.is_running:
                self.registry.update_status(instance.id, status)
                logger.info(f"[{self.name}] Updated instance {instance.id} status to {status.value}")


class BackendConnector:
    """Brings up backends and keeps their sessions open until close().

    Sessions are entered on the caller's task and must be closed from that
    same task.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        *,
        connect_timeout: float = 30.0,
        pid_poll_interval: float = 0.5,
        pid_poll_timeout: float = 10.0,
        filters: dict[str, list[str]] | None = None,
        pid_locator: PidLocator = find_new_child_pid,
        errlog: TextIO = sys.stderr,
    ) -> None:
        self.registry = registry
        self.connect_timeout = connect_timeout
        self.pid_poll_interval = pid_poll_interval
        self.pid_poll_timeout = pid_poll_timeout
        self.filters = filters or {}
        self.connections: dict[str, BackendConnection] = {}
        self.owned_instance_ids: list[str] = []
        self._pid_locator = pid_locator
        self._errlog = errlog
        self._claimed_pids: set[int] = set()
        self._exit_stack = AsyncExitStack()
        self._background_tasks: set[asyncio.Task[None]] = set()

    def validate(self, definition: BackendDefinition) -> list[str] | None:
        """Return the command line to launch, or None if the backend must be skipped."""
        argv = definition.command_list
        if not argv:
            logger.error(f"[{definition.name}] Missing command, skipping")
            return None

        if definition.name == RESERVED_NAMESPACE:
            logger.error(f"[{definition.name}] Backend name is reserved for built-in tools, skipping")
            return None

        if is_self_reference(argv):
            logger.info(f"[{definition.name}] Skipping self-reference to the gateway")
            return None

        if definition.name in self.connections:
            logger.warning(f"[{definition.name}] Already connected, skipping")
            return None

        return argv

    async def connect_all(self, definitions: Iterable[BackendDefinition]) -> dict[str, BackendConnection]:
        """Connect each definition in turn; failures never stop the others."""
        for definition in definitions:
            try:
                await self.connect(definition)
            except Exception as e:
                logger.error(f"[{definition.name}] Error connecting: {e}")

        logger.info(f"Connected to {len(self.connections)} backend(s)")
        return self.connections

    async def connect(self, definition: BackendDefinition) -> BackendConnection | None:
        """Spawn a backend, open its session and register it.

        Returns:
            The live connection, or None when the backend was skipped or failed
        """
        argv = self.validate(definition)
        if argv is None:
            return None

        cwd = definition.cwd or os.getcwd()
        params = StdioServerParameters(
            command=argv[0],
            args=argv[1:],
            env={**os.environ, **definition.env},
            cwd=cwd,
        )
        logger.info(f"[{definition.name}] Starting: {' '.join(argv)}")

        existing_children = child_pids()
        connection = BackendConnection(definition=definition, registry=self.registry)
        stack = AsyncExitStack()
        # Runs after the transport has shut the process down
        stack.callback(connection.handle_transport_closed)

        try:
            read_stream, write_stream = await stack.enter_async_context(
                stdio_client(params, errlog=self._errlog)
            )
            connection.session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream, message_handler=connection.handle_message)
            )
            await asyncio.wait_for(connection.session.initialize(), timeout=self.connect_timeout)
        except Exception as e:
            logger.error(f"[{definition.name}] Failed to connect: {e}")
            await self._close_stack(definition.name, stack)
            return None

        logger.info(f"[{definition.name}] Connected")

        capabilities = await self._probe_tools(connection)

        connection.instance_id = self.registry.register(
            None,
            definition.name,
            LAUNCH_SOURCE,
            {
                **definition.to_config_dict(),
                "toolFilters": self.filters.get("tools", []),
                "serverFilters": self.filters.get("servers", []),
                "groupFilters": self.filters.get("groups", []),
            },
            {"args": argv[1:], "env_keys": sorted(definition.env), "cwd": cwd},
            CONNECTION_TYPE,
            capabilities,
        )
        self.owned_instance_ids.append(connection.instance_id)
        logger.info(f"[{definition.name}] Registered instance {connection.instance_id} without initial PID")

        if capabilities is None:
            # Dead on arrival: keep the record, do not route to it
            self.registry.update_status(connection.instance_id, InstanceStatus.ERROR)
            await self._close_stack(definition.name, stack)
            return None

        self._track_task(
            self._discover_pid(connection, argv[0], existing_children),
            name=f"pid-discovery-{definition.name}",
        )
        self._exit_stack.push_async_callback(self._close_stack, definition.name, stack)
        self.connections[definition.name] = connection
        return connection

    async def _probe_tools(self, connection: BackendConnection) -> Capabilities | None:
        """List tools once to check the backend answers and summarize its capabilities."""
        try:
            tools = await asyncio.wait_for(connection.list_tools(), timeout=self.connect_timeout)
        except Exception as e:
            logger.warning(f"[{connection.name}] Tool listing failed: {e}")
            return None

        names = list(dict.fromkeys(tool.name for tool in tools))
        logger.info(f"[{connection.name}] Listed {len(tools)} tools")
        return Capabilities(tool_count=len(tools), tool_names=names)

    async def _discover_pid(
        self, connection: BackendConnection, command: str, existing_children: set[int]
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.pid_poll_timeout
        instance_id = connection.instance_id
        assert instance_id is not None

        while True:
            try:
                pid = self._pid_locator(command, existing_children | self._claimed_pids)
            except Exception as e:
                logger.debug(f"[{connection.name}] Error checking for PID: {e}")
                pid = None

            if pid:
                self._claimed_pids.add(pid)
                connection.pid = pid
                self.registry.update_pid(instance_id, pid)
                logger.info(f"[{connection.name}] Updated instance {instance_id} with PID {pid}")
                return

            if loop.time() >= deadline:
                logger.info(f"[{connection.name}] Stopped checking for PID for instance {instance_id}")
                return

            await asyncio.sleep(self.pid_poll_interval)

    def _track_task(self, coro: Any, name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _close_stack(self, name: str, stack: AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning(f"[{name}] Error closing session: {e}")

    async def close(self) -> None:
        """Close every session (newest first) and cancel pending pid polls."""
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        await self._exit_stack.aclose()
        self._exit_stack = AsyncExitStack()
        self.connections.clear()
