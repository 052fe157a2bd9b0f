"""
Tool aggregator - merges backend tool catalogs and routes calls.

Tool calls always produce a CallToolResult. Unknown tools, disconnected
backends, backend errors and transport failures all come back as results
with ``isError`` set, never as protocol errors.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import mcp.types as types

from mcp_aggregator.tools import (
    RESERVED_NAMESPACE,
    ToolDescriptor,
    builtin_descriptors,
    split_namespaced,
)

if TYPE_CHECKING:
    from mcp_aggregator.backend import BackendConnection
    from mcp_aggregator.metrics import UsageMetrics
    from mcp_aggregator.registry import InstanceRegistry

logger = logging.getLogger(__name__)


def text_result(text: str, *, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


def error_result(text: str) -> types.CallToolResult:
    return text_result(text, is_error=True)


def method_not_found(text: str) -> types.CallToolResult:
    return error_result(f"Method not found ({types.METHOD_NOT_FOUND}): {text}")


def json_result(data: Any) -> types.CallToolResult:
    return text_result(json.dumps(data, indent=2, default=str))


class ToolAggregator:
    """Merges tools from the gateway and every connected backend."""

    def __init__(
        self,
        metrics: UsageMetrics,
        registry: InstanceRegistry | None = None,
        tool_filter: Iterable[str] | None = None,
    ) -> None:
        self.metrics = metrics
        self.registry = registry
        self.tool_filter = set(tool_filter) if tool_filter else None
        self.backends: dict[str, BackendConnection] = {}
        self.builtins: list[ToolDescriptor] = []
        self.accepting = True

    def load_builtins(self) -> None:
        self.builtins = builtin_descriptors()
        logger.debug(f"Loaded {len(self.builtins)} built-in tools")

    def add_backend(self, connection: BackendConnection) -> None:
        logger.info(f"Registering backend: {connection.name}")
        self.backends[connection.name] = connection

    def close(self) -> None:
        """Stop accepting new tool calls."""
        self.accepting = False

    # =========================================================================
    # Listing
    # =========================================================================

    async def backend_tools(self, name: str) -> list[ToolDescriptor]:
        connection = self.backends[name]
        tools = await connection.list_tools()
        return [ToolDescriptor.from_backend_tool(name, tool) for tool in tools]

    async def list_tools(self) -> list[ToolDescriptor]:
        """All tools, namespaced, with the tool filter applied to original names."""
        all_tools = list(self.builtins)

        for name in list(self.backends):
            try:
                tools = await self.backend_tools(name)
            except Exception as e:
                logger.error(f"[{name}] Error fetching tools: {e}")
                continue
            all_tools.extend(tools)
            logger.debug(f"Added {len(tools)} tools from '{name}'")

        if self.tool_filter is None:
            logger.info(f"Returning {len(all_tools)} tools")
            return all_tools

        filtered = [tool for tool in all_tools if tool.original_name in self.tool_filter]
        logger.info(f"Filtered to {len(filtered)} tools out of {len(all_tools)} total")
        return filtered

    # =========================================================================
    # Calling
    # =========================================================================

    def resolve(self, name: str) -> tuple[str, str] | None:
        """Map a namespaced name to (backend id, original name)."""
        return split_namespaced(name, [RESERVED_NAMESPACE, *self.backends])

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        """Route a namespaced tool call. Never raises."""
        if not self.accepting:
            return error_result("Gateway is shutting down")

        resolved = self.resolve(name)
        if resolved is None:
            logger.error(f"Invalid tool name format: {name}")
            return method_not_found(
                f"Invalid tool name format: {name}. Expected format: serverName_toolName"
            )

        backend_id, original_name = resolved
        if backend_id == RESERVED_NAMESPACE:
            return await self._call_builtin(name, original_name, arguments or {})

        connection = self.backends.get(backend_id)
        if connection is None:
            logger.error(f"Backend not connected: {backend_id}")
            return method_not_found(f"Backend not connected: {backend_id}")

        self.metrics.track(name)

        logger.info(f"Forwarding tool call to '{backend_id}' for tool {original_name}")
        try:
            result = await connection.call_tool(original_name, arguments)
        except Exception as e:
            logger.error(f"[{backend_id}] Tool execution error: {e}")
            return error_result(f"Error executing tool: {str(e) or type(e).__name__}")

        if result.isError:
            logger.error(f"[{backend_id}] Tool {original_name} reported an error")
            return types.CallToolResult(
                content=result.content or [types.TextContent(type="text", text="Unknown error")],
                isError=True,
            )

        logger.info(f"Tool execution successful: {name}")
        return result

    # =========================================================================
    # Built-in tools
    # =========================================================================

    async def _call_builtin(
        self, name: str, tool: str, arguments: dict[str, Any]
    ) -> types.CallToolResult:
        if tool not in {descriptor.original_name for descriptor in self.builtins}:
            return method_not_found(f"Unknown tool: {name}")

        self.metrics.track(name)

        try:
            if tool == "list_servers":
                return self._list_servers()
            if tool == "search_tools":
                return await self._search_tools(arguments)
            return self._tool_usage(arguments)
        except Exception as e:
            logger.error(f"Built-in tool {name} failed: {e}")
            return error_result(f"Error executing tool: {e}")

    def _list_servers(self) -> types.CallToolResult:
        servers = []
        for name, connection in self.backends.items():
            instance = (
                self.registry.get(connection.instance_id)
                if self.registry is not None and connection.instance_id
                else None
            )
            servers.append(
                {
                    "name": name,
                    "instance_id": connection.instance_id,
                    "pid": connection.pid,
                    "status": instance.status.value if instance else None,
                    "tools_count": (
                        instance.capabilities.tool_count
                        if instance and instance.capabilities
                        else None
                    ),
                }
            )

        data: dict[str, Any] = {"servers": servers}
        if self.registry is not None:
            data["instances"] = self.registry.status_summary()
        return json_result(data)

    async def _search_tools(self, arguments: dict[str, Any]) -> types.CallToolResult:
        query = str(arguments.get("query") or "").lower()
        if not query:
            return error_result("Missing 'query' parameter")
        limit = int(arguments.get("limit") or 10)

        matches = []
        for name in list(self.backends):
            try:
                tools = await self.backend_tools(name)
            except Exception as e:
                logger.warning(f"[{name}] Skipped in search: {e}")
                continue

            for tool in tools:
                if query in tool.original_name.lower() or query in tool.description.lower():
                    matches.append(
                        {
                            "server": name,
                            "tool": tool.name,
                            "description": tool.description[:200],
                        }
                    )
                if len(matches) >= limit:
                    break

            if len(matches) >= limit:
                break

        return json_result({"query": query, "matches": matches, "total": len(matches)})

    def _tool_usage(self, arguments: dict[str, Any]) -> types.CallToolResult:
        tool = arguments.get("tool")
        if tool:
            metric = self.metrics.get(str(tool))
            if metric is None:
                return error_result(f"No usage recorded for {tool}")
            return json_result({str(tool): metric.model_dump()})

        return json_result(
            {name: metric.model_dump() for name, metric in self.metrics.get_all().items()}
        )
