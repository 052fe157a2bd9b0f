"""
Tool descriptors and namespacing.

Every tool exposed upstream is named ``<backendId>_<originalName>``. Backend
ids are unique, so namespaced names are too. The gateway's own tools live
under the reserved ``gateway`` id.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import mcp.types as types
from pydantic import BaseModel, Field

SEPARATOR = "_"
RESERVED_NAMESPACE = "gateway"


class ToolDescriptor(BaseModel):
    """A tool as exposed by the aggregator."""

    name: str
    original_name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    source: str

    @classmethod
    def from_backend_tool(cls, backend_id: str, tool: types.Tool) -> ToolDescriptor:
        return cls(
            name=namespace(backend_id, tool.name),
            original_name=tool.name,
            description=f"[{backend_id}] {tool.description or 'No description'}",
            input_schema=dict(tool.inputSchema or {"type": "object", "properties": {}}),
            source=backend_id,
        )

    def to_mcp_tool(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
        )


def namespace(backend_id: str, tool_name: str) -> str:
    return f"{backend_id}{SEPARATOR}{tool_name}"


def split_namespaced(name: str, backend_ids: Iterable[str] = ()) -> tuple[str, str] | None:
    """Split a namespaced tool name into ``(backend_id, original_name)``.

    The longest of ``backend_ids`` that prefixes the name (followed by the
    separator) wins, so ``py_helper_run`` resolves to ``py_helper`` when both
    ``py`` and ``py_helper`` are known. Otherwise the name is split on its
    first separator. Returns None when the name has no separator.
    """
    if SEPARATOR not in name:
        return None

    for backend_id in sorted(backend_ids, key=len, reverse=True):
        prefix = backend_id + SEPARATOR
        if name.startswith(prefix) and len(name) > len(prefix):
            return backend_id, name[len(prefix) :]

    backend_id, _, original = name.partition(SEPARATOR)
    if not backend_id or not original:
        return None
    return backend_id, original


BUILTIN_TOOLS: list[types.Tool] = [
    types.Tool(
        name="list_servers",
        description="List connected MCP backend servers and their instance status",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    types.Tool(
        name="search_tools",
        description="Search for tools across all connected backends by keyword",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search keyword",
                },
                "limit": {
                    "type": "integer",
                    "description": "Max results (default 10)",
                    "default": 10,
                },
            },
            "required": ["query"],
        },
    ),
    types.Tool(
        name="tool_usage",
        description="Show usage statistics for aggregated tools",
        inputSchema={
            "type": "object",
            "properties": {
                "tool": {
                    "type": "string",
                    "description": "Namespaced tool name (all tools when omitted)",
                }
            },
            "required": [],
        },
    ),
]


def builtin_descriptors() -> list[ToolDescriptor]:
    """Built-in tools, namespaced under the reserved id."""
    return [
        ToolDescriptor(
            name=namespace(RESERVED_NAMESPACE, tool.name),
            original_name=tool.name,
            description=tool.description or "",
            input_schema=dict(tool.inputSchema),
            source=RESERVED_NAMESPACE,
        )
        for tool in BUILTIN_TOOLS
    ]
