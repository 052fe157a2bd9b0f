"""
Settings cache - a short-lived in-memory view over the Config Store.

Tool permission queries are evaluated against enabled backends only. A
wildcard entry in any enabled backend's list answers the whole query with
``["*"]``.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from mcp_aggregator.config import WILDCARD, BackendDefinition
from mcp_aggregator.store import default_config

if TYPE_CHECKING:
    from mcp_aggregator.store import ConfigStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSettings:
    """Permissions resolved for one tool name."""

    server_name: str | None = None
    is_allowed: bool = False
    is_approved: bool = False
    is_disabled: bool = False


class SettingsCache:
    """Time-bounded cache over ConfigStore.read_config()."""

    def __init__(self, store: ConfigStore, ttl: float = 5.0) -> None:
        self.store = store
        self.ttl = ttl
        self._settings: dict[str, Any] | None = None
        self._timestamp = 0.0

    def get_settings(self) -> dict[str, Any]:
        """Return cached settings, re-reading once they are older than the TTL."""
        now = time.monotonic()
        if self._settings is not None and now - self._timestamp < self.ttl:
            return self._settings

        try:
            settings = self.store.read_config()
        except Exception as e:
            logger.error(f"Error loading settings: {e}")
            return self._settings if self._settings is not None else default_config()

        self._settings = settings
        self._timestamp = now
        return settings

    def save_settings(self, settings: dict[str, Any]) -> bool:
        """Write settings through to the store and refresh the cache."""
        if not self.store.write_config(settings):
            logger.error("Error saving settings")
            return False
        self._settings = settings
        self._timestamp = time.monotonic()
        logger.info("Settings saved")
        return True

    def invalidate(self) -> None:
        self._settings = None
        self._timestamp = 0.0

    def get_servers(self) -> list[BackendDefinition]:
        """Backend definitions in file order; invalid entries are skipped."""
        raw_servers = self.get_settings().get("servers")
        if not isinstance(raw_servers, list):
            return []

        servers = []
        for entry in raw_servers:
            if not isinstance(entry, dict):
                continue
            try:
                servers.append(BackendDefinition.model_validate(entry))
            except ValidationError as e:
                logger.error(f"Skipping invalid backend definition {entry.get('name')!r}: {e}")
        return servers

    def _enabled_servers(self) -> list[BackendDefinition]:
        return [server for server in self.get_servers() if server.enabled]

    def get_allowed_tools(self) -> list[str]:
        return self._collect("allow_list")

    def get_approved_tools(self) -> list[str]:
        return self._collect("approve_list")

    def _collect(self, attr: str) -> list[str]:
        tools: dict[str, None] = {}
        for server in self._enabled_servers():
            entries: list[str] = getattr(server, attr)
            if WILDCARD in entries:
                return [WILDCARD]
            tools.update(dict.fromkeys(entries))
        return list(tools)

    def get_favorite_tools(self) -> list[str]:
        """Explicitly listed tools from both lists, wildcards excluded."""
        favorites: dict[str, None] = {}
        for server in self._enabled_servers():
            for tool in (*server.allow_list, *server.approve_list):
                if tool != WILDCARD:
                    favorites[tool] = None
        return list(favorites)

    def get_tool_settings(self, tool_name: str) -> ToolSettings:
        """Permissions from the first backend (in definition order) listing the tool."""
        for server in self.get_servers():
            is_allowed = server.allows(tool_name)
            is_approved = server.approves(tool_name)
            if is_allowed or is_approved:
                return ToolSettings(
                    server_name=server.name,
                    is_allowed=is_allowed,
                    is_approved=is_approved,
                    is_disabled=not server.enabled,
                )
        return ToolSettings()

    def get_server_name_for_tool(self, tool_name: str) -> str | None:
        for server in self._enabled_servers():
            if server.allows(tool_name) or server.approves(tool_name):
                return server.name
        return None

    def update_tool_settings(
        self,
        tool_name: str,
        server_name: str | None = None,
        *,
        is_allowed: bool | None = None,
        is_approved: bool | None = None,
        is_disabled: bool | None = None,
    ) -> bool:
        """Add or remove a tool from a backend's allow/approve lists.

        Defaults to the first backend when no server name is given. Unknown
        backends are rejected rather than created.
        """
        settings = copy.deepcopy(self.get_settings())
        raw_servers = [s for s in settings.get("servers", []) if isinstance(s, dict)]
        if not raw_servers:
            logger.error(f"Cannot update settings for '{tool_name}': no backends configured")
            return False

        server_name = server_name or raw_servers[0].get("name")
        server = next((s for s in raw_servers if s.get("name") == server_name), None)
        if server is None:
            logger.error(f"Cannot update settings for '{tool_name}': unknown backend {server_name}")
            return False

        _update_tool_list(server, "alwaysAllow", tool_name, is_allowed)
        _update_tool_list(server, "autoApprove", tool_name, is_approved)
        if is_disabled is not None:
            server["enabled"] = not is_disabled

        return self.save_settings(settings)


def _update_tool_list(server: dict[str, Any], key: str, tool_name: str, value: bool | None) -> None:
    if value is None:
        return
    entries: list[str] = list(server.get(key) or [])
    if value:
        if tool_name not in entries and WILDCARD not in entries:
            entries.append(tool_name)
    else:
        entries = [t for t in entries if t != tool_name]
    server[key] = entries
