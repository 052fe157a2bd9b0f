"""
Config Store - the JSON file holding backend definitions and toolboxes.

Only the read side the gateway consumes is implemented here; editing backends
and toolboxes is left to external tooling that writes the same file.

File format::

    {
      "servers": [
        {"name": "search", "command": "npx -y @acme/search", "alwaysAllow": ["*"]}
      ],
      "toolboxes": {"research": ["search", "fetch"]}
    }

Older files use ``groups`` instead of ``toolboxes``; they are migrated on read.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from mcp_aggregator.config import BackendDefinition

logger = logging.getLogger(__name__)


def default_config() -> dict[str, Any]:
    return {"servers": []}


class GroupExpander(Protocol):
    """Anything that can turn a toolbox name into backend names."""

    def expand(self, name: str) -> list[str]: ...


class ConfigStore:
    """Reads and writes the backend/toolbox JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read_config(self) -> dict[str, Any]:
        """Read the config file.

        Returns the default config when the file is missing or unreadable.
        """
        if not self.path.exists():
            return default_config()

        self._warn_insecure_permissions()

        try:
            with self.path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading config from {self.path}: {e}")
            return default_config()

        if not isinstance(data, dict):
            logger.error(f"Config at {self.path} is not a JSON object")
            return default_config()

        if "groups" in data and "toolboxes" not in data:
            data["toolboxes"] = data.pop("groups")
            logger.info("Config migrated: 'groups' -> 'toolboxes'")
            self.write_config(data)

        data.setdefault("servers", [])
        return data

    def write_config(self, config: dict[str, Any]) -> bool:
        """Write the config file with owner-only permissions."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2)
            os.replace(tmp_path, self.path)
            return True
        except OSError as e:
            logger.error(f"Error writing config to {self.path}: {e}")
            return False

    def get_backend_by_name(self, name: str) -> BackendDefinition | None:
        """Return the named backend definition, or None."""
        for entry in self.read_config().get("servers", []):
            if isinstance(entry, dict) and entry.get("name") == name:
                try:
                    return BackendDefinition.model_validate(entry)
                except ValidationError as e:
                    logger.error(f"Invalid definition for backend '{name}': {e}")
                    return None
        return None

    def get_toolboxes(self) -> dict[str, list[str]]:
        toolboxes = self.read_config().get("toolboxes") or {}
        if not isinstance(toolboxes, dict):
            return {}
        return {str(k): list(v) for k, v in toolboxes.items() if isinstance(v, list)}

    def expand_group(self, name: str) -> list[str]:
        """Expand a toolbox name to its backend names.

        A name that is not a toolbox is assumed to be a backend name.
        """
        toolboxes = self.get_toolboxes()
        if name in toolboxes:
            return list(toolboxes[name])
        return [name]

    # GroupExpander
    expand = expand_group

    def _warn_insecure_permissions(self) -> None:
        if os.name == "nt":
            return
        try:
            mode = self.path.stat().st_mode
        except OSError:
            return
        if mode & (stat.S_IWOTH | stat.S_IWGRP):
            logger.warning(
                f"Config file {self.path} is group/world-writable; "
                f"fix with: chmod 600 {self.path}"
            )
