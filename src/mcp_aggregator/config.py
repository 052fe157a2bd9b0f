"""
Configuration management for MCP Aggregator.

Two layers live here:
    - GatewayConfig: process-level settings (directories, timers), optionally
      loaded from a YAML file with environment variable expansion.
    - BackendDefinition: one backend entry as stored in the JSON config file.

Both are validated via Pydantic.
"""

from __future__ import annotations

import os
import re
import shlex
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WILDCARD = "*"


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports both ${VAR} and $VAR syntax.
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replacer, value)


class BackendDefinition(BaseModel):
    """A single MCP backend server as defined in the config file."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(..., min_length=1, description="Unique identifier for this backend")
    command: str | None = Field(default=None, description="Executable (may include arguments)")
    args: list[str] = Field(default_factory=list, description="Extra command arguments")
    env: dict[str, str] = Field(default_factory=dict, description="Environment variables")
    cwd: str | None = Field(default=None, description="Working directory for the process")
    enabled: bool = Field(default=True, description="Whether this backend is active")
    type: str = Field(default="process", description="Display-only backend type")
    allow_list: list[str] = Field(default_factory=list, alias="alwaysAllow")
    approve_list: list[str] = Field(default_factory=list, alias="autoApprove")

    @field_validator("command", "cwd", mode="before")
    @classmethod
    def expand_env(cls, v: str | None) -> str | None:
        """Expand environment variables in string fields."""
        if v is None:
            return None
        return expand_env_vars(str(v))

    @field_validator("args", mode="before")
    @classmethod
    def expand_args(cls, v: list[Any] | None) -> list[str]:
        """Expand environment variables in each argument."""
        if v is None:
            return []
        return [expand_env_vars(str(arg)) for arg in v]

    @field_validator("env", mode="before")
    @classmethod
    def expand_dict_values(cls, v: dict[str, Any] | None) -> dict[str, str]:
        """Expand environment variables in dict values."""
        if v is None:
            return {}
        return {k: expand_env_vars(str(val)) for k, val in v.items()}

    @field_validator("allow_list", "approve_list", mode="before")
    @classmethod
    def none_to_empty(cls, v: list[str] | None) -> list[str]:
        return list(v) if v else []

    @property
    def command_list(self) -> list[str] | None:
        """Parse command string into list for subprocess, followed by args."""
        if not self.command or not self.command.strip():
            return None
        return shlex.split(self.command) + list(self.args)

    def allows(self, tool_name: str) -> bool:
        return tool_name in self.allow_list or WILDCARD in self.allow_list

    def approves(self, tool_name: str) -> bool:
        return tool_name in self.approve_list or WILDCARD in self.approve_list

    def to_config_dict(self) -> dict[str, Any]:
        """Serialize back to the on-disk (camelCase) format."""
        return self.model_dump(by_alias=True, exclude_none=True)


class GatewayConfig(BaseModel):
    """Configuration for the MCP Aggregator process."""

    # Storage locations
    home_dir: Path = Field(
        default_factory=lambda: Path.home() / ".mcp-aggregator",
        description="Root directory for all on-disk state",
    )
    config_path: Path | None = Field(default=None, description="Backend/toolbox JSON file")
    instances_dir: Path | None = Field(default=None, description="One JSON file per instance")
    metrics_dir: Path | None = Field(default=None, description="One JSON file per tool")

    # Timers
    health_check_interval: float = Field(
        default=30.0, gt=0, description="Seconds between health-check sweeps"
    )
    settings_ttl: float = Field(default=5.0, ge=0, description="Settings cache TTL in seconds")
    pid_poll_interval: float = Field(default=0.5, gt=0, description="Pid discovery poll period")
    pid_poll_timeout: float = Field(default=10.0, gt=0, description="Pid discovery bound")
    stale_pid_grace: float = Field(
        default=3600.0, ge=0, description="Seconds before a pid-less instance is stale"
    )
    connect_timeout: float = Field(
        default=30.0, gt=0, description="Seconds allowed for a backend handshake"
    )

    # Operational settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging verbosity"
    )
    status_host: str = Field(default="127.0.0.1", description="Status endpoint bind host")
    status_port: int | None = Field(
        default=None, ge=1, le=65535, description="Status endpoint port (disabled when unset)"
    )

    @field_validator("home_dir", "config_path", "instances_dir", "metrics_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Any:
        """Expand environment variables and ~ in path fields."""
        if v is None:
            return None
        return Path(expand_env_vars(str(v))).expanduser()

    @model_validator(mode="after")
    def derive_paths(self) -> GatewayConfig:
        """Place unset paths under home_dir."""
        if self.config_path is None:
            self.config_path = self.home_dir / "config.json"
        if self.instances_dir is None:
            self.instances_dir = self.home_dir / "instances"
        if self.metrics_dir is None:
            self.metrics_dir = self.home_dir / "metrics"
        return self

    @property
    def required_dirs(self) -> list[Path]:
        """Directories that must exist before the gateway starts."""
        assert self.instances_dir is not None and self.metrics_dir is not None
        assert self.config_path is not None
        return [self.home_dir, self.instances_dir, self.metrics_dir, self.config_path.parent]

    @classmethod
    def from_yaml(cls, path: str | Path) -> GatewayConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Validated GatewayConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open() as f:
            raw_config = yaml.safe_load(f)

        return cls.from_dict(raw_config or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayConfig:
        """Create configuration from a dictionary, ignoring None values."""
        return cls(**{k: v for k, v in data.items() if v is not None})


class StartOptions(BaseModel):
    """Filter options handed over by the CLI layer.

    Each pair accepts a single value and/or a comma-separated list.
    """

    server: str | None = None
    servers: str | None = None
    tool: str | None = None
    tools: str | None = None
    group: str | None = None
    groups: str | None = None


def parse_filters(single: str | None, multiple: str | None) -> list[str] | None:
    """Union a single value and a comma-separated list into a deduplicated list.

    Returns None when no filter values were given.
    """
    filters: dict[str, None] = {}

    if single and single.strip():
        filters[single.strip()] = None

    if multiple:
        for name in multiple.split(","):
            name = name.strip()
            if name:
                filters[name] = None

    return list(filters) if filters else None
