"""Tests for configuration module."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from mcp_aggregator.config import (
    BackendDefinition,
    GatewayConfig,
    StartOptions,
    expand_env_vars,
    parse_filters,
)


class TestExpandEnvVars:
    """Tests for environment variable expansion."""

    def test_expand_braces_syntax(self, monkeypatch):
        """Test ${VAR} syntax expansion."""
        monkeypatch.setenv("TEST_VAR", "test_value")
        result = expand_env_vars("prefix_${TEST_VAR}_suffix")
        assert result == "prefix_test_value_suffix"

    def test_expand_dollar_syntax(self, monkeypatch):
        """Test $VAR syntax expansion."""
        monkeypatch.setenv("MYVAR", "my_value")
        result = expand_env_vars("prefix/$MYVAR/suffix")
        assert result == "prefix/my_value/suffix"

    def test_missing_var_preserved(self):
        """Test that missing variables are preserved."""
        result = expand_env_vars("${NONEXISTENT_VAR_12345}")
        assert result == "${NONEXISTENT_VAR_12345}"


class TestBackendDefinition:
    """Tests for BackendDefinition."""

    def test_command_list_includes_args(self):
        """Test command string is split and args appended."""
        definition = BackendDefinition(name="test", command="npx -y @test/server", args=["--x"])
        assert definition.command_list == ["npx", "-y", "@test/server", "--x"]

    def test_command_list_quoted(self):
        """Test quoted command arguments stay together."""
        definition = BackendDefinition(name="test", command='python "my server.py"')
        assert definition.command_list == ["python", "my server.py"]

    def test_missing_command(self):
        """Test command_list is None without a command."""
        assert BackendDefinition(name="test").command_list is None
        assert BackendDefinition(name="test", command="   ").command_list is None

    def test_camel_case_aliases(self):
        """Test the on-disk alwaysAllow/autoApprove keys."""
        definition = BackendDefinition.model_validate(
            {"name": "test", "command": "srv", "alwaysAllow": ["a"], "autoApprove": None}
        )
        assert definition.allow_list == ["a"]
        assert definition.approve_list == []
        assert definition.to_config_dict()["alwaysAllow"] == ["a"]

    def test_env_expansion(self, monkeypatch):
        """Test environment variable expansion in env and args."""
        monkeypatch.setenv("API_KEY", "secret123")
        definition = BackendDefinition(
            name="test", command="server", args=["--key=$API_KEY"], env={"KEY": "${API_KEY}"}
        )
        assert definition.env["KEY"] == "secret123"
        assert definition.args == ["--key=secret123"]

    def test_wildcard_allows_everything(self):
        """Test wildcard entries match any tool."""
        definition = BackendDefinition(name="test", command="srv", alwaysAllow=["*"])
        assert definition.allows("anything")
        assert not definition.approves("anything")

    def test_default_values(self):
        """Test default definition values."""
        definition = BackendDefinition(name="test", command="echo")
        assert definition.enabled is True
        assert definition.env == {}
        assert definition.type == "process"

    def test_empty_name_rejected(self):
        """Test that a backend needs a name."""
        with pytest.raises(ValidationError):
            BackendDefinition(name="", command="echo")


class TestGatewayConfig:
    """Tests for GatewayConfig."""

    def test_default_creation(self):
        """Test default gateway configuration."""
        config = GatewayConfig()
        assert config.home_dir == Path.home() / ".mcp-aggregator"
        assert config.instances_dir == config.home_dir / "instances"
        assert config.metrics_dir == config.home_dir / "metrics"
        assert config.config_path == config.home_dir / "config.json"
        assert config.health_check_interval == 30.0
        assert config.settings_ttl == 5.0
        assert config.stale_pid_grace == 3600.0
        assert config.status_port is None

    def test_explicit_paths_kept(self, tmp_path):
        """Test explicitly set paths are not derived from home_dir."""
        config = GatewayConfig(home_dir=tmp_path, instances_dir=tmp_path / "elsewhere")
        assert config.instances_dir == tmp_path / "elsewhere"
        assert config.metrics_dir == tmp_path / "metrics"

    def test_from_yaml(self, tmp_path, monkeypatch):
        """Test loading a YAML settings file with env expansion."""
        monkeypatch.setenv("AGG_HOME", str(tmp_path / "agg"))
        settings = tmp_path / "gateway.yaml"
        settings.write_text(
            """
home_dir: ${AGG_HOME}
health_check_interval: 10
log_level: DEBUG
status_port: 39401
"""
        )
        config = GatewayConfig.from_yaml(settings)
        assert config.home_dir == tmp_path / "agg"
        assert config.health_check_interval == 10
        assert config.log_level == "DEBUG"
        assert config.status_port == 39401

    def test_from_yaml_empty(self, tmp_path):
        """Test an empty YAML file yields defaults."""
        settings = tmp_path / "gateway.yaml"
        settings.write_text("")
        assert GatewayConfig.from_yaml(settings).health_check_interval == 30.0

    def test_from_yaml_missing_file(self, tmp_path):
        """Test error on missing config file."""
        with pytest.raises(FileNotFoundError):
            GatewayConfig.from_yaml(tmp_path / "nonexistent.yaml")

    def test_invalid_interval(self):
        """Test non-positive intervals are rejected."""
        with pytest.raises(ValidationError):
            GatewayConfig(health_check_interval=0)


class TestParseFilters:
    """Tests for filter option parsing."""

    def test_no_filters(self):
        """Test None when nothing is given."""
        assert parse_filters(None, None) is None
        assert parse_filters("", " , ") is None

    def test_single_and_multiple_union(self):
        """Test single and comma-separated values are unioned and deduplicated."""
        assert parse_filters("alpha", "beta, alpha ,gamma") == ["alpha", "beta", "gamma"]

    def test_multiple_only(self):
        """Test comma-separated values alone."""
        assert parse_filters(None, "a,b") == ["a", "b"]

    def test_start_options_defaults(self):
        """Test StartOptions has no filters by default."""
        options = StartOptions()
        assert options.model_dump(exclude_none=True) == {}
