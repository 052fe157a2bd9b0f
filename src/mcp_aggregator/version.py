"""Version information for MCP Aggregator."""

__version__ = "1.0.0"
