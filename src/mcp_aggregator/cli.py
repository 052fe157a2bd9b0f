"""
Command-line interface for MCP Aggregator.

Usage:
    mcp-aggregator
    mcp-aggregator --servers search,fetch --tool query
    mcp-aggregator --group research --settings gateway.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from mcp_aggregator.config import GatewayConfig, StartOptions
from mcp_aggregator.gateway import Gateway
from mcp_aggregator.version import __version__


def setup_logging(level: str) -> None:
    """Configure logging for the application.

    Logs go to stderr; stdout carries the MCP protocol.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="mcp-aggregator",
        description="MCP Aggregator - many MCP backends behind one stdio endpoint",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve every enabled backend from ~/.mcp-aggregator/config.json
  mcp-aggregator

  # Only two backends, and only one of their tools
  mcp-aggregator --servers search,fetch --tool query

  # All backends in a toolbox
  mcp-aggregator --group research

Gateway settings file format (YAML):
  home_dir: ~/.mcp-aggregator
  health_check_interval: 30
  log_level: INFO
  status_port: 39401
""",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-s", "--settings", type=Path, help="Path to YAML gateway settings")
    parser.add_argument("--server", help="Only connect this backend")
    parser.add_argument("--servers", help="Comma-separated backends to connect")
    parser.add_argument("--tool", help="Only expose this tool")
    parser.add_argument("--tools", help="Comma-separated tools to expose")
    parser.add_argument("--group", help="Connect the backends of this toolbox")
    parser.add_argument("--groups", help="Comma-separated toolboxes to connect")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--status-port", type=int, default=None, help="Serve /health on this port")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.settings:
        if not args.settings.exists():
            print(f"Error: Settings file not found: {args.settings}", file=sys.stderr)
            return 1
        config = GatewayConfig.from_yaml(args.settings)
    else:
        config = GatewayConfig()

    if args.log_level is not None:
        config = config.model_copy(update={"log_level": args.log_level})
    if args.status_port is not None:
        config = config.model_copy(update={"status_port": args.status_port})

    setup_logging(config.log_level)

    options = StartOptions(
        server=args.server,
        servers=args.servers,
        tool=args.tool,
        tools=args.tools,
        group=args.group,
        groups=args.groups,
    )
    gateway = Gateway(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        exit_code = loop.run_until_complete(gateway.run(options))
    except KeyboardInterrupt:
        exit_code = loop.run_until_complete(gateway.stop())

    if gateway.upstream_pending:
        # The stdin reader thread cannot be cancelled; do not wait for it
        logging.shutdown()
        os._exit(exit_code)

    loop.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
