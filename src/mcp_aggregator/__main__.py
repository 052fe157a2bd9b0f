"""Allow ``python -m mcp_aggregator``."""

import sys

from mcp_aggregator.cli import main

sys.exit(main())
