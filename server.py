"""FastMCP entry point for the pull request analyzer."""

from __future__ import annotations

import logging
from typing import Optional

from fastmcp import FastMCP

from pr_analyzer.config import (
    SERVER_HOST,
    SERVER_NAME,
    SERVER_PORT,
    SERVER_VERSION,
    Settings,
    load_settings,
)
from pr_analyzer.errors import ConfigurationError
from pr_analyzer.llm import BackendRegistry
from pr_analyzer.mcp_tools import register_tools
from pr_analyzer.providers import default_registry

# ── Logging ──────────────────────────────────────────────────────────────────
# pr_analyzer.* loggers report stage progress, backend usage and degraded
# stages on stderr; SDK transport chatter stays at WARNING.

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
    datefmt="%H:%M:%S",
)
for _sdk in ("botocore", "boto3", "urllib3", "httpx", "anthropic", "openai"):
    logging.getLogger(_sdk).setLevel(logging.WARNING)

logger = logging.getLogger("pr_analyzer.server")


def create_server(
    registry: Optional[BackendRegistry] = None,
    settings: Optional[Settings] = None,
) -> FastMCP:
    """Build the MCP server. Without settings, each call reads the environment."""
    mcp = FastMCP(name=SERVER_NAME, version=SERVER_VERSION)
    register_tools(mcp, registry=registry or default_registry(), settings=settings)
    return mcp


# Module-level instance for the FastMCP CLI and stdio transport
mcp = create_server()


def main() -> None:
    """Validate settings, then serve over streamable HTTP."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logger.error("Invalid configuration (%s): %s", e.field, e)
        raise SystemExit(2) from e

    server = create_server(settings=settings)
    logger.info(
        "Starting %s v%s on %s:%d (provider=%s model=%s static_analysis=%s)",
        SERVER_NAME,
        SERVER_VERSION,
        SERVER_HOST,
        SERVER_PORT,
        settings.provider,
        settings.model,
        settings.enable_static_analysis,
    )
    try:
        server.run(transport="streamable-http", host=SERVER_HOST, port=SERVER_PORT)
    except OSError as e:
        logger.error("Server failed to start: %s", e)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
