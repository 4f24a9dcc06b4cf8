"""MCP tool definitions for the pull request analyzer."""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from typing import Optional

from fastmcp import Context, FastMCP

from pr_analyzer.analyzer import analyze_diff as _analyze_diff
from pr_analyzer.config import (
    SERVER_NAME,
    SERVER_VERSION,
    SUPPORTED_PROVIDERS,
    Settings,
    load_settings,
)
from pr_analyzer.llm import BackendRegistry
from pr_analyzer.providers import default_registry
from pr_analyzer.static_analysis import is_semgrep_installed
from pr_analyzer.workflow import STAGES

logger = logging.getLogger(__name__)


def _error_response(tool_name: str, error: Exception) -> str:
    """Build a structured JSON error response for MCP tool failures."""
    logger.error("Tool %s failed: %s\n%s", tool_name, error, traceback.format_exc())
    body = {
        "summary": f"Tool '{tool_name}' failed: {error}",
        "fileAnalyses": {},
        "fixes": [],
        "recommendations": [],
        "error": str(error),
    }
    field_name = getattr(error, "field", None)
    if field_name:
        body["field"] = field_name
    return json.dumps(body, indent=2)


def _make_progress_bridge(ctx: Context, loop: asyncio.AbstractEventLoop):
    """Create a sync stage callback that sends MCP log notifications.

    Uses ctx.log (not ctx.report_progress) because log notifications are
    unconditional; they don't require the client to have sent a progressToken.
    """
    call_count = 0

    def on_stage(stage: str, number: int, total: int) -> None:
        nonlocal call_count
        call_count += 1
        try:
            future = asyncio.run_coroutine_threadsafe(
                ctx.log(
                    message=f"[analyze] stage {number}/{total} done: {stage}",
                    level="info",
                    logger_name="pr_analyzer.workflow",
                ),
                loop,
            )
            future.result(timeout=2.0)
        except Exception as e:
            logger.warning("Log notification failed (call #%d): %s", call_count, e)

    return on_stage


def register_tools(
    mcp: FastMCP,
    registry: Optional[BackendRegistry] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Register the analysis tools on the given FastMCP server instance.

    One registry is shared by every call on this server, so each provider's
    client is created once.
    """
    registry = registry or default_registry()

    @mcp.tool()
    async def analyze_diff(
        diff: str,
        ctx: Context,
        title: Optional[str] = None,
        language: Optional[str] = None,
        framework: Optional[str] = None,
        enable_static_analysis: Optional[bool] = None,
        repo_path: str = ".",
    ) -> str:
        """Analyze a pull request diff.

        Produces a summary, per-file analyses, fixes sorted by severity, and
        recommendations. Uses the repository's .arch-docs folder and Semgrep
        when they are available.

        Args:
            diff: The unified diff output (e.g., from `git diff main...HEAD`)
            title: Optional pull request title
            language: Optional primary language, used to pick Semgrep rulesets
            framework: Optional framework (e.g., "django", "react")
            enable_static_analysis: Override the server's static analysis setting
            repo_path: Repository root holding .arch-docs and scanned by Semgrep
        """
        try:
            run_settings = settings or load_settings()
            loop = asyncio.get_running_loop()
            on_stage = _make_progress_bridge(ctx, loop)

            result = await asyncio.to_thread(
                _analyze_diff,
                diff,
                title,
                registry=registry,
                settings=run_settings,
                language=language,
                framework=framework,
                enable_static_analysis=enable_static_analysis,
                repo_path=repo_path,
                on_stage=on_stage,
            )
            return result.to_json()
        except Exception as e:
            return _error_response("analyze_diff", e)

    @mcp.tool()
    def get_capabilities() -> str:
        """Describe the analyzer: providers, stages, and whether Semgrep is installed."""
        return json.dumps(
            {
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "providers": list(SUPPORTED_PROVIDERS),
                "registeredBackends": registry.names(),
                "stages": [name for name, _handler in STAGES],
                "semgrepInstalled": is_semgrep_installed(),
            },
            indent=2,
        )
