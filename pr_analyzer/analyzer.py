"""Top-level analysis entry — build the run context, pick a driver, cache the result."""

from __future__ import annotations

import logging
from typing import Optional

from pr_analyzer.arch_docs import arch_docs_exist, load_arch_docs
from pr_analyzer.cache import CacheManager
from pr_analyzer.config import (
    FAST_PATH_MAX_DIFF_CHARS,
    FAST_PATH_MAX_FILES,
    Settings,
    load_settings,
)
from pr_analyzer.context_ranking import ArchDocsContext, build_arch_docs_context
from pr_analyzer.diff_parser import parse_diff
from pr_analyzer.llm import BackendRegistry
from pr_analyzer.models import AnalysisMode, AnalysisResult, DiffFile
from pr_analyzer.providers import default_registry
from pr_analyzer.static_analysis import SemgrepConfig
from pr_analyzer.workflow import AnalysisWorkflow, RunContext, StageCallback

logger = logging.getLogger(__name__)


def use_fast_path(files: list[DiffFile], diff_text: str) -> bool:
    """Small change sets skip the checkpointed driver."""
    return len(files) < FAST_PATH_MAX_FILES or len(diff_text) < FAST_PATH_MAX_DIFF_CHARS


def build_docs_context(
    repo_path: str, title: Optional[str], files: list[DiffFile], diff_text: str
) -> Optional[ArchDocsContext]:
    """Ranked .arch-docs context for the change, or None when the repo has none."""
    if not arch_docs_exist(repo_path):
        return None
    docs = load_arch_docs(repo_path)
    context = build_arch_docs_context(docs, title, files, diff_text)
    logger.info(
        "Arch docs: %d documents, %d relevant sections",
        context.total_docs,
        len(context.relevant_docs),
    )
    logger.debug("%s", context.summary)
    return context


def analyze_diff(
    diff_text: str,
    title: Optional[str] = None,
    *,
    registry: Optional[BackendRegistry] = None,
    settings: Optional[Settings] = None,
    language: Optional[str] = None,
    framework: Optional[str] = None,
    enable_static_analysis: Optional[bool] = None,
    repo_path: str = ".",
    mode: Optional[AnalysisMode] = None,
    semgrep_config: Optional[SemgrepConfig] = None,
    use_arch_docs: bool = True,
    cache: Optional[CacheManager] = None,
    fast_path: Optional[bool] = None,
    on_stage: Optional[StageCallback] = None,
) -> AnalysisResult:
    """Analyze a unified diff end to end.

    Args:
        diff_text: Unified diff with `diff --git` headers.
        title: Optional pull request title, used for keywords and prompts.
        registry: Backend registry; a fresh default registry when omitted.
        settings: Resolved settings; read from the environment when omitted.
        enable_static_analysis: Overrides the settings toggle when given.
        fast_path: Force (True) or forbid (False) the fast path; chosen from
            the change size when None.
        on_stage: Called after each stage of the checkpointed driver.

    Raises:
        ConfigurationError: For invalid settings or an unknown provider.
    """
    settings = settings or load_settings()
    registry = registry or default_registry()
    if enable_static_analysis is None:
        enable_static_analysis = settings.enable_static_analysis

    files = parse_diff(diff_text)
    docs_context = (
        build_docs_context(repo_path, title, files, diff_text) if use_arch_docs else None
    )
    context = RunContext(
        diff=diff_text,
        title=title,
        files=tuple(files),
        token_budget=settings.token_budget,
        max_cost=settings.max_cost,
        mode=mode or AnalysisMode(),
        language=language,
        framework=framework,
        enable_static_analysis=enable_static_analysis,
        arch_docs=docs_context,
        repo_path=repo_path,
        semgrep_config=semgrep_config,
    )

    if cache is None and settings.use_cache:
        cache = CacheManager(repo_path)
    cache_key = None
    if cache is not None:
        cache_key = cache.generate_key(
            {
                "diff": diff_text,
                "title": title,
                "provider": settings.provider,
                "model": settings.model,
                "language": language,
                "framework": framework,
                "static_analysis": context.static_analysis_enabled,
                "arch_docs": [d.filename for d in docs_context.docs] if docs_context else [],
            }
        )
        cached = cache.get(cache_key)
        if cached is not None:
            try:
                result = AnalysisResult.from_dict(cached)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Discarding malformed cache entry: %s", e)
            else:
                logger.info("Analysis served from cache (%s)", cache_key[:12])
                result.reasoning.append("Result served from cache")
                return result

    backend = registry.get(
        settings.provider,
        model=settings.model,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
    )
    workflow = AnalysisWorkflow(backend, settings.provider)

    if fast_path is None:
        fast_path = use_fast_path(files, diff_text)
    logger.info(
        "Analyzing %d files (%d chars) via %s path with %s/%s",
        len(files),
        len(diff_text),
        "fast" if fast_path else "canonical",
        settings.provider,
        backend.model,
    )
    if fast_path:
        result = workflow.execute_fast_path(context)
    else:
        result = workflow.execute(context, on_stage=on_stage)

    logger.info(
        "Analysis complete: %d fixes (%d critical), %d tokens, %dms",
        len(result.fixes),
        result.critical_count,
        result.total_tokens_used,
        result.execution_time,
    )

    if cache is not None and cache_key is not None:
        cache.set(cache_key, result.to_dict())
    return result
