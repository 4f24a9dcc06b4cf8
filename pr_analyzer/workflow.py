"""Workflow engine — five fixed stages threaded through an append-only state.

Each stage handler takes the current state and a backend and returns a
StageOutput; `apply_stage_output` merges it into a new state. The canonical
driver records a checkpoint after every stage, the fast path does not.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Optional

from pr_analyzer.config import (
    COMPLEXITY_LINES_PER_POINT,
    DEFAULT_MAX_COST,
    DEFAULT_RECOMMENDATIONS,
    DEFAULT_TOKEN_BUDGET,
    DIFF_SAMPLE_CHARS,
    IMPORTANT_CHANGE_THRESHOLD,
    IMPORTANT_PATH_MARKERS,
    MAX_ANALYZED_FILES,
    MAX_IMPORTANT_FILES,
    MAX_MODEL_FIXES,
    MAX_SUMMARY_KEY_FILES,
)
from pr_analyzer.context_ranking import (
    ArchDocsContext,
    format_arch_docs_for_prompt,
    patterns_guidance,
    quality_guidance,
    security_guidance,
)
from pr_analyzer.cost import estimate_cost
from pr_analyzer.coverage_report import report_coverage
from pr_analyzer.devops_costs import estimate_devops_costs
from pr_analyzer.diff_parser import diff_stats, parse_diff
from pr_analyzer.errors import ConfigurationError, StaticAnalysisError
from pr_analyzer.llm import Backend, BackendResponse
from pr_analyzer.llm_parsing import (
    clamp_complexity,
    parse_file_analyses,
    parse_fix_entries,
    parse_recommendations,
)
from pr_analyzer.models import (
    AnalysisMode,
    AnalysisResult,
    ArchDocsImpact,
    DiffFile,
    FileAnalysis,
    Fix,
    StaticAnalysisReport,
)
from pr_analyzer.prioritizer import (
    credential_fix,
    fixes_from_findings,
    parse_model_fixes,
    prioritize_fixes,
    sort_fixes,
)
from pr_analyzer.prompts import (
    build_file_analysis_prompt,
    build_fixes_prompt,
    build_recommendations_prompt,
    build_summary_prompt,
)
from pr_analyzer.static_analysis import (
    Finding,
    FindingsSummary,
    SemgrepConfig,
    filter_findings_by_changed_files,
    format_finding,
    run_semgrep,
    summarize_findings,
)
from pr_analyzer.suggested_tests import is_code_file, is_test_file, suggest_tests

logger = logging.getLogger(__name__)

# (stage_name, stage_number, total_stages) -> None
StageCallback = Callable[[str, int, int], None]


# ── Run context ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunContext:
    """Inputs for one analysis run. Invalid values raise ConfigurationError."""

    diff: str
    title: Optional[str] = None
    files: Sequence[DiffFile] = ()
    token_budget: int = DEFAULT_TOKEN_BUDGET
    max_cost: float = DEFAULT_MAX_COST
    mode: AnalysisMode = field(default_factory=AnalysisMode)
    language: Optional[str] = None
    framework: Optional[str] = None
    enable_static_analysis: bool = True
    arch_docs: Optional[ArchDocsContext] = None
    repo_path: str = "."
    semgrep_config: Optional[SemgrepConfig] = None

    def __post_init__(self):
        if not isinstance(self.diff, str):
            raise ConfigurationError("diff must be a string", "diff")
        if isinstance(self.token_budget, bool) or not isinstance(self.token_budget, int):
            raise ConfigurationError("token_budget must be an integer", "token_budget")
        if self.token_budget <= 0:
            raise ConfigurationError("token_budget must be positive", "token_budget")
        if self.max_cost < 0:
            raise ConfigurationError("max_cost must not be negative", "max_cost")
        if not self.repo_path:
            raise ConfigurationError("repo_path must not be empty", "repo_path")

    @property
    def static_analysis_enabled(self) -> bool:
        if not self.enable_static_analysis:
            return False
        return self.semgrep_config is None or self.semgrep_config.enabled

    @property
    def arch_docs_available(self) -> bool:
        return self.arch_docs is not None and self.arch_docs.available


# ── State & transitions ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkflowState:
    """Pipeline carrier. Replaced, never mutated, by apply_stage_output."""

    context: RunContext
    iteration: int = 0  # stages applied so far
    files: tuple[DiffFile, ...] = ()
    file_analyses: dict[str, FileAnalysis] = field(default_factory=dict)
    findings: tuple[Finding, ...] = ()
    static_analysis: Optional[FindingsSummary] = None
    fixes: tuple[Fix, ...] = ()
    summary: str = ""
    recommendations: tuple[str, ...] = ()
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    insights: tuple[str, ...] = ()
    reasoning: tuple[str, ...] = ()
    arch_docs_stages: tuple[str, ...] = ()
    arch_docs_insights: tuple[str, ...] = ()

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens


@dataclass
class StageOutput:
    """Partial update from one stage. None means "leave unchanged"."""

    files: Optional[list[DiffFile]] = None
    file_analyses: Optional[dict[str, FileAnalysis]] = None
    findings: Optional[list[Finding]] = None
    static_analysis: Optional[FindingsSummary] = None
    fixes: Optional[list[Fix]] = None
    summary: Optional[str] = None
    recommendations: Optional[list[str]] = None
    input_tokens: int = 0
    output_tokens: int = 0
    insights: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    arch_docs_stages: list[str] = field(default_factory=list)
    arch_docs_insights: list[str] = field(default_factory=list)

    def add_usage(self, response: BackendResponse) -> None:
        if response.usage is not None:
            self.input_tokens += max(0, response.usage.input_tokens)
            self.output_tokens += max(0, response.usage.output_tokens)


def apply_stage_output(state: WorkflowState, output: StageOutput) -> WorkflowState:
    """Merge a stage's output: trails append, token counters add, the rest replace."""
    changes: dict = {
        "iteration": state.iteration + 1,
        "total_input_tokens": state.total_input_tokens + max(0, output.input_tokens),
        "total_output_tokens": state.total_output_tokens + max(0, output.output_tokens),
        "insights": state.insights + tuple(output.insights),
        "reasoning": state.reasoning + tuple(output.reasoning),
        "arch_docs_stages": state.arch_docs_stages + tuple(output.arch_docs_stages),
        "arch_docs_insights": state.arch_docs_insights + tuple(output.arch_docs_insights),
    }
    if output.files is not None:
        changes["files"] = tuple(output.files)
    if output.file_analyses is not None:
        changes["file_analyses"] = dict(output.file_analyses)
    if output.findings is not None:
        changes["findings"] = tuple(output.findings)
    if output.static_analysis is not None:
        changes["static_analysis"] = output.static_analysis
    if output.fixes is not None:
        changes["fixes"] = tuple(output.fixes)
    if output.summary is not None:
        changes["summary"] = output.summary
    if output.recommendations is not None:
        changes["recommendations"] = tuple(output.recommendations)
    return replace(state, **changes)


# ── Stage: analyze_files ─────────────────────────────────────────────────────


def default_complexity(f: DiffFile) -> int:
    return clamp_complexity(f.total_changes // COMPLEXITY_LINES_PER_POINT + 1)


def default_file_analysis(f: DiffFile) -> FileAnalysis:
    return FileAnalysis(
        path=f.path,
        summary=f"{f.status.label}: +{f.additions} -{f.deletions}",
        complexity=default_complexity(f),
        additions=f.additions,
        deletions=f.deletions,
    )


def is_important(f: DiffFile) -> bool:
    if f.total_changes > IMPORTANT_CHANGE_THRESHOLD:
        return True
    return any(marker in f.path for marker in IMPORTANT_PATH_MARKERS)


def analyze_files(state: WorkflowState, backend: Backend) -> StageOutput:
    """Default analysis for up to 15 files, deep analysis for up to 5 important ones."""
    ctx = state.context
    files = list(ctx.files) if ctx.files else parse_diff(ctx.diff)
    analyzed = files[:MAX_ANALYZED_FILES]

    analyses = {f.path: default_file_analysis(f) for f in analyzed}
    out = StageOutput(files=files, file_analyses=analyses)
    out.reasoning.append(
        f"Parsed {len(files)} changed files; analyzing {len(analyses)}"
    )

    important = [f for f in analyzed if is_important(f)][:MAX_IMPORTANT_FILES]
    if not important:
        return out

    arch_context = format_arch_docs_for_prompt(ctx.arch_docs)
    prompt = build_file_analysis_prompt(important, arch_context)
    try:
        response = backend.invoke(prompt, tool="analyze_files")
    except RuntimeError as e:
        logger.warning("File analysis call failed: %s", e)
        out.insights.append(f"Detailed file analysis unavailable ({e}); kept default analyses")
        return out

    out.add_usage(response)
    try:
        deep = parse_file_analyses(response.text, analyses)
    except (ValueError, TypeError) as e:
        logger.warning("File analysis response unparseable: %s", e)
        out.insights.append("Detailed file analysis was malformed; kept default analyses")
        return out

    analyses.update(deep)
    out.reasoning.append(f"Detailed analysis applied to {len(deep)} important files")
    if arch_context and deep:
        out.arch_docs_stages.append("file-analysis")
        out.arch_docs_insights.append(
            f"Analyzed {len(deep)} files against repository architecture documentation"
        )
    return out


# ── Stage: run_static_analysis ───────────────────────────────────────────────


def run_static_analysis(state: WorkflowState, backend: Backend) -> StageOutput:
    """Scan the repository and keep findings for changed files only."""
    ctx = state.context
    if not ctx.static_analysis_enabled:
        return StageOutput(reasoning=["Static analysis disabled for this run"])

    try:
        result = run_semgrep(
            ctx.repo_path, ctx.semgrep_config, ctx.language, ctx.framework
        )
    except (StaticAnalysisError, OSError) as e:
        logger.warning("Static analysis failed: %s", e)
        return StageOutput(
            findings=[],
            static_analysis=FindingsSummary(),
            insights=[f"Static analysis failed ({e}); continuing without findings"],
        )

    out = StageOutput()
    if result.not_installed:
        out.insights.append("Semgrep is not installed; static analysis skipped")
    elif result.failed:
        messages = "; ".join(
            e.get("message", "unknown error") for e in result.errors if e.get("level") == "error"
        )
        out.insights.append(f"Static analysis reported errors: {messages}")

    findings = filter_findings_by_changed_files(
        result.findings, [f.path for f in state.files]
    )
    summary = summarize_findings(findings)
    out.findings = findings
    out.static_analysis = summary
    out.reasoning.append(
        f"Static analysis: {summary.total_findings} findings in changed files "
        f"({summary.error_count} errors, {summary.warning_count} warnings)"
    )
    return out


# ── Stage: generate_fixes ────────────────────────────────────────────────────


def generate_fixes(state: WorkflowState, backend: Backend) -> StageOutput:
    """Fixes from static findings when there are any, otherwise from the backend."""
    ctx = state.context

    if state.findings:
        fixes = sort_fixes(fixes_from_findings(state.findings))
        return StageOutput(
            fixes=fixes,
            reasoning=[f"Generated {len(fixes)} fixes from static analysis findings"],
        )

    if not state.files:
        return StageOutput(fixes=[], reasoning=["No changed files; no fixes generated"])

    out = StageOutput()
    arch_context = format_arch_docs_for_prompt(ctx.arch_docs)
    security_context = security_guidance(ctx.arch_docs)
    prompt = build_fixes_prompt(
        ctx.title,
        list(state.files),
        ctx.diff[:DIFF_SAMPLE_CHARS],
        arch_context,
        security_context,
    )

    fixes: list[Fix] = []
    try:
        response = backend.invoke(prompt, tool="generate_fixes")
    except RuntimeError as e:
        logger.warning("Fix generation call failed: %s", e)
        out.insights.append(f"Model fix generation unavailable ({e})")
    else:
        out.add_usage(response)
        try:
            fixes = parse_model_fixes(parse_fix_entries(response.text))
        except (ValueError, TypeError) as e:
            logger.warning("Fix response unparseable: %s", e)
            out.insights.append("Model fix output was malformed; no model fixes used")
        else:
            if arch_context or security_context:
                out.arch_docs_stages.append("risk-detection")
                out.arch_docs_insights.append(
                    "Checked changes against documented security and design guidelines"
                )

    fixes = prioritize_fixes(fixes, MAX_MODEL_FIXES)
    flagged = credential_fix(ctx.diff, state.files)
    if flagged is not None:
        fixes.append(flagged)
        fixes = sort_fixes(fixes)
        out.reasoning.append("Credential keywords found in diff; added a critical fix")

    out.fixes = fixes
    out.reasoning.append(f"Generated {len(fixes)} fixes from model review")
    return out


# ── Stage: generate_summary ──────────────────────────────────────────────────


def fallback_summary(
    file_count: int,
    additions: int,
    deletions: int,
    fix_count: int,
    title: Optional[str],
) -> str:
    """Deterministic summary built from aggregate counts only."""
    noun = "file" if file_count == 1 else "files"
    text = f"{file_count} {noun} changed (+{additions}/-{deletions}). {fix_count} fixes identified."
    if title:
        text += f" Title: {title}"
    return text


def generate_summary(state: WorkflowState, backend: Backend) -> StageOutput:
    """Backend summary of the change, or the deterministic template."""
    ctx = state.context
    stats = diff_stats(list(state.files))
    fallback = fallback_summary(
        stats["files_changed"],
        stats["lines_added"],
        stats["lines_removed"],
        len(state.fixes),
        ctx.title,
    )

    if not state.files:
        return StageOutput(summary=fallback, reasoning=["No changes to summarize"])

    key_files = sorted(
        state.file_analyses.values(),
        key=lambda fa: fa.additions + fa.deletions,
        reverse=True,
    )[:MAX_SUMMARY_KEY_FILES]
    patterns = patterns_guidance(ctx.arch_docs)
    prompt = build_summary_prompt(ctx.title, stats, key_files, len(state.fixes), patterns)

    out = StageOutput()
    try:
        response = backend.invoke(prompt, tool="generate_summary")
    except RuntimeError as e:
        logger.warning("Summary call failed: %s", e)
        out.summary = fallback
        out.insights.append(f"Summary generation failed ({e}); used statistical summary")
        return out

    out.add_usage(response)
    text = response.text.strip()
    if not text:
        out.summary = fallback
        out.insights.append("Summary generation returned no text; used statistical summary")
        return out

    out.summary = text
    if patterns:
        out.arch_docs_stages.append("summary-generation")
        out.arch_docs_insights.append(
            "Summary aligned with repository architecture and established patterns"
        )
    return out


# ── Stage: finalize ──────────────────────────────────────────────────────────


def finalize(state: WorkflowState, backend: Backend) -> StageOutput:
    """Recommendations from the backend, list-line fallback, then the defaults."""
    ctx = state.context
    if not state.files:
        return StageOutput(
            recommendations=list(DEFAULT_RECOMMENDATIONS),
            reasoning=["No changes; default recommendations used"],
        )

    quality = quality_guidance(ctx.arch_docs)
    prompt = build_recommendations_prompt(
        state.summary, list(state.fixes), len(state.files), quality
    )

    out = StageOutput()
    recommendations: list[str] = []
    try:
        response = backend.invoke(prompt, tool="finalize")
    except RuntimeError as e:
        logger.warning("Recommendations call failed: %s", e)
        out.insights.append(f"Recommendation generation failed ({e})")
    else:
        out.add_usage(response)
        recommendations = parse_recommendations(response.text)[:5]

    if not recommendations:
        recommendations = list(DEFAULT_RECOMMENDATIONS)
        out.reasoning.append("Default recommendations used")
    elif quality:
        out.arch_docs_stages.append("refinement")
        out.arch_docs_insights.append(
            "Recommendations aligned with repository quality standards"
        )

    out.recommendations = recommendations
    return out


STAGES: tuple[tuple[str, Callable[[WorkflowState, Backend], StageOutput]], ...] = (
    ("analyze_files", analyze_files),
    ("run_static_analysis", run_static_analysis),
    ("generate_fixes", generate_fixes),
    ("generate_summary", generate_summary),
    ("finalize", finalize),
)


# ── Drivers ──────────────────────────────────────────────────────────────────


class AnalysisWorkflow:
    """Runs the five stages against one backend and builds the result."""

    def __init__(self, backend: Backend, provider: Optional[str] = None, model: Optional[str] = None):
        self.backend = backend
        self.provider = provider or getattr(backend, "provider", "unknown")
        self.model = model or getattr(backend, "model", "unknown")
        self.checkpoints: list[tuple[str, WorkflowState]] = []

    def execute(
        self, context: RunContext, on_stage: Optional[StageCallback] = None
    ) -> AnalysisResult:
        """Canonical driver: checkpoint after every stage and report progress."""
        start = time.monotonic()
        self.checkpoints = []
        logger.info("Canonical driver: %d files", len(context.files))
        state = WorkflowState(context=context)
        self.checkpoints.append(("start", state))

        total = len(STAGES)
        for number, (name, handler) in enumerate(STAGES, 1):
            logger.info("Stage %d/%d: %s", number, total, name)
            state = apply_stage_output(state, handler(state, self.backend))
            self.checkpoints.append((name, state))
            if on_stage:
                try:
                    on_stage(name, number, total)
                except Exception as cb_err:
                    logger.warning("on_stage callback raised: %s", cb_err)

        return self._build_result(state, start)

    def execute_fast_path(self, context: RunContext) -> AnalysisResult:
        """Same handlers in the same order, without checkpoints or callbacks.

        The result matches `execute` apart from `execution_time`.
        """
        start = time.monotonic()
        logger.info("Fast path driver: %d files", len(context.files))
        state = WorkflowState(context=context)
        for _name, handler in STAGES:
            state = apply_stage_output(state, handler(state, self.backend))
        return self._build_result(state, start)

    def _build_result(self, state: WorkflowState, start: float) -> AnalysisResult:
        ctx = state.context
        insights = list(state.insights)

        cost = estimate_cost(self.model, state.total_input_tokens, state.total_output_tokens)
        if state.total_tokens > ctx.token_budget:
            insights.append(
                f"Token usage {state.total_tokens} exceeded the budget of {ctx.token_budget}"
            )
        if cost > ctx.max_cost:
            insights.append(
                f"Estimated cost ${cost:.4f} exceeded the limit of ${ctx.max_cost:.2f}"
            )

        static_report = None
        if ctx.static_analysis_enabled:
            summary = state.static_analysis or FindingsSummary()
            static_report = StaticAnalysisReport(
                enabled=True,
                total_findings=summary.total_findings,
                error_count=summary.error_count,
                warning_count=summary.warning_count,
                critical_issues=[format_finding(f) for f in summary.critical_findings],
            )

        arch_impact = None
        if ctx.arch_docs_available:
            stages = list(dict.fromkeys(state.arch_docs_stages))
            arch_impact = ArchDocsImpact(
                used=bool(stages),
                docs_available=ctx.arch_docs.total_docs,
                sections_used=len(ctx.arch_docs.relevant_docs),
                influenced_stages=stages,
                key_insights=list(state.arch_docs_insights),
            )

        files = list(state.files)
        test_suggestions = suggest_tests(files, ctx.repo_path)
        devops_costs = estimate_devops_costs(files)
        coverage = None
        if any(is_code_file(f.path) or is_test_file(f.path) for f in files):
            coverage = report_coverage(ctx.repo_path)

        return AnalysisResult(
            summary=state.summary,
            file_analyses=dict(state.file_analyses),
            fixes=list(state.fixes),
            recommendations=list(state.recommendations),
            insights=insights,
            reasoning=list(state.reasoning),
            total_tokens_used=state.total_tokens,
            execution_time=int((time.monotonic() - start) * 1000),
            provider=self.provider,
            model=self.model,
            mode=ctx.mode,
            estimated_cost=cost,
            arch_docs_impact=arch_impact,
            static_analysis=static_report,
            test_suggestions=test_suggestions or None,
            devops_cost_estimates=devops_costs or None,
            coverage_report=coverage,
        )
