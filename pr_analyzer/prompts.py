"""Stage prompts and message builders for each backend-calling workflow stage."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from pr_analyzer.config import DIFF_PREVIEW_CHARS
from pr_analyzer.models import DiffFile, FileAnalysis, Fix

_JSON_ONLY = "Respond ONLY with valid JSON. No markdown, no commentary outside the JSON structure."


def _file_list(files: Iterable[DiffFile]) -> str:
    return "\n".join(f"- {f.path} (+{f.additions}/-{f.deletions})" for f in files)


def _with_docs(parts: list[str], docs_block: str) -> None:
    if docs_block:
        parts.append(docs_block)


# ── analyze_files ────────────────────────────────────────────────────────────

FILE_ANALYSIS_FORMAT = """{
  "path/to/file": {
    "summary": "What changed in this file and why it matters",
    "risks": ["specific risk", "..."],
    "complexity": 1,
    "recommendations": ["specific recommendation", "..."]
  }
}"""


def build_file_analysis_prompt(files: list[DiffFile], arch_context: str = "") -> str:
    """Ask for a deep analysis of each important file, keyed by path."""
    parts = [
        "Analyze these files from a pull request. For EACH file, provide a "
        "detailed analysis considering the repository's architecture standards.\n",
    ]
    _with_docs(parts, arch_context)

    parts.append("## Files to analyze\n")
    blocks = []
    for f in files:
        blocks.append(
            "\n".join(
                [
                    f"File: {f.path}",
                    f"Status: {f.status.label}",
                    f"Changes: +{f.additions} -{f.deletions}",
                    "Diff preview:",
                    f"```\n{f.diff[:DIFF_PREVIEW_CHARS]}\n```",
                ]
            )
        )
    parts.append("\n---\n".join(blocks))

    if arch_context:
        parts.append(
            "\nFor each file, reference the architecture documentation sections "
            "above that apply, and say whether the change follows or diverges "
            "from the documented patterns."
        )

    parts.append(
        "\nComplexity is an integer from 1 (trivial) to 5 (very complex).\n"
        "Respond with a JSON object mapping file paths to analysis objects:\n"
        f"{FILE_ANALYSIS_FORMAT}\n\n{_JSON_ONLY}"
    )
    return "\n".join(parts)


# ── generate_fixes ───────────────────────────────────────────────────────────

RISK_TAXONOMY = (
    ("Security", "exposed credentials, injection, authentication and authorization flaws"),
    ("Critical bugs", "logic errors, null handling, race conditions, data loss"),
    ("Breaking changes", "API or schema changes, removed behavior, incompatible config"),
    ("Code quality", "missing error handling, untested logic, excessive complexity"),
    ("Performance", "inefficient algorithms, N+1 queries, unbounded memory growth"),
)

FIXES_FORMAT = """[
  {
    "file": "path/to/file",
    "line": 42,
    "comment": "What is wrong and how to fix it",
    "severity": "critical|warning|suggestion"
  }
]"""


def build_fixes_prompt(
    title: Optional[str],
    files: list[DiffFile],
    diff_sample: str,
    arch_context: str = "",
    security_context: str = "",
) -> str:
    """Ask for concrete fixes across the fixed risk taxonomy."""
    parts = [
        "You are a security and code quality expert reviewing a pull request.",
        "Identify SPECIFIC problems in these categories:",
    ]
    for i, (name, detail) in enumerate(RISK_TAXONOMY, 1):
        parts.append(f"{i}. **{name}**: {detail}")
    parts.append("")

    _with_docs(parts, arch_context)
    if security_context:
        parts.append(f"## Repository Security Guidelines\n\n{security_context}\n")

    parts.extend(
        [
            f"PR Title: {title or 'No title provided'}\n",
            f"Files changed:\n{_file_list(files)}\n",
            f"Diff sample:\n```diff\n{diff_sample}\n```\n",
            "Severity meanings:",
            "- critical: must fix before merge (security hole, correctness bug, data loss)",
            "- warning: should fix (reliability, maintainability, risky edge case)",
            "- suggestion: worth considering (style, naming, minor improvement)\n",
            "Respond with a JSON array of fix objects. `file` and `comment` are "
            "required; `line` is the line number in the new file when known.",
            FIXES_FORMAT,
            "\nOnly include problems actually present in the diff. "
            "If there are none, return an empty array [].",
            _JSON_ONLY,
        ]
    )
    return "\n".join(parts)


# ── generate_summary ─────────────────────────────────────────────────────────


_STATUS_KEYS = (("New", "new_files"), ("Deleted", "deleted_files"), ("Renamed", "renamed_files"))


def build_summary_prompt(
    title: Optional[str],
    stats: dict,
    key_files: list[FileAnalysis],
    fix_count: int,
    patterns_context: str = "",
) -> str:
    """Ask for a short purpose-and-impact summary of the whole change."""
    parts = [
        "You are summarizing a pull request for its reviewers. In 2-3 sentences, "
        "explain what the change is trying to accomplish and which parts of the "
        "system it affects.\n",
        f"PR Title: {title or 'No title provided'}\n",
        "Statistics:",
        f"- Files changed: {stats['files_changed']}",
        f"- Lines added: {stats['lines_added']}",
        f"- Lines deleted: {stats['lines_removed']}",
        f"- Fixes identified: {fix_count}\n",
    ]
    status_lines = [
        f"{label} files: {', '.join(stats[key])}"
        for label, key in _STATUS_KEYS
        if stats[key]
    ]
    if status_lines:
        parts.extend(status_lines + [""])
    if key_files:
        parts.append("Key files:")
        for fa in key_files:
            parts.append(
                f"- {fa.path} (+{fa.additions}/-{fa.deletions}, "
                f"complexity {fa.complexity}/5): {fa.summary}"
            )
        parts.append("")
    if patterns_context:
        parts.append(
            f"## Design Patterns from Repository Documentation\n\n{patterns_context}\n"
        )
        parts.append(
            "Mention where the change follows or departs from these patterns.\n"
        )
    parts.append("Respond with the summary text only.")
    return "\n".join(parts)


# ── finalize ─────────────────────────────────────────────────────────────────


def build_recommendations_prompt(
    summary: str,
    fixes: list[Fix],
    file_count: int,
    quality_context: str = "",
) -> str:
    """Ask for 3-5 actionable recommendations as a JSON array of strings."""
    parts = [
        "Based on this pull request analysis, give specific, actionable "
        "recommendations for the author and reviewers.\n",
    ]
    _with_docs(parts, quality_context)
    parts.append(f"PR Summary:\n{summary}\n")
    parts.append(f"Files changed: {file_count}\n")
    if fixes:
        parts.append("Fixes identified:")
        for fix in fixes:
            parts.append(f"- [{fix.severity}] {fix.file}: {fix.comment}")
        parts.append("")
    parts.append(
        "Consider code organization, testing, documentation, performance, "
        "security, and how the change should be reviewed."
    )
    if quality_context:
        parts.append("Keep recommendations aligned with the repository standards above.")
    parts.append(
        '\nProvide a JSON array of 3-5 recommendations:\n["recommendation 1", "recommendation 2", ...]'
    )
    return "\n".join(parts)
