"""Static analysis — run Semgrep over the repository and summarize findings."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from pr_analyzer.config import (
    SEMGREP_BASE_RULESETS,
    SEMGREP_BINARY,
    SEMGREP_DEFAULT_EXCLUDES,
    SEMGREP_FRAMEWORK_RULESETS,
    SEMGREP_LANGUAGE_RULESETS,
    SEMGREP_MAX_TARGET_BYTES,
    SEMGREP_PROCESS_GRACE_SECONDS,
    SEMGREP_TIMEOUT_SECONDS,
)
from pr_analyzer.errors import StaticAnalysisError

logger = logging.getLogger(__name__)


@dataclass
class SemgrepConfig:
    """Scanner invocation settings."""

    enabled: bool = True
    rulesets: Optional[list[str]] = None
    exclude_paths: Optional[list[str]] = None
    timeout: int = SEMGREP_TIMEOUT_SECONDS  # seconds, per rule
    max_file_size: int = SEMGREP_MAX_TARGET_BYTES  # bytes


@dataclass(frozen=True)
class Finding:
    """A single Semgrep result."""

    check_id: str
    path: str
    line: Optional[int]
    message: str
    severity: str  # ERROR | WARNING | INFO
    category: str = "unknown"

    @classmethod
    def from_dict(cls, raw: dict) -> "Finding":
        extra = raw.get("extra") or {}
        metadata = extra.get("metadata") or {}
        severity = str(extra.get("severity", "INFO")).upper()
        if severity not in ("ERROR", "WARNING", "INFO"):
            severity = "INFO"
        return cls(
            check_id=raw.get("check_id", "unknown"),
            path=raw.get("path", ""),
            line=(raw.get("start") or {}).get("line"),
            message=extra.get("message") or raw.get("check_id", ""),
            severity=severity,
            category=metadata.get("category") or "unknown",
        )


@dataclass
class SemgrepResult:
    """Parsed scanner output. `errors` carries scanner and adapter problems."""

    findings: list[Finding] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    version: Optional[str] = None

    @property
    def not_installed(self) -> bool:
        return any(e.get("type") == "semgrep_not_installed" for e in self.errors)

    @property
    def failed(self) -> bool:
        return any(e.get("level") == "error" for e in self.errors)


@dataclass
class FindingsSummary:
    """Counts per severity and the ERROR-level subset."""

    total_findings: int = 0
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    categories_affected: list[str] = field(default_factory=list)
    files_with_issues: list[str] = field(default_factory=list)
    critical_findings: list[Finding] = field(default_factory=list)


# ── Availability & rulesets ──────────────────────────────────────────────────


def is_semgrep_installed() -> bool:
    """Check whether the scanner executable is on PATH."""
    return shutil.which(SEMGREP_BINARY) is not None


def get_rulesets(language: Optional[str] = None, framework: Optional[str] = None) -> list[str]:
    """Merge the security baseline with language and framework rulesets."""
    rulesets: dict[str, None] = dict.fromkeys(SEMGREP_BASE_RULESETS)

    if language:
        for ruleset in SEMGREP_LANGUAGE_RULESETS.get(language.lower(), []):
            rulesets.setdefault(ruleset, None)

    if framework:
        fw = framework.lower()
        for marker, ruleset in SEMGREP_FRAMEWORK_RULESETS:
            if marker in fw:
                rulesets.setdefault(ruleset, None)
                break

    return list(rulesets)


def build_command(
    target_path: str,
    config: SemgrepConfig,
    language: Optional[str] = None,
    framework: Optional[str] = None,
) -> list[str]:
    """Build the scanner argv for a target directory."""
    cmd = [SEMGREP_BINARY]
    for ruleset in config.rulesets or get_rulesets(language, framework):
        cmd.extend(["--config", ruleset])
    for pattern in config.exclude_paths or SEMGREP_DEFAULT_EXCLUDES:
        cmd.extend(["--exclude", pattern])
    cmd.extend(
        [
            "--timeout",
            str(config.timeout),
            "--max-target-bytes",
            str(config.max_file_size),
            "--json",
            "--quiet",
            target_path,
        ]
    )
    return cmd


# ── Execution ────────────────────────────────────────────────────────────────


def _parse_output(stdout: str) -> Optional[SemgrepResult]:
    """Parse scanner JSON; None when stdout holds no usable document."""
    if not stdout or not stdout.strip():
        return None
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    findings = []
    for raw in data.get("results", []):
        if isinstance(raw, dict):
            findings.append(Finding.from_dict(raw))
    errors = [e for e in data.get("errors", []) if isinstance(e, dict)]
    return SemgrepResult(findings=findings, errors=errors, version=data.get("version"))


def run_semgrep(
    target_path: str,
    config: Optional[SemgrepConfig] = None,
    language: Optional[str] = None,
    framework: Optional[str] = None,
) -> SemgrepResult:
    """Run the scanner over target_path.

    An absent scanner, a timeout and an OS-level launch failure are reported
    as entries in `errors`. A non-zero exit status alone is not a failure,
    since the scanner exits non-zero when it finds issues.

    Raises:
        StaticAnalysisError: If the scanner ran but its output is not a
            Semgrep JSON report.
    """
    config = config or SemgrepConfig()

    if not is_semgrep_installed():
        logger.warning(
            "Semgrep is not installed. Skipping static analysis. "
            "Install: https://semgrep.dev/docs/getting-started/"
        )
        return SemgrepResult(
            errors=[
                {
                    "level": "warning",
                    "type": "semgrep_not_installed",
                    "message": "Semgrep is not installed on this system",
                }
            ]
        )

    cmd = build_command(target_path, config, language, framework)
    logger.info("Running Semgrep static analysis: %d rulesets", cmd.count("--config"))

    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=config.timeout + SEMGREP_PROCESS_GRACE_SECONDS,
        )
    except subprocess.TimeoutExpired as e:
        logger.error("Semgrep timed out after %ss", e.timeout)
        return SemgrepResult(
            errors=[
                {
                    "level": "error",
                    "type": "execution_error",
                    "message": f"Semgrep timed out after {e.timeout}s",
                }
            ]
        )
    except OSError as e:
        logger.error("Semgrep execution error: %s", e)
        return SemgrepResult(
            errors=[{"level": "error", "type": "execution_error", "message": str(e)}]
        )

    if proc.stderr:
        logger.debug("Semgrep stderr: %s", proc.stderr.strip()[:2000])

    parsed = _parse_output(proc.stdout)
    if parsed is not None:
        if proc.returncode != 0:
            logger.info(
                "Semgrep exited %d with %d findings", proc.returncode, len(parsed.findings)
            )
        return parsed

    message = (proc.stderr or "").strip()[:500] or f"exit status {proc.returncode}"
    logger.error("Semgrep produced no parseable output: %s", message)
    raise StaticAnalysisError(f"Semgrep produced no parseable output: {message}")


# ── Post-processing ──────────────────────────────────────────────────────────


def filter_findings_by_changed_files(
    findings: Iterable[Finding], changed_files: Iterable[str]
) -> list[Finding]:
    """Keep findings whose path matches a changed file.

    A match is an exact normalized path, or either path containing the other,
    so that absolute scanner paths still line up with repo-relative diff paths.
    """
    changed = [os.path.normpath(p) for p in changed_files if p]
    changed_set = set(changed)

    kept = []
    for finding in findings:
        if not finding.path:
            continue
        path = os.path.normpath(finding.path)
        if path in changed_set or any(path in cf or cf in path for cf in changed):
            kept.append(finding)
    return kept


def summarize_findings(findings: Iterable[Finding]) -> FindingsSummary:
    """Count findings per severity; ERROR findings form the critical subset."""
    summary = FindingsSummary()
    categories: dict[str, None] = {}
    files: dict[str, None] = {}

    for finding in findings:
        summary.total_findings += 1
        if finding.severity == "ERROR":
            summary.error_count += 1
            summary.critical_findings.append(finding)
        elif finding.severity == "WARNING":
            summary.warning_count += 1
        else:
            summary.info_count += 1
        categories.setdefault(finding.category, None)
        files.setdefault(finding.path, None)

    summary.categories_affected = list(categories)
    summary.files_with_issues = list(files)
    return summary


def format_finding(finding: Finding) -> str:
    """One-line description used in reports and critical-issue lists."""
    location = f"{finding.path}:{finding.line}" if finding.line else finding.path
    return f"[{finding.severity}] {finding.message} ({location}, rule {finding.check_id})"
