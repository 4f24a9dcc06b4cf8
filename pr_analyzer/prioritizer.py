"""Fix prioritization — rank, truncate, and source fixes for a change set."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Optional

from pr_analyzer.config import CREDENTIAL_PATTERN
from pr_analyzer.models import DiffFile, Fix, FixSource, Severity
from pr_analyzer.static_analysis import Finding

logger = logging.getLogger(__name__)

_CREDENTIAL_RE = re.compile(CREDENTIAL_PATTERN, re.IGNORECASE)

# Semgrep severity -> fix severity
_FINDING_SEVERITY = {
    "ERROR": Severity.CRITICAL,
    "WARNING": Severity.WARNING,
    "INFO": Severity.SUGGESTION,
}


def severity_rank(fix: Fix) -> int:
    """critical(0) < warning(1) < suggestion(2)."""
    return fix.severity.rank


def sort_fixes(fixes: Iterable[Fix]) -> list[Fix]:
    """Stable sort by severity rank; equal ranks keep their original order."""
    return sorted(fixes, key=severity_rank)


def prioritize_fixes(fixes: Iterable[Fix], limit: Optional[int] = None) -> list[Fix]:
    """Sort fixes by severity, then keep at most `limit` of them."""
    ordered = sort_fixes(fixes)
    if limit is not None:
        ordered = ordered[:limit]
    return ordered


def fixes_from_findings(findings: Iterable[Finding]) -> list[Fix]:
    """Turn every static-analysis finding into a fix, in finding order."""
    fixes = []
    for finding in findings:
        fixes.append(
            Fix(
                file=finding.path,
                line=finding.line,
                comment=f"{finding.message} (rule: {finding.check_id})",
                severity=_FINDING_SEVERITY.get(finding.severity, Severity.SUGGESTION),
                source=FixSource.STATIC_ANALYSIS,
            )
        )
    return fixes


def _coerce_line(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or None
    return None


def parse_model_fixes(entries: Iterable[object]) -> list[Fix]:
    """Build fixes from parsed backend JSON; entries without file or comment are dropped."""
    fixes = []
    dropped = 0
    for entry in entries:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        file = entry.get("file")
        comment = entry.get("comment")
        if not isinstance(file, str) or not file.strip():
            dropped += 1
            continue
        if not isinstance(comment, str) or not comment.strip():
            dropped += 1
            continue
        fixes.append(
            Fix(
                file=file.strip(),
                comment=comment.strip(),
                line=_coerce_line(entry.get("line")),
                severity=Severity.parse(entry.get("severity")),
                source=FixSource.MODEL,
            )
        )
    if dropped:
        logger.info("Dropped %d malformed fix entries from backend output", dropped)
    return fixes


def credential_fix(diff: str, files: Iterable[DiffFile]) -> Optional[Fix]:
    """Critical fix when the diff mentions password/secret/api-key tokens.

    The fix points at the first changed file whose block contains a match.
    """
    if not diff or not _CREDENTIAL_RE.search(diff):
        return None

    target = "multiple files"
    for f in files:
        if _CREDENTIAL_RE.search(f.diff):
            target = f.path
            break

    return Fix(
        file=target,
        comment=(
            "Potential credentials or sensitive data in code changes. "
            "Move secrets to environment variables or a secrets manager."
        ),
        severity=Severity.CRITICAL,
        source=FixSource.MODEL,
    )
