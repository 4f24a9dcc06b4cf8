"""Coverage reports — read the repository's existing coverage output when a tool is configured."""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional

from pr_analyzer.config import COVERAGE_REPORT_PATHS, MAX_COVERAGE_FILES
from pr_analyzer.models import CoverageReport, FileCoverage
from pr_analyzer.repo_config import package_dependencies, package_json, read_repo_file

logger = logging.getLogger(__name__)

# package.json dependency -> coverage tool, checked in order
_NODE_COVERAGE_DEPS = (
    ("jest", "jest"),
    ("nyc", "nyc"),
    ("istanbul", "nyc"),
    ("vitest", "vitest"),
    ("c8", "c8"),
)


def detect_coverage_tool(repo_path: str | Path = ".") -> Optional[str]:
    """Name of the configured coverage tool, or None when coverage is not set up."""
    manifest = package_json(repo_path)
    jest_config = manifest.get("jest")
    if isinstance(jest_config, dict) and (
        jest_config.get("collectCoverage") or jest_config.get("coverageDirectory")
    ):
        return "jest"

    scripts = manifest.get("scripts")
    if isinstance(scripts, dict) and any(
        isinstance(s, str) and ("--coverage" in s or "nyc" in s) for s in scripts.values()
    ):
        deps = package_dependencies(manifest)
        return next((tool for dep, tool in _NODE_COVERAGE_DEPS if dep in deps), "node")

    for name in ("jest.config.js", "jest.config.ts"):
        text = read_repo_file(repo_path, name)
        if text is None:
            continue
        if "collectCoverage" in text or "coverageDirectory" in text:
            return "jest"
        break

    setup_cfg = read_repo_file(repo_path, "setup.cfg")
    if setup_cfg and "coverage" in setup_cfg:
        return "pytest-cov"
    pyproject = read_repo_file(repo_path, "pyproject.toml")
    if pyproject and ("[tool.coverage" in pyproject or "pytest-cov" in pyproject):
        return "pytest-cov"
    return None


# ── Report parsers ───────────────────────────────────────────────────────────


def parse_coverage_summary(text: str) -> Optional[CoverageReport]:
    """Istanbul coverage-summary.json (jest, nyc, vitest)."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    total = data.get("total") if isinstance(data, dict) else None
    if not isinstance(total, dict):
        return None

    def pct(entry: dict, key: str) -> Optional[float]:
        value = entry.get(key)
        return value.get("pct") if isinstance(value, dict) else None

    breakdown = [
        FileCoverage(name, pct(entry, "lines") or 0.0, pct(entry, "branches"))
        for name, entry in data.items()
        if name != "total" and isinstance(entry, dict)
    ]
    return CoverageReport(
        available=True,
        coverage_tool="jest/nyc",
        overall_percentage=pct(total, "lines") or pct(total, "statements") or 0.0,
        line_coverage=pct(total, "lines"),
        branch_coverage=pct(total, "branches"),
        file_breakdown=breakdown[:MAX_COVERAGE_FILES],
    )


def parse_lcov(text: str) -> Optional[CoverageReport]:
    """lcov.info tracefile: SF/LH/LF records closed by end_of_record."""
    records: list[tuple[str, int, int]] = []
    current, hit, found = "", 0, 0
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("SF:"):
            current, hit, found = line[3:], 0, 0
        elif line.startswith("LH:"):
            hit = _int(line[3:])
        elif line.startswith("LF:"):
            found = _int(line[3:])
        elif line == "end_of_record" and current:
            records.append((current, hit, found))
            current = ""
    if not records:
        return None

    total_hit = sum(r[1] for r in records)
    total_found = sum(r[2] for r in records)
    overall = round(total_hit / total_found * 100, 2) if total_found else 0.0
    return CoverageReport(
        available=True,
        coverage_tool="lcov",
        overall_percentage=overall,
        line_coverage=overall,
        file_breakdown=[
            FileCoverage(name, round(h / f * 100, 2) if f else 0.0)
            for name, h, f in records[:MAX_COVERAGE_FILES]
        ],
    )


def parse_cobertura(text: str) -> Optional[CoverageReport]:
    """Cobertura coverage.xml, as written by coverage.py and pytest-cov."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return None
    line_rate = _float(root.get("line-rate"))
    if line_rate is None:
        return None
    branch_rate = _float(root.get("branch-rate"))
    return CoverageReport(
        available=True,
        coverage_tool="cobertura",
        overall_percentage=round(line_rate * 100, 2),
        line_coverage=round(line_rate * 100, 2),
        branch_coverage=round(branch_rate * 100, 2) if branch_rate is not None else None,
    )


def _int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def _float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parser_for(name: str):
    if name in ("coverage-summary.json", "coverage.json"):
        return parse_coverage_summary
    if name == "lcov.info" or name.endswith(".lcov"):
        return parse_lcov
    if name == "coverage.xml" or name.endswith("cobertura.xml"):
        return parse_cobertura
    return None


def read_coverage_report(repo_path: str | Path = ".") -> CoverageReport:
    """First parseable report from the usual output locations."""
    for rel_path in COVERAGE_REPORT_PATHS:
        parser = _parser_for(Path(rel_path).name)
        if parser is None:
            continue
        text = read_repo_file(repo_path, rel_path)
        if text is None:
            continue
        report = parser(text)
        if report is not None:
            logger.info("Coverage read from %s: %.1f%%", rel_path, report.overall_percentage)
            return report
        logger.warning("Unrecognised coverage report format: %s", rel_path)
    return CoverageReport(available=False)


def report_coverage(repo_path: str | Path = ".") -> Optional[CoverageReport]:
    """The repository's coverage figures, or None when no tool is configured or no report exists."""
    tool = detect_coverage_tool(repo_path)
    if tool is None:
        return None
    report = read_coverage_report(repo_path)
    if not report.available:
        logger.info("Coverage tool %s configured but no report found", tool)
        return None
    return report
