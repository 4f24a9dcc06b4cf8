"""Data models for the pull request analyzer."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional


class Severity(str, Enum):
    """Severity levels for fixes, ordered by rank."""

    CRITICAL = "critical"  # Must fix: security, data loss, crash
    WARNING = "warning"  # Should fix: breaking change, reliability
    SUGGESTION = "suggestion"  # Consider: quality, performance, style

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: object, default: "Severity | None" = None) -> "Severity":
        """Lenient conversion from backend output; unknown values use the default."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default if default is not None else cls.SUGGESTION


_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.SUGGESTION: 2}


class FixSource(str, Enum):
    """Where a fix came from. At most one source is active per run."""

    STATIC_ANALYSIS = "static-analysis"
    MODEL = "model"

    def __str__(self) -> str:
        return self.value


class FileStatus(str, Enum):
    """Change status of a file in a unified diff."""

    ADDED = "A"
    MODIFIED = "M"
    DELETED = "D"
    RENAMED = "R"

    def __str__(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    FileStatus.ADDED: "added",
    FileStatus.MODIFIED: "modified",
    FileStatus.DELETED: "deleted",
    FileStatus.RENAMED: "renamed",
}


@dataclass(frozen=True)
class DiffFile:
    """One file's block from a unified diff."""

    path: str
    status: FileStatus = FileStatus.MODIFIED
    additions: int = 0
    deletions: int = 0
    language: str = "unknown"
    diff: str = ""
    old_path: Optional[str] = None

    @property
    def total_changes(self) -> int:
        return self.additions + self.deletions


@dataclass
class FileAnalysis:
    """Per-file analysis produced by the file-analysis stage."""

    path: str
    summary: str
    complexity: int
    additions: int = 0
    deletions: int = 0
    risks: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "summary": self.summary,
            "risks": list(self.risks),
            "complexity": self.complexity,
            "changes": {"additions": self.additions, "deletions": self.deletions},
            "recommendations": list(self.recommendations),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "FileAnalysis":
        changes = d.get("changes", {})
        return cls(
            path=d["path"],
            summary=d.get("summary", ""),
            complexity=d.get("complexity", 1),
            additions=changes.get("additions", 0),
            deletions=changes.get("deletions", 0),
            risks=list(d.get("risks", [])),
            recommendations=list(d.get("recommendations", [])),
        )


@dataclass
class Fix:
    """A prioritized fix for a changed file."""

    file: str
    comment: str
    severity: Severity = Severity.SUGGESTION
    source: FixSource = FixSource.MODEL
    line: Optional[int] = None

    def to_dict(self) -> dict:
        d = {
            "file": self.file,
            "comment": self.comment,
            "severity": str(self.severity),
            "source": str(self.source),
        }
        if self.line is not None:
            d["line"] = self.line
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Fix":
        return cls(
            file=d["file"],
            comment=d["comment"],
            severity=Severity.parse(d.get("severity")),
            source=FixSource(d.get("source", FixSource.MODEL.value)),
            line=d.get("line"),
        )


@dataclass(frozen=True)
class AnalysisMode:
    """Which parts of the review the caller asked for."""

    summary: bool = True
    risks: bool = True
    complexity: bool = True


@dataclass
class ArchDocsImpact:
    """How much the architecture docs contributed to a run."""

    used: bool
    docs_available: int
    sections_used: int
    influenced_stages: list[str] = field(default_factory=list)
    key_insights: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "docsAvailable": self.docs_available,
            "sectionsUsed": self.sections_used,
            "influencedStages": list(self.influenced_stages),
            "keyInsights": list(self.key_insights),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ArchDocsImpact":
        return cls(
            used=d.get("used", False),
            docs_available=d.get("docsAvailable", 0),
            sections_used=d.get("sectionsUsed", 0),
            influenced_stages=list(d.get("influencedStages", [])),
            key_insights=list(d.get("keyInsights", [])),
        )


@dataclass
class StaticAnalysisReport:
    """Static analysis figures reported back to the caller."""

    enabled: bool
    total_findings: int = 0
    error_count: int = 0
    warning_count: int = 0
    critical_issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "totalFindings": self.total_findings,
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "criticalIssues": list(self.critical_issues),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StaticAnalysisReport":
        return cls(
            enabled=d.get("enabled", True),
            total_findings=d.get("totalFindings", 0),
            error_count=d.get("errorCount", 0),
            warning_count=d.get("warningCount", 0),
            critical_issues=list(d.get("criticalIssues", [])),
        )


@dataclass
class SuggestedTest:
    """Test skeleton for a changed source file that the change set leaves untested."""

    for_file: str
    test_framework: str
    test_code: str
    description: str
    test_file_path: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "forFile": self.for_file,
            "testFramework": self.test_framework,
            "testCode": self.test_code,
            "description": self.description,
        }
        if self.test_file_path is not None:
            d["testFilePath"] = self.test_file_path
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "SuggestedTest":
        return cls(
            for_file=d["forFile"],
            test_framework=d.get("testFramework", "other"),
            test_code=d.get("testCode", ""),
            description=d.get("description", ""),
            test_file_path=d.get("testFilePath"),
        )


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value


@dataclass
class DevOpsCostEstimate:
    """Approximate monthly cost of one kind of infrastructure resource."""

    resource: str
    resource_type: str
    estimated_new_cost: float
    confidence: Confidence = Confidence.LOW
    details: str = ""

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "resourceType": self.resource_type,
            "estimatedNewCost": self.estimated_new_cost,
            "confidence": str(self.confidence),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DevOpsCostEstimate":
        return cls(
            resource=d["resource"],
            resource_type=d.get("resourceType", d["resource"]),
            estimated_new_cost=d.get("estimatedNewCost", 0.0),
            confidence=Confidence(d.get("confidence", "low")),
            details=d.get("details", ""),
        )


@dataclass
class FileCoverage:
    file: str
    line_coverage: float
    branch_coverage: Optional[float] = None

    def to_dict(self) -> dict:
        d = {"file": self.file, "lineCoverage": self.line_coverage}
        if self.branch_coverage is not None:
            d["branchCoverage"] = self.branch_coverage
        return d


@dataclass
class CoverageReport:
    """Figures read from the repository's existing coverage report."""

    available: bool
    coverage_tool: Optional[str] = None
    overall_percentage: Optional[float] = None
    line_coverage: Optional[float] = None
    branch_coverage: Optional[float] = None
    file_breakdown: list[FileCoverage] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict = {"available": self.available}
        for key, value in (
            ("coverageTool", self.coverage_tool),
            ("overallPercentage", self.overall_percentage),
            ("lineCoverage", self.line_coverage),
            ("branchCoverage", self.branch_coverage),
        ):
            if value is not None:
                d[key] = value
        if self.file_breakdown:
            d["fileBreakdown"] = [f.to_dict() for f in self.file_breakdown]
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "CoverageReport":
        return cls(
            available=d.get("available", False),
            coverage_tool=d.get("coverageTool"),
            overall_percentage=d.get("overallPercentage"),
            line_coverage=d.get("lineCoverage"),
            branch_coverage=d.get("branchCoverage"),
            file_breakdown=[
                FileCoverage(f["file"], f.get("lineCoverage", 0.0), f.get("branchCoverage"))
                for f in d.get("fileBreakdown", [])
            ],
        )


@dataclass
class AnalysisResult:
    """Complete analysis of one change set."""

    summary: str
    file_analyses: dict[str, FileAnalysis] = field(default_factory=dict)
    fixes: list[Fix] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    total_tokens_used: int = 0
    execution_time: int = 0  # milliseconds
    provider: str = "unknown"
    model: str = "unknown"
    mode: AnalysisMode = field(default_factory=AnalysisMode)
    estimated_cost: float = 0.0
    arch_docs_impact: Optional[ArchDocsImpact] = None
    static_analysis: Optional[StaticAnalysisReport] = None
    test_suggestions: Optional[list[SuggestedTest]] = None
    devops_cost_estimates: Optional[list[DevOpsCostEstimate]] = None
    coverage_report: Optional[CoverageReport] = None

    @property
    def critical_count(self) -> int:
        return sum(1 for f in self.fixes if f.severity == Severity.CRITICAL)

    def to_dict(self) -> dict:
        d = {
            "summary": self.summary,
            "fileAnalyses": {
                path: analysis.to_dict()
                for path, analysis in self.file_analyses.items()
            },
            "fixes": [f.to_dict() for f in self.fixes],
            "recommendations": list(self.recommendations),
            "insights": list(self.insights),
            "reasoning": list(self.reasoning),
            "totalTokensUsed": self.total_tokens_used,
            "executionTime": self.execution_time,
            "provider": self.provider,
            "model": self.model,
            "mode": asdict(self.mode),
            "estimatedCost": round(self.estimated_cost, 6),
        }
        # Optional sections are omitted rather than null
        if self.arch_docs_impact is not None:
            d["archDocsImpact"] = self.arch_docs_impact.to_dict()
        if self.static_analysis is not None:
            d["staticAnalysis"] = self.static_analysis.to_dict()
        if self.test_suggestions:
            d["testSuggestions"] = [t.to_dict() for t in self.test_suggestions]
        if self.devops_cost_estimates:
            d["devOpsCostEstimates"] = [e.to_dict() for e in self.devops_cost_estimates]
        if self.coverage_report is not None:
            d["coverageReport"] = self.coverage_report.to_dict()
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, d: dict) -> "AnalysisResult":
        arch = d.get("archDocsImpact")
        static = d.get("staticAnalysis")
        tests = d.get("testSuggestions")
        costs = d.get("devOpsCostEstimates")
        coverage = d.get("coverageReport")
        return cls(
            summary=d.get("summary", ""),
            file_analyses={
                path: FileAnalysis.from_dict(a)
                for path, a in d.get("fileAnalyses", {}).items()
            },
            fixes=[Fix.from_dict(f) for f in d.get("fixes", [])],
            recommendations=list(d.get("recommendations", [])),
            insights=list(d.get("insights", [])),
            reasoning=list(d.get("reasoning", [])),
            total_tokens_used=d.get("totalTokensUsed", 0),
            execution_time=d.get("executionTime", 0),
            provider=d.get("provider", "unknown"),
            model=d.get("model", "unknown"),
            mode=AnalysisMode(**d.get("mode", {})),
            estimated_cost=d.get("estimatedCost", 0.0),
            arch_docs_impact=ArchDocsImpact.from_dict(arch) if arch else None,
            static_analysis=StaticAnalysisReport.from_dict(static) if static else None,
            test_suggestions=[SuggestedTest.from_dict(t) for t in tests] if tests else None,
            devops_cost_estimates=(
                [DevOpsCostEstimate.from_dict(e) for e in costs] if costs else None
            ),
            coverage_report=CoverageReport.from_dict(coverage) if coverage else None,
        )
