"""Tests for the five-stage workflow — backend is scripted, Semgrep is mocked."""

import json
from unittest.mock import MagicMock, patch

import pytest

from pr_analyzer.arch_docs import parse_markdown
from pr_analyzer.config import DEFAULT_RECOMMENDATIONS
from pr_analyzer.context_ranking import build_arch_docs_context
from pr_analyzer.diff_parser import parse_diff
from pr_analyzer.errors import BackendError, ConfigurationError
from pr_analyzer.llm import TokenUsage
from pr_analyzer.models import DiffFile, FixSource, Severity
from pr_analyzer.static_analysis import Finding, SemgrepConfig, SemgrepResult
from pr_analyzer.workflow import (
    STAGES,
    AnalysisWorkflow,
    RunContext,
    StageOutput,
    WorkflowState,
    apply_stage_output,
    default_file_analysis,
    fallback_summary,
)

GOOD_REPLIES = {
    "generate_fixes": "[]",
    "generate_summary": "Adds three constants to the module.",
    "finalize": '["Add unit tests for the new constants"]',
}


def _context(diff, **kwargs):
    kwargs.setdefault("enable_static_analysis", False)
    return RunContext(diff=diff, **kwargs)


def _run(backend, diff, **kwargs):
    return AnalysisWorkflow(backend).execute(_context(diff, **kwargs))


def _fix_json(n, severity="suggestion"):
    return json.dumps(
        [{"file": f"f{i}.py", "comment": f"issue {i}", "severity": severity} for i in range(n)]
    )


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_small_modification(self, fake_backend, small_ts_diff):
        backend = fake_backend(GOOD_REPLIES)
        result = _run(backend, small_ts_diff)

        analysis = result.file_analyses["src/a.ts"]
        assert analysis.complexity == 1
        assert analysis.summary == "modified: +3 -0"
        assert (analysis.additions, analysis.deletions) == (3, 0)
        assert result.summary == "Adds three constants to the module."
        assert result.recommendations == ["Add unit tests for the new constants"]
        assert result.fixes == []
        # Not an important file, so no deep analysis call
        assert backend.tools_called() == ["generate_fixes", "generate_summary", "finalize"]

    def test_empty_diff(self, fake_backend):
        backend = fake_backend(GOOD_REPLIES)
        result = _run(backend, "")

        assert "0 files changed" in result.summary
        assert result.file_analyses == {}
        assert result.fixes == []
        assert result.recommendations == DEFAULT_RECOMMENDATIONS
        assert result.total_tokens_used == 0
        assert backend.calls == []

    def test_static_disabled_omits_section(self, fake_backend, credential_diff):
        backend = fake_backend(GOOD_REPLIES)
        with patch("pr_analyzer.workflow.run_semgrep") as mock_semgrep:
            result = _run(backend, credential_diff, enable_static_analysis=False)

        mock_semgrep.assert_not_called()
        assert "staticAnalysis" not in result.to_dict()
        assert result.static_analysis is None
        assert [f.source for f in result.fixes] == [FixSource.MODEL]

    def test_disabled_semgrep_config_counts_as_disabled(self, fake_backend, small_ts_diff):
        backend = fake_backend(GOOD_REPLIES)
        with patch("pr_analyzer.workflow.run_semgrep") as mock_semgrep:
            result = _run(
                backend,
                small_ts_diff,
                enable_static_analysis=True,
                semgrep_config=SemgrepConfig(enabled=False),
            )
        mock_semgrep.assert_not_called()
        assert result.static_analysis is None

    def test_token_counters_sum_every_call(self, fake_backend, config_diff):
        backend = fake_backend(
            {**GOOD_REPLIES, "analyze_files": "{}"}, usage=TokenUsage(120, 30)
        )
        result = _run(backend, config_diff)
        assert len(backend.calls) == 4
        assert result.total_tokens_used == 4 * 150
        assert result.estimated_cost > 0

    def test_missing_usage_adds_nothing(self, fake_backend, small_ts_diff):
        backend = fake_backend(GOOD_REPLIES, usage=None)
        result = _run(backend, small_ts_diff)
        assert result.total_tokens_used == 0

    def test_summary_prompt_lists_new_files(self, fake_backend, small_ts_diff):
        new_file = (
            "diff --git a/src/b.ts b/src/b.ts\n"
            "new file mode 100644\n"
            "--- /dev/null\n"
            "+++ b/src/b.ts\n"
            "@@ -0,0 +1,2 @@\n"
            "+export const b = 2;\n"
            "+export const c = 3;\n"
        )
        backend = fake_backend(GOOD_REPLIES)
        _run(backend, small_ts_diff + new_file)

        prompt = dict(backend.calls)["generate_summary"]
        assert "- Files changed: 2" in prompt
        assert "- Lines added: 5" in prompt
        assert "New files: src/b.ts" in prompt
        assert "Deleted files" not in prompt

    def test_result_round_trips_through_dict(self, fake_backend, credential_diff):
        result = _run(fake_backend(GOOD_REPLIES), credential_diff)
        data = json.loads(result.to_json())
        assert data["fixes"][0]["severity"] == "critical"
        assert data["fileAnalyses"]["app/settings.py"]["changes"] == {
            "additions": 1,
            "deletions": 0,
        }
        restored = type(result).from_dict(data)
        assert restored.to_dict() == result.to_dict()


# ---------------------------------------------------------------------------
# analyze_files
# ---------------------------------------------------------------------------


class TestAnalyzeFiles:
    def test_important_file_gets_deep_analysis(self, fake_backend, config_diff):
        deep = {
            "app/config.py": {
                "summary": "Raises the timeout and adds retries",
                "risks": ["Slower failure detection"],
                "complexity": 8,
                "recommendations": ["Document the new timeout"],
            }
        }
        backend = fake_backend({**GOOD_REPLIES, "analyze_files": json.dumps(deep)})
        result = _run(backend, config_diff)

        config = result.file_analyses["app/config.py"]
        assert config.summary == "Raises the timeout and adds retries"
        assert config.complexity == 5
        assert config.risks == ["Slower failure detection"]
        assert result.file_analyses["app/views.py"].summary == "modified: +1 -0"

        tool, prompt = backend.calls[0]
        assert tool == "analyze_files"
        assert "File: app/config.py" in prompt
        assert "File: app/views.py" not in prompt

    def test_malformed_output_keeps_defaults(self, fake_backend, config_diff):
        backend = fake_backend({**GOOD_REPLIES, "analyze_files": "I think it looks fine"})
        result = _run(backend, config_diff)
        assert result.file_analyses["app/config.py"].summary == "modified: +2 -1"
        assert any("malformed" in i for i in result.insights)

    def test_backend_failure_keeps_defaults(self, fake_backend, config_diff):
        backend = fake_backend({**GOOD_REPLIES, "analyze_files": BackendError("throttled", "fake")})
        result = _run(backend, config_diff)
        assert result.file_analyses["app/config.py"].complexity == 1
        assert any("throttled" in i for i in result.insights)

    def test_limits(self, fake_backend):
        files = [
            DiffFile(path=f"src/test_{i}.py", additions=30, diff=f"+x{i}") for i in range(20)
        ]
        backend = fake_backend({**GOOD_REPLIES, "analyze_files": "{}"})
        result = AnalysisWorkflow(backend).execute(
            _context("unused", files=tuple(files))
        )
        assert len(result.file_analyses) == 15
        prompt = backend.calls[0][1]
        assert prompt.count("File: ") == 5

    def test_complexity_always_clamped(self):
        huge = DiffFile(path="big.py", additions=10_000, deletions=5_000)
        assert default_file_analysis(huge).complexity == 5
        assert default_file_analysis(DiffFile(path="tiny.py")).complexity == 1
        assert default_file_analysis(DiffFile(path="mid.py", additions=100)).complexity == 3


# ---------------------------------------------------------------------------
# Static analysis and fix generation
# ---------------------------------------------------------------------------


def _semgrep_result():
    return SemgrepResult(
        findings=[
            Finding("r.warn", "app/config.py", 2, "Hard-coded timeout", "WARNING"),
            Finding("r.err", "app/views.py", 6, "Unsafe logging", "ERROR"),
            Finding("r.info", "vendor/lib.py", 1, "Style", "INFO"),
        ]
    )


class TestStaticAnalysisPath:
    @patch("pr_analyzer.workflow.run_semgrep")
    def test_findings_are_exclusive_fix_source(self, mock_semgrep, fake_backend, config_diff):
        mock_semgrep.return_value = _semgrep_result()
        backend = fake_backend({**GOOD_REPLIES, "analyze_files": "{}"})
        result = _run(backend, config_diff, enable_static_analysis=True, language="python")

        assert "generate_fixes" not in backend.tools_called()
        assert [f.file for f in result.fixes] == ["app/views.py", "app/config.py"]
        assert result.fixes[0].severity == Severity.CRITICAL
        assert all(f.source == FixSource.STATIC_ANALYSIS for f in result.fixes)

        static = result.to_dict()["staticAnalysis"]
        assert static["enabled"] is True
        assert static["totalFindings"] == 2
        assert static["errorCount"] == 1
        assert static["warningCount"] == 1
        assert len(static["criticalIssues"]) == 1
        args = mock_semgrep.call_args[0]
        assert args[0] == "."
        assert args[2] == "python"

    @patch("pr_analyzer.workflow.run_semgrep")
    def test_no_findings_falls_back_to_model(self, mock_semgrep, fake_backend, credential_diff):
        mock_semgrep.return_value = SemgrepResult()
        backend = fake_backend(GOOD_REPLIES)
        result = _run(backend, credential_diff, enable_static_analysis=True)

        assert "generate_fixes" in backend.tools_called()
        assert result.to_dict()["staticAnalysis"]["totalFindings"] == 0
        assert result.fixes[0].source == FixSource.MODEL

    @patch("pr_analyzer.workflow.run_semgrep")
    def test_not_installed_degrades_with_insight(self, mock_semgrep, fake_backend, small_ts_diff):
        mock_semgrep.return_value = SemgrepResult(
            errors=[{"level": "warning", "type": "semgrep_not_installed", "message": "missing"}]
        )
        result = _run(fake_backend(GOOD_REPLIES), small_ts_diff, enable_static_analysis=True)
        assert any("not installed" in i for i in result.insights)
        assert result.static_analysis.total_findings == 0

    @patch("pr_analyzer.workflow.run_semgrep")
    def test_adapter_exception_degrades(self, mock_semgrep, fake_backend, small_ts_diff):
        mock_semgrep.side_effect = OSError("disk gone")
        result = _run(fake_backend(GOOD_REPLIES), small_ts_diff, enable_static_analysis=True)
        assert any("disk gone" in i for i in result.insights)
        assert result.summary

    @patch("pr_analyzer.static_analysis.shutil.which", return_value="/usr/bin/semgrep")
    @patch("pr_analyzer.static_analysis.subprocess.run")
    def test_unparseable_scanner_output_degrades(self, mock_run, _which, fake_backend, small_ts_diff):
        mock_run.return_value = MagicMock(stdout="<html>", stderr="fatal: bad config", returncode=2)
        result = _run(fake_backend(GOOD_REPLIES), small_ts_diff, enable_static_analysis=True)

        assert any(
            i.startswith("Static analysis failed") and "bad config" in i for i in result.insights
        )
        assert result.static_analysis.total_findings == 0
        assert result.summary == "Adds three constants to the module."


class TestModelFixes:
    def test_truncated_to_ten_and_sorted(self, fake_backend, small_ts_diff):
        replies = dict(GOOD_REPLIES)
        fixes = json.loads(_fix_json(11, "suggestion"))
        fixes.append({"file": "z.py", "comment": "late", "severity": "critical"})
        replies["generate_fixes"] = json.dumps(fixes)
        result = _run(fake_backend(replies), small_ts_diff)

        assert len(result.fixes) == 10
        assert result.fixes[0].comment == "late"
        ranks = [f.severity.rank for f in result.fixes]
        assert ranks == sorted(ranks)

    def test_credential_fix_appended_after_truncation(self, fake_backend, credential_diff):
        replies = {**GOOD_REPLIES, "generate_fixes": _fix_json(12, "warning")}
        result = _run(fake_backend(replies), credential_diff)

        assert len(result.fixes) == 11
        assert result.fixes[0].severity == Severity.CRITICAL
        assert result.fixes[0].file == "app/settings.py"

    def test_malformed_output_still_runs_credential_check(self, fake_backend, credential_diff):
        replies = {**GOOD_REPLIES, "generate_fixes": "no json at all"}
        result = _run(fake_backend(replies), credential_diff)
        assert len(result.fixes) == 1
        assert any("malformed" in i for i in result.insights)

    def test_backend_failure(self, fake_backend, small_ts_diff):
        replies = {**GOOD_REPLIES, "generate_fixes": BackendError("down", "fake")}
        result = _run(fake_backend(replies), small_ts_diff)
        assert result.fixes == []
        assert any("down" in i for i in result.insights)


# ---------------------------------------------------------------------------
# Summary and finalize fallbacks
# ---------------------------------------------------------------------------


class TestFallbacks:
    def test_summary_failure_uses_template(self, fake_backend, config_diff):
        replies = {
            **GOOD_REPLIES,
            "analyze_files": "{}",
            "generate_summary": BackendError("timeout", "fake"),
        }
        result = _run(fake_backend(replies), config_diff, title="Tune config")
        assert result.summary == (
            "2 files changed (+3/-1). 0 fixes identified. Title: Tune config"
        )
        assert any("statistical summary" in i for i in result.insights)

    def test_summary_empty_text_uses_template(self, fake_backend, small_ts_diff):
        replies = {**GOOD_REPLIES, "generate_summary": "   "}
        result = _run(fake_backend(replies), small_ts_diff)
        assert result.summary == "1 file changed (+3/-0). 0 fixes identified."

    def test_fallback_summary_is_deterministic(self):
        assert fallback_summary(3, 10, 4, 2, None) == fallback_summary(3, 10, 4, 2, None)
        assert fallback_summary(0, 0, 0, 0, None).startswith("0 files changed")

    def test_recommendations_from_bullets(self, fake_backend, small_ts_diff):
        replies = {**GOOD_REPLIES, "finalize": "Here:\n- Add tests\n- Update the changelog"}
        result = _run(fake_backend(replies), small_ts_diff)
        assert result.recommendations == ["Add tests", "Update the changelog"]

    def test_recommendations_capped_at_five(self, fake_backend, small_ts_diff):
        replies = {**GOOD_REPLIES, "finalize": json.dumps([f"r{i}" for i in range(8)])}
        result = _run(fake_backend(replies), small_ts_diff)
        assert result.recommendations == ["r0", "r1", "r2", "r3", "r4"]

    @pytest.mark.parametrize("reply", ["", "Nothing to add.", BackendError("boom", "fake")])
    def test_recommendations_never_empty(self, fake_backend, small_ts_diff, reply):
        replies = {**GOOD_REPLIES, "finalize": reply}
        result = _run(fake_backend(replies), small_ts_diff)
        assert result.recommendations == DEFAULT_RECOMMENDATIONS


# ---------------------------------------------------------------------------
# Drivers, state, and budgets
# ---------------------------------------------------------------------------


class TestDrivers:
    def test_fast_path_matches_canonical(self, fake_backend, credential_diff):
        replies = {**GOOD_REPLIES, "generate_fixes": _fix_json(3, "warning")}
        context = _context(credential_diff, title="Add key")

        canonical = AnalysisWorkflow(fake_backend(replies)).execute(context).to_dict()
        fast = AnalysisWorkflow(fake_backend(replies)).execute_fast_path(context).to_dict()

        for d in (canonical, fast):
            d.pop("executionTime")
        assert canonical == fast
        assert canonical["reasoning"][0].startswith("Parsed 1 changed files")

    def test_checkpoints_and_callbacks(self, fake_backend, config_diff):
        backend = fake_backend({**GOOD_REPLIES, "analyze_files": "{}"})
        workflow = AnalysisWorkflow(backend)
        seen = []
        workflow.execute(_context(config_diff), on_stage=lambda *args: seen.append(args))

        assert [name for name, _state in workflow.checkpoints] == ["start"] + [
            name for name, _h in STAGES
        ]
        assert seen == [(name, i, 5) for i, (name, _h) in enumerate(STAGES, 1)]
        totals = [s.total_tokens for _name, s in workflow.checkpoints]
        assert totals == sorted(totals)

    def test_failing_callback_does_not_abort(self, fake_backend, small_ts_diff):
        def boom(*_args):
            raise RuntimeError("client went away")

        result = AnalysisWorkflow(fake_backend(GOOD_REPLIES)).execute(
            _context(small_ts_diff), on_stage=boom
        )
        assert result.summary

    def test_unexpected_exception_propagates(self, fake_backend, small_ts_diff):
        backend = fake_backend({**GOOD_REPLIES, "generate_fixes": KeyError("bug")})
        with pytest.raises(KeyError):
            _run(backend, small_ts_diff)

    def test_budget_exceeded_is_advisory(self, fake_backend, small_ts_diff):
        backend = fake_backend(GOOD_REPLIES, usage=TokenUsage(1000, 1000))
        result = _run(backend, small_ts_diff, token_budget=100, max_cost=0.0)
        assert any("exceeded the budget" in i for i in result.insights)
        assert any("exceeded the limit" in i for i in result.insights)
        assert result.recommendations == ["Add unit tests for the new constants"]

    def test_provider_and_model_reported(self, fake_backend, small_ts_diff):
        result = _run(fake_backend(GOOD_REPLIES), small_ts_diff)
        assert (result.provider, result.model) == ("fake", "fake-model")


class TestStateTransitions:
    def test_apply_appends_adds_and_replaces(self):
        state = WorkflowState(
            context=_context(""),
            summary="old",
            insights=("first",),
            total_input_tokens=10,
        )
        new = apply_stage_output(
            state,
            StageOutput(summary="new", insights=["second"], input_tokens=5, output_tokens=2),
        )
        assert new.summary == "new"
        assert new.insights == ("first", "second")
        assert new.total_input_tokens == 15
        assert new.total_output_tokens == 2
        assert new.iteration == 1
        # The original is untouched
        assert state.summary == "old"
        assert state.insights == ("first",)

    def test_none_fields_leave_state_unchanged(self):
        files = tuple(parse_diff("diff --git a/x.py b/x.py\n+a\n"))
        state = WorkflowState(context=_context(""), files=files, fixes=())
        new = apply_stage_output(state, StageOutput())
        assert new.files == files
        assert new.summary == ""

    def test_negative_usage_never_decreases_counters(self):
        state = WorkflowState(context=_context(""), total_input_tokens=10)
        new = apply_stage_output(state, StageOutput(input_tokens=-50))
        assert new.total_input_tokens == 10


class TestRunContextValidation:
    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"token_budget": 0}, "token_budget"),
            ({"token_budget": 1.5}, "token_budget"),
            ({"max_cost": -1}, "max_cost"),
            ({"repo_path": ""}, "repo_path"),
        ],
    )
    def test_invalid_values(self, kwargs, field):
        with pytest.raises(ConfigurationError) as exc:
            RunContext(diff="", **kwargs)
        assert exc.value.field == field

    def test_diff_must_be_text(self):
        with pytest.raises(ConfigurationError):
            RunContext(diff=None)


# ---------------------------------------------------------------------------
# Architecture docs influence
# ---------------------------------------------------------------------------

PATTERNS_MD = """\
# Patterns

## Constants

Module constants live at the top of the file.
"""


class TestArchDocsImpact:
    def test_impact_reported(self, fake_backend, small_ts_diff):
        docs = [parse_markdown(PATTERNS_MD, "patterns")]
        files = parse_diff(small_ts_diff)
        arch = build_arch_docs_context(docs, "Add constants", files, small_ts_diff)
        backend = fake_backend(GOOD_REPLIES)

        result = _run(backend, small_ts_diff, arch_docs=arch)

        impact = result.to_dict()["archDocsImpact"]
        assert impact["used"] is True
        assert impact["docsAvailable"] == 1
        assert impact["sectionsUsed"] == len(arch.relevant_docs)
        assert "summary-generation" in impact["influencedStages"]
        assert "risk-detection" in impact["influencedStages"]
        fixes_prompt = dict(backend.calls)["generate_fixes"]
        assert "## Repository Architecture Context" in fixes_prompt

    def test_no_docs_no_impact(self, fake_backend, small_ts_diff):
        result = _run(fake_backend(GOOD_REPLIES), small_ts_diff)
        assert "archDocsImpact" not in result.to_dict()


# ---------------------------------------------------------------------------
# Change-type reports
# ---------------------------------------------------------------------------


def _new_file_diff(path, lines):
    body = "".join(f"+{line}\n" for line in lines)
    return (
        f"diff --git a/{path} b/{path}\n"
        "new file mode 100644\n"
        "--- /dev/null\n"
        f"+++ b/{path}\n"
        f"@@ -0,0 +1,{len(lines)} @@\n"
        f"{body}"
    )


PRICING_DIFF = _new_file_diff(
    "src/pricing.py",
    [
        "def apply_discount(total, pct):",
        "    return total * (1 - pct)",
        "",
        "",
        "def round_price(value):",
        "    return round(value, 2)",
    ],
)

TERRAFORM_DIFF = _new_file_diff(
    "infra/main.tf",
    ['resource "aws_nat_gateway" "egress" {', "  subnet_id = var.subnet", "}"],
)

COBERTURA_XML = '<coverage line-rate="0.75" branch-rate="0.5"></coverage>'


class TestChangeTypeReports:
    def test_untested_code_gets_suggestions(self, fake_backend, tmp_path):
        context = _context(PRICING_DIFF, repo_path=str(tmp_path))
        canonical = AnalysisWorkflow(fake_backend(GOOD_REPLIES)).execute(context).to_dict()
        fast = AnalysisWorkflow(fake_backend(GOOD_REPLIES)).execute_fast_path(context).to_dict()

        [suggestion] = canonical["testSuggestions"]
        assert suggestion["forFile"] == "src/pricing.py"
        assert suggestion["testFilePath"] == "src/test_pricing.py"
        assert "apply_discount" in suggestion["testCode"]
        assert fast["testSuggestions"] == canonical["testSuggestions"]

    def test_infrastructure_costs(self, fake_backend, tmp_path):
        result = _run(fake_backend(GOOD_REPLIES), TERRAFORM_DIFF, repo_path=str(tmp_path))

        assert result.to_dict()["devOpsCostEstimates"] == [
            {
                "resource": "nat-gateway",
                "resourceType": "nat-gateway",
                "estimatedNewCost": 45.0,
                "confidence": "high",
                "details": "Estimated $32.00 - $60.00/month",
            }
        ]
        assert "coverageReport" not in result.to_dict()

    def test_existing_coverage_report(self, fake_backend, small_ts_diff, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[tool.coverage.run]\nbranch = true\n")
        (tmp_path / "coverage.xml").write_text(COBERTURA_XML)

        result = _run(fake_backend(GOOD_REPLIES), small_ts_diff, repo_path=str(tmp_path))

        assert result.to_dict()["coverageReport"] == {
            "available": True,
            "coverageTool": "cobertura",
            "overallPercentage": 75.0,
            "lineCoverage": 75.0,
            "branchCoverage": 50.0,
        }

    def test_small_changes_omit_reports(self, fake_backend, small_ts_diff, tmp_path):
        data = _run(fake_backend(GOOD_REPLIES), small_ts_diff, repo_path=str(tmp_path)).to_dict()
        for key in ("testSuggestions", "devOpsCostEstimates", "coverageReport"):
            assert key not in data

    def test_reports_round_trip(self, fake_backend, tmp_path):
        (tmp_path / "setup.cfg").write_text("[coverage:run]\n")
        (tmp_path / "coverage.xml").write_text(COBERTURA_XML)
        result = _run(
            fake_backend(GOOD_REPLIES), PRICING_DIFF + TERRAFORM_DIFF, repo_path=str(tmp_path)
        )

        data = json.loads(result.to_json())
        assert {"testSuggestions", "devOpsCostEstimates", "coverageReport"} <= data.keys()
        assert type(result).from_dict(data).to_dict() == result.to_dict()
