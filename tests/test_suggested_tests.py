"""Tests for test-suggestion detection and skeleton rendering."""

import json

from pr_analyzer.models import DiffFile
from pr_analyzer.suggested_tests import (
    declared_names,
    detect_test_framework,
    is_code_file,
    is_test_file,
    render_test_template,
    suggest_test_path,
    suggest_tests,
)


def _file(path, lines):
    body = "\n".join(f"+{line}" for line in lines)
    return DiffFile(path=path, additions=len(lines), diff=f"+++ b/{path}\n{body}")


PRICING_LINES = [
    "export function applyDiscount(total, pct) {",
    "  return total * (1 - pct);",
    "}",
    "export const roundPrice = (v) => Math.round(v * 100) / 100;",
    "async function loadRates() {",
    "  return fetch('/rates');",
    "}",
]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    def test_test_files(self):
        for path in ("src/a.test.ts", "web/b.spec.jsx", "pkg/test_c.py", "pkg/c_test.py",
                     "cmd/d_test.go", "src/FooTest.java"):
            assert is_test_file(path), path
        assert not is_test_file("src/testing.ts")

    def test_code_files(self):
        assert is_code_file("src/pricing.ts")
        assert is_code_file("app/views.py")
        assert not is_code_file("src/types.d.ts")
        assert not is_code_file("jest.config.js")
        assert not is_code_file("src/index.ts")
        assert not is_code_file("README.md")


class TestFrameworkDetection:
    def test_jest_from_dependencies(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"devDependencies": {"jest": "^29"}}))
        assert detect_test_framework(tmp_path) == "jest"

    def test_vitest_config_file(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")
        (tmp_path / "vitest.config.ts").write_text("export default {}")
        assert detect_test_framework(tmp_path) == "vitest"

    def test_pytest_from_pyproject(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[tool.pytest.ini_options]\n")
        assert detect_test_framework(tmp_path) == "pytest"

    def test_malformed_package_json_falls_through(self, tmp_path):
        (tmp_path / "package.json").write_text("{not json")
        (tmp_path / "pytest.ini").write_text("[pytest]\n")
        assert detect_test_framework(tmp_path) == "pytest"

    def test_nothing_configured(self, tmp_path):
        assert detect_test_framework(tmp_path) == "other"


class TestTestPaths:
    def test_jest_moves_src_to_tests(self):
        assert suggest_test_path("src/utils/pricing.ts", "jest") == "tests/utils/pricing.test.ts"

    def test_mocha_spec_beside_source(self):
        assert suggest_test_path("lib/pricing.js", "mocha") == "lib/pricing.spec.js"

    def test_python_and_go(self):
        assert suggest_test_path("app/pricing.py", "pytest") == "app/test_pricing.py"
        assert suggest_test_path("pkg/pricing.go", "other") == "pkg/pricing_test.go"

    def test_default(self):
        assert suggest_test_path("lib/pricing.rb", "other") == "lib/pricing.test.rb"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TestTemplates:
    def test_declared_names_deduplicated_and_limited(self):
        code = "\n".join(PRICING_LINES + ["const roundPrice = 1;", "def for_each(): pass"])
        assert declared_names(code) == ["applyDiscount", "roundPrice", "loadRates", "for_each"]
        assert declared_names(code, limit=2) == ["applyDiscount", "roundPrice"]

    def test_jest_template(self):
        code = render_test_template("jest", "src/pricing.ts", ["applyDiscount", "roundPrice"])
        assert "from '@jest/globals'" in code
        assert "import { applyDiscount, roundPrice } from 'src/pricing';" in code
        assert "describe('pricing'" in code
        assert code.count("expect(applyDiscount).toBeDefined();") == 2

    def test_pytest_template(self):
        code = render_test_template("pytest", "app/price_rules.py", ["apply_discount"])
        assert "from app.price_rules import apply_discount" in code
        assert "class TestPriceRules:" in code
        assert "def test_apply_discount_works(self):" in code
        assert "def test_apply_discount_edge_cases(self):" in code

    def test_fallback_lists_targets(self):
        code = render_test_template("other", "lib/pricing.rb", [])
        assert code.startswith("# Tests for pricing (framework: other)")
        assert "# - module behaviour" in code


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


class TestSuggestTests:
    def test_untested_source_file(self, tmp_path):
        (tmp_path / "package.json").write_text(json.dumps({"devDependencies": {"vitest": "1"}}))
        [suggestion] = suggest_tests([_file("src/pricing.ts", PRICING_LINES)], tmp_path)

        assert suggestion.for_file == "src/pricing.ts"
        assert suggestion.test_framework == "vitest"
        assert suggestion.test_file_path == "tests/pricing.test.ts"
        assert suggestion.description == "Suggested tests for new/modified code in src/pricing.ts"
        assert "from 'vitest'" in suggestion.test_code
        assert "loadRates" in suggestion.test_code

    def test_matching_test_in_change_set(self, tmp_path):
        files = [
            _file("src/pricing.ts", PRICING_LINES),
            _file("src/cart.ts", PRICING_LINES),
            _file("tests/Pricing.test.ts", ["it('works')"]),
        ]
        suggestions = suggest_tests(files, tmp_path, framework="jest")
        assert [s.for_file for s in suggestions] == ["src/cart.ts"]

    def test_small_changes_skipped(self, tmp_path):
        assert suggest_tests([_file("src/pricing.ts", PRICING_LINES[:5])], tmp_path) == []

    def test_no_suggestions_when_tests_outnumber_code(self, tmp_path):
        files = [
            _file("src/pricing.ts", PRICING_LINES),
            _file("tests/a.test.ts", ["x"]),
            _file("tests/b.test.ts", ["y"]),
        ]
        assert suggest_tests(files, tmp_path) == []

    def test_non_code_files_ignored(self, tmp_path):
        assert suggest_tests([_file("docs/guide.md", PRICING_LINES)], tmp_path) == []
