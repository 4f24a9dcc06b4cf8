"""Configuration for the pull request analyzer."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from pr_analyzer.errors import ConfigurationError

# ── Server Config ────────────────────────────────────────────────────────────
SERVER_NAME = "pr-analyzer-mcp"
SERVER_VERSION = "0.3.0"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 8089

# ── Backend Defaults ─────────────────────────────────────────────────────────
DEFAULT_PROVIDER = "bedrock"
SUPPORTED_PROVIDERS = ("bedrock", "anthropic", "openai", "gemini")

BEDROCK_PROFILE = "bedrock"
BEDROCK_REGION = "eu-west-1"
BEDROCK_MODEL_ID = "eu.anthropic.claude-sonnet-4-6"

DEFAULT_MODELS = {
    "bedrock": BEDROCK_MODEL_ID,
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o",
    "gemini": "gemini-1.5-pro",
}

DEFAULT_MAX_TOKENS = 4000
DEFAULT_TEMPERATURE = 0.2
BACKEND_TIMEOUT_SECONDS = 120

# ── Run Budget (advisory only) ───────────────────────────────────────────────
DEFAULT_TOKEN_BUDGET = 100_000
DEFAULT_MAX_COST = 5.0

# ── Workflow Limits ──────────────────────────────────────────────────────────
MAX_ANALYZED_FILES = 15
MAX_IMPORTANT_FILES = 5
IMPORTANT_CHANGE_THRESHOLD = 20
IMPORTANT_PATH_MARKERS = ("config", "schema", "migration", "test")
COMPLEXITY_LINES_PER_POINT = 50
MAX_MODEL_FIXES = 10
MAX_SUMMARY_KEY_FILES = 5
DIFF_PREVIEW_CHARS = 500
DIFF_SAMPLE_CHARS = 8000
DOC_EXCERPT_CHARS = 2000

# Diffs with fewer files or characters than these run on the fast path
FAST_PATH_MAX_FILES = 5
FAST_PATH_MAX_DIFF_CHARS = 10_000

DEFAULT_RECOMMENDATIONS = [
    "Ensure comprehensive test coverage for new functionality",
    "Update relevant documentation",
    "Consider performance implications of changes",
]

# Deterministic credential check, always run on the model-driven fix path
CREDENTIAL_PATTERN = r"password|secret|api[_-]?key"

# ── Language Detection ───────────────────────────────────────────────────────
EXTENSION_LANGUAGES = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "java": "java",
    "go": "go",
    "rs": "rust",
    "rb": "ruby",
    "php": "php",
    "cs": "csharp",
    "cpp": "cpp",
    "c": "c",
    "swift": "swift",
    "kt": "kotlin",
    "yaml": "yaml",
    "yml": "yaml",
    "json": "json",
    "md": "markdown",
}

# ── Architecture Docs ────────────────────────────────────────────────────────
ARCH_DOCS_DIR = ".arch-docs"
KEY_ARCH_DOCS = ("architecture", "patterns", "file-structure", "security")
KEY_DOC_BASE_SCORE = 3
MAX_KEYWORDS = 20
MIN_KEYWORD_LENGTH = 4
RESULTS_PER_KEYWORD = 3
MAX_CONTEXT_SECTIONS = 10

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "that", "this", "with", "from", "have", "been",
        "will", "your", "more", "when", "some", "them", "than", "into", "only",
        "other", "then", "also", "make", "made", "like", "time", "very", "just",
        "file", "code", "test", "docs", "info", "data", "type", "name", "index",
    }
)

# Path fragments that imply a broader documentation topic
PATH_TOPIC_HINTS = {
    "test": "testing",
    "api": "api",
    "auth": "authentication",
    "db": "database",
    "database": "database",
    "security": "security",
    "schema": "schema",
    "config": "configuration",
    "migration": "migration",
}

# ── Static Analysis (Semgrep) ────────────────────────────────────────────────
SEMGREP_BINARY = "semgrep"
SEMGREP_BASE_RULESETS = ("auto", "p/security-audit", "p/owasp-top-ten")
SEMGREP_DEFAULT_EXCLUDES = ("node_modules", "dist", "build", ".git")
SEMGREP_TIMEOUT_SECONDS = 30
SEMGREP_MAX_TARGET_BYTES = 1_000_000
# Extra wall-clock allowance on top of semgrep's own per-rule timeout
SEMGREP_PROCESS_GRACE_SECONDS = 120

SEMGREP_LANGUAGE_RULESETS = {
    "typescript": ["p/typescript", "p/javascript", "p/react", "p/security-audit"],
    "javascript": ["p/javascript", "p/react", "p/security-audit"],
    "python": ["p/python", "p/django", "p/flask", "p/security-audit"],
    "java": ["p/java", "p/spring", "p/security-audit"],
    "go": ["p/golang", "p/security-audit"],
    "rust": ["p/rust", "p/security-audit"],
    "csharp": ["p/csharp", "p/security-audit"],
    "ruby": ["p/ruby", "p/rails", "p/security-audit"],
    "php": ["p/php", "p/laravel", "p/security-audit"],
}

# Checked in order; first substring hit wins
SEMGREP_FRAMEWORK_RULESETS = (
    ("react", "p/react"),
    ("next", "p/react"),
    ("vue", "p/javascript"),
    ("django", "p/django"),
    ("flask", "p/flask"),
    ("express", "p/javascript"),
    ("spring", "p/spring"),
    ("rails", "p/rails"),
    ("laravel", "p/laravel"),
)

# ── Test Suggestions ─────────────────────────────────────────────────────────
TEST_SUGGESTION_MIN_ADDITIONS = 5  # files at or below this get no suggestion
MAX_SUGGESTED_FUNCTIONS = 5
CODE_FILE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".py", ".go", ".java", ".rs", ".rb", ".cs")
NON_CODE_PATH_MARKERS = (".d.ts", ".config.", "index.")
TEST_FILE_PATTERNS = (
    r"\.test\.[jt]sx?$",
    r"\.spec\.[jt]sx?$",
    r"_test\.py$",
    r"test_.*\.py$",
    r"\.test\.go$",
    r"_test\.go$",
    r"Test\.java$",
    r"\.test\.rs$",
)

# ── DevOps Cost Estimates ────────────────────────────────────────────────────
# First matching kind wins, in this order
DEVOPS_FILE_PATTERNS = {
    "terraform": (r"\.tf$", r"\.tfvars$"),
    "cloudformation": (r"template\.(yaml|yml|json)$", r"cloudformation\.(yaml|yml|json)$"),
    "cdk": (r"cdk\.json$",),
    "pulumi": (r"Pulumi\.(yaml|yml)$", r"pulumi\..*\.(ts|js|py|go)$"),
    "docker": (r"Dockerfile", r"docker-compose\.(yaml|yml)$"),
    "kubernetes": (r"k8s.*\.(yaml|yml)$", r"kubernetes.*\.(yaml|yml)$", r"\.kube.*\.(yaml|yml)$"),
    "github_actions": (r"\.github/workflows/.*\.(yaml|yml)$",),
    "serverless": (r"serverless\.(yaml|yml|json)$",),
}

# Monthly USD (min, typical, max) for a typical size of each AWS resource
AWS_MONTHLY_COSTS = {
    "ec2-t3.medium": (30.0, 34.0, 40.0),
    "lambda-1m-invocations": (0.2, 0.4, 2.0),
    "s3-storage-gb": (0.023, 0.023, 0.025),
    "rds-db.t3.small": (26.0, 30.0, 35.0),
    "ecs-task-512cpu-1024mem": (20.0, 24.0, 30.0),
    "alb": (16.0, 22.0, 30.0),
    "nat-gateway": (32.0, 45.0, 60.0),
    "elasticache-t3.micro": (12.0, 15.0, 18.0),
    "cloudfront-1tb": (85.0, 100.0, 120.0),
    "api-gateway-1m-requests": (3.5, 4.0, 5.0),
    "sqs-1m-requests": (0.4, 0.5, 0.6),
    "sns-1m-notifications": (0.5, 0.6, 0.7),
    "dynamodb-25wcu-25rcu": (25.0, 30.0, 40.0),
}

# Resource kind -> (cost table key, confidence)
RESOURCE_COST_KEYS = {
    "ec2": ("ec2-t3.medium", "medium"),
    "lambda": ("lambda-1m-invocations", "low"),
    "s3": ("s3-storage-gb", "low"),
    "rds": ("rds-db.t3.small", "medium"),
    "ecs": ("ecs-task-512cpu-1024mem", "medium"),
    "alb": ("alb", "high"),
    "nat-gateway": ("nat-gateway", "high"),
    "elasticache": ("elasticache-t3.micro", "medium"),
    "cloudfront": ("cloudfront-1tb", "low"),
    "api-gateway": ("api-gateway-1m-requests", "low"),
    "sqs": ("sqs-1m-requests", "low"),
    "sns": ("sns-1m-notifications", "low"),
    "dynamodb": ("dynamodb-25wcu-25rcu", "low"),
}

# ── Coverage Reports ─────────────────────────────────────────────────────────
# Searched in order; the first report that parses wins
COVERAGE_REPORT_PATHS = (
    "coverage/coverage-summary.json",
    "coverage/lcov.info",
    "coverage/coverage-final.json",
    ".nyc_output/coverage.json",
    "coverage.xml",
    "htmlcov/coverage.json",
    ".coverage",
    "coverage.json",
)
MAX_COVERAGE_FILES = 20

# ── Cache ────────────────────────────────────────────────────────────────────
CACHE_DIR = ".pr-agent/cache"
CACHE_TTL_SECONDS = 24 * 60 * 60

# ── Usage Logging ────────────────────────────────────────────────────────────
USAGE_LOG_PATH = "usage.log"


# ── Runtime Settings ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Settings:
    """Settings resolved from the environment for a single process."""

    provider: str = DEFAULT_PROVIDER
    model: str = BEDROCK_MODEL_ID
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    token_budget: int = DEFAULT_TOKEN_BUDGET
    max_cost: float = DEFAULT_MAX_COST
    enable_static_analysis: bool = True
    use_cache: bool = False


def _parse_bool(raw: str, field_name: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{field_name} must be a boolean, got {raw!r}", field_name)


def _parse_number(raw: str, field_name: str, cast):
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{field_name} must be a number, got {raw!r}", field_name
        ) from e


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from PR_ANALYZER_* environment variables.

    Raises:
        ConfigurationError: If any value is missing its expected type or range.
    """
    env = os.environ if env is None else env

    provider = env.get("PR_ANALYZER_PROVIDER", DEFAULT_PROVIDER).strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}",
            "PR_ANALYZER_PROVIDER",
        )

    model = env.get("PR_ANALYZER_MODEL") or DEFAULT_MODELS[provider]

    temperature = _parse_number(
        env.get("PR_ANALYZER_TEMPERATURE", str(DEFAULT_TEMPERATURE)),
        "PR_ANALYZER_TEMPERATURE",
        float,
    )
    if not 0 <= temperature <= 2:
        raise ConfigurationError(
            "temperature must be between 0 and 2", "PR_ANALYZER_TEMPERATURE"
        )

    max_tokens = _parse_number(
        env.get("PR_ANALYZER_MAX_TOKENS", str(DEFAULT_MAX_TOKENS)),
        "PR_ANALYZER_MAX_TOKENS",
        int,
    )
    if max_tokens <= 0:
        raise ConfigurationError(
            "max tokens must be a positive integer", "PR_ANALYZER_MAX_TOKENS"
        )

    token_budget = _parse_number(
        env.get("PR_ANALYZER_TOKEN_BUDGET", str(DEFAULT_TOKEN_BUDGET)),
        "PR_ANALYZER_TOKEN_BUDGET",
        int,
    )
    max_cost = _parse_number(
        env.get("PR_ANALYZER_MAX_COST", str(DEFAULT_MAX_COST)),
        "PR_ANALYZER_MAX_COST",
        float,
    )
    if token_budget <= 0:
        raise ConfigurationError(
            "token budget must be positive", "PR_ANALYZER_TOKEN_BUDGET"
        )
    if max_cost < 0:
        raise ConfigurationError("max cost cannot be negative", "PR_ANALYZER_MAX_COST")

    return Settings(
        provider=provider,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        token_budget=token_budget,
        max_cost=max_cost,
        enable_static_analysis=_parse_bool(
            env.get("PR_ANALYZER_STATIC_ANALYSIS", "true"),
            "PR_ANALYZER_STATIC_ANALYSIS",
        ),
        use_cache=_parse_bool(
            env.get("PR_ANALYZER_CACHE", "false"), "PR_ANALYZER_CACHE"
        ),
    )
