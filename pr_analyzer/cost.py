#!/usr/bin/env python3
"""Backend cost estimation — per run, and as a report over the usage log.

Usage:
  pr-analyzer-cost                    # reads usage.log in current directory
  pr-analyzer-cost /path/to/usage.log
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from pr_analyzer.config import USAGE_LOG_PATH

_PER_MILLION = 1_000_000

# ── Pricing (USD per million tokens) ─────────────────────────────────────────


@dataclass(frozen=True)
class ModelPricing:
    label: str
    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_per_million + output_tokens * self.output_per_million
        ) / _PER_MILLION


_SONNET = ModelPricing("Sonnet", 3.00, 15.00)

MODELS: dict[str, ModelPricing] = {
    "eu.anthropic.claude-sonnet-4-6": _SONNET,
    "anthropic.claude-sonnet-4-6": _SONNET,
    "claude-sonnet-4-5": _SONNET,
    "gpt-4o": ModelPricing("GPT-4o", 2.50, 10.00),
    "gpt-4-turbo": ModelPricing("GPT-4 Turbo", 10.00, 30.00),
    "gemini-1.5-pro": ModelPricing("Gemini 1.5 Pro", 1.25, 5.00),
}

# Unknown models are billed at Sonnet rates
_FALLBACK = ModelPricing("unknown", 3.00, 15.00)


def get_pricing(model_id: str) -> ModelPricing:
    return MODELS.get(model_id, _FALLBACK)


def estimate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost of one run's token usage."""
    return get_pricing(model_id).cost(input_tokens, output_tokens)


# ── Usage records ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageRecord:
    """One backend call as written by the usage logger."""

    timestamp: str
    model: str
    stage: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def pricing(self) -> ModelPricing:
        return get_pricing(self.model)


def read_usage_log(path: Path) -> list[UsageRecord]:
    """Records from the TSV usage log. Malformed lines are reported on stderr."""
    records: list[UsageRecord] = []
    with open(path, encoding="utf-8") as f:
        for line_no, raw in enumerate(f, 1):
            line = raw.strip()
            if not line or line.startswith("timestamp"):
                continue
            columns = line.split("\t")
            if len(columns) < 7:
                print(f"  [skip] line {line_no}: {len(columns)} columns", file=sys.stderr)
                continue
            timestamp, model, stage, inp, out, _total, latency = columns[:7]
            try:
                records.append(
                    UsageRecord(timestamp, model, stage, int(inp), int(out), int(latency))
                )
            except ValueError:
                print(f"  [skip] line {line_no}: non-numeric counts", file=sys.stderr)
    return records


@dataclass
class Stats:
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    @property
    def avg_latency_s(self) -> float:
        return self.total_latency_ms / self.calls / 1000 if self.calls else 0.0

    def add(self, record: UsageRecord) -> None:
        pricing = record.pricing
        self.calls += 1
        self.input_tokens += record.input_tokens
        self.output_tokens += record.output_tokens
        self.input_cost += pricing.cost(record.input_tokens, 0)
        self.output_cost += pricing.cost(0, record.output_tokens)
        self.total_latency_ms += record.latency_ms


def group_stats(
    records: Iterable[UsageRecord], key: Callable[[UsageRecord], str]
) -> dict[str, Stats]:
    groups: dict[str, Stats] = {}
    for record in records:
        groups.setdefault(key(record), Stats()).add(record)
    return groups


def parse_usage_log(path: Path) -> tuple[dict[str, Stats], dict[str, Stats], Stats]:
    """(per-stage, per-model-label, grand total) stats for a usage log."""
    records = read_usage_log(path)
    grand = Stats()
    for record in records:
        grand.add(record)
    return (
        group_stats(records, lambda r: r.stage),
        group_stats(records, lambda r: r.pricing.label),
        grand,
    )


# ── Report ───────────────────────────────────────────────────────────────────

_COLUMNS = (
    ("Calls", 6, lambda s: f"{s.calls}"),
    ("Input", 10, lambda s: f"{s.input_tokens:,}"),
    ("Output", 10, lambda s: f"{s.output_tokens:,}"),
    ("Cost $", 10, lambda s: f"{s.total_cost:.4f}"),
    ("Avg lat", 9, lambda s: f"{s.avg_latency_s:.1f}s"),
)
_NAME_WIDTH = 28


def _row(name: str, stats: Stats) -> str:
    cells = "".join(f"{fmt(stats):>{width}}" for _title, width, fmt in _COLUMNS)
    return f"  {name:<{_NAME_WIDTH}}{cells}"


def _table(title: str, groups: dict[str, Stats]) -> list[str]:
    header = "".join(f"{t:>{w}}" for t, w, _fmt in _COLUMNS)
    rule = "  " + "-" * (_NAME_WIDTH + sum(w for _t, w, _f in _COLUMNS))
    lines = [f"  {title}", f"  {'Name':<{_NAME_WIDTH}}{header}", rule]
    # Most expensive first
    for name, stats in sorted(groups.items(), key=lambda kv: -kv[1].total_cost):
        lines.append(_row(name, stats))
    return lines


def print_report(by_stage: dict[str, Stats], by_model: dict[str, Stats], grand: Stats) -> None:
    if grand.calls == 0:
        print("No usage data found.")
        return

    lines = _table("By Model", by_model) + [""] + _table("By Stage", by_stage)
    lines += ["", _row("TOTAL", grand), ""]
    lines.append(f"  Input cost:   ${grand.input_cost:.4f}")
    lines.append(f"  Output cost:  ${grand.output_cost:.4f}")
    lines.append(f"  Total time:   {grand.total_latency_ms / 1000:.1f}s")
    print("\n".join(lines))


def main() -> None:
    path = Path(sys.argv[1] if len(sys.argv) > 1 else USAGE_LOG_PATH)
    if not path.exists():
        print(f"Error: {path} not found", file=sys.stderr)
        sys.exit(1)
    print_report(*parse_usage_log(path))


if __name__ == "__main__":
    main()
