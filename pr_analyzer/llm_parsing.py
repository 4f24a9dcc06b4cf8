"""Backend response parsing — extract JSON maps, arrays, and list items from model text."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from pr_analyzer.models import FileAnalysis

logger = logging.getLogger(__name__)

_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


def strip_code_fence(text: str) -> str:
    """Strip markdown code fences (```...```) from backend response text.

    Only strips the closing fence if an opening fence was also found.
    """
    cleaned = text.strip()

    had_opening = False
    if cleaned.startswith("```"):
        had_opening = True
        newline_pos = cleaned.find("\n")
        if newline_pos == -1:
            # Opening fence with no newline: the whole string is the fence
            return ""
        cleaned = cleaned[newline_pos + 1 :]

    if had_opening and cleaned.endswith("```"):
        cleaned = cleaned[:-3].rstrip()

    return cleaned


def _balanced_span(text: str, open_char: str, close_char: str) -> Optional[str]:
    """First balanced open..close span in text, ignoring brackets inside strings."""
    start = text.find(open_char)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for j in range(start, len(text)):
            ch = text[j]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == open_char:
                depth += 1
            elif ch == close_char:
                depth -= 1
                if depth == 0:
                    return text[start : j + 1]
        start = text.find(open_char, start + 1)
    return None


def extract_json_object(text: str) -> dict:
    """Parse the first JSON object in text.

    Raises:
        ValueError: If no object can be found or decoded.
    """
    cleaned = strip_code_fence(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        span = _balanced_span(cleaned, "{", "}")
        if span is None:
            raise ValueError("No JSON object found in response")
        data = json.loads(span)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def extract_json_array(text: str) -> list:
    """Parse the first JSON array in text.

    Raises:
        ValueError: If no array can be found or decoded.
    """
    cleaned = strip_code_fence(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        span = _balanced_span(cleaned, "[", "]")
        if span is None:
            raise ValueError("No JSON array found in response")
        data = json.loads(span)
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array, got {type(data).__name__}")
    return data


def salvage_objects(text: str, required_keys: tuple[str, ...]) -> list[dict]:
    """Extract complete {...} objects carrying required_keys from truncated JSON.

    Uses brace counting, so a response cut off at max_tokens still yields
    every object that was fully emitted.
    """
    objects = []
    i = 0
    while i < len(text):
        if text[i] == "{":
            span = _balanced_span(text[i:], "{", "}")
            if span is None:
                break
            try:
                obj = json.loads(span)
            except json.JSONDecodeError:
                i += 1
                continue
            if isinstance(obj, dict) and all(k in obj for k in required_keys):
                objects.append(obj)
                i += len(span)
                continue
        i += 1
    return objects


def parse_fix_entries(text: str) -> list[Any]:
    """Raw fix entries from a fix-generation response.

    Accepts a bare array or an object with a "fixes" array, and falls back to
    salvaging complete objects from a truncated response.
    """
    try:
        return extract_json_array(text)
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning("Fix response is not a JSON array: %s", e)

    try:
        data = extract_json_object(text)
        fixes = data.get("fixes")
        if isinstance(fixes, list):
            return fixes
    except (json.JSONDecodeError, ValueError):
        pass

    salvaged = salvage_objects(text, ("file", "comment"))
    if salvaged:
        logger.info("Salvaged %d fix entries from partial JSON response", len(salvaged))
        return salvaged
    raise ValueError("No fix entries found in response")


def clamp_complexity(value: Any, default: int = 1) -> int:
    """Coerce a complexity score to an int in [1, 5]."""
    try:
        score = int(float(value))
    except (TypeError, ValueError):
        score = default
    return max(1, min(5, score))


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def parse_file_analyses(
    text: str, defaults: dict[str, FileAnalysis]
) -> dict[str, FileAnalysis]:
    """Deep analyses keyed by path, merged over the matching default analysis.

    Only paths that already have a default are accepted. Change counts always
    come from the default, since they are measured from the diff.

    Raises:
        ValueError: If the response holds no JSON object.
    """
    data = extract_json_object(text)
    parsed: dict[str, FileAnalysis] = {}
    for path, entry in data.items():
        base = defaults.get(path)
        if base is None or not isinstance(entry, dict):
            logger.debug("Ignoring analysis entry for %r", path)
            continue
        summary = entry.get("summary")
        parsed[path] = FileAnalysis(
            path=path,
            summary=summary.strip() if isinstance(summary, str) and summary.strip() else base.summary,
            complexity=clamp_complexity(entry.get("complexity"), base.complexity),
            additions=base.additions,
            deletions=base.deletions,
            risks=_string_list(entry.get("risks")),
            recommendations=_string_list(entry.get("recommendations")),
        )
    return parsed


def extract_list_items(text: str) -> list[str]:
    """Bullet or numbered lines from free text, markers stripped."""
    items = []
    for line in text.splitlines():
        match = _LIST_ITEM_RE.match(line)
        if match:
            items.append(match.group(1))
    return items


def parse_recommendations(text: str) -> list[str]:
    """Recommendations from a JSON array of strings, else from list lines."""
    try:
        data = extract_json_array(text)
        items = [str(item).strip() for item in data if str(item).strip()]
        if items:
            return items
    except (json.JSONDecodeError, ValueError) as e:
        logger.info("Recommendations not JSON, extracting list lines: %s", e)
    return extract_list_items(text)
