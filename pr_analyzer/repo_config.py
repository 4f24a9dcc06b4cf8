"""Project configuration files read from the analyzed repository."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def read_repo_file(repo_path: str | Path, name: str) -> Optional[str]:
    """Text of <repo>/<name>, or None when it is missing or unreadable."""
    path = Path(repo_path) / name
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Cannot read %s: %s", path, e)
        return None


def repo_file_exists(repo_path: str | Path, *names: str) -> bool:
    return any((Path(repo_path) / name).is_file() for name in names)


def package_json(repo_path: str | Path) -> dict:
    """Parsed package.json; empty when absent or malformed."""
    text = read_repo_file(repo_path, "package.json")
    if text is None:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring malformed package.json: %s", e)
        return {}
    return data if isinstance(data, dict) else {}


def package_dependencies(manifest: dict) -> dict:
    """Runtime and dev dependencies of a package.json, merged."""
    deps: dict = {}
    for key in ("dependencies", "devDependencies"):
        section = manifest.get(key)
        if isinstance(section, dict):
            deps.update(section)
    return deps
