"""On-disk result cache keyed by a hash of the run inputs."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Optional

from pr_analyzer.config import CACHE_DIR, CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class CacheManager:
    """JSON files under <repo>/.pr-agent/cache, expired by modification time.

    Advisory only: read problems count as a miss and write problems are logged.
    """

    def __init__(self, repo_path: str | Path = "."):
        self.cache_dir = Path(repo_path) / CACHE_DIR

    def generate_key(self, inputs: dict[str, Any]) -> str:
        """SHA-256 of the JSON-encoded inputs."""
        content = json.dumps(inputs, sort_keys=True, default=str)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def get(self, key: str, ttl_seconds: int = CACHE_TTL_SECONDS) -> Optional[Any]:
        path = self._path(key)
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cache stat failed for %s: %s", key, e)
            return None

        if age > ttl_seconds:
            logger.info("Cache entry %s expired after %.0fs", key[:12], age)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove expired cache entry %s: %s", key[:12], e)
            return None

        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", key[:12], e)
            return None

    def set(self, key: str, value: Any) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._path(key).write_text(json.dumps(value, indent=2), encoding="utf-8")
        except (OSError, TypeError) as e:
            logger.warning("Failed to write cache entry %s: %s", key[:12], e)

    def clear(self) -> None:
        """Remove every cached entry."""
        try:
            if self.cache_dir.exists():
                shutil.rmtree(self.cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to clear cache: %s", e)
