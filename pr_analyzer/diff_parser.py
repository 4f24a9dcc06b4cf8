"""Diff parsing — unified diff text to ordered DiffFile records."""

from __future__ import annotations

import re
from typing import Optional

from pr_analyzer.config import EXTENSION_LANGUAGES
from pr_analyzer.models import DiffFile, FileStatus

NULL_PATH = "/dev/null"

_HEADER_RE = re.compile(r"^diff --git (a/.+?|/dev/null) (b/.+|/dev/null)$")


def detect_language(path: str) -> str:
    """Map a file extension to a language name, or 'unknown'."""
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return "unknown"
    ext = name.rsplit(".", 1)[-1].lower()
    return EXTENSION_LANGUAGES.get(ext, "unknown")


class _FileBlock:
    """Mutable accumulator for one `diff --git` block."""

    def __init__(self, old_path: str, new_path: str, header: str):
        self.old_path = old_path
        self.new_path = new_path
        self.lines = [header]
        self.additions = 0
        self.deletions = 0
        self.old_is_null = old_path == NULL_PATH
        self.new_is_null = new_path == NULL_PATH
        self.renamed_from: Optional[str] = None
        self.in_hunk = False

    def build(self) -> DiffFile:
        path = self.new_path if not self.new_is_null else self.old_path

        if self.old_is_null:
            status = FileStatus.ADDED
        elif self.new_is_null:
            status = FileStatus.DELETED
        elif self.renamed_from is not None:
            status = FileStatus.RENAMED
        else:
            status = FileStatus.MODIFIED

        old_path = None
        if status == FileStatus.RENAMED:
            old_path = self.renamed_from
        elif self.old_path != path and not self.old_is_null:
            old_path = self.old_path

        return DiffFile(
            path=path,
            status=status,
            additions=self.additions,
            deletions=self.deletions,
            language=detect_language(path),
            diff="\n".join(self.lines),
            old_path=old_path,
        )


def _strip_side(raw: str, prefix: str) -> str:
    return NULL_PATH if raw == NULL_PATH else raw.removeprefix(prefix)


def parse_diff(diff_text: str) -> list[DiffFile]:
    """Parse a unified diff into DiffFile records, preserving source order.

    Empty or unrecognisable input yields an empty list rather than an error.
    """
    if not diff_text:
        return []

    files: list[DiffFile] = []
    current: Optional[_FileBlock] = None

    for line in diff_text.splitlines():
        # New file header
        if line.startswith("diff --git"):
            if current is not None:
                files.append(current.build())
            match = _HEADER_RE.match(line)
            current = None
            if match:
                current = _FileBlock(
                    old_path=_strip_side(match.group(1), "a/"),
                    new_path=_strip_side(match.group(2), "b/"),
                    header=line,
                )
            continue

        if current is None:
            continue

        current.lines.append(line)

        # File metadata only appears before the first hunk
        if not current.in_hunk:
            if line.startswith("new file"):
                current.old_is_null = True
                continue
            if line.startswith("deleted file"):
                current.new_is_null = True
                continue
            if line.startswith("rename from"):
                current.renamed_from = line.removeprefix("rename from").strip()
                continue
            if line.startswith("--- "):
                current.old_is_null = current.old_is_null or line[4:].strip() == NULL_PATH
                continue
            if line.startswith("+++ "):
                current.new_is_null = current.new_is_null or line[4:].strip() == NULL_PATH
                continue
            if line.startswith("@@"):
                current.in_hunk = True
                continue

        # Header-looking lines are never counted as content
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            current.additions += 1
        elif line.startswith("-"):
            current.deletions += 1

    if current is not None:
        files.append(current.build())

    return files


def diff_stats(files: list[DiffFile]) -> dict:
    """Generate summary statistics for parsed diff files."""
    return {
        "files_changed": len(files),
        "lines_added": sum(f.additions for f in files),
        "lines_removed": sum(f.deletions for f in files),
        "new_files": [f.path for f in files if f.status == FileStatus.ADDED],
        "deleted_files": [f.path for f in files if f.status == FileStatus.DELETED],
        "renamed_files": [f.path for f in files if f.status == FileStatus.RENAMED],
    }


def added_lines(diff: str) -> list[str]:
    """Content of the `+` lines in one file's diff block, without the marker."""
    return [
        line[1:]
        for line in diff.splitlines()
        if line.startswith("+") and not line.startswith("+++")
    ]
