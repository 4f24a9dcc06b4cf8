"""Architecture docs — load a repository's .arch-docs markdown into sections."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pr_analyzer.config import ARCH_DOCS_DIR

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")


@dataclass(frozen=True)
class ArchDocSection:
    """A headed section of a markdown document."""

    heading: str
    level: int
    content: str
    line_start: int
    line_end: int


@dataclass(frozen=True)
class ArchDoc:
    """A parsed markdown document."""

    filename: str  # stem, e.g. "security" for security.md
    title: str
    content: str
    sections: tuple[ArchDocSection, ...] = field(default_factory=tuple)


def parse_markdown(text: str, filename: str) -> ArchDoc:
    """Split markdown text into sections bounded by heading lines.

    Lines before the first heading belong to no section. The document title
    is the first heading when it is level 1, otherwise the humanised filename.
    """
    lines = text.split("\n")
    title = filename[:1].upper() + filename[1:].replace("-", " ")

    sections: list[ArchDocSection] = []
    heading: Optional[str] = None
    level = 0
    start = 0
    body: list[str] = []

    def _close(end: int) -> None:
        if heading is not None:
            sections.append(
                ArchDocSection(
                    heading=heading,
                    level=level,
                    content="".join(line + "\n" for line in body),
                    line_start=start,
                    line_end=end,
                )
            )

    for index, line in enumerate(lines):
        match = _HEADING_RE.match(line)
        if match:
            _close(index - 1)
            if not sections and heading is None and len(match.group(1)) == 1:
                title = match.group(2).strip()
            heading = match.group(2).strip()
            level = len(match.group(1))
            start = index
            body = []
        elif heading is not None:
            body.append(line)

    _close(len(lines) - 1)

    return ArchDoc(filename=filename, title=title, content=text, sections=tuple(sections))


def arch_docs_exist(repo_path: str | Path = ".") -> bool:
    """Check whether the repository has an .arch-docs folder."""
    return (Path(repo_path) / ARCH_DOCS_DIR).is_dir()


def load_arch_docs(repo_path: str | Path = ".") -> list[ArchDoc]:
    """Parse every markdown file in <repo>/.arch-docs, sorted by filename."""
    docs_dir = Path(repo_path) / ARCH_DOCS_DIR
    if not docs_dir.is_dir():
        return []

    docs: list[ArchDoc] = []
    for path in sorted(docs_dir.glob("*.md")):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable arch doc %s: %s", path, e)
            continue
        docs.append(parse_markdown(text, path.stem))

    logger.info("Loaded %d arch docs from %s", len(docs), docs_dir)
    return docs


def get_doc(docs: list[ArchDoc], filename: str) -> Optional[ArchDoc]:
    """Find a document by filename stem."""
    return next((d for d in docs if d.filename == filename), None)

