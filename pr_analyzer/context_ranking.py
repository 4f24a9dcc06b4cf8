"""Context ranking — score arch-doc sections against keywords from a change set."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from pr_analyzer.arch_docs import ArchDoc, ArchDocSection, get_doc
from pr_analyzer.config import (
    DOC_EXCERPT_CHARS,
    KEY_ARCH_DOCS,
    KEY_DOC_BASE_SCORE,
    MAX_CONTEXT_SECTIONS,
    MAX_KEYWORDS,
    MIN_KEYWORD_LENGTH,
    PATH_TOPIC_HINTS,
    RESULTS_PER_KEYWORD,
    STOP_WORDS,
)
from pr_analyzer.models import DiffFile

_PATH_SPLIT_RE = re.compile(r"[/\-_.]")
_JS_IMPORT_RE = re.compile(r"""import\s+.*?\s+from\s+['"]([^'"]+)['"]""")
_PY_IMPORT_RE = re.compile(r"^[+\- ]?\s*(?:from\s+([\w.]+)\s+import|import\s+([\w.]+))", re.M)
_CLASS_RE = re.compile(r"\bclass\s+(\w+)")
_FUNCTION_RE = re.compile(r"\b(?:function|def)\s+(\w+)")
_IMPORT_SPLIT_RE = re.compile(r"[/\-_.@]")


@dataclass(frozen=True)
class RankedSection:
    """A section with its relevance score for one query."""

    doc: ArchDoc
    section: ArchDocSection
    relevance: int


@dataclass(frozen=True)
class RelevantDoc:
    """A retrieved section, flattened for prompts and reports."""

    filename: str
    title: str
    section: str
    content: str
    relevance: int


@dataclass(frozen=True)
class ArchDocsContext:
    """Documentation context attached to a run."""

    available: bool
    summary: str = ""
    relevant_docs: tuple[RelevantDoc, ...] = ()
    total_docs: int = 0
    docs: tuple[ArchDoc, ...] = field(default_factory=tuple, repr=False)


# ── Keyword extraction ───────────────────────────────────────────────────────


def _is_keyword(token: str) -> bool:
    return len(token) >= MIN_KEYWORD_LENGTH and token not in STOP_WORDS


def extract_keywords(
    title: Optional[str],
    files: Iterable[DiffFile],
    diff: Optional[str] = None,
) -> list[str]:
    """Collect up to MAX_KEYWORDS search terms, in first-seen order."""
    keywords: dict[str, None] = {}

    def _add(token: str) -> None:
        token = token.lower()
        if _is_keyword(token):
            keywords.setdefault(token, None)

    if title:
        for word in title.split():
            _add(word)

    for f in files:
        for part in _PATH_SPLIT_RE.split(f.path):
            _add(part)
        path_lower = f.path.lower()
        for fragment, topic in PATH_TOPIC_HINTS.items():
            if fragment in path_lower:
                keywords.setdefault(topic, None)

    if diff:
        for match in _JS_IMPORT_RE.finditer(diff):
            for part in _IMPORT_SPLIT_RE.split(match.group(1)):
                _add(part)
        for match in _PY_IMPORT_RE.finditer(diff):
            module = match.group(1) or match.group(2)
            for part in _IMPORT_SPLIT_RE.split(module):
                _add(part)
        for match in _CLASS_RE.finditer(diff):
            _add(match.group(1))
        for match in _FUNCTION_RE.finditer(diff):
            _add(match.group(1))

    return list(keywords)[:MAX_KEYWORDS]


# ── Scoring ──────────────────────────────────────────────────────────────────


def score_section(section: ArchDocSection, query: str) -> int:
    """Relevance of a section to a query phrase.

    +10 if the phrase appears in heading+content, +2 per occurrence of each
    query word longer than two characters, +5 if the heading contains the
    phrase. Matching is case-insensitive.
    """
    query_lower = query.lower().strip()
    if not query_lower:
        return 0
    text = f"{section.heading} {section.content}".lower()

    score = 0
    if query_lower in text:
        score += 10
    for word in query_lower.split():
        if len(word) > 2:
            score += 2 * text.count(word)
    if query_lower in section.heading.lower():
        score += 5
    return score


def search_sections(
    docs: Iterable[ArchDoc], query: str, max_results: int = 5
) -> list[RankedSection]:
    """Top sections with a positive score, highest first; ties keep doc order."""
    results: list[RankedSection] = []
    for doc in docs:
        for section in doc.sections:
            score = score_section(section, query)
            if score > 0:
                results.append(RankedSection(doc=doc, section=section, relevance=score))
    results.sort(key=lambda r: r.relevance, reverse=True)
    return results[:max_results]


# ── Context building ─────────────────────────────────────────────────────────


def build_arch_docs_context(
    docs: list[ArchDoc],
    title: Optional[str],
    files: Iterable[DiffFile],
    diff: Optional[str] = None,
) -> ArchDocsContext:
    """Rank documentation sections for a change set.

    Each keyword contributes its top matches; results are deduplicated by
    (filename, heading) keeping the best score. Key documents always
    contribute their first section at a baseline score. The best
    MAX_CONTEXT_SECTIONS sections form the context.
    """
    if not docs:
        return ArchDocsContext(available=False)

    files = list(files)
    ranked: dict[tuple[str, str], RankedSection] = {}

    for keyword in extract_keywords(title, files, diff):
        for result in search_sections(docs, keyword, RESULTS_PER_KEYWORD):
            key = (result.doc.filename, result.section.heading)
            existing = ranked.get(key)
            if existing is None or result.relevance > existing.relevance:
                ranked[key] = result

    for name in KEY_ARCH_DOCS:
        doc = get_doc(docs, name)
        if doc is None or not doc.sections:
            continue
        key = (doc.filename, doc.sections[0].heading)
        if key not in ranked:
            ranked[key] = RankedSection(
                doc=doc, section=doc.sections[0], relevance=KEY_DOC_BASE_SCORE
            )

    ordered = sorted(ranked.values(), key=lambda r: r.relevance, reverse=True)
    relevant = tuple(
        RelevantDoc(
            filename=r.doc.filename,
            title=r.doc.title,
            section=r.section.heading,
            content=r.section.content.strip(),
            relevance=r.relevance,
        )
        for r in ordered[:MAX_CONTEXT_SECTIONS]
    )

    return ArchDocsContext(
        available=True,
        summary=_context_summary(docs, relevant),
        relevant_docs=relevant,
        total_docs=len(docs),
        docs=tuple(docs),
    )


def _context_summary(docs: list[ArchDoc], relevant: tuple[RelevantDoc, ...]) -> str:
    lines = [
        "Architecture Documentation Context:",
        f"- Total documents: {len(docs)}",
        f"- Available: {', '.join(d.title for d in docs)}",
        f"- Relevant sections retrieved: {len(relevant)}",
    ]
    if relevant:
        lines.append("")
        lines.append("Most relevant sections:")
        for i, doc in enumerate(relevant[:5], 1):
            lines.append(f"{i}. {doc.title} - {doc.section} (relevance: {doc.relevance})")
    return "\n".join(lines)


# ── Prompt helpers ───────────────────────────────────────────────────────────


def format_arch_docs_for_prompt(context: Optional[ArchDocsContext]) -> str:
    """Render retrieved sections as a prompt block; empty when nothing applies."""
    if context is None or not context.available or not context.relevant_docs:
        return ""

    parts = [
        "## Repository Architecture Context",
        "",
        "The following sections from the architecture documentation are "
        "relevant to this change:",
        "",
    ]
    for doc in context.relevant_docs:
        parts.append(f"### {doc.title} - {doc.section}")
        parts.append("")
        parts.append(doc.content)
        parts.append("")
        parts.append("---")
        parts.append("")
    return "\n".join(parts)


def doc_excerpt(
    context: Optional[ArchDocsContext], filename: str, limit: int = DOC_EXCERPT_CHARS
) -> str:
    """Leading text of a whole document (e.g. 'security'), or '' if absent."""
    if context is None or not context.available:
        return ""
    doc = get_doc(list(context.docs), filename)
    if doc is None:
        return ""
    return doc.content[:limit]


def security_guidance(context: Optional[ArchDocsContext]) -> str:
    return doc_excerpt(context, "security")


def patterns_guidance(context: Optional[ArchDocsContext]) -> str:
    return doc_excerpt(context, "patterns")


def quality_guidance(context: Optional[ArchDocsContext]) -> str:
    """Improvement guidelines and code-quality standards, whichever exist."""
    parts = []
    recommendations = doc_excerpt(context, "recommendations")
    if recommendations:
        parts.append(f"## Repository Improvement Guidelines\n\n{recommendations}")
    quality = doc_excerpt(context, "code-quality")
    if quality:
        parts.append(f"## Code Quality Standards\n\n{quality}")
    return "\n\n".join(parts)
