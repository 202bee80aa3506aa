"""
Context builder for clion.

This module expands `@file <path>` directives embedded in a prompt into
the referenced file's content, an excerpt of it, or a short generated
summary, and optionally prepends context recalled from memory nodes.

Each directive is handled independently: a reference that escapes the
project root, matches an exclude pattern or cannot be read is replaced
by a one-line `//` comment describing the problem, and assembly carries
on with the remaining directives.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence

from . import paths
from .config import ContextOptions
from .errors import ExcludedByPolicyError, ReadFailureError, SandboxViolationError
from .indexer import index_file, render_summary
from .relevance import RelevanceScore, RelevanceScorer

if TYPE_CHECKING:
    from .memory import MemoryService
    from .session import SessionStore

logger = logging.getLogger(__name__)

INCLUSION_PATTERN = re.compile(r"@file\s+(\S+)(\s+--force(?!\S))?")
MEMORY_KEYWORD_PATTERN = re.compile(r"\b\w{4,}\b")

MEMORY_HEADER = "\n// ===== MEMORY CONTEXT =====\n"
MEMORY_FOOTER = "// ===== END MEMORY CONTEXT =====\n\n"

CHARS_PER_LINE = 50


@dataclass
class FileInclusion:
    """One `@file` directive and its span in the original prompt."""

    file_path: str
    start_offset: int
    end_offset: int
    raw_match: str
    force: bool = False


def extract_inclusions(prompt: str) -> List[FileInclusion]:
    """Return all directives in `prompt` in order of appearance."""
    return [
        FileInclusion(
            file_path=m.group(1),
            start_offset=m.start(),
            end_offset=m.end(),
            raw_match=m.group(0),
            force=m.group(2) is not None,
        )
        for m in INCLUSION_PATTERN.finditer(prompt)
    ]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def glob_to_regex(pattern: str) -> re.Pattern:
    """Translate a `*` glob into an anchored regex; other characters are literal."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def number_lines(lines: Sequence[str], start: int = 1) -> str:
    return "".join(f"{n} | {line}\n" for n, line in enumerate(lines, start))


def truncate_content(content: str, max_size: int, display_path: str, header: Optional[str] = None) -> str:
    """Keep a head and tail excerpt of `content` around an omission marker.

    `max_size // 50` lines are kept (50 chars per line heuristic), split
    evenly, each prefixed with its 1-based line number in the original.
    At least one line is always omitted.  Over-long kept lines are clipped
    so the excerpt fits the budget; a single-line file is clipped rather
    than omitted.  `header` defaults to `// File: <display_path>`.
    """
    if header is None:
        header = f"// File: {display_path}\n"
    lines = content.splitlines()
    total = len(lines)
    if total == 1:
        line_budget = max(1, max_size * 2)
        line = lines[0]
        clipped = line if len(line) <= line_budget else line[:line_budget] + " ..."
        return (
            f"// File truncated: showing {min(len(line), line_budget)} of {len(line)} characters\n"
            + header
            + "\n"
            + number_lines([clipped])
        )
    keep = max_size // CHARS_PER_LINE
    if keep >= total:
        keep = max(total - 1, 0)
    head = keep // 2
    tail = keep - head
    line_budget = max(1, (max_size * 4) // (2 * max(keep, 1)))

    def clip(line: str) -> str:
        return line if len(line) <= line_budget else line[:line_budget] + " ..."

    parts = [
        f"// File truncated: showing {keep} of {total} lines\n",
        header + "\n",
        number_lines([clip(l) for l in lines[:head]], 1),
        f"\n// ... {total - keep} lines omitted ...\n\n",
        number_lines([clip(l) for l in lines[total - tail:]] if tail else [], total - tail + 1),
    ]
    return "".join(parts)


class ContextBuilder:
    """Expands `@file` directives and attaches memory context."""

    def __init__(
        self,
        scorer: Optional[RelevanceScorer] = None,
        memory: Optional["MemoryService"] = None,
        sessions: Optional["SessionStore"] = None,
    ) -> None:
        self.scorer = scorer or RelevanceScorer()
        self.memory = memory
        self.sessions = sessions

    # ----------------
    # Public API
    # ----------------
    def build_context(
        self,
        prompt: str,
        project_root: str | Path = ".",
        options: Optional[ContextOptions] = None,
        memory_node_ids: Optional[Sequence[str]] = None,
        session_id: Optional[str] = None,
    ) -> str:
        """Return `prompt` with every directive expanded.

        When `memory_node_ids` is given those nodes are rendered; otherwise,
        if memory integration is enabled, relevant nodes are discovered
        from the prompt's keywords.  Nodes used are associated with
        `session_id` when a session store is attached.
        """
        options = options or ContextOptions()
        context = self.expand_inclusions(prompt, project_root, options)

        node_ids: List[str] = list(memory_node_ids or [])
        if not node_ids and options.enable_memory_integration and self.memory is not None:
            node_ids = self.find_relevant_memory_nodes(prompt, options)
        if not node_ids or self.memory is None:
            return context

        memory_text = self.memory.generate_context(node_ids, options.max_context_size // 2)
        if not memory_text:
            return context
        if session_id and self.sessions is not None:
            for node_id in node_ids:
                self.sessions.associate_memory(session_id, node_id)
        return MEMORY_HEADER + memory_text + MEMORY_FOOTER + context

    def expand_inclusions(self, prompt: str, project_root: str | Path, options: ContextOptions) -> str:
        result = prompt
        inclusions = sorted(extract_inclusions(prompt), key=lambda inc: inc.start_offset, reverse=True)
        for inclusion in inclusions:
            replacement = self._render_inclusion(inclusion, prompt, str(project_root), options)
            result = result[: inclusion.start_offset] + replacement + result[inclusion.end_offset :]
        return result

    # ----------------
    # Per-inclusion rendering
    # ----------------
    def _render_inclusion(
        self, inclusion: FileInclusion, prompt: str, project_root: str, options: ContextOptions
    ) -> str:
        ref = inclusion.file_path
        try:
            resolved = paths.resolve(ref, project_root)
            if not paths.is_allowed(resolved, project_root):
                raise SandboxViolationError(ref)
            if self._is_excluded(resolved, options):
                raise ExcludedByPolicyError(ref)
            display = paths.relative_display(resolved, project_root)
            if options.enable_intelligent_selection and not inclusion.force:
                return self._render_selected(prompt, resolved, display, options)
            return self._render_full(resolved, display, options)
        except SandboxViolationError:
            logger.warning("Rejected file reference outside project root: %s", ref)
            return f"// Error: File '{ref}' is outside project directory or access denied"
        except ExcludedByPolicyError:
            logger.debug("File reference %s matches an exclude pattern", ref)
            return f"// Warning: File '{ref}' matches exclude pattern"
        except Exception as exc:
            logger.warning("Failed to include %s: %s", ref, exc)
            return f"// Error reading file '{ref}': {exc}"

    @staticmethod
    def _is_excluded(resolved: str, options: ContextOptions) -> bool:
        filename = Path(resolved).name
        for pattern in options.exclude_patterns:
            if not pattern:
                continue
            if "*" in pattern:
                regex = glob_to_regex(pattern)
                if regex.match(filename) or regex.match(resolved):
                    return True
            elif pattern in (filename, resolved):
                return True
        return False

    @staticmethod
    def _read(resolved: str) -> str:
        try:
            with open(resolved, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as exc:
            raise ReadFailureError(f"Cannot read file: {resolved} ({exc.strerror or exc})") from exc

    @staticmethod
    def _header(display: str, options: ContextOptions) -> str:
        return options.file_header_format.replace("{path}", display)

    def _format(self, content: str, display: str, options: ContextOptions) -> str:
        header = self._header(display, options)
        if options.include_line_numbers:
            return header + number_lines(content.splitlines())
        if content and not content.endswith("\n"):
            content += "\n"
        return header + content

    def _render_full(self, resolved: str, display: str, options: ContextOptions) -> str:
        content = self._read(resolved)
        rendered = self._format(content, display, options)
        if options.truncate_large_files and estimate_tokens(rendered) > options.max_context_size:
            logger.info(
                "Truncating %s (~%d tokens > %d)", display, estimate_tokens(rendered), options.max_context_size
            )
            return truncate_content(content, options.max_context_size, display, self._header(display, options))
        return rendered

    def _render_selected(self, prompt: str, resolved: str, display: str, options: ContextOptions) -> str:
        score = self.scorer.score(prompt, resolved, options.analysis)
        logger.debug("Relevance of %s: %.2f (%s)", display, score.score, score.reason)
        if self.scorer.meets_threshold(score, options.analysis):
            content = self._render_full(resolved, display, options)
            if options.show_relevance_info:
                content = format_relevance_info(score, display) + "\n" + content
            return content

        content = render_summary(index_file(resolved), display)
        if options.show_relevance_info:
            content = format_relevance_info(score, display) + "\n" + content
        content += "\n// Note: File summary shown instead of full content due to low relevance score.\n"
        content += f"// Use @file {display} --force to include full file if needed.\n"
        return content

    # ----------------
    # Memory
    # ----------------
    def find_relevant_memory_nodes(self, prompt: str, options: ContextOptions) -> List[str]:
        """Discover memory nodes for `prompt`.

        Keyword hits come first, then recently accessed nodes fill the
        remaining slots.  Both must clear the importance floor and share a
        tag or content word with the prompt.  Candidates are inspected
        with `peek`, so discovery records no accesses.
        """
        if self.memory is None:
            return []
        limit = options.max_memory_nodes
        keywords = memory_keywords(prompt)
        selected: List[str] = []
        try:
            for keyword in keywords:
                for node_id in self.memory.search(keyword, {}, limit * 2):
                    if len(selected) >= limit:
                        break
                    if node_id not in selected and self._memory_matches(node_id, keywords, options):
                        selected.append(node_id)
                if len(selected) >= limit:
                    break
            if len(selected) < limit:
                for node_id in self.memory.recently_accessed(limit * 2):
                    if len(selected) >= limit:
                        break
                    if node_id not in selected and self._memory_matches(node_id, keywords, options):
                        selected.append(node_id)
        except Exception as exc:
            logger.warning("Memory lookup failed; continuing without memory context: %s", exc)
        return selected

    def _memory_matches(self, node_id: str, keywords: List[str], options: ContextOptions) -> bool:
        node = self.memory.peek(node_id) if self.memory else None
        if node is None or node.importance_score < options.min_memory_importance:
            return False
        tags = {t.lower() for t in node.tags}
        content = node.content.lower()
        return any(kw in tags or kw in content for kw in keywords)


def memory_keywords(prompt: str) -> List[str]:
    """Lower-cased, de-duplicated words of 4+ characters."""
    seen: List[str] = []
    for match in MEMORY_KEYWORD_PATTERN.finditer(prompt):
        word = match.group(0).lower()
        if word not in seen:
            seen.append(word)
    return seen


def format_relevance_info(score: RelevanceScore, display_path: str) -> str:
    lines = [
        f"// Relevance Analysis for: {display_path}",
        f"// Score: {score.score:.2f} - {score.reason}",
    ]
    if score.matched_keywords:
        lines.append("// Matched keywords: " + ", ".join(score.matched_keywords))
    return "\n".join(lines) + "\n"
