"""
Keyword-overlap relevance scoring between a prompt and a source file.

The prompt and an index of the file (function, class and include names)
are reduced to normalized keywords.  Three partial scores are computed
over the prompt keywords:

* exact:    keyword equals a file term
* partial:  keyword contains a file term or vice versa
* contains: keyword (3+ chars) appears inside a file term

Each partial score is `matches / len(prompt_keywords)`, a keyword counting
at most once per category.  They are combined as
`(exact * 1.0 + partial * 0.7 + contains * 0.5) / 2.2`, clamped to 1.0.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from .indexer import FileIndex, index_file

logger = logging.getLogger(__name__)

EXACT_WEIGHT = 1.0
PARTIAL_WEIGHT = 0.7
CONTAINS_WEIGHT = 0.5
WEIGHT_SUM = 2.2

DEFAULT_STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "any", "can",
        "had", "her", "was", "one", "our", "out", "has", "have", "this", "that",
        "with", "from", "they", "will", "would", "there", "their", "what",
        "about", "which", "when", "make", "like", "into", "than", "then",
        "them", "these", "some", "could", "should", "please", "does", "how",
        "why", "who", "its", "also", "just", "file", "code", "use", "using",
    }
)

_NON_WORD = re.compile(r"[^A-Za-z0-9_]")


@dataclass
class AnalysisOptions:
    """Knobs for keyword extraction and the relevance threshold."""

    relevance_threshold: float = 0.3
    min_keyword_length: int = 3
    stop_words: FrozenSet[str] = DEFAULT_STOP_WORDS
    include_function_names: bool = True
    include_class_names: bool = True
    include_includes: bool = True


@dataclass
class MatchBreakdown:
    """Raw match counts behind a relevance score."""

    exact: int = 0
    partial: int = 0
    contains: int = 0
    keyword_count: int = 0

    def ratio(self, count: int) -> float:
        return count / self.keyword_count if self.keyword_count else 0.0

    @property
    def weighted(self) -> float:
        total = (
            self.ratio(self.exact) * EXACT_WEIGHT
            + self.ratio(self.partial) * PARTIAL_WEIGHT
            + self.ratio(self.contains) * CONTAINS_WEIGHT
        ) / WEIGHT_SUM
        return min(total, 1.0)


@dataclass
class RelevanceScore:
    score: float = 0.0
    reason: str = "No relevance found"
    matched_keywords: List[str] = field(default_factory=list)
    breakdown: MatchBreakdown = field(default_factory=MatchBreakdown)

    @property
    def bucket(self) -> str:
        return relevance_bucket(self.score)


def split_words(text: str) -> List[str]:
    """Split on whitespace and drop punctuation inside each word."""
    words = []
    for raw in text.split():
        word = _NON_WORD.sub("", raw)
        if word:
            words.append(word)
    return words


def normalize_keyword(word: str) -> str:
    return "".join(c.lower() for c in word if c.isascii() and c.isalnum())


def _collect(words: Iterable[str], options: AnalysisOptions, skip_stop_words: bool) -> List[str]:
    seen: List[str] = []
    for word in words:
        normalized = normalize_keyword(word)
        if len(normalized) < options.min_keyword_length:
            continue
        if skip_stop_words and normalized in options.stop_words:
            continue
        if normalized not in seen:
            seen.append(normalized)
    return seen


def extract_keywords(text: str, options: Optional[AnalysisOptions] = None) -> List[str]:
    """Normalized, de-duplicated prompt keywords in first-seen order."""
    return _collect(split_words(text), options or AnalysisOptions(), skip_stop_words=True)


def searchable_terms(index: FileIndex, options: Optional[AnalysisOptions] = None) -> List[str]:
    """Normalized terms drawn from the names recorded in a file index."""
    options = options or AnalysisOptions()
    names: List[str] = []
    if options.include_function_names:
        names.extend(index.functions)
    if options.include_class_names:
        names.extend(index.classes)
    if options.include_includes:
        names.extend(index.includes)
    words: List[str] = []
    for name in names:
        words.extend(split_words(name))
    return _collect(words, options, skip_stop_words=False)


def compute_breakdown(keywords: List[str], terms: List[str]) -> MatchBreakdown:
    breakdown = MatchBreakdown(keyword_count=len(keywords))
    if not keywords or not terms:
        return breakdown
    for kw in keywords:
        if any(kw == term for term in terms):
            breakdown.exact += 1
        if any(term in kw or kw in term for term in terms):
            breakdown.partial += 1
        if len(kw) >= 3 and any(kw in term for term in terms):
            breakdown.contains += 1
    return breakdown


def relevance_bucket(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.5:
        return "medium"
    if score >= 0.3:
        return "low"
    return "none"


_REASONS = {
    "high": "High relevance: strong keyword matches found",
    "medium": "Medium relevance: some keyword matches found",
    "low": "Low relevance: weak keyword matches found",
    "none": "No relevance: no significant keyword matches",
}


def _matched_keywords(keywords: List[str], terms: List[str]) -> List[str]:
    matched = []
    for kw in keywords:
        for term in terms:
            if kw == term:
                matched.append(f"{kw} (exact match: {term})")
            elif kw in term or term in kw:
                matched.append(f"{kw} (partial match: {term})")
    return matched


class RelevanceScorer:
    """Scores how pertinent a file is to a prompt."""

    def score_index(self, prompt: str, index: FileIndex, options: Optional[AnalysisOptions] = None) -> RelevanceScore:
        options = options or AnalysisOptions()
        keywords = extract_keywords(prompt, options)
        if not keywords:
            return RelevanceScore(reason="No valid keywords found in prompt")
        terms = searchable_terms(index, options)
        if not terms:
            return RelevanceScore(
                reason="No searchable terms found in file",
                breakdown=MatchBreakdown(keyword_count=len(keywords)),
            )
        breakdown = compute_breakdown(keywords, terms)
        value = breakdown.weighted
        return RelevanceScore(
            score=value,
            reason=_REASONS[relevance_bucket(value)],
            matched_keywords=_matched_keywords(keywords, terms),
            breakdown=breakdown,
        )

    def score(self, prompt: str, file_path: str, options: Optional[AnalysisOptions] = None) -> RelevanceScore:
        """Score `file_path` against `prompt`.  Never raises."""
        try:
            index = index_file(file_path)
        except Exception as exc:  # pragma: no cover - index_file already guards I/O
            logger.warning("Failed to index %s: %s", file_path, exc)
            return RelevanceScore(reason=f"Error during analysis: {exc}")
        return self.score_index(prompt, index, options)

    @staticmethod
    def meets_threshold(score: RelevanceScore, options: Optional[AnalysisOptions] = None) -> bool:
        options = options or AnalysisOptions()
        return score.score >= options.relevance_threshold
