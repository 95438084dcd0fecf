"""
Citation attribution.

Links a final answer back to the retrieved chunks that most likely
informed it. Each chunk is scored by the share of its distinct words that
also occur in the answer; files are kept when a chunk clears the match
threshold, ranked by summed score, and rendered as a numbered source list
with merged line ranges.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

from config import settings
from utils.fileio import display_names
from utils.text import distinct_words

logger = logging.getLogger(__name__)

LineRange = Tuple[int, int]

DENIAL_PATTERNS = re.compile(
    r"\b("
    r"(?:do not|don't|dont) know"
    r"|(?:cannot|can't|can not|unable to) (?:answer|find|determine)"
    r"|not (?:in|within) the (?:provided |given )?context"
    r"|(?:context|documents?) (?:does|do) not (?:contain|mention|include)"
    r"|no (?:relevant )?information (?:about|on|regarding)"
    r"|not mentioned"
    r")\b",
    re.IGNORECASE,
)

SALUTATION_PATTERNS = re.compile(
    r"^\s*("
    r"hi|hello|hey|greetings|good (?:morning|afternoon|evening)"
    r"|thanks|thank you|you'?re welcome|you are welcome|no problem|glad to help"
    r"|ok|okay|sure|got it|bye|goodbye"
    r")\b",
    re.IGNORECASE,
)

SHORT_REPLY_WORDS = 12


class CitationSource(NamedTuple):
    """A retrieved chunk positioned in its document."""

    path: str
    text: str
    start_line: int
    end_line: int


class FileCitation(NamedTuple):
    """Citation for one file: summed score and merged line ranges."""

    path: str
    score: float
    ranges: List[LineRange]


def _normalise_reply(text: str) -> str:
    return text.replace("’", "'").strip()


def is_denial(text: str) -> bool:
    """Whether the reply says the context does not hold the answer."""
    return bool(DENIAL_PATTERNS.search(_normalise_reply(text)))


def is_salutation(text: str) -> bool:
    """Whether a short reply is just a greeting or acknowledgement."""
    reply = _normalise_reply(text)
    if len(reply.split()) > SHORT_REPLY_WORDS:
        return False
    return bool(SALUTATION_PATTERNS.match(reply))


def should_cite(text: str) -> bool:
    """Citations are attached only to substantive answers."""
    return bool(text.strip()) and not is_denial(text) and not is_salutation(text)


def merge_ranges(ranges: Sequence[LineRange]) -> List[LineRange]:
    """Merge overlapping or adjacent inclusive line ranges."""
    merged: List[LineRange] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def overlap_score(chunk_text: str, answer_words: Set[str]) -> float:
    """Fraction of the chunk's distinct words that appear in the answer."""
    chunk_words = distinct_words(chunk_text)
    if not chunk_words:
        return 0.0
    return len(chunk_words & answer_words) / len(chunk_words)


class CitationExtractor:
    """
    Builds the "Sources:" block appended to answers.

    Attributes:
        max_files: Maximum number of files listed.
        threshold: Minimum chunk score for a file to be cited.
    """

    __slots__ = ('max_files', 'threshold')

    def __init__(
        self,
        max_files: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> None:
        """
        Initialize the citation extractor.

        Args:
            max_files: Defaults to settings.CITATION_MAX_FILES.
            threshold: Defaults to settings.CITATION_MATCH_THRESHOLD.
        """
        self.max_files: int = max_files if max_files is not None else settings.CITATION_MAX_FILES
        self.threshold: float = threshold if threshold is not None else settings.CITATION_MATCH_THRESHOLD

    def attribute(self, answer: str, sources: Sequence[CitationSource]) -> List[FileCitation]:
        """
        Select and rank the files supporting an answer.

        Chunks scoring at least `threshold` qualify their file. If no file
        qualifies, the file holding the single best-scoring chunk is used
        with all of its ranges, provided that chunk shares any word with
        the answer.

        Args:
            answer: Final answer text.
            sources: Retrieved chunks with line positions.

        Returns:
            Files ordered by summed score, at most `max_files`.
        """
        answer_words = distinct_words(answer)
        scored: Dict[str, List[Tuple[float, LineRange]]] = {}
        for source in sources:
            score = overlap_score(source.text, answer_words)
            scored.setdefault(source.path, []).append((score, (source.start_line, source.end_line)))

        citations: List[FileCitation] = []
        for path, entries in scored.items():
            kept = [(score, rng) for score, rng in entries if score >= self.threshold]
            if kept:
                citations.append(FileCitation(
                    path=path,
                    score=sum(score for score, _ in kept),
                    ranges=merge_ranges([rng for _, rng in kept]),
                ))

        if not citations and scored:
            best_path, best_entries = max(
                scored.items(), key=lambda item: max(score for score, _ in item[1])
            )
            if max(score for score, _ in best_entries) > 0:
                logger.debug(f"No file cleared threshold {self.threshold}; falling back to {best_path}")
                citations.append(FileCitation(
                    path=best_path,
                    score=sum(score for score, _ in best_entries),
                    ranges=merge_ranges([rng for _, rng in best_entries]),
                ))

        citations.sort(key=lambda c: c.score, reverse=True)
        return citations[:max(self.max_files, 0)]

    @staticmethod
    def format_citations(citations: Sequence[FileCitation]) -> str:
        """Render `Sources:\\n1) file (lines A-B, line C)` lines."""
        if not citations:
            return ""

        labels = display_names(c.path for c in citations)
        lines = ["Sources:"]
        for i, citation in enumerate(citations, 1):
            spans = ", ".join(
                f"line {start}" if start == end else f"lines {start}-{end}"
                for start, end in citation.ranges
            )
            lines.append(f"{i}) {labels[citation.path]} ({spans})")
        return "\n".join(lines)

    def build_citation_block(self, answer: str, sources: Sequence[CitationSource]) -> str:
        """Citation block for an answer, or "" when none applies."""
        if not sources or not should_cite(answer):
            return ""
        return self.format_citations(self.attribute(answer, sources))

    def append_citations(self, answer: str, sources: Sequence[CitationSource]) -> str:
        """Answer followed by its citation block, when there is one."""
        block = self.build_citation_block(answer, sources)
        if not block:
            return answer
        return f"{answer.rstrip()}\n\n{block}"
