"""
Citation Marker Parser for MedCite

Parses generated answer text to find the citation markers the model emitted
and resolves them against the citations that were supplied to it:
- Explicit tags: [CITATION:1], [CITATION:1,2], [CITATION:1:QUOTE:"text"]
- Bracket ranges: [2-4]
- Bracket lists: [1], [1,2], [1, 2, 3]
- Parenthetical lists: (1), (1,2) where not already captured above

Only the referenced subset of the supplied citations is returned; indices that
do not map to a supplied citation are dropped, never invented.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Literal

from medcite.rag.models import Citation

logger = logging.getLogger(__name__)

MarkerKind = Literal["citation_tag", "bracket_range", "bracket_list", "parenthetical"]
VerificationStatus = Literal["normal", "over_supply", "no_citations"]

# Ranges wider than this are treated as prose, not citations (e.g. [1900-2020])
MAX_RANGE_SPAN = 100

# Share of long quote words that must appear in the source
QUOTE_OVERLAP_THRESHOLD = 0.7

CITATION_TAG_PATTERN = re.compile(
    r"\[CITATION:\s*(\d+(?:\s*,\s*\d+)*)(?::QUOTE:\"([^\"]+)\")?\]",
    re.IGNORECASE,
)
BRACKET_RANGE_PATTERN = re.compile(r"\[(\d+)\s*[-–]\s*(\d+)\]")
BRACKET_LIST_PATTERN = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")
PARENTHETICAL_PATTERN = re.compile(r"\((\d+(?:\s*,\s*\d+)*)\)")


@dataclass
class CitationMarker:
    """A citation marker found in generated text."""

    kind: MarkerKind
    indices: list[int]
    start: int
    end: int
    text: str
    quote: str | None = None


@dataclass
class CitationVerification:
    """Referenced citations and bookkeeping for one generated answer."""

    referenced_citations: list[Citation]
    citation_indices: list[int]
    has_citations: bool
    total_retrieved: int
    total_referenced: int
    missing_citations: list[int] = field(default_factory=list)
    unresolved_indices: list[int] = field(default_factory=list)
    invalid_quotes: list[int] = field(default_factory=list)
    markers: list[CitationMarker] = field(default_factory=list)

    @property
    def status(self) -> VerificationStatus:
        if self.total_retrieved and not self.has_citations:
            return "no_citations"
        if self.missing_citations:
            return "over_supply"
        return "normal"

    @property
    def stats(self) -> dict:
        return {
            "total_retrieved": self.total_retrieved,
            "total_referenced": self.total_referenced,
            "missing_citations": self.missing_citations,
            "unresolved_indices": self.unresolved_indices,
            "invalid_quotes": self.invalid_quotes,
        }


def _split_indices(body: str) -> list[int]:
    return [int(part) for part in re.split(r"\s*,\s*", body.strip()) if part]


def _expand_range(start: int, end: int) -> list[int]:
    if end < start or end - start > MAX_RANGE_SPAN:
        return []
    return list(range(start, end + 1))


def _overlaps(start: int, end: int, claimed: list[tuple[int, int]]) -> bool:
    return any(start < c_end and c_start < end for c_start, c_end in claimed)


def parse_citation_markers(
    text: str, include_parenthetical: bool = True
) -> list[CitationMarker]:
    """
    Find every citation marker in text, sorted by position.

    Stricter syntaxes are scanned first; a looser pattern never re-captures
    a span already claimed by an earlier one.
    """
    if not text:
        return []

    markers: list[CitationMarker] = []
    claimed: list[tuple[int, int]] = []

    def claim(match: re.Match, kind: MarkerKind, indices: list[int], quote=None):
        claimed.append((match.start(), match.end()))
        if indices:
            markers.append(
                CitationMarker(
                    kind=kind,
                    indices=indices,
                    start=match.start(),
                    end=match.end(),
                    text=match.group(0),
                    quote=quote,
                )
            )

    for match in CITATION_TAG_PATTERN.finditer(text):
        claim(match, "citation_tag", _split_indices(match.group(1)), match.group(2))

    for match in BRACKET_RANGE_PATTERN.finditer(text):
        if _overlaps(match.start(), match.end(), claimed):
            continue
        indices = _expand_range(int(match.group(1)), int(match.group(2)))
        claim(match, "bracket_range", indices)

    for match in BRACKET_LIST_PATTERN.finditer(text):
        if _overlaps(match.start(), match.end(), claimed):
            continue
        claim(match, "bracket_list", _split_indices(match.group(1)))

    if include_parenthetical:
        for match in PARENTHETICAL_PATTERN.finditer(text):
            if _overlaps(match.start(), match.end(), claimed):
                continue
            claim(match, "parenthetical", _split_indices(match.group(1)))

    return sorted(markers, key=lambda m: m.start)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", " ", text.lower())).strip()


class CitationVerifier:
    """Resolves citation markers in an answer against the supplied citations."""

    def __init__(self, include_parenthetical: bool = True) -> None:
        self.include_parenthetical = include_parenthetical

    def verify(
        self,
        text: str,
        citations: list[Citation],
        include_parenthetical: bool | None = None,
    ) -> CitationVerification:
        """
        Keep only the supplied citations the answer actually references.

        A quoted marker whose text is not supported by the citation's snippet
        does not count as a reference to that citation.

        Args:
            text: Generated answer text.
            citations: The citations that were supplied to the generator.
            include_parenthetical: Override whether (1)-style markers count.

        Returns:
            CitationVerification with the referenced subset in index order.
        """
        if include_parenthetical is None:
            include_parenthetical = self.include_parenthetical
        markers = parse_citation_markers(text, include_parenthetical)
        by_index = {citation.index: citation for citation in citations}

        cited = sorted({index for marker in markers for index in marker.indices})
        invalid = self._invalid_quotes(markers, by_index)
        resolved = [index for index in cited if index in by_index and index not in invalid]
        unresolved = [index for index in cited if index not in by_index]
        missing = sorted(index for index in by_index if index not in resolved)

        verification = CitationVerification(
            referenced_citations=[by_index[index] for index in resolved],
            citation_indices=resolved,
            has_citations=bool(resolved),
            total_retrieved=len(citations),
            total_referenced=len(resolved),
            missing_citations=missing,
            unresolved_indices=unresolved,
            invalid_quotes=invalid,
            markers=markers,
        )
        self._log(verification, text)
        return verification

    def _invalid_quotes(
        self, markers: list[CitationMarker], by_index: dict[int, Citation]
    ) -> list[int]:
        invalid: set[int] = set()
        for marker in markers:
            if not marker.quote:
                continue
            for index in marker.indices:
                citation = by_index.get(index)
                # Without a snippet there is nothing to check against
                if citation is None or not citation.snippet:
                    continue
                if not self.verify_quote(marker.quote, citation.snippet):
                    invalid.add(index)
        return sorted(invalid)

    @staticmethod
    def _log(verification: CitationVerification, text: str) -> None:
        if verification.invalid_quotes:
            logger.warning(
                "Quoted text not supported by citations %s",
                verification.invalid_quotes,
            )
        if verification.unresolved_indices:
            logger.debug(
                "Dropped citation indices with no supplied source: %s",
                verification.unresolved_indices,
            )
        status = verification.status
        if status == "no_citations":
            logger.warning(
                "No citation markers found despite %d supplied citations. "
                "Response preview: %s",
                verification.total_retrieved,
                text[:300],
            )
        elif status == "over_supply":
            logger.info(
                "Answer referenced %d of %d supplied citations (unreferenced: %s)",
                verification.total_referenced,
                verification.total_retrieved,
                verification.missing_citations,
            )
        elif verification.total_retrieved:
            logger.info(
                "Answer referenced all %d supplied citations",
                verification.total_retrieved,
            )

    @staticmethod
    def verify_quote(quote: str, source_text: str) -> bool:
        """Check a quoted span against its source: exact or close paraphrase."""
        normalized_quote = _normalize(quote)
        normalized_source = _normalize(source_text)
        if not normalized_quote:
            return False
        if normalized_quote in normalized_source:
            return True

        quote_words = [w for w in normalized_quote.split() if len(w) > 3]
        if not quote_words:
            return False
        source_words = set(normalized_source.split())
        matching = sum(1 for w in quote_words if w in source_words)
        return matching / len(quote_words) >= QUOTE_OVERLAP_THRESHOLD
