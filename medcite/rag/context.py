"""
Evidence Context Builder for MedCite

Turns the final ranked passages into numbered citations and the text block
handed to the answer-generating model. Pure formatting: indices are dense,
start at 1 and follow rank order.
"""

import os
from collections import Counter
from dataclasses import dataclass, field

from medcite.llm.prompt_templates import EVIDENCE_GUIDELINES, truncate_at_sentence
from medcite.rag.models import Citation, RankedPassage

SNIPPET_CHARS = int(os.environ.get("EVIDENCE_SNIPPET_CHARS", "300"))

EVIDENCE_LEVEL_LABELS = {
    1: "Meta-Analysis/Systematic Review",
    2: "Randomized Controlled Trial",
    3: "Cohort/Case-Control Study",
    4: "Case Series/Report",
    5: "Expert Opinion",
}


@dataclass
class EvidenceContext:
    """Citations plus the prompt text that exposes them to the generator."""

    citations: list[Citation] = field(default_factory=list)
    formatted_context: str = ""
    system_prompt_addition: str = ""


def evidence_level_label(level: int) -> str:
    return EVIDENCE_LEVEL_LABELS.get(level, "Unknown")


def source_url(pmid: str | None, doi: str | None) -> str | None:
    """PubMed link when a PMID is known, else a DOI resolver link."""
    if pmid:
        return f"https://pubmed.ncbi.nlm.nih.gov/{pmid}"
    if doi:
        return f"https://doi.org/{doi}"
    return None


def passages_to_citations(
    ranked: list[RankedPassage], snippet_chars: int = SNIPPET_CHARS
) -> list[Citation]:
    """Number ranked passages 1..n in rank order."""
    citations = []
    for index, item in enumerate(ranked, 1):
        p = item.passage
        citations.append(
            Citation(
                index=index,
                passage_id=p.id,
                title=p.title,
                source=p.journal,
                evidence_level=p.evidence_level,
                year=p.publication_year,
                study_type=p.study_type,
                authors=p.authors,
                doi=p.doi,
                pmid=p.pmid,
                url=source_url(p.pmid, p.doi),
                mesh_terms=p.mesh_terms,
                sample_size=p.sample_size,
                snippet=truncate_at_sentence(p.content, snippet_chars),
                score=item.contextual_score,
            )
        )
    return citations


def _format_authors(authors: list[str]) -> str:
    if not authors:
        return "Unknown authors"
    suffix = " et al." if len(authors) > 3 else ""
    return ", ".join(authors[:3]) + suffix


def format_citation(citation: Citation) -> str:
    """One numbered evidence block for the generation context."""
    source = citation.source or "Unknown source"
    if citation.year:
        source += f" ({citation.year})"
    lines = [
        f"[{citation.index}] {citation.title}",
        f"Source: {source}",
        f"Authors: {_format_authors(citation.authors)}",
        f"Evidence Level: {citation.evidence_level} "
        f"({evidence_level_label(citation.evidence_level)})",
    ]
    if citation.study_type:
        lines.append(f"Study Type: {citation.study_type}")
    if citation.sample_size:
        lines.append(f"Sample Size: n={citation.sample_size}")
    if citation.mesh_terms:
        lines.append(f"MeSH Terms: {', '.join(citation.mesh_terms[:5])}")
    lines += ["", "Content:", citation.snippet, "---"]
    return "\n".join(lines)


def _available_line(citation: Citation) -> str:
    details = ", ".join(
        str(part) for part in (citation.source, citation.year) if part
    )
    line = f"[{citation.index}] {citation.title}"
    if details:
        line += f" ({details})"
    return line + f" - Level {citation.evidence_level}"


def build_evidence_context(citations: list[Citation]) -> EvidenceContext:
    """Format citations for the generator; empty input gives empty text."""
    if not citations:
        return EvidenceContext()
    formatted = "\n\n".join(format_citation(c) for c in citations)
    addition = EVIDENCE_GUIDELINES.format(
        count=len(citations),
        available="\n".join(_available_line(c) for c in citations),
    )
    return EvidenceContext(
        citations=citations,
        formatted_context=formatted,
        system_prompt_addition=addition,
    )


def build_evidence_system_prompt(base_prompt: str, context: EvidenceContext) -> str:
    """Append the evidence guidelines and content to a base system prompt."""
    if not context.system_prompt_addition:
        return base_prompt
    return (
        f"{base_prompt}\n\n{context.system_prompt_addition}\n\n"
        f"### EVIDENCE CONTENT:\n{context.formatted_context}"
    )


def generate_evidence_summary(citations: list[Citation]) -> dict:
    """Counts for display: sources, best evidence level, study types, years."""
    if not citations:
        return {
            "total_sources": 0,
            "highest_evidence_level": 5,
            "study_types": {},
            "year_range": None,
        }
    years = [c.year for c in citations if c.year is not None]
    return {
        "total_sources": len(citations),
        "highest_evidence_level": min(c.evidence_level for c in citations),
        "study_types": dict(Counter(c.study_type or "Unknown" for c in citations)),
        "year_range": {"min": min(years), "max": max(years)} if years else None,
    }
