"""
Tests for MedCite Evidence Context Building

Tests for:
- passages_to_citations: dense 1-based indices in rank order
- source_url: PubMed and DOI links
- build_evidence_context / build_evidence_system_prompt
- generate_evidence_summary
"""

import pytest
from conftest import make_passage

from medcite.rag.context import (
    EvidenceContext,
    build_evidence_context,
    build_evidence_system_prompt,
    evidence_level_label,
    format_citation,
    generate_evidence_summary,
    passages_to_citations,
    source_url,
)
from medcite.rag.models import RankedPassage, confidence_bucket


def _rank(passages, scores=None):
    scores = scores or [0.9 - i * 0.1 for i in range(len(passages))]
    return [
        RankedPassage(
            passage=p,
            signals=[],
            contextual_score=s,
            confidence=confidence_bucket(s),
        )
        for p, s in zip(passages, scores)
    ]


class TestPassagesToCitations:
    """Tests for citation numbering and mapping."""

    @pytest.mark.unit
    def test_indices_dense_and_in_rank_order(self):
        ranked = _rank([make_passage("z"), make_passage("a"), make_passage("m")])
        citations = passages_to_citations(ranked)
        assert [c.index for c in citations] == [1, 2, 3]
        assert [c.passage_id for c in citations] == ["z", "a", "m"]

    @pytest.mark.unit
    def test_fields_copied_from_passage(self):
        passage = make_passage(
            "a",
            title="Apixaban versus warfarin",
            journal="NEJM",
            publication_year=2011,
            evidence_level=2,
            pmid="21870978",
            study_type="RCT",
            authors=["Granger CB"],
        )
        citation = passages_to_citations(_rank([passage], [0.91]))[0]
        assert citation.title == "Apixaban versus warfarin"
        assert citation.source == "NEJM"
        assert citation.year == 2011
        assert citation.evidence_level == 2
        assert citation.url == "https://pubmed.ncbi.nlm.nih.gov/21870978"
        assert citation.score == 0.91
        assert citation.snippet == passage.content

    @pytest.mark.unit
    def test_snippet_truncated(self):
        passage = make_passage("a", content="word " * 200)
        citation = passages_to_citations(_rank([passage]), snippet_chars=50)[0]
        assert len(citation.snippet) <= 53

    @pytest.mark.unit
    def test_empty(self):
        assert passages_to_citations([]) == []


class TestSourceUrl:
    """Tests for source links."""

    @pytest.mark.unit
    def test_pmid_preferred(self):
        assert source_url("123", "10.1/x") == "https://pubmed.ncbi.nlm.nih.gov/123"

    @pytest.mark.unit
    def test_doi_fallback(self):
        assert source_url(None, "10.1/x") == "https://doi.org/10.1/x"

    @pytest.mark.unit
    def test_no_identifiers(self):
        assert source_url(None, None) is None


class TestEvidenceContext:
    """Tests for the generation context text."""

    @pytest.mark.unit
    def test_empty_citations_give_empty_context(self):
        context = build_evidence_context([])
        assert context.citations == []
        assert context.formatted_context == ""
        assert context.system_prompt_addition == ""

    @pytest.mark.unit
    def test_context_lists_every_citation(self):
        passages = [
            make_passage("a", title="Trial A", journal="Lancet", publication_year=2020),
            make_passage("b", title="Trial B", evidence_level=1),
        ]
        context = build_evidence_context(passages_to_citations(_rank(passages)))

        assert "[1] Trial A" in context.formatted_context
        assert "[2] Trial B" in context.formatted_context
        assert "access to 2 peer-reviewed" in context.system_prompt_addition
        assert "[1] Trial A (Lancet, 2020) - Level 5" in context.system_prompt_addition
        assert "[2] Trial B - Level 1" in context.system_prompt_addition

    @pytest.mark.unit
    def test_format_citation_details(self):
        passage = make_passage(
            "a",
            title="Trial A",
            authors=["A", "B", "C", "D"],
            sample_size=1200,
            mesh_terms=["Atrial Fibrillation"],
            evidence_level=1,
        )
        block = format_citation(passages_to_citations(_rank([passage]))[0])
        assert "Authors: A, B, C et al." in block
        assert "Sample Size: n=1200" in block
        assert "Evidence Level: 1 (Meta-Analysis/Systematic Review)" in block
        assert "MeSH Terms: Atrial Fibrillation" in block

    @pytest.mark.unit
    def test_system_prompt_unchanged_without_evidence(self):
        assert build_evidence_system_prompt("Base.", EvidenceContext()) == "Base."

    @pytest.mark.unit
    def test_system_prompt_appends_evidence(self):
        context = build_evidence_context(passages_to_citations(_rank([make_passage("a")])))
        prompt = build_evidence_system_prompt("Base.", context)
        assert prompt.startswith("Base.\n\n")
        assert "### EVIDENCE CONTENT:" in prompt
        assert context.formatted_context in prompt

    @pytest.mark.unit
    def test_level_labels(self):
        assert evidence_level_label(2) == "Randomized Controlled Trial"
        assert evidence_level_label(9) == "Unknown"


class TestEvidenceSummary:
    """Tests for the display summary."""

    @pytest.mark.unit
    def test_summary(self):
        passages = [
            make_passage("a", evidence_level=3, publication_year=2015, study_type="Cohort"),
            make_passage("b", evidence_level=1, publication_year=2021, study_type="Meta-Analysis"),
            make_passage("c", evidence_level=2),
        ]
        summary = generate_evidence_summary(passages_to_citations(_rank(passages)))
        assert summary["total_sources"] == 3
        assert summary["highest_evidence_level"] == 1
        assert summary["study_types"] == {"Cohort": 1, "Meta-Analysis": 1, "Unknown": 1}
        assert summary["year_range"] == {"min": 2015, "max": 2021}

    @pytest.mark.unit
    def test_empty_summary(self):
        summary = generate_evidence_summary([])
        assert summary["total_sources"] == 0
        assert summary["year_range"] is None
