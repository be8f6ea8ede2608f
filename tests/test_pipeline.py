"""
Tests for the MedCite Evidence Pipeline

End-to-end runs of gate -> understanding -> retrieval -> rerank -> context,
then verification of the generated answer, with search and LLM faked.
"""

import pytest
from conftest import FakeLLM, FakeSearch, make_citations, make_passage

from medcite.observability.metrics import get_fallback_count, get_metrics_text
from medcite.pipelines.evidence import RERANK_OVERFETCH, EvidencePipeline
from medcite.rag.context import EvidenceContext


@pytest.fixture
def af_llm(af_passages, af_understanding_payload) -> FakeLLM:
    relevance = {af_passages[0].title: 0.95, af_passages[1].title: 0.85}
    return FakeLLM(understanding=af_understanding_payload, relevance=relevance)


class TestMedicalGate:
    """Non-medical questions never reach retrieval."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_medical_question_skips_retrieval(self, af_passages):
        search = FakeSearch(passages=af_passages)
        llm = FakeLLM()
        result = await EvidencePipeline(search, llm_client=llm).run(
            "What's the weather like in Paris?"
        )

        assert result.should_use_evidence is False
        assert result.context.citations == []
        assert search.calls == []
        assert llm.calls == []
        assert [s["name"] for s in result.steps] == ["medical_gate"]
        assert "evidence_non_medical_total 1" in get_metrics_text()


class TestEvidencePipelineRun:
    """Full pipeline runs."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_atrial_fibrillation_end_to_end(self, af_question, af_passages, af_llm):
        search = FakeSearch(passages=af_passages)
        pipeline = EvidencePipeline(search, llm_client=af_llm)

        result = await pipeline.run(af_question, max_results=8)

        assert result.should_use_evidence is True
        citations = result.context.citations
        assert 3 <= len(citations) <= 8
        assert [c.index for c in citations] == list(range(1, len(citations) + 1))
        assert citations[0].passage_id == "af1"
        assert citations[0].score > 0.75
        assert result.understanding.primary_intent == "treatment"
        assert result.rerank_stats.degraded is False
        assert [s["name"] for s in result.steps] == [
            "medical_gate",
            "understanding",
            "retrieval",
            "rerank",
            "context",
        ]
        assert all(c["max_results"] == 8 * RERANK_OVERFETCH for c in search.calls)

        answer = (
            "Anticoagulation is recommended for newly diagnosed atrial "
            "fibrillation [1]. Rate control is first-line for symptoms [2]."
        )
        verification = pipeline.verify(answer, result.context)
        assert verification.total_referenced == 2
        assert [c.index for c in verification.referenced_citations] == [1, 2]
        assert verification.total_retrieved == len(citations)

        metrics = get_metrics_text()
        assert "evidence_requests_total 1" in metrics
        assert "citations_referenced_total 2" in metrics

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_results_capped_at_max_results(self, af_question, af_passages, af_llm):
        result = await EvidencePipeline(FakeSearch(passages=af_passages), llm_client=af_llm).run(
            af_question, max_results=3
        )
        assert len(result.context.citations) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stricter_threshold_override(self, af_question, af_passages, af_llm):
        pipeline = EvidencePipeline(FakeSearch(passages=af_passages), llm_client=af_llm)

        default = await pipeline.run(af_question, max_results=8)
        strict = await pipeline.run(af_question, max_results=8, min_contextual_score=0.95)

        assert len(strict.context.citations) < len(default.context.citations)
        assert len(strict.context.citations) >= 3
        assert all(c.score >= 0.75 for c in strict.context.citations)
        assert pipeline.reranker.policy.min_score == 0.75

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reranking_disabled(self, af_question, af_passages, af_llm):
        search = FakeSearch(passages=af_passages)
        result = await EvidencePipeline(search, llm_client=af_llm).run(
            af_question, max_results=5, enable_reranking=False
        )
        assert len(result.context.citations) == 5
        assert all(c["max_results"] == 5 for c in search.calls)
        assert result.rerank_stats.signals_used == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_llm_outage_degrades_but_returns_evidence(self, af_question, af_passages):
        result = await EvidencePipeline(
            FakeSearch(passages=af_passages), llm_client=FakeLLM(fail=True)
        ).run(af_question, max_results=4)

        assert result.should_use_evidence is True
        assert len(result.context.citations) == 4
        assert result.rerank_stats.degraded is True
        scores = [c.score for c in result.context.citations]
        assert scores == sorted(scores, reverse=True)
        assert get_fallback_count("query_understanding") == 1
        assert "rerank_degraded_total 1" in get_metrics_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_passages(self, af_question, af_llm):
        result = await EvidencePipeline(FakeSearch(), llm_client=af_llm).run(af_question)
        assert result.should_use_evidence is False
        assert result.context.formatted_context == ""
        assert result.understanding is not None
        assert "evidence_empty_total 1" in get_metrics_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_failure_yields_empty_result(self, mocker, af_question, af_llm):
        mocker.patch(
            "medcite.pipelines.evidence.multi_stage_retrieval",
            side_effect=RuntimeError("database exploded"),
        )
        result = await EvidencePipeline(FakeSearch(), llm_client=af_llm).run(af_question)
        assert result.should_use_evidence is False
        assert result.context.citations == []
        assert result.search_time_ms >= 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_failures_are_isolated(self, af_question, af_passages, af_llm):
        search = FakeSearch(passages=af_passages, fail_queries={"atrial fibrillation"})
        result = await EvidencePipeline(search, llm_client=af_llm).run(af_question)
        assert result.should_use_evidence is True
        assert get_fallback_count("retrieval") == 1


class TestPipelineVerify:
    """Verification against supplied citations."""

    @pytest.mark.unit
    def test_verify_accepts_context_or_list(self):
        pipeline = EvidencePipeline(FakeSearch())
        assert pipeline.verify("Claim [1].", EvidenceContext()).referenced_citations == []

        verification = pipeline.verify("Claim [1] and (2).", make_citations(3))
        assert verification.citation_indices == [1, 2]

        no_paren = pipeline.verify(
            "Claim [1] and (2).", make_citations(3), include_parenthetical=False
        )
        assert no_paren.citation_indices == [1]

    @pytest.mark.unit
    def test_verify_records_missing_citations_metric(self):
        EvidencePipeline(FakeSearch()).verify("No markers at all.", make_citations(4))
        metrics = get_metrics_text()
        assert "responses_without_citations_total 1" in metrics
        assert "citations_supplied_total 4" in metrics

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_passages_without_metadata(self, af_question, af_llm):
        search = FakeSearch(passages=[make_passage(f"p{i}", 0.9) for i in range(4)])
        result = await EvidencePipeline(search, llm_client=af_llm).run(af_question)
        assert all(c.url is None for c in result.context.citations)
