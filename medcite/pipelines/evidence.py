"""
Evidence Pipeline for MedCite

Strings the evidence stages together as one request-scoped unit:

    medical gate -> query understanding -> multi-stage retrieval ->
    multi-signal rerank + selection -> context building

and, after the answer has been generated, verifies which supplied citations
it actually references. Every stage degrades to a fallback; the pipeline
returns an empty, "do not use evidence" result rather than raising.
"""

import dataclasses
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

from medcite.llm.response_parser import CitationVerification, CitationVerifier
from medcite.observability.metrics import record_search, record_verification
from medcite.rag.context import (
    EvidenceContext,
    build_evidence_context,
    passages_to_citations,
)
from medcite.rag.models import Citation, QueryUnderstanding
from medcite.rag.reranker import ContextualReranker, RerankStats
from medcite.rag.retriever import HybridSearch, multi_stage_retrieval
from medcite.rag.understanding import is_medical_query, understand_query

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = int(os.environ.get("EVIDENCE_MAX_RESULTS", "8"))

# Candidates retrieved per final slot when reranking will discard some
RERANK_OVERFETCH = 3


@dataclass
class EvidenceResult:
    """Outcome of one evidence search."""

    context: EvidenceContext
    should_use_evidence: bool
    understanding: QueryUnderstanding | None = None
    rerank_stats: RerankStats | None = None
    search_time_ms: float = 0.0
    steps: list[dict[str, Any]] = field(default_factory=list)


def _step(steps: list[dict[str, Any]], name: str, started: float, detail: str) -> None:
    steps.append(
        {
            "name": name,
            "duration_ms": round((time.time() - started) * 1000, 1),
            "detail": detail,
        }
    )


class EvidencePipeline:
    """Retrieve, rerank and package evidence for one medical question."""

    def __init__(
        self,
        search: HybridSearch,
        llm_client=None,
        reranker: ContextualReranker | None = None,
        verifier: CitationVerifier | None = None,
    ):
        self.search = search
        self.llm_client = llm_client
        self.reranker = reranker or ContextualReranker(llm_client=llm_client)
        self.verifier = verifier or CitationVerifier()

    async def run(
        self,
        question: str,
        max_results: int = DEFAULT_MAX_RESULTS,
        min_evidence_level: int = 5,
        min_contextual_score: float | None = None,
        enable_reranking: bool = True,
        api_key: str | None = None,
    ) -> EvidenceResult:
        """Execute the evidence pipeline for a question.

        Non-medical questions return immediately without retrieval. Any
        unexpected failure yields an empty result with should_use_evidence
        False; only cancellation propagates.
        """
        start_time = time.time()
        steps: list[dict[str, Any]] = []

        # --- Medical gate ---
        step_start = time.time()
        if not is_medical_query(question):
            _step(steps, "medical_gate", step_start, "Non-medical question, skipping evidence")
            return self._finish(
                EvidenceResult(context=EvidenceContext(), should_use_evidence=False, steps=steps),
                start_time,
                medical=False,
            )
        _step(steps, "medical_gate", step_start, "Medical question")

        try:
            # --- Query understanding ---
            step_start = time.time()
            understanding = await understand_query(question, self.llm_client, api_key=api_key)
            _step(
                steps,
                "understanding",
                step_start,
                f"Intent {understanding.primary_intent}, "
                f"{len(understanding.all_entities())} entities",
            )

            # --- Retrieval ---
            step_start = time.time()
            fetch = max_results * RERANK_OVERFETCH if enable_reranking else max_results
            passages = await multi_stage_retrieval(
                understanding,
                self.search,
                max_results=fetch,
                min_evidence_level=min_evidence_level,
            )
            _step(steps, "retrieval", step_start, f"Retrieved {len(passages)} passages")

            if not passages:
                return self._finish(
                    EvidenceResult(
                        context=EvidenceContext(),
                        should_use_evidence=False,
                        understanding=understanding,
                        steps=steps,
                    ),
                    start_time,
                )

            # --- Rerank + select ---
            step_start = time.time()
            reranker = self._reranker_for(min_contextual_score, api_key)
            ranked, stats = await reranker.rerank_and_select(
                passages, understanding, requested=max_results, enabled=enable_reranking
            )
            ranked = ranked[:max_results]
            _step(
                steps,
                "rerank",
                step_start,
                f"Kept {len(ranked)} of {stats.initial_count}"
                + (" (degraded)" if stats.degraded else ""),
            )

            # --- Context ---
            step_start = time.time()
            context = build_evidence_context(passages_to_citations(ranked))
            _step(steps, "context", step_start, f"{len(context.citations)} citations")

            return self._finish(
                EvidenceResult(
                    context=context,
                    should_use_evidence=bool(context.citations),
                    understanding=understanding,
                    rerank_stats=stats,
                    steps=steps,
                ),
                start_time,
            )
        except Exception as e:
            logger.error("Evidence pipeline failed for query %r: %s", question[:80], e)
            return self._finish(
                EvidenceResult(context=EvidenceContext(), should_use_evidence=False, steps=steps),
                start_time,
            )

    def _reranker_for(
        self, min_contextual_score: float | None, api_key: str | None
    ) -> ContextualReranker:
        """Per-request reranker when the call overrides the threshold or key."""
        if min_contextual_score is None and api_key is None:
            return self.reranker
        policy = self.reranker.policy
        if min_contextual_score is not None:
            policy = dataclasses.replace(policy, min_score=min_contextual_score)
        return ContextualReranker(
            llm_client=self.reranker.llm_client,
            policy=policy,
            signals=self.reranker.signals,
            api_key=api_key or self.reranker.api_key,
            max_concurrency=self.reranker.max_concurrency,
        )

    @staticmethod
    def _finish(result: EvidenceResult, start_time: float, medical: bool = True) -> EvidenceResult:
        result.search_time_ms = round((time.time() - start_time) * 1000, 1)
        record_search(
            result.search_time_ms,
            medical=medical,
            citations=len(result.context.citations),
            degraded=bool(result.rerank_stats and result.rerank_stats.degraded),
        )
        logger.info(
            "Evidence search finished in %.0fms: %d citations",
            result.search_time_ms,
            len(result.context.citations),
        )
        return result

    def verify(
        self,
        answer: str,
        supplied: EvidenceContext | list[Citation],
        include_parenthetical: bool | None = None,
    ) -> CitationVerification:
        """Resolve the answer's citation markers against what was supplied."""
        citations = supplied.citations if isinstance(supplied, EvidenceContext) else supplied
        verification = self.verifier.verify(answer, citations, include_parenthetical)
        record_verification(verification.total_retrieved, verification.total_referenced)
        return verification
