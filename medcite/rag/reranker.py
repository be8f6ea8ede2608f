"""
Multi-Signal Reranker for MedCite

Scores every retrieved passage against the specific question with seven
weighted relevance signals and combines them into a contextual score:

    signal               weight   source
    answer_relevance     2.0      LLM judgement of the passage vs. the question
    semantic_relevance   2.5      hybrid search base score
    entity_match         1.5      share of question entities found in the passage
    mesh_match           1.0      share of candidate MeSH terms on the passage
    evidence_quality     0.8      evidence level, 1 best .. 5
    recency              0.5      publication year, linear decay over 10 years
    specificity_match    0.5      question specificity vs. passage length

The ranked list is then cut down with an adaptive threshold ladder so that a
strict threshold never leaves the answer without evidence.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from medcite.llm.prompt_templates import RELEVANCE_SYSTEM, build_relevance_prompt
from medcite.observability.metrics import record_fallback
from medcite.rag.models import (
    EvidencePassage,
    QueryUnderstanding,
    RankedPassage,
    RelevanceJudgement,
    RelevanceSignal,
    confidence_bucket,
)
from medcite.rag.resilience import resilient_call

logger = logging.getLogger(__name__)

# Selection ladder defaults
MIN_CONTEXTUAL_SCORE = float(os.environ.get("EVIDENCE_MIN_CONTEXTUAL_SCORE", "0.75"))
RELAX_STEP = float(os.environ.get("EVIDENCE_RELAX_STEP", "0.2"))
RELAXED_FLOOR = float(os.environ.get("EVIDENCE_RELAXED_FLOOR", "0.4"))
LAST_RESORT_SCORE = float(os.environ.get("EVIDENCE_LAST_RESORT_SCORE", "0.3"))
MIN_RESULTS = int(os.environ.get("EVIDENCE_MIN_RESULTS", "3"))

# Upper bound on concurrent relevance-scoring calls per request
RELEVANCE_MAX_CONCURRENCY = int(os.environ.get("RELEVANCE_MAX_CONCURRENCY", "8"))

# Signal values assumed when reranking could not run
DEGRADED_MATCH_SCORE = 0.7
NEUTRAL_SCORE = 0.5

SPECIFICITY_ORDER = ("low", "medium", "high")


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


# ============================================
# Signals
# ============================================


@dataclass
class ScoringRun:
    """State for scoring one batch of passages; never shared between requests."""

    llm_client: Any
    api_key: str | None
    current_year: int
    semaphore: asyncio.Semaphore


Scorer = Callable[
    [ScoringRun, EvidencePassage, QueryUnderstanding],
    Awaitable[tuple[float, str]],
]


def _neutral(passage: EvidencePassage) -> float:
    return NEUTRAL_SCORE


@dataclass(frozen=True)
class SignalSpec:
    """A named, weighted relevance signal with its fallback value."""

    name: str
    weight: float
    scorer: Scorer
    fallback: Callable[[EvidencePassage], float] = _neutral
    requires_llm: bool = False


def answer_relevance_fallback(passage: EvidencePassage) -> float:
    """Trust the search ranking when the LLM judgement is unavailable."""
    return max(0.6, _clamp(passage.score) * 0.95)


async def score_answer_relevance(
    run: ScoringRun,
    passage: EvidencePassage,
    understanding: QueryUnderstanding,
) -> tuple[float, str]:
    prompt = build_relevance_prompt(understanding, passage.title, passage.content)
    async with run.semaphore:
        payload = await run.llm_client.complete_json(
            RELEVANCE_SYSTEM, prompt, api_key=run.api_key
        )
    judgement = RelevanceJudgement.model_validate(payload)
    return judgement.score, judgement.explanation or "LLM relevance judgement"


async def score_semantic_relevance(run, passage, understanding):
    return _clamp(passage.score), f"Search score {passage.score:.3f}"


def matched_entities(passage: EvidencePassage, understanding: QueryUnderstanding) -> list[str]:
    text = f"{passage.title} {passage.content}".lower()
    return [e for e in understanding.all_entities() if e.lower() in text]


def matched_mesh_terms(passage: EvidencePassage, understanding: QueryUnderstanding) -> list[str]:
    passage_mesh = {term.lower() for term in passage.mesh_terms}
    return [t for t in understanding.mesh_terms if t.lower() in passage_mesh]


async def score_entity_match(run, passage, understanding):
    entities = understanding.all_entities()
    if not entities:
        return NEUTRAL_SCORE, "No entities to match"
    matches = matched_entities(passage, understanding)
    return _clamp(len(matches) / len(entities)), f"Matched {len(matches)}/{len(entities)} entities"


async def score_mesh_match(run, passage, understanding):
    terms = understanding.mesh_terms
    if not terms:
        return NEUTRAL_SCORE, "No MeSH terms to match"
    matches = matched_mesh_terms(passage, understanding)
    return _clamp(len(matches) / len(terms)), f"Matched {len(matches)}/{len(terms)} MeSH terms"


def evidence_quality(passage: EvidencePassage) -> float:
    return _clamp((6 - passage.evidence_level) / 5)


async def score_evidence_quality(run, passage, understanding):
    return evidence_quality(passage), f"Evidence level {passage.evidence_level}"


async def score_recency(run, passage, understanding):
    year = passage.publication_year
    if not year:
        return NEUTRAL_SCORE, "Published unknown"
    age = run.current_year - year
    return _clamp(1 - age / 10), f"Published {year}"


def passage_specificity(passage: EvidencePassage) -> str:
    """Short passages are specific, long ones general."""
    if len(passage.content) < 500:
        return "high"
    if len(passage.content) < 2000:
        return "medium"
    return "low"


async def score_specificity_match(run, passage, understanding):
    wanted = SPECIFICITY_ORDER.index(understanding.specificity)
    found = SPECIFICITY_ORDER.index(passage_specificity(passage))
    distance = abs(wanted - found)
    score = 1.0 if distance == 0 else 0.7 if distance == 1 else 0.4
    return score, "Specificity alignment"


SIGNALS: list[SignalSpec] = [
    SignalSpec(
        "answer_relevance",
        2.0,
        score_answer_relevance,
        fallback=answer_relevance_fallback,
        requires_llm=True,
    ),
    SignalSpec("semantic_relevance", 2.5, score_semantic_relevance),
    SignalSpec("entity_match", 1.5, score_entity_match),
    SignalSpec("mesh_match", 1.0, score_mesh_match),
    SignalSpec("evidence_quality", 0.8, score_evidence_quality, fallback=evidence_quality),
    SignalSpec("recency", 0.5, score_recency),
    SignalSpec("specificity_match", 0.5, score_specificity_match),
]


def contextual_score(signals: list[RelevanceSignal]) -> float:
    """Weighted mean of the signal scores, in [0, 1]."""
    total_weight = sum(s.weight for s in signals)
    if total_weight <= 0:
        return 0.0
    return _clamp(sum(s.score * s.weight for s in signals) / total_weight)


# ============================================
# Selection
# ============================================


@dataclass(frozen=True)
class SelectionRule:
    """Keep passages scoring at least `threshold`, up to `cap`.

    The rule is satisfied when it keeps at least `enough` passages; a rule
    with `enough=None` always ends the ladder.
    """

    threshold: float
    cap: int | None
    enough: int | None


@dataclass(frozen=True)
class SelectionPolicy:
    """Adaptive threshold ladder over contextually ranked passages."""

    min_score: float = MIN_CONTEXTUAL_SCORE
    relax_step: float = RELAX_STEP
    relaxed_floor: float = RELAXED_FLOOR
    last_resort_score: float = LAST_RESORT_SCORE
    min_results: int = MIN_RESULTS

    def rules(self, requested: int) -> list[SelectionRule]:
        floor_count = max(requested, self.min_results)
        relaxed = min(self.min_score, max(self.relaxed_floor, self.min_score - self.relax_step))
        return [
            SelectionRule(self.min_score, None, floor_count),
            SelectionRule(
                relaxed,
                requested * 2,
                self.min_results,
            ),
            SelectionRule(min(relaxed, self.last_resort_score), floor_count, None),
        ]

    def select(self, ranked: list[RankedPassage], requested: int) -> list[RankedPassage]:
        """Apply the ladder to a list already sorted by contextual score."""
        chosen: list[RankedPassage] = []
        for step, rule in enumerate(self.rules(requested), 1):
            chosen = [r for r in ranked if r.contextual_score >= rule.threshold]
            if rule.cap is not None:
                chosen = chosen[: rule.cap]
            if rule.enough is None or len(chosen) >= rule.enough:
                if step > 1:
                    logger.info(
                        "Relaxed selection threshold to %.2f (%d passages)",
                        rule.threshold,
                        len(chosen),
                    )
                return chosen
        return chosen


@dataclass
class RerankStats:
    """Summary of one reranking pass."""

    initial_count: int
    after_reranking: int
    average_contextual_score: float
    signals_used: list[str] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def build(
        cls,
        initial_count: int,
        selected: list[RankedPassage],
        signals_used: list[str],
        degraded: bool = False,
    ) -> "RerankStats":
        average = (
            sum(r.contextual_score for r in selected) / len(selected) if selected else 0.0
        )
        return cls(
            initial_count=initial_count,
            after_reranking=len(selected),
            average_contextual_score=average,
            signals_used=signals_used,
            degraded=degraded,
        )


# ============================================
# Pass-through rankings
# ============================================


def _fixed_signals(passage: EvidencePassage, match_score: float, reason: str) -> list[RelevanceSignal]:
    base = _clamp(passage.score)
    values = {
        "answer_relevance": base,
        "semantic_relevance": base,
        "entity_match": match_score,
        "mesh_match": match_score,
        "evidence_quality": evidence_quality(passage),
        "recency": match_score,
        "specificity_match": match_score,
    }
    return [
        RelevanceSignal(spec.name, values[spec.name], spec.weight, reason, available=False)
        for spec in SIGNALS
    ]


def _by_base_score(passages: list[EvidencePassage]) -> list[EvidencePassage]:
    return sorted(passages, key=lambda p: _clamp(p.score), reverse=True)


def degraded_passthrough(passages: list[EvidencePassage]) -> list[RankedPassage]:
    """Ranking used when contextual reranking failed: retrieval order, medium confidence."""
    return [
        RankedPassage(
            passage=p,
            signals=_fixed_signals(
                p, DEGRADED_MATCH_SCORE, "Reranking unavailable, using search results"
            ),
            contextual_score=_clamp(p.score),
            confidence="medium",
            degraded=True,
        )
        for p in _by_base_score(passages)
    ]


def passthrough(passages: list[EvidencePassage]) -> list[RankedPassage]:
    """Ranking used when reranking is disabled: retrieval order, low confidence."""
    return [
        RankedPassage(
            passage=p,
            signals=_fixed_signals(p, NEUTRAL_SCORE, "Reranking disabled"),
            contextual_score=_clamp(p.score),
            confidence="low",
        )
        for p in _by_base_score(passages)
    ]


# ============================================
# Reranker
# ============================================


class ContextualReranker:
    """Scores passages with SIGNALS and selects them with a SelectionPolicy."""

    def __init__(
        self,
        llm_client=None,
        policy: SelectionPolicy | None = None,
        signals: list[SignalSpec] | None = None,
        max_concurrency: int = RELEVANCE_MAX_CONCURRENCY,
        api_key: str | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.policy = policy or SelectionPolicy()
        self.signals = signals if signals is not None else SIGNALS
        self.max_concurrency = max(1, max_concurrency)
        self.api_key = api_key
        self.current_year = datetime.now().year

    async def _score_signal(
        self,
        run: ScoringRun,
        spec: SignalSpec,
        passage: EvidencePassage,
        understanding: QueryUnderstanding,
    ) -> RelevanceSignal:
        def unavailable() -> RelevanceSignal:
            return RelevanceSignal(
                spec.name,
                _clamp(spec.fallback(passage)),
                spec.weight,
                "unavailable",
                available=False,
            )

        if spec.requires_llm and self.llm_client is None:
            return unavailable()

        async def compute() -> RelevanceSignal:
            score, explanation = await spec.scorer(run, passage, understanding)
            return RelevanceSignal(spec.name, _clamp(score), spec.weight, explanation)

        return await resilient_call(
            spec.name,
            compute,
            default=unavailable,
            context={"passage": passage.id},
        )

    async def _rank_one(
        self, run: ScoringRun, passage: EvidencePassage, understanding: QueryUnderstanding
    ) -> RankedPassage:
        signals = list(
            await asyncio.gather(
                *(self._score_signal(run, spec, passage, understanding)
                  for spec in self.signals)
            )
        )
        score = contextual_score(signals)
        return RankedPassage(
            passage=passage,
            signals=signals,
            contextual_score=score,
            confidence=confidence_bucket(score),
            matched_entities=matched_entities(passage, understanding),
            matched_mesh_terms=matched_mesh_terms(passage, understanding),
        )

    async def rerank(
        self,
        passages: list[EvidencePassage],
        understanding: QueryUnderstanding,
    ) -> list[RankedPassage]:
        """
        Score every passage and sort by contextual score, highest first.

        Ties keep their retrieval order. Each call bounds its own LLM
        requests, so concurrent requests do not compete for slots.
        """
        if not passages:
            return []
        run = ScoringRun(
            llm_client=self.llm_client,
            api_key=self.api_key,
            current_year=self.current_year,
            semaphore=asyncio.Semaphore(self.max_concurrency),
        )
        ranked = await asyncio.gather(*(self._rank_one(run, p, understanding) for p in passages))
        return sorted(ranked, key=lambda r: r.contextual_score, reverse=True)

    async def rerank_and_select(
        self,
        passages: list[EvidencePassage],
        understanding: QueryUnderstanding,
        requested: int,
        enabled: bool = True,
    ) -> tuple[list[RankedPassage], RerankStats]:
        """
        Rerank passages and apply the selection ladder.

        Falls back to the search ranking when reranking is disabled, when no
        answer-relevance judgement could be obtained for any passage, or when
        reranking fails outright.
        """
        if not enabled:
            ranked = passthrough(passages)
            return ranked, RerankStats.build(len(passages), ranked, [])

        signal_names = [spec.name for spec in self.signals]
        try:
            ranked = await self.rerank(passages, understanding)
        except Exception as e:
            logger.error("Reranking failed, using search ranking: %s", e)
            record_fallback("rerank")
            degraded = degraded_passthrough(passages)
            return degraded, RerankStats.build(len(passages), degraded, signal_names, True)

        llm_signals = {spec.name for spec in self.signals if spec.requires_llm}
        if llm_signals and ranked and not any(
            signal.available
            for r in ranked
            for signal in r.signals
            if signal.name in llm_signals
        ):
            logger.warning(
                "LLM relevance unavailable for all %d passages, using search ranking",
                len(ranked),
            )
            degraded = degraded_passthrough(passages)
            return degraded, RerankStats.build(len(passages), degraded, signal_names, True)

        selected = self.policy.select(ranked, requested)
        stats = RerankStats.build(len(passages), selected, signal_names)
        logger.info(
            "Reranked %d passages, kept %d (avg contextual score %.2f)",
            stats.initial_count,
            stats.after_reranking,
            stats.average_contextual_score,
        )
        return selected, stats
