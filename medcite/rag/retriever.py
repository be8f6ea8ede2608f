"""
Multi-Stage Retrieval for MedCite

Runs three weighted strategies concurrently against the hybrid search
primitive and merges their results:
- Semantic-weighted search over the semantic query rewrite
- Keyword-weighted search over the keyword query rewrite
- Entity search using the extracted entities as query and vocabulary filter

A strategy that fails or times out contributes nothing; the others still
count. Also provides RemoteHybridSearch, an httpx client for a hybrid search
RPC endpoint.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from medcite.rag.models import EvidencePassage, QueryUnderstanding
from medcite.rag.resilience import resilient_call

logger = logging.getLogger(__name__)

RETRIEVAL_TIMEOUT = float(os.environ.get("RETRIEVAL_TIMEOUT_SECONDS", "15"))

# Hybrid search endpoint
SEARCH_URL = os.environ.get("EVIDENCE_SEARCH_URL", "")
SEARCH_API_KEY = os.environ.get("EVIDENCE_SEARCH_API_KEY", "")
SEARCH_RPC = os.environ.get("EVIDENCE_SEARCH_RPC", "hybrid_medical_search")
SEARCH_TIMEOUT = float(os.environ.get("EVIDENCE_SEARCH_TIMEOUT_SECONDS", "10"))

# Ranking boosts applied server-side by the hybrid search function
RECENCY_WEIGHT = 0.1
EVIDENCE_BOOST = 0.2


class EvidenceSearchError(Exception):
    """Raised when the hybrid search endpoint fails or returns a bad body."""


class HybridSearch(Protocol):
    """The hybrid search primitive. Returns [] (not an error) on no matches."""

    async def search(
        self,
        query: str,
        max_results: int,
        min_quality_level: int,
        semantic_weight: float,
        keyword_weight: float,
        vocab_terms: list[str],
    ) -> list[EvidencePassage]: ...


# ============================================
# Strategies
# ============================================


@dataclass(frozen=True)
class RetrievalStrategy:
    """One weighted search issued against the hybrid search primitive."""

    name: str
    query: str
    semantic_weight: float
    keyword_weight: float
    vocab_terms: tuple[str, ...] = ()


def build_strategies(understanding: QueryUnderstanding) -> list[RetrievalStrategy]:
    """The three retrieval strategies for a question, entity search only when entities exist."""
    strategies = [
        RetrievalStrategy("semantic", understanding.semantic_query, 1.5, 0.5),
        RetrievalStrategy("keyword", understanding.keyword_query, 0.5, 1.5),
    ]
    entities = understanding.all_entities()
    if entities:
        strategies.append(
            RetrievalStrategy(
                "entity", " ".join(entities), 1.0, 1.0, vocab_terms=tuple(entities)
            )
        )
    return strategies


def merge_passages(
    result_sets: Iterable[list[EvidencePassage]], cap: int | None = None
) -> list[EvidencePassage]:
    """
    Union passages by id, keeping the maximum base score seen for each.

    The result is sorted by score descending; ties keep first-seen order.
    Merging is commutative in its inputs and idempotent on its own output.
    """
    best: dict[str, EvidencePassage] = {}
    for passages in result_sets:
        for passage in passages:
            current = best.get(passage.id)
            if current is None or passage.score > current.score:
                best[passage.id] = passage

    merged = sorted(best.values(), key=lambda p: p.score, reverse=True)
    return merged[:cap] if cap is not None else merged


async def multi_stage_retrieval(
    understanding: QueryUnderstanding,
    search: HybridSearch,
    max_results: int = 10,
    min_evidence_level: int = 5,
    timeout: float = RETRIEVAL_TIMEOUT,
) -> list[EvidencePassage]:
    """
    Retrieve candidates with all strategies concurrently and merge them.

    Args:
        understanding: Structured question with its query rewrites.
        search: Hybrid search primitive.
        max_results: Final target count; the merged list is capped at twice this.
        min_evidence_level: Worst evidence level (1 best .. 5) to accept.
        timeout: Per-strategy timeout in seconds.

    Returns:
        De-duplicated passages sorted by base score descending.
    """
    strategies = build_strategies(understanding)

    async def run(strategy: RetrievalStrategy) -> list[EvidencePassage]:
        return await resilient_call(
            "retrieval",
            lambda: search.search(
                query=strategy.query,
                max_results=max_results,
                min_quality_level=min_evidence_level,
                semantic_weight=strategy.semantic_weight,
                keyword_weight=strategy.keyword_weight,
                vocab_terms=list(strategy.vocab_terms),
            ),
            default=list,
            timeout=timeout,
            context={"strategy": strategy.name, "query": strategy.query[:80]},
        )

    results = await asyncio.gather(*(run(s) for s in strategies))
    for strategy, passages in zip(strategies, results):
        logger.info("Strategy %s returned %d passages", strategy.name, len(passages))

    merged = merge_passages(results, cap=max_results * 2)
    logger.info(
        "Multi-stage retrieval: %d strategies, %d unique passages",
        len(strategies),
        len(merged),
    )
    return merged


# ============================================
# Remote hybrid search
# ============================================

Embedder = Callable[[str], Awaitable[list[float]]]


class RemoteHybridSearch:
    """
    Hybrid search over an RPC endpoint (PostgREST-style POST /rpc/<name>).

    The endpoint fuses full-text and vector search server-side. When an
    embedder is supplied, the query embedding is sent with the request.
    """

    def __init__(
        self,
        base_url: str = SEARCH_URL,
        api_key: str = SEARCH_API_KEY,
        rpc_name: str = SEARCH_RPC,
        timeout: float = SEARCH_TIMEOUT,
        embedder: Embedder | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.rpc_name = rpc_name
        self.timeout = timeout
        self.embedder = embedder

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def search(
        self,
        query: str,
        max_results: int,
        min_quality_level: int,
        semantic_weight: float,
        keyword_weight: float,
        vocab_terms: list[str],
    ) -> list[EvidencePassage]:
        if not self.configured:
            raise EvidenceSearchError("EVIDENCE_SEARCH_URL is not configured")

        payload: dict[str, Any] = {
            "query_text": query,
            "query_embedding": await self.embedder(query) if self.embedder else None,
            "match_count": max_results,
            "full_text_weight": keyword_weight,
            "semantic_weight": semantic_weight,
            "recency_weight": RECENCY_WEIGHT,
            "evidence_boost": EVIDENCE_BOOST,
            "min_evidence_level": min_quality_level,
            "filter_study_types": None,
            "filter_mesh_terms": vocab_terms or None,
            "min_year": None,
        }

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await client.post(
                    f"{self.base_url}/rpc/{self.rpc_name}",
                    json=payload,
                    headers=self._headers(),
                )
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as e:
            raise EvidenceSearchError(
                f"Search failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise EvidenceSearchError(f"Search request failed: {e}") from e
        except ValueError as e:
            raise EvidenceSearchError(f"Search returned invalid JSON: {e}") from e

        if rows is None:
            return []
        if not isinstance(rows, list):
            raise EvidenceSearchError("Search returned a non-list body")

        passages = []
        for row in rows:
            try:
                passages.append(EvidencePassage.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed search row: %s", e)
        return passages
