"""
MedCite Test Configuration

Pytest fixtures and configuration for the test suite.
"""

from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from medcite.llm.chat_client import LLMError
from medcite.llm.prompt_templates import RELEVANCE_SYSTEM, UNDERSTANDING_SYSTEM
from medcite.main import app
from medcite.rag.models import Citation, EvidencePassage

# ============================================
# Fakes for external services
# ============================================


class FakeSearch:
    """Hybrid search double returning canned passages per strategy query."""

    def __init__(self, passages=None, by_query=None, fail_queries=()):
        self.passages = list(passages or [])
        self.by_query = by_query or {}
        self.fail_queries = set(fail_queries)
        self.calls: list[dict[str, Any]] = []

    async def search(
        self,
        query,
        max_results,
        min_quality_level,
        semantic_weight,
        keyword_weight,
        vocab_terms,
    ):
        self.calls.append(
            {
                "query": query,
                "max_results": max_results,
                "min_quality_level": min_quality_level,
                "semantic_weight": semantic_weight,
                "keyword_weight": keyword_weight,
                "vocab_terms": vocab_terms,
            }
        )
        if query in self.fail_queries:
            raise RuntimeError(f"search failed for {query}")
        return list(self.by_query.get(query, self.passages))[:max_results]


class FakeLLM:
    """Chat client double answering understanding and relevance prompts."""

    def __init__(self, understanding=None, relevance=None, fail=False):
        self.understanding = understanding
        self.relevance = relevance or {}
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def complete_json(self, system, prompt, api_key=None):
        self.calls.append((system, prompt))
        if self.fail:
            raise LLMError("LLM unavailable")
        if system == UNDERSTANDING_SYSTEM:
            if self.understanding is None:
                raise LLMError("no understanding configured")
            return self.understanding
        if system == RELEVANCE_SYSTEM:
            for title, score in self.relevance.items():
                if f"Title: {title}\n" in prompt:
                    return {"score": score, "explanation": f"scored {title}"}
            return {"score": 0.5, "explanation": "default"}
        raise LLMError(f"unexpected system prompt: {system[:40]}")


def make_passage(
    pid: str,
    score: float = 0.8,
    title: str | None = None,
    content: str = "Anticoagulation reduces stroke risk in atrial fibrillation.",
    **kwargs,
) -> EvidencePassage:
    return EvidencePassage(
        id=pid,
        title=title or f"Study {pid}",
        content=content,
        score=score,
        **kwargs,
    )


def make_citations(count: int) -> list[Citation]:
    return [
        Citation(index=i, passage_id=f"p{i}", title=f"Study {i}", source="NEJM")
        for i in range(1, count + 1)
    ]


# ============================================
# Metric isolation
# ============================================


@pytest.fixture(autouse=True)
def reset_metrics_state() -> Generator[None, None, None]:
    """Clear in-memory metrics before each test."""
    from medcite.observability.metrics import reset_metrics

    reset_metrics()
    yield


# ============================================
# Client Fixtures
# ============================================


@pytest.fixture
def client(monkeypatch) -> Generator[TestClient, None, None]:
    """Create a synchronous test client with no external services configured."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with TestClient(app) as c:
        yield c


# ============================================
# Sample Data Fixtures
# ============================================


@pytest.fixture
def af_question() -> str:
    return "What is the first-line treatment for newly diagnosed atrial fibrillation?"


@pytest.fixture
def af_passages() -> list[EvidencePassage]:
    """Eight passages about atrial fibrillation management."""
    topics = [
        ("Anticoagulation in newly diagnosed atrial fibrillation", 1),
        ("Rate control versus rhythm control for atrial fibrillation", 2),
        ("Apixaban versus warfarin in atrial fibrillation", 2),
        ("Beta blockers for rate control", 2),
        ("Early rhythm control in atrial fibrillation", 2),
        ("Stroke prevention strategies", 3),
        ("Atrial fibrillation screening in the elderly", 3),
        ("Catheter ablation outcomes", 4),
    ]
    return [
        make_passage(
            f"af{i}",
            score=0.9 - i * 0.05,
            title=title,
            content=(
                f"{title}. Treatment of atrial fibrillation with anticoagulation "
                "and rate control improves outcomes."
            ),
            evidence_level=level,
            publication_year=2022,
            journal="Circulation",
            pmid=str(30000000 + i),
            mesh_terms=["Atrial Fibrillation", "Anticoagulants"],
        )
        for i, (title, level) in enumerate(topics, 1)
    ]


@pytest.fixture
def af_understanding_payload() -> dict:
    """LLM understanding payload (camelCase) for the atrial fibrillation question."""
    return {
        "primaryIntent": "treatment",
        "secondaryIntents": ["guideline"],
        "questionType": "what",
        "specificity": "high",
        "entities": {"conditions": ["atrial fibrillation"]},
        "requiresTreatment": True,
        "requiresGuidelines": True,
        "semanticQuery": "first-line therapy newly diagnosed atrial fibrillation anticoagulation rate control",
        "keywordQuery": "atrial fibrillation first-line treatment",
        "entityQuery": "atrial fibrillation",
        "meshQuery": ["Atrial Fibrillation", "Anticoagulants"],
        "medicalDomain": ["cardiology"],
        "urgency": "low",
        "complexity": "simple",
    }
