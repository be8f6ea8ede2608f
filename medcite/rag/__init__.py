"""
MedCite RAG Module

Evidence retrieval for medical questions: domain models, multi-stage
retrieval over a hybrid search primitive, and the resilient-call helper.
Query understanding, reranking and context building live in
medcite.rag.understanding, medcite.rag.reranker and medcite.rag.context.
"""

from medcite.rag.models import (
    Citation,
    EntityBag,
    EvidencePassage,
    QueryUnderstanding,
    RankedPassage,
    RelevanceSignal,
)
from medcite.rag.resilience import resilient_call
from medcite.rag.retriever import (
    EvidenceSearchError,
    HybridSearch,
    RemoteHybridSearch,
    merge_passages,
    multi_stage_retrieval,
)

__all__ = [
    # Models
    "Citation",
    "EntityBag",
    "EvidencePassage",
    "QueryUnderstanding",
    "RankedPassage",
    "RelevanceSignal",
    # Retrieval
    "EvidenceSearchError",
    "HybridSearch",
    "RemoteHybridSearch",
    "merge_passages",
    "multi_stage_retrieval",
    "resilient_call",
]
