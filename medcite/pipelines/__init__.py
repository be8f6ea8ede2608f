"""
MedCite Pipelines

- EvidencePipeline: medical gate, understanding, retrieval, rerank, context, verification
"""

from medcite.pipelines.evidence import EvidencePipeline, EvidenceResult

__all__ = ["EvidencePipeline", "EvidenceResult"]
