"""
MedCite - Evidence Retrieval and Citation Attribution for Medical Q&A

Turns a medical question into a ranked, verified citation set:
- LLM query understanding with a pattern-based fallback
- Multi-stage hybrid retrieval (semantic, keyword, entity/MeSH)
- Multi-signal contextual reranking with adaptive thresholds
- Post-generation citation marker parsing and verification
"""

__version__ = "0.1.0"
__author__ = "MedCite Team"
