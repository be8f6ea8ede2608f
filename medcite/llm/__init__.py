"""
MedCite LLM Module

LLM integration components:
- ChatClient: Async HTTP client for an OpenAI-compatible chat completions API
- Prompt templates: query understanding, relevance scoring, evidence guidelines
- CitationVerifier: citation marker parsing and resolution against supplied sources
"""

from medcite.llm.chat_client import ChatClient, LLMError
from medcite.llm.response_parser import (
    CitationMarker,
    CitationVerification,
    CitationVerifier,
    parse_citation_markers,
)

__all__ = [
    "ChatClient",
    "LLMError",
    "CitationMarker",
    "CitationVerification",
    "CitationVerifier",
    "parse_citation_markers",
]
