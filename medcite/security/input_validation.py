"""
Input Validation for MedCite

Request models for the evidence API and a pattern check against script
injection in free text (questions and generated answers).
"""

import logging
import re

from pydantic import BaseModel, Field, field_validator

from medcite.pipelines.evidence import DEFAULT_MAX_RESULTS
from medcite.rag.models import Citation

logger = logging.getLogger(__name__)

XSS_PATTERNS = [
    re.compile(r"<\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"<[^>]*\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"<\s*iframe", re.IGNORECASE),
    re.compile(r"<\s*object", re.IGNORECASE),
    re.compile(r"<\s*embed", re.IGNORECASE),
]

MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 1000
MAX_ANSWER_LENGTH = 20000
MAX_RESULTS_LIMIT = 20


class EvidenceSearchRequest(BaseModel):
    """Validated evidence search request."""

    question: str
    max_results: int = DEFAULT_MAX_RESULTS
    min_evidence_level: int = 5
    min_contextual_score: float | None = None
    enable_reranking: bool = True

    @field_validator("question")
    @classmethod
    def validate_question(cls, v: str) -> str:
        v = v.strip()
        if len(v) < MIN_QUERY_LENGTH:
            raise ValueError(f"Question must be at least {MIN_QUERY_LENGTH} characters")
        if len(v) > MAX_QUERY_LENGTH:
            raise ValueError(f"Question must be at most {MAX_QUERY_LENGTH} characters")
        return v

    @field_validator("max_results")
    @classmethod
    def validate_max_results(cls, v: int) -> int:
        if v < 1 or v > MAX_RESULTS_LIMIT:
            raise ValueError(f"max_results must be between 1 and {MAX_RESULTS_LIMIT}")
        return v

    @field_validator("min_evidence_level")
    @classmethod
    def validate_min_evidence_level(cls, v: int) -> int:
        if v < 1 or v > 5:
            raise ValueError("min_evidence_level must be between 1 and 5")
        return v

    @field_validator("min_contextual_score")
    @classmethod
    def validate_min_contextual_score(cls, v: float | None) -> float | None:
        if v is not None and (v < 0.0 or v > 1.0):
            raise ValueError("min_contextual_score must be between 0.0 and 1.0")
        return v


class VerifyRequest(BaseModel):
    """Generated answer plus the citations that were supplied for it."""

    answer: str = Field(max_length=MAX_ANSWER_LENGTH)
    citations: list[Citation] = Field(default_factory=list)
    include_parenthetical: bool = True

    @field_validator("citations")
    @classmethod
    def validate_unique_indices(cls, v: list[Citation]) -> list[Citation]:
        indices = [c.index for c in v]
        if len(indices) != len(set(indices)):
            raise ValueError("citation indices must be unique")
        return v


class InputValidator:
    """Validates free text against injection patterns."""

    def check_xss(self, text: str) -> bool:
        """Return True if XSS pattern detected."""
        for pattern in XSS_PATTERNS:
            if pattern.search(text):
                logger.warning("XSS pattern detected: %s", text[:100])
                return True
        return False

    def is_safe(self, text: str) -> bool:
        """Return True if input passes all safety checks."""
        return not self.check_xss(text)

    def sanitize(self, text: str) -> str:
        """Strip null bytes and control characters from input."""
        text = text.replace("\x00", "")
        text = re.sub(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
        return text.strip()
