"""
Domain models for MedCite

QueryUnderstanding and Citation are pydantic schemas: they cross a trust
boundary (LLM output, HTTP payloads) and every field is default-filled.
Passages, signals and ranked results are request-scoped dataclasses.
"""

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Confidence buckets for the contextual score
HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6

Specificity = Literal["high", "medium", "low"]
Urgency = Literal["low", "medium", "high"]
Complexity = Literal["simple", "moderate", "complex"]
Confidence = Literal["high", "medium", "low"]

_ENUM_DEFAULTS: dict[str, tuple[tuple[str, ...], str]] = {
    "specificity": (("high", "medium", "low"), "medium"),
    "urgency": (("low", "medium", "high"), "low"),
    "complexity": (("simple", "moderate", "complex"), "simple"),
}


def _string_tuple(value: Any) -> tuple[str, ...]:
    """Coerce loose LLM output into a de-duplicated tuple of strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        return ()
    seen: set[str] = set()
    result = []
    for item in value:
        if not isinstance(item, str):
            continue
        cleaned = item.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return tuple(result)


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    if isinstance(value, (int, float)):
        return value != 0
    return False


class _Schema(BaseModel):
    """Frozen schema that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# ============================================
# Query Understanding
# ============================================


class EntityBag(_Schema):
    """Medical entities extracted from a question, grouped by category."""

    conditions: tuple[str, ...] = ()
    drugs: tuple[str, ...] = ()
    procedures: tuple[str, ...] = ()
    symptoms: tuple[str, ...] = ()
    tests: tuple[str, ...] = ()
    anatomy: tuple[str, ...] = ()
    demographics: tuple[str, ...] = ()
    outcomes: tuple[str, ...] = ()

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> tuple[str, ...]:
        return _string_tuple(value)

    def flatten(self) -> list[str]:
        """All entities across categories, category order preserved."""
        return [
            entity
            for name in type(self).model_fields
            for entity in getattr(self, name)
        ]


class QueryUnderstanding(_Schema):
    """Structured representation of a medical question."""

    question: str = ""
    primary_intent: str = "general"
    secondary_intents: tuple[str, ...] = ()
    question_type: str = "factual"
    specificity: Specificity = "medium"
    entities: EntityBag = Field(default_factory=EntityBag)

    requires_treatment: bool = False
    requires_diagnosis: bool = False
    requires_mechanism: bool = False
    requires_outcome: bool = False
    requires_safety: bool = False
    requires_dosing: bool = False
    requires_guidelines: bool = False
    requires_comparison: bool = False

    semantic_query: str = ""
    keyword_query: str = ""
    entity_query: str = ""
    mesh_terms: tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("meshQuery", "meshTerms", "mesh_terms"),
    )

    medical_domain: tuple[str, ...] = ()
    specialty: tuple[str, ...] = ()
    urgency: Urgency = "low"
    complexity: Complexity = "simple"

    @field_validator("primary_intent", "question_type", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any, info) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
        return "general" if info.field_name == "primary_intent" else "factual"

    @field_validator(
        "secondary_intents", "mesh_terms", "medical_domain", "specialty", mode="before"
    )
    @classmethod
    def _coerce_strings(cls, value: Any) -> tuple[str, ...]:
        return _string_tuple(value)

    @field_validator("specificity", "urgency", "complexity", mode="before")
    @classmethod
    def _coerce_enum(cls, value: Any, info) -> str:
        allowed, default = _ENUM_DEFAULTS[info.field_name]
        if isinstance(value, str) and value.strip().lower() in allowed:
            return value.strip().lower()
        return default

    @field_validator("entities", mode="before")
    @classmethod
    def _coerce_entities(cls, value: Any) -> Any:
        if isinstance(value, (dict, EntityBag)):
            return value
        return {}

    @field_validator(
        "requires_treatment",
        "requires_diagnosis",
        "requires_mechanism",
        "requires_outcome",
        "requires_safety",
        "requires_dosing",
        "requires_guidelines",
        "requires_comparison",
        mode="before",
    )
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _flag(value)

    @field_validator("semantic_query", "keyword_query", "entity_query", mode="before")
    @classmethod
    def _coerce_query(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @classmethod
    def from_payload(cls, question: str, payload: Any) -> "QueryUnderstanding":
        """Validate an LLM JSON payload, filling every missing field."""
        understanding = cls.model_validate(payload if isinstance(payload, dict) else {})
        return understanding.with_query_defaults(question)

    def with_query_defaults(self, question: str) -> "QueryUnderstanding":
        """Fill empty query rewrites with the original question."""
        updates: dict[str, str] = {
            name: question
            for name in ("semantic_query", "keyword_query", "entity_query")
            if not getattr(self, name)
        }
        if not self.question:
            updates["question"] = question
        return self.model_copy(update=updates) if updates else self

    def all_entities(self) -> list[str]:
        return self.entities.flatten()

    def required_aspects(self) -> list[str]:
        """Human-readable labels for the requirement flags that are set."""
        labels = {
            "requires_treatment": "Treatment",
            "requires_diagnosis": "Diagnosis",
            "requires_mechanism": "Mechanism",
            "requires_outcome": "Outcome",
            "requires_safety": "Safety",
            "requires_dosing": "Dosing",
            "requires_guidelines": "Guidelines",
            "requires_comparison": "Comparison",
        }
        return [label for name, label in labels.items() if getattr(self, name)]


class RelevanceJudgement(BaseModel):
    """LLM answer-relevance response: {"score": 0..1, "explanation": "..."}."""

    model_config = ConfigDict(extra="ignore")

    score: float = Field(ge=0.0, le=1.0)
    explanation: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError("score must be a number")
        return min(1.0, max(0.0, float(value)))

    @field_validator("explanation", mode="before")
    @classmethod
    def _coerce_explanation(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


# ============================================
# Passages and ranking
# ============================================


@dataclass
class EvidencePassage:
    """A scored passage returned by the hybrid search primitive."""

    id: str
    title: str
    content: str
    score: float
    evidence_level: int = 5
    mesh_terms: list[str] = field(default_factory=list)
    publication_year: int | None = None
    journal: str = ""
    authors: list[str] = field(default_factory=list)
    doi: str | None = None
    pmid: str | None = None
    study_type: str | None = None
    sample_size: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "EvidencePassage":
        """Build a passage from a search row (medical_evidence column names)."""
        level = row.get("evidence_level")
        year = row.get("publication_year", row.get("year"))
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            content=row.get("content") or "",
            score=float(row.get("score") or 0.0),
            evidence_level=min(5, max(1, int(level))) if level is not None else 5,
            mesh_terms=list(row.get("mesh_terms") or []),
            publication_year=int(year) if year else None,
            journal=row.get("journal_name") or row.get("journal") or "",
            authors=list(row.get("authors") or []),
            doi=row.get("doi"),
            pmid=str(row["pmid"]) if row.get("pmid") else None,
            study_type=row.get("study_type"),
            sample_size=row.get("sample_size"),
        )


@dataclass
class RelevanceSignal:
    """One named relevance score for a candidate passage."""

    name: str
    score: float
    weight: float
    explanation: str
    available: bool = True


def confidence_bucket(score: float) -> Confidence:
    """Map a contextual score to its confidence bucket."""
    if score > HIGH_CONFIDENCE:
        return "high"
    if score > MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


@dataclass
class RankedPassage:
    """A passage with its relevance signals and ensemble score."""

    passage: EvidencePassage
    signals: list[RelevanceSignal]
    contextual_score: float
    confidence: Confidence
    matched_entities: list[str] = field(default_factory=list)
    matched_mesh_terms: list[str] = field(default_factory=list)
    degraded: bool = False

    def signal(self, name: str) -> RelevanceSignal | None:
        return next((s for s in self.signals if s.name == name), None)

    @property
    def answers_query(self) -> bool:
        answer = self.signal("answer_relevance")
        return answer is not None and answer.score > 0.7

    @property
    def relevance_reason(self) -> str:
        return "; ".join(s.explanation for s in self.signals)


# ============================================
# Citations
# ============================================


class Citation(BaseModel):
    """A supplied evidence source with its stable 1-based index."""

    index: int = Field(ge=1)
    passage_id: str
    title: str
    source: str = ""
    evidence_level: int = Field(default=5, ge=1, le=5)
    year: int | None = None
    study_type: str | None = None
    authors: list[str] = Field(default_factory=list)
    doi: str | None = None
    pmid: str | None = None
    url: str | None = None
    mesh_terms: list[str] = Field(default_factory=list)
    sample_size: int | None = None
    snippet: str = ""
    score: float = 0.0
