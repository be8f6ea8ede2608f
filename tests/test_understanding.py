"""
Tests for MedCite Query Understanding

Tests for:
- QueryUnderstanding: default filling and coercion of loose LLM output
- fallback_understanding: pattern-based entities, intents, thresholds
- understand_query: LLM path and fallback on failure
- is_medical_query / extract_medical_terms
"""

import pytest
from conftest import FakeLLM

from medcite.observability.metrics import get_fallback_count
from medcite.rag.models import QueryUnderstanding
from medcite.rag.understanding import (
    extract_medical_terms,
    fallback_understanding,
    is_medical_query,
    understand_query,
)


class TestQueryUnderstandingModel:
    """Tests for default filling of the structured representation."""

    @pytest.mark.unit
    def test_empty_payload_fills_defaults(self):
        u = QueryUnderstanding.from_payload("What treats gout?", {})
        assert u.question == "What treats gout?"
        assert u.primary_intent == "general"
        assert u.question_type == "factual"
        assert u.specificity == "medium"
        assert u.urgency == "low"
        assert u.complexity == "simple"
        assert u.semantic_query == "What treats gout?"
        assert u.keyword_query == "What treats gout?"
        assert u.entity_query == "What treats gout?"
        assert u.all_entities() == []
        assert u.mesh_terms == ()

    @pytest.mark.unit
    def test_camel_case_payload(self, af_understanding_payload):
        u = QueryUnderstanding.from_payload("q", af_understanding_payload)
        assert u.primary_intent == "treatment"
        assert u.requires_treatment is True
        assert u.requires_guidelines is True
        assert u.entities.conditions == ("atrial fibrillation",)
        assert u.mesh_terms == ("Atrial Fibrillation", "Anticoagulants")
        assert u.medical_domain == ("cardiology",)

    @pytest.mark.unit
    def test_unknown_enum_values_coerce_to_defaults(self):
        u = QueryUnderstanding.from_payload(
            "q", {"specificity": "extreme", "urgency": None, "complexity": 3}
        )
        assert (u.specificity, u.urgency, u.complexity) == ("medium", "low", "simple")

    @pytest.mark.unit
    def test_loose_types_are_coerced(self):
        u = QueryUnderstanding.from_payload(
            "q",
            {
                "entities": {"drugs": "warfarin", "conditions": ["AF", "af", 3, None]},
                "requiresDosing": "yes",
                "secondaryIntents": None,
                "meshTerms": "Warfarin",
            },
        )
        assert u.entities.drugs == ("warfarin",)
        assert u.entities.conditions == ("AF",)
        assert u.requires_dosing is True
        assert u.secondary_intents == ()
        assert u.mesh_terms == ("Warfarin",)

    @pytest.mark.unit
    def test_non_dict_payload_is_all_defaults(self):
        u = QueryUnderstanding.from_payload("q", ["not", "a", "dict"])
        assert u.primary_intent == "general"
        assert u.semantic_query == "q"

    @pytest.mark.unit
    def test_required_aspects(self):
        u = QueryUnderstanding(requires_safety=True, requires_comparison=True)
        assert u.required_aspects() == ["Safety", "Comparison"]


class TestFallbackUnderstanding:
    """Tests for the pattern-based understanding."""

    @pytest.mark.unit
    def test_treatment_intent_and_entities(self):
        u = fallback_understanding("What is the treatment for atrial fibrillation with warfarin?")
        assert u.primary_intent == "treatment"
        assert u.requires_treatment is True
        assert "atrial fibrillation" in u.entities.conditions
        assert "warfarin" in u.entities.drugs
        assert u.question_type == "what"

    @pytest.mark.unit
    def test_mechanism_intent(self):
        u = fallback_understanding("Explain the pathophysiology of asthma")
        assert u.primary_intent == "mechanism"
        assert u.requires_mechanism is True

    @pytest.mark.unit
    def test_entities_are_case_insensitive_and_unique(self):
        u = fallback_understanding("Diabetes and DIABETES and diabetes")
        assert u.entities.conditions == ("diabetes",)

    @pytest.mark.unit
    def test_urgency_from_emergency_words(self):
        assert fallback_understanding("Acute severe chest pain management").urgency == "high"
        assert fallback_understanding("Chronic cough management").urgency == "low"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "length, expected",
        [(50, "simple"), (101, "moderate"), (301, "complex")],
    )
    def test_complexity_thresholds(self, length, expected):
        question = ("a" * (length - 1)) + "?"
        assert fallback_understanding(question).complexity == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "tokens, expected",
        [(3, "low"), (5, "low"), (6, "medium"), (10, "medium"), (11, "high")],
    )
    def test_specificity_thresholds(self, tokens, expected):
        question = " ".join(["word"] * tokens)
        assert fallback_understanding(question).specificity == expected

    @pytest.mark.unit
    def test_rewrites_default_to_question(self):
        question = "How is gout treated?"
        u = fallback_understanding(question)
        assert u.semantic_query == question
        assert u.keyword_query == question
        assert u.entity_query == question

    @pytest.mark.unit
    def test_entity_query_joins_entities(self):
        u = fallback_understanding("Metformin in type 2 diabetes")
        assert "metformin" in u.entity_query
        assert "diabetes" in u.entity_query

    @pytest.mark.unit
    def test_mesh_terms_from_entities_and_acronyms(self):
        u = fallback_understanding("Apixaban 5 mg for atrial fibrillation with CKD")
        assert "Atrial Fibrillation" in u.mesh_terms
        assert "Apixaban" in u.mesh_terms
        assert "5 mg" not in u.mesh_terms
        assert [t.lower() for t in u.mesh_terms].count("ckd") == 1

    @pytest.mark.unit
    def test_no_mesh_terms_without_entities(self):
        assert fallback_understanding("How is gout treated?").mesh_terms == ()


class TestUnderstandQuery:
    """Tests for the LLM path and its fallback."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_llm_path(self, af_question, af_understanding_payload):
        llm = FakeLLM(understanding=af_understanding_payload)
        u = await understand_query(af_question, llm)
        assert u.primary_intent == "treatment"
        assert u.question == af_question
        assert u.mesh_terms == ("Atrial Fibrillation", "Anticoagulants")
        assert len(llm.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_llm_failure_falls_back(self, af_question):
        u = await understand_query(af_question, FakeLLM(fail=True))
        assert u.primary_intent == "treatment"
        assert "atrial fibrillation" in u.entities.conditions
        assert get_fallback_count("query_understanding") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_client_uses_fallback_without_recording(self, af_question):
        u = await understand_query(af_question, None)
        assert u.primary_intent == "treatment"
        assert get_fallback_count("query_understanding") == 0


class TestMedicalGate:
    """Tests for the medical-question gate and term extraction."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "question",
        [
            "What is the first-line treatment for newly diagnosed atrial fibrillation?",
            "Side effects of metformin therapy",
            "Is there evidence for screening in pregnancy?",
            "What are the side effects of metformin?",
            "What are the symptoms of influenza?",
            "Which medications lower LDL in adults?",
            "Is apixaban safe in the elderly?",
        ],
    )
    def test_medical_questions(self, question):
        assert is_medical_query(question) is True

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "question",
        ["What's the weather like in Paris?", "Write a poem about autumn leaves"],
    )
    def test_non_medical_questions(self, question):
        assert is_medical_query(question) is False

    @pytest.mark.unit
    def test_extract_medical_terms(self):
        terms = extract_medical_terms("ACE inhibitors 10 mg in type 2 diabetes stage III CKD")
        assert "ACE" in terms
        assert "10 mg" in terms
        assert "type 2 diabetes" in terms
        assert "stage III" in terms
