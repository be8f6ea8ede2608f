"""
Query Understanding for MedCite

Turns a raw medical question into a QueryUnderstanding. The primary path is
a single deterministic JSON extraction call to the LLM; any failure there
(transport, status, unparseable or invalid JSON) falls back to the
pattern-based understanding below, so this stage never raises.
"""

import logging
import re

from medcite.llm.prompt_templates import (
    UNDERSTANDING_SYSTEM,
    build_understanding_prompt,
)
from medcite.rag.models import EntityBag, QueryUnderstanding
from medcite.rag.resilience import resilient_call

logger = logging.getLogger(__name__)

# ============================================
# Pattern tables
# ============================================

ENTITY_PATTERNS: dict[str, list[re.Pattern]] = {
    "conditions": [
        re.compile(
            r"\b(hypertension|diabetes|asthma|copd|heart failure|stroke|mi|"
            r"myocardial infarction|atrial fibrillation|cancer|tumou?r|pneumonia|"
            r"sepsis|depression|obesity|chronic kidney disease|ckd)\b",
            re.IGNORECASE,
        ),
        re.compile(r"\b([A-Z][a-z]+ (?:disease|disorder|syndrome|condition))\b"),
    ],
    "drugs": [
        re.compile(
            r"\b(aspirin|metformin|lisinopril|atorvastatin|metoprolol|warfarin|"
            r"apixaban|rivaroxaban|dabigatran|heparin|insulin|morphine|amoxicillin)\b",
            re.IGNORECASE,
        ),
        re.compile(
            r"\b([A-Za-z]+(?:pril|olol|statin|mide|zide|prazole|mycin|cycline|sartan|xaban))\b"
        ),
        re.compile(r"\b(anticoagula(?:nt|nts|tion)|antibiotics?|beta[- ]blockers?)\b", re.IGNORECASE),
    ],
    "procedures": [
        re.compile(
            r"\b(surgery|operation|procedure|biopsy|endoscopy|colonoscopy|"
            r"angiography|catheterization|ablation|cardioversion|transplant)\b",
            re.IGNORECASE,
        ),
    ],
    "symptoms": [
        re.compile(
            r"\b(pain|fever|nausea|vomiting|dizziness|shortness of breath|"
            r"chest pain|headache|palpitations|fatigue|cough)\b",
            re.IGNORECASE,
        ),
    ],
    "tests": [
        re.compile(
            r"\b(ct|mri|x-ray|ultrasound|ekg|ecg|echocardiogram|blood test|lab|"
            r"biomarker|hba1c|troponin)\b",
            re.IGNORECASE,
        ),
    ],
    "anatomy": [
        re.compile(
            r"\b(heart|liver|kidney|lung|brain|stomach|intestine|artery|vein|atrium)\b",
            re.IGNORECASE,
        ),
    ],
    "demographics": [
        re.compile(
            r"\b(pediatric|paediatric|geriatric|elderly|adult|child|children|"
            r"infant|pregnan(?:t|cy)|male|female|women|men)\b",
            re.IGNORECASE,
        ),
    ],
    "outcomes": [
        re.compile(
            r"\b(mortality|survival|recurrence|remission|complications?|"
            r"adverse events?|hospitali[sz]ation|quality of life)\b",
            re.IGNORECASE,
        ),
    ],
}

# Ordered: the first matching intent becomes the primary intent
INTENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("treatment", re.compile(r"\b(treat\w*|therapy|therapies|medication|drug|dose|dosing|management)\b", re.IGNORECASE)),
    ("diagnosis", re.compile(r"\b(diagnos\w*|test|screen\w*|detect\w*|workup)\b", re.IGNORECASE)),
    ("mechanism", re.compile(r"\b(mechanism|how does|why does|pathophysiology)\b", re.IGNORECASE)),
    ("etiology", re.compile(r"\b(cause[sd]?|etiology|aetiology|risk factors?)\b", re.IGNORECASE)),
    ("prognosis", re.compile(r"\b(prognosis|outcomes?|survival|mortality)\b", re.IGNORECASE)),
    ("prevention", re.compile(r"\b(prevent\w*)\b", re.IGNORECASE)),
    ("safety", re.compile(r"\b(safe|safety|adverse|side effects?|contraindicat\w*)\b", re.IGNORECASE)),
    ("efficacy", re.compile(r"\b(effective|efficacy|works|benefits?)\b", re.IGNORECASE)),
    ("guideline", re.compile(r"\b(guidelines?|recommendations?|standard of care|protocols?|first[- ]line)\b", re.IGNORECASE)),
    ("comparison", re.compile(r"\b(compare|comparison|versus|vs\.?|better)\b", re.IGNORECASE)),
]

DOSING_PATTERN = re.compile(r"\b(dose|doses|dosing|dosage)\b", re.IGNORECASE)
EMERGENCY_PATTERN = re.compile(
    r"\b(emergency|urgent|critical|acute|severe|life[- ]threatening)\b", re.IGNORECASE
)

# Gate used to decide whether evidence retrieval is worth running at all
MEDICAL_QUERY_PATTERNS = [
    re.compile(
        r"\b(diseases?|disorders?|syndromes?|infections?|cancers?|tumou?rs?|diabetes|"
        r"hypertension|asthma|copd|heart failure|strokes?|fibrillation|pneumonia|sepsis)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(treatments?|therap(?:y|ies)|medications?|drugs?|surger(?:y|ies)|procedures?|"
        r"interventions?|doses?|dosing|dosage|anticoagula\w*)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(diagnos(?:is|es)|symptoms?|signs?|side effects?|adverse|prognosis|risks?|"
        r"screening|prevention|guidelines?|protocols?)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(evidence|study|studies|trials?|research|meta-analys[ie]s|reviews?|efficacy|"
        r"safety|outcomes?)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(blood pressure|heart rate|glucose|cholesterol|ldl|hdl|kidneys?|liver|lungs?|brain)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(cardiology|oncology|neurology|psychiatry|pediatric|geriatric|emergency)\b",
        re.IGNORECASE,
    ),
]

# Entity hits in these categories also mark a question as medical
GATE_ENTITY_CATEGORIES = ("conditions", "drugs", "symptoms", "tests")

# Entity categories promoted to MeSH-style headings by the fallback
MESH_ENTITY_CATEGORIES = ("conditions", "drugs")

DOSAGE_PATTERN = re.compile(r"^\d+\s*mg$", re.IGNORECASE)

MEDICAL_TERM_PATTERNS = [
    re.compile(r"\b[A-Z]{2,}(?:-\d+)?\b"),  # Acronyms like ACE, ARB, SGLT2
    re.compile(r"\b\d+\s*mg\b", re.IGNORECASE),
    re.compile(r"\b(?:type\s*)?[12]\s*diabetes\b", re.IGNORECASE),
    re.compile(r"\bstage\s*[IVX]+\b"),
]

# Fallback thresholds
COMPLEX_LENGTH = 300
MODERATE_LENGTH = 100
HIGH_SPECIFICITY_TOKENS = 10
MEDIUM_SPECIFICITY_TOKENS = 5


def is_medical_query(question: str) -> bool:
    """Check if a question is likely medical/clinical."""
    if any(pattern.search(question) for pattern in MEDICAL_QUERY_PATTERNS):
        return True
    return any(
        pattern.search(question)
        for category in GATE_ENTITY_CATEGORIES
        for pattern in ENTITY_PATTERNS[category]
    )


def extract_medical_terms(question: str) -> list[str]:
    """Extract acronyms, dosages, diabetes types and stages worth preserving."""
    terms: list[str] = []
    for pattern in MEDICAL_TERM_PATTERNS:
        for match in pattern.finditer(question):
            if match.group(0) not in terms:
                terms.append(match.group(0))
    return terms


def _extract_entities(question: str) -> EntityBag:
    found: dict[str, list[str]] = {}
    for category, patterns in ENTITY_PATTERNS.items():
        matches: list[str] = []
        for pattern in patterns:
            for match in pattern.finditer(question):
                term = match.group(0).lower()
                if term not in matches:
                    matches.append(term)
        found[category] = matches
    return EntityBag(**found)


def _fallback_mesh_terms(question: str, entities: EntityBag) -> tuple[str, ...]:
    """Condition and drug entities as headings, plus preserved acronyms and stages."""
    terms: list[str] = []
    seen: set[str] = set()
    candidates = [
        term.title() for category in MESH_ENTITY_CATEGORIES for term in getattr(entities, category)
    ]
    candidates += [t for t in extract_medical_terms(question) if not DOSAGE_PATTERN.match(t)]
    for term in candidates:
        if term.lower() not in seen:
            seen.add(term.lower())
            terms.append(term)
    return tuple(terms)


def _question_type(question: str) -> str:
    lowered = question.strip().lower()
    for word in ("what", "how", "when", "why", "who", "where"):
        if lowered.startswith(word):
            return word
    return "factual"


def fallback_understanding(question: str) -> QueryUnderstanding:
    """Pattern-based understanding used when the LLM path is unavailable."""
    entities = _extract_entities(question)
    intents = [name for name, pattern in INTENT_PATTERNS if pattern.search(question)]
    tokens = len(question.split())
    all_entities = entities.flatten()

    if tokens > HIGH_SPECIFICITY_TOKENS:
        specificity = "high"
    elif tokens > MEDIUM_SPECIFICITY_TOKENS:
        specificity = "medium"
    else:
        specificity = "low"

    if len(question) > COMPLEX_LENGTH:
        complexity = "complex"
    elif len(question) > MODERATE_LENGTH:
        complexity = "moderate"
    else:
        complexity = "simple"

    return QueryUnderstanding(
        question=question,
        primary_intent=intents[0] if intents else "general",
        secondary_intents=tuple(intents[1:]),
        question_type=_question_type(question),
        specificity=specificity,
        entities=entities,
        requires_treatment="treatment" in intents,
        requires_diagnosis="diagnosis" in intents,
        requires_mechanism="mechanism" in intents,
        requires_outcome="prognosis" in intents,
        requires_safety="safety" in intents,
        requires_dosing="treatment" in intents and bool(DOSING_PATTERN.search(question)),
        requires_guidelines="guideline" in intents,
        requires_comparison="comparison" in intents,
        semantic_query=question,
        keyword_query=question,
        entity_query=" ".join(all_entities) or question,
        mesh_terms=_fallback_mesh_terms(question, entities),
        urgency="high" if EMERGENCY_PATTERN.search(question) else "low",
        complexity=complexity,
    )


async def understand_query(
    question: str,
    llm_client=None,
    api_key: str | None = None,
) -> QueryUnderstanding:
    """
    Build a QueryUnderstanding for a question.

    Uses the LLM when a client is available; falls back to pattern matching
    on any failure. Always returns a fully-populated understanding.
    """
    if llm_client is None:
        return fallback_understanding(question)

    async def _extract() -> QueryUnderstanding:
        payload = await llm_client.complete_json(
            UNDERSTANDING_SYSTEM,
            build_understanding_prompt(question),
            api_key=api_key,
        )
        return QueryUnderstanding.from_payload(question, payload)

    understanding = await resilient_call(
        "query_understanding",
        _extract,
        default=lambda: fallback_understanding(question),
        context={"query": question[:80]},
    )
    logger.info(
        "Query understanding: intent=%s, entities=%d, specificity=%s",
        understanding.primary_intent,
        len(understanding.all_entities()),
        understanding.specificity,
    )
    return understanding
