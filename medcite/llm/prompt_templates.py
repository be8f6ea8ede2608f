"""
Prompt Templates for MedCite

Instructions for the two structured LLM calls (query understanding and
answer-relevance scoring) and the evidence guidelines appended to the
answer-generation system prompt.
"""

import json
import os
import re

from medcite.rag.models import QueryUnderstanding

RELEVANCE_CONTENT_CHARS = int(os.environ.get("RELEVANCE_CONTENT_CHARS", "1000"))


def truncate_at_sentence(text: str, max_chars: int) -> str:
    """Truncate text at a sentence boundary, falling back to hard cut.

    Finds the last sentence-ending punctuation (. ? !) followed by a space
    or newline before the limit, but only if it's past the halfway point.
    """
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    search_region = text[half:max_chars]
    match = None
    for m in re.finditer(r"[.!?](?:\s|\n)", search_region):
        match = m
    if match:
        cut = half + match.end()
        return text[:cut].rstrip()
    return text[:max_chars] + "..."


# ============================================
# Query Understanding
# ============================================

UNDERSTANDING_SYSTEM = (
    "You are a comprehensive medical query understanding system. "
    "Return only valid JSON. Be thorough and extract ALL information."
)

_UNDERSTANDING_SHAPE = {
    "primaryIntent": "treatment|diagnosis|mechanism|etiology|prognosis|prevention|"
    "screening|safety|efficacy|dosing|contraindication|interaction|guideline|"
    "comparison|general",
    "secondaryIntents": ["additional intents"],
    "questionType": "what|how|when|why|who|where|comparison|factual",
    "specificity": "high|medium|low",
    "entities": {
        "conditions": ["medical conditions mentioned"],
        "drugs": ["drugs/medications mentioned"],
        "procedures": ["procedures mentioned"],
        "symptoms": ["symptoms mentioned"],
        "tests": ["diagnostic tests mentioned"],
        "anatomy": ["anatomical structures mentioned"],
        "demographics": ["patient demographics mentioned"],
        "outcomes": ["outcomes mentioned"],
    },
    "requiresTreatment": "boolean",
    "requiresDiagnosis": "boolean",
    "requiresMechanism": "boolean",
    "requiresOutcome": "boolean",
    "requiresSafety": "boolean",
    "requiresDosing": "boolean",
    "requiresGuidelines": "boolean",
    "requiresComparison": "boolean",
    "semanticQuery": "expanded query for embedding search with synonyms and related terms",
    "keywordQuery": "query for full-text search with key terms, acronyms, phrases",
    "entityQuery": "query focusing on the extracted entities",
    "meshQuery": ["candidate MeSH terms"],
    "medicalDomain": ["medical domains, e.g. cardiology"],
    "specialty": ["medical specialties"],
    "urgency": "low|medium|high",
    "complexity": "simple|moderate|complex",
}

UNDERSTANDING_PROMPT = """Analyze this medical query comprehensively and extract ALL relevant information.

QUERY: "{question}"

Return a JSON object with this EXACT structure (fill ALL fields):
{shape}

Guidelines:
- Extract ALL entities mentioned, even if implicit
- semanticQuery: include medical synonyms, related terms, broader/narrower concepts
- keywordQuery: focus on key medical terms, acronyms, specific phrases
- meshQuery: suggest relevant terms using standard MeSH terminology
- Assess urgency from the query language (emergency terms = high)
- Assess complexity from query length and the number of conditions involved"""


def build_understanding_prompt(question: str) -> str:
    """Prompt asking for the full QueryUnderstanding JSON object."""
    shape = json.dumps(_UNDERSTANDING_SHAPE, indent=2)
    return UNDERSTANDING_PROMPT.format(question=question, shape=shape)


# ============================================
# Answer Relevance
# ============================================

RELEVANCE_SYSTEM = (
    "You are a medical evidence relevance scorer. Return only valid JSON."
)

RELEVANCE_PROMPT = """Does this medical article answer the user's specific question?

USER QUESTION: "{question}"

QUESTION INTENT: {intent}
REQUIRES: {requires}

ARTICLE:
Title: {title}
Content: {content}

Rate how well this article answers the specific question (0.0-1.0) and explain why.

Scoring guidelines (be reasonable, not overly strict):
- 0.8-1.0: Directly and completely answers the question
- 0.6-0.79: Relevant and provides useful information that addresses the question
- 0.4-0.59: Related to the topic, only tangentially useful
- 0.0-0.39: Not relevant

Return JSON: {{"score": 0.0-1.0, "explanation": "brief reason"}}"""


def build_relevance_prompt(
    understanding: QueryUnderstanding,
    title: str,
    content: str,
    max_content_chars: int = RELEVANCE_CONTENT_CHARS,
) -> str:
    """Prompt asking the LLM to rate one passage against the question."""
    if len(content) > max_content_chars:
        content = content[:max_content_chars] + "..."
    return RELEVANCE_PROMPT.format(
        question=understanding.question or understanding.semantic_query,
        intent=understanding.primary_intent,
        requires=", ".join(understanding.required_aspects()) or "General information",
        title=title,
        content=content,
    )


# ============================================
# Answer Generation
# ============================================

EVIDENCE_GUIDELINES = """
## EVIDENCE-BASED RESPONSE GUIDELINES

You have access to {count} peer-reviewed medical evidence sources. You MUST:

1. **CITE EVERY CLAIM**: Use inline citations [1], [2], etc. for every factual medical statement
2. **PRIORITIZE HIGH EVIDENCE**: Weight meta-analyses (Level 1) and RCTs (Level 2) more heavily
3. **ACKNOWLEDGE LIMITATIONS**: If evidence is from lower-quality studies, mention this
4. **BE PRECISE**: Quote study findings accurately, including sample sizes when available
5. **SYNTHESIZE**: Combine findings from multiple sources when they agree
6. **FLAG CONFLICTS**: Note when sources disagree and explain why

### Citation Format:
- Single citation: "ACE inhibitors reduce mortality [1]"
- Multiple citations: "Blood pressure control improves outcomes [1,2,3]"
- Consecutive sources: "Several trials agree [2-4]"
- Only cite the numbered sources listed below. Never invent a source number.

### Evidence Quality Indicators:
- Level 1 (Meta-Analysis/SR): Strongest evidence - prioritize these
- Level 2 (RCT): Strong evidence - reliable for treatment recommendations
- Level 3 (Cohort): Moderate evidence - good for associations
- Level 4 (Case): Weak evidence - mention with caution
- Level 5 (Opinion): Expert opinion - use for context only

### AVAILABLE EVIDENCE:
{available}

Respond with a well-structured answer that synthesizes this evidence."""
