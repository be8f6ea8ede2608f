"""
MedCite - FastAPI Application Entry Point

Evidence retrieval and citation attribution service for medical Q&A.
"""

import dataclasses
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from medcite import __version__
from medcite.llm.chat_client import ChatClient
from medcite.pipelines.evidence import EvidencePipeline
from medcite.rag.context import generate_evidence_summary
from medcite.rag.retriever import RemoteHybridSearch
from medcite.security.input_validation import (
    EvidenceSearchRequest,
    InputValidator,
    VerifyRequest,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    logger.info("Starting MedCite API v%s", __version__)

    # LLM client is optional: without a key every LLM stage uses its fallback
    llm_client = None
    if os.environ.get("OPENAI_API_KEY"):
        llm_client = ChatClient()
        logger.info("LLM client initialized (model %s)", llm_client.model)
    else:
        logger.warning("OPENAI_API_KEY not set, using pattern-based fallbacks")
    app.state.llm_client = llm_client

    search = RemoteHybridSearch()
    if not search.configured:
        logger.warning("EVIDENCE_SEARCH_URL not set, evidence search will return nothing")
    app.state.search = search

    app.state.pipeline = EvidencePipeline(search=search, llm_client=llm_client)

    yield

    logger.info("Shutting down MedCite API")


# Create FastAPI application
app = FastAPI(
    title="MedCite",
    description="Evidence Retrieval and Citation Attribution for Medical Q&A",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# Health Check Endpoints
# ============================================


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "service": "medcite-api",
    }


@app.get("/ready", tags=["Health"])
async def readiness_check() -> dict[str, Any]:
    """Readiness check with dependency status."""
    llm_client = getattr(app.state, "llm_client", None)
    llm_status = "unavailable"
    if llm_client:
        llm_status = "ok" if await llm_client.health_check() else "degraded"

    search = getattr(app.state, "search", None)
    search_status = "ok" if search is not None and search.configured else "unconfigured"

    return {
        "ready": True,
        "checks": {
            "llm": llm_status,
            "evidence_search": search_status,
        },
    }


# ============================================
# Evidence Endpoints
# ============================================


@app.post("/api/v1/evidence/search", tags=["Evidence"])
async def evidence_search_endpoint(
    body: EvidenceSearchRequest,
    x_llm_api_key: str | None = Header(default=None),
) -> dict[str, Any]:
    """
    Retrieve, rerank and package evidence for a medical question.

    Returns the numbered citations plus the context block and system prompt
    addition to hand to the answer-generating model.
    """
    validator = InputValidator()
    question = validator.sanitize(body.question)
    if not validator.is_safe(question):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Question contains potentially unsafe content",
        )

    pipeline: EvidencePipeline = app.state.pipeline
    result = await pipeline.run(
        question,
        max_results=body.max_results,
        min_evidence_level=body.min_evidence_level,
        min_contextual_score=body.min_contextual_score,
        enable_reranking=body.enable_reranking,
        api_key=x_llm_api_key,
    )

    return {
        "should_use_evidence": result.should_use_evidence,
        "citations": [c.model_dump() for c in result.context.citations],
        "formatted_context": result.context.formatted_context,
        "system_prompt_addition": result.context.system_prompt_addition,
        "summary": generate_evidence_summary(result.context.citations),
        "understanding": result.understanding.model_dump() if result.understanding else None,
        "rerank_stats": dataclasses.asdict(result.rerank_stats) if result.rerank_stats else None,
        "search_time_ms": result.search_time_ms,
        "steps": result.steps,
    }


@app.post("/api/v1/evidence/verify", tags=["Evidence"])
async def evidence_verify_endpoint(body: VerifyRequest) -> dict[str, Any]:
    """
    Keep only the supplied citations that a generated answer references.

    Only the returned citations should be persisted or rendered with the answer.
    """
    pipeline: EvidencePipeline = app.state.pipeline
    verification = pipeline.verify(
        body.answer, body.citations, include_parenthetical=body.include_parenthetical
    )

    return {
        "referenced_citations": [c.model_dump() for c in verification.referenced_citations],
        "citation_indices": verification.citation_indices,
        "has_citations": verification.has_citations,
        "status": verification.status,
        "stats": verification.stats,
    }


# ============================================
# Metrics Endpoint
# ============================================


@app.get("/metrics", tags=["Monitoring"])
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    from medcite.observability.metrics import get_metrics_text

    return PlainTextResponse(content=get_metrics_text(), media_type="text/plain")


@app.post("/metrics/reset", tags=["Monitoring"])
async def reset_metrics_endpoint():
    """Reset all metrics counters (for testing/demo)."""
    from medcite.observability.metrics import reset_metrics

    reset_metrics()
    return {"status": "metrics_reset"}


# ============================================
# Exception Handlers
# ============================================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if app.debug else "An unexpected error occurred",
        },
    )


# ============================================
# Main Entry Point
# ============================================


def main():
    """Run the application using uvicorn."""
    import uvicorn

    uvicorn.run(
        "medcite.main:app",
        host=os.environ.get("MEDCITE_HOST", "0.0.0.0"),
        port=int(os.environ.get("MEDCITE_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    main()
