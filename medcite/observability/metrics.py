"""
Prometheus Metrics for MedCite

Tracks:
- evidence_requests_total: Evidence searches, split by outcome
- fallbacks_total: Degraded external calls, labelled by pipeline stage
- rerank_degraded_total: Requests that fell back to retrieval order
- citations_supplied_total / citations_referenced_total: Verification volume
- responses_without_citations_total: Answers that cited nothing despite sources
- evidence_latency_seconds: Search latency histogram and percentiles
"""

import logging
import threading
from collections import Counter

logger = logging.getLogger(__name__)

# Thread-safe metrics storage
_lock = threading.Lock()

_metrics: dict[str, float] = {
    "evidence_requests_total": 0,
    "evidence_non_medical_total": 0,
    "evidence_empty_total": 0,
    "rerank_degraded_total": 0,
    "verifications_total": 0,
    "citations_supplied_total": 0,
    "citations_referenced_total": 0,
    "responses_without_citations_total": 0,
}

_fallbacks: Counter[str] = Counter()
_latencies: list[float] = []


def record_search(
    latency_ms: float,
    medical: bool = True,
    citations: int = 0,
    degraded: bool = False,
) -> None:
    """Record metrics for one evidence search request."""
    with _lock:
        _metrics["evidence_requests_total"] += 1
        if not medical:
            _metrics["evidence_non_medical_total"] += 1
        elif citations == 0:
            _metrics["evidence_empty_total"] += 1
        if degraded:
            _metrics["rerank_degraded_total"] += 1
        _latencies.append(latency_ms)


def record_fallback(stage: str) -> None:
    """Record that an external call at `stage` degraded to its fallback."""
    with _lock:
        _fallbacks[stage] += 1


def record_verification(supplied: int, referenced: int) -> None:
    """Record the outcome of verifying one generated answer."""
    with _lock:
        _metrics["verifications_total"] += 1
        _metrics["citations_supplied_total"] += supplied
        _metrics["citations_referenced_total"] += referenced
        if supplied > 0 and referenced == 0:
            _metrics["responses_without_citations_total"] += 1


def get_metrics_text() -> str:
    """Generate Prometheus-compatible metrics text."""
    with _lock:
        supplied = _metrics["citations_supplied_total"]
        utilization = (
            _metrics["citations_referenced_total"] / supplied if supplied > 0 else 0.0
        )

        sorted_latencies = sorted(_latencies) if _latencies else [0]
        p50 = _percentile(sorted_latencies, 50)
        p95 = _percentile(sorted_latencies, 95)
        p99 = _percentile(sorted_latencies, 99)

        lines = [
            "# HELP evidence_requests_total Total evidence searches",
            "# TYPE evidence_requests_total counter",
            f'evidence_requests_total {int(_metrics["evidence_requests_total"])}',
            "",
            "# HELP evidence_non_medical_total Searches skipped as non-medical",
            "# TYPE evidence_non_medical_total counter",
            f'evidence_non_medical_total {int(_metrics["evidence_non_medical_total"])}',
            "",
            "# HELP evidence_empty_total Medical searches that produced no citations",
            "# TYPE evidence_empty_total counter",
            f'evidence_empty_total {int(_metrics["evidence_empty_total"])}',
            "",
            "# HELP rerank_degraded_total Searches that fell back to retrieval order",
            "# TYPE rerank_degraded_total counter",
            f'rerank_degraded_total {int(_metrics["rerank_degraded_total"])}',
            "",
            "# HELP fallbacks_total External calls that degraded to a fallback",
            "# TYPE fallbacks_total counter",
        ]
        for stage in sorted(_fallbacks):
            lines.append(f'fallbacks_total{{stage="{stage}"}} {_fallbacks[stage]}')

        lines += [
            "",
            "# HELP evidence_latency_seconds Evidence search latency histogram",
            "# TYPE evidence_latency_seconds histogram",
            f'evidence_latency_seconds{{le="0.5"}} {_count_below(sorted_latencies, 500)}',
            f'evidence_latency_seconds{{le="1.0"}} {_count_below(sorted_latencies, 1000)}',
            f'evidence_latency_seconds{{le="2.0"}} {_count_below(sorted_latencies, 2000)}',
            f'evidence_latency_seconds{{le="5.0"}} {_count_below(sorted_latencies, 5000)}',
            f"evidence_latency_seconds_p50 {p50 / 1000:.4f}",
            f"evidence_latency_seconds_p95 {p95 / 1000:.4f}",
            f"evidence_latency_seconds_p99 {p99 / 1000:.4f}",
            "",
            "# HELP verifications_total Generated answers checked for citations",
            "# TYPE verifications_total counter",
            f'verifications_total {int(_metrics["verifications_total"])}',
            "",
            "# HELP citations_supplied_total Citations handed to the generator",
            "# TYPE citations_supplied_total counter",
            f"citations_supplied_total {int(supplied)}",
            "",
            "# HELP citations_referenced_total Supplied citations the answer referenced",
            "# TYPE citations_referenced_total counter",
            f'citations_referenced_total {int(_metrics["citations_referenced_total"])}',
            "",
            "# HELP responses_without_citations_total Answers with sources but no markers",
            "# TYPE responses_without_citations_total counter",
            "responses_without_citations_total "
            f'{int(_metrics["responses_without_citations_total"])}',
            "",
            "# HELP citation_utilization Referenced / supplied citation ratio",
            "# TYPE citation_utilization gauge",
            f"citation_utilization {utilization:.4f}",
        ]

        return "\n".join(lines) + "\n"


def get_fallback_count(stage: str) -> int:
    """Current fallback count for a stage."""
    with _lock:
        return _fallbacks[stage]


def reset_metrics() -> None:
    """Reset all metrics to zero."""
    with _lock:
        for key in _metrics:
            _metrics[key] = 0
        _fallbacks.clear()
        _latencies.clear()


def _percentile(sorted_data: list[float], percentile: int) -> float:
    """Compute the given percentile from sorted data."""
    if not sorted_data:
        return 0.0
    idx = int(len(sorted_data) * percentile / 100)
    idx = min(idx, len(sorted_data) - 1)
    return sorted_data[idx]


def _count_below(sorted_data: list[float], threshold_ms: float) -> int:
    """Count values below threshold in sorted data."""
    count = 0
    for v in sorted_data:
        if v <= threshold_ms:
            count += 1
        else:
            break
    return count
