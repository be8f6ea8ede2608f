"""
MedCite Observability Module

Prometheus-style metrics for evidence search and citation verification.
"""

from medcite.observability.metrics import (
    get_metrics_text,
    record_fallback,
    record_search,
    record_verification,
)

__all__ = [
    "get_metrics_text",
    "record_fallback",
    "record_search",
    "record_verification",
]
