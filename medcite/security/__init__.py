"""
MedCite Security Module

Request validation and script-injection checks for the evidence API.
"""

from medcite.security.input_validation import (
    EvidenceSearchRequest,
    InputValidator,
    VerifyRequest,
)

__all__ = [
    "EvidenceSearchRequest",
    "InputValidator",
    "VerifyRequest",
]
