"""External translation services gateway.

- base.py: TranslationServices interface
- http.py: httpx implementation
- models.py: request/response wire models
"""

from .base import TranslationServices
from .http import HttpTranslationServices
from .models import (
    AnalysisResult,
    Correction,
    FixResult,
    PreviousContext,
    PreviousIssues,
    PublishEvent,
    SideAssetResponse,
    TranslateResponse,
)

__all__ = [
    "TranslationServices",
    "HttpTranslationServices",
    "AnalysisResult",
    "Correction",
    "FixResult",
    "PreviousContext",
    "PreviousIssues",
    "PublishEvent",
    "SideAssetResponse",
    "TranslateResponse",
]
