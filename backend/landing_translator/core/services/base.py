"""Abstract gateway for the external translation services.

The orchestrator only depends on this interface; the HTTP implementation
lives in ``http.py`` and tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager, AsyncIterator, Optional

from .models import (
    AnalysisResult,
    FixResult,
    PreviousContext,
    SideAssetResponse,
    TranslateResponse,
)


class TranslationServices(ABC):
    """Interface to the translate, analyze, fix, asset and publish services.

    All methods raise ``ServiceError`` on failure.
    """

    @abstractmethod
    async def translate(
        self, page_id: str, language: str, variant: str
    ) -> TranslateResponse:
        """Translate a page into a language, creating or replacing the translation."""
        pass

    @abstractmethod
    async def analyze(
        self,
        translation_id: str,
        previous_context: Optional[PreviousContext] = None,
    ) -> AnalysisResult:
        """Score a translation.

        Args:
            translation_id: Translation to analyze
            previous_context: Corrections applied since the last analysis

        Returns:
            AnalysisResult with score, issues and suggested corrections
        """
        pass

    @abstractmethod
    async def apply_fix(self, translation_id: str) -> FixResult:
        """Apply the suggested corrections stored with the last analysis."""
        pass

    @abstractmethod
    async def translate_side_asset(
        self,
        translation_id: str,
        asset_url: str,
        language: str,
        aspect_ratio: Optional[str] = None,
    ) -> SideAssetResponse:
        """Translate one embedded asset and update the translated page."""
        pass

    @abstractmethod
    def publish(self, translation_id: str) -> AsyncContextManager[AsyncIterator[bytes]]:
        """Open the publish progress stream.

        Usage:
            async with services.publish(translation_id) as chunks:
                async for chunk in chunks:
                    ...

        Raises:
            ServiceError: on a non-2xx initial response or transport failure,
                either when entering the context or while iterating
        """
        pass

    async def aclose(self) -> None:
        """Release underlying resources."""
        return None
