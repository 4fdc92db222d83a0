"""HTTP implementation of the translation services gateway."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from landing_translator.config import settings
from landing_translator.core.exceptions import ServiceError

from .base import TranslationServices
from .models import (
    AnalysisResult,
    FixResult,
    PreviousContext,
    SideAssetResponse,
    TranslateResponse,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _error_from_response(response: httpx.Response, fallback: str) -> ServiceError:
    """Build a ServiceError from a non-2xx response with a JSON {error} body."""
    message = None
    try:
        body = response.json()
        if isinstance(body, dict):
            message = body.get("error")
    except ValueError:
        pass
    status = response.status_code
    return ServiceError(
        message or f"{fallback} ({status})",
        status_code=status,
        transient=status == 429 or status >= 500,
    )


class HttpTranslationServices(TranslationServices):
    """Talks to the page translation backend over HTTP with httpx.

    Each method issues exactly one request; failures are classified as
    transient or not and retrying is left to the caller.

    Endpoints:
        POST /api/translate
        POST /api/translate/analyze
        POST /api/translate/fix
        POST /api/translate-page-images
        POST /api/publish  (newline-delimited JSON stream)
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the gateway.

        Args:
            base_url: Root URL of the translation backend
            api_token: Optional bearer token sent with every request
            timeout: Per-call timeout in seconds, None disables it
            client: Pre-built client (tests pass one with a MockTransport)
        """
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
        )
        logger.info(f"[Services] Initialized: base_url={base_url}, timeout={timeout}")

    @classmethod
    def from_settings(cls) -> "HttpTranslationServices":
        return cls(
            base_url=settings.services_base_url,
            api_token=settings.services_api_token,
            timeout=settings.request_timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        model: Type[ModelT],
        fallback: str,
    ) -> ModelT:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"[Services] POST {path} transport error: {e}")
            raise ServiceError(f"{fallback}: {e}", transient=True) from e

        if response.is_error:
            error = _error_from_response(response, fallback)
            logger.warning(f"[Services] POST {path} -> {response.status_code}: {error}")
            raise error

        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ServiceError(f"{fallback}: invalid response") from e

    async def translate(
        self, page_id: str, language: str, variant: str
    ) -> TranslateResponse:
        payload: Dict[str, Any] = {"page_id": page_id, "language": language}
        if variant != "control":
            payload["variant"] = variant
        return await self._post("/api/translate", payload, TranslateResponse, "Translation failed")

    async def analyze(
        self,
        translation_id: str,
        previous_context: Optional[PreviousContext] = None,
    ) -> AnalysisResult:
        payload: Dict[str, Any] = {"translation_id": translation_id}
        if previous_context is not None:
            payload["previous_context"] = previous_context.model_dump()
        return await self._post("/api/translate/analyze", payload, AnalysisResult, "Analysis failed")

    async def apply_fix(self, translation_id: str) -> FixResult:
        return await self._post(
            "/api/translate/fix",
            {"translation_id": translation_id},
            FixResult,
            "Fix failed",
        )

    async def translate_side_asset(
        self,
        translation_id: str,
        asset_url: str,
        language: str,
        aspect_ratio: Optional[str] = None,
    ) -> SideAssetResponse:
        payload: Dict[str, Any] = {
            "translationId": translation_id,
            "imageUrl": asset_url,
            "language": language,
        }
        if aspect_ratio:
            payload["aspectRatio"] = aspect_ratio
        return await self._post(
            "/api/translate-page-images", payload, SideAssetResponse, "Image translation failed"
        )

    @asynccontextmanager
    async def publish(self, translation_id: str) -> AsyncIterator[AsyncIterator[bytes]]:
        request = self._client.build_request(
            "POST", "/api/publish", json={"translation_id": translation_id}
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ServiceError(f"Publish failed: {e}", transient=True) from e

        try:
            if response.is_error:
                await response.aread()
                raise _error_from_response(response, "Publish failed")
            yield self._iter_chunks(response)
        finally:
            await response.aclose()

    @staticmethod
    async def _iter_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise ServiceError(f"Publish stream interrupted: {e}", transient=True) from e
