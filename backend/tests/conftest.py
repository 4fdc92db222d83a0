"""Pytest configuration and fixtures."""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

# Point the app at a throwaway database before any project module is imported
_db_dir = tempfile.mkdtemp(prefix="landing-translator-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"

import pytest

from landing_translator.core.exceptions import ServiceError
from landing_translator.core.orchestration import (
    ConvergenceConfig,
    ItemKey,
    ItemStore,
    TranslationItem,
)
from landing_translator.core.services import (
    AnalysisResult,
    Correction,
    FixResult,
    PreviousContext,
    SideAssetResponse,
    TranslateResponse,
    TranslationServices,
)

# Sentinel in FakeServices.publish_chunks: block until publish_gate is set
PAUSE = object()


class FakeServices(TranslationServices):
    """Scripted in-memory translation services.

    Each queue is consumed front to back; an Exception entry is raised
    instead of returned. When a queue is empty the default is used.
    """

    def __init__(self):
        self.translate_ids: List[Any] = []
        self.analyses: List[Any] = []
        self.fixes: List[Any] = []
        self.failing_assets: Dict[str, str] = {}
        self.publish_chunks: List[Any] = []
        self.publish_error: Optional[Exception] = None
        self.publish_gate = asyncio.Event()
        self.publish_opened = 0

        self.calls: List[tuple] = []
        # name -> callback run after the call is recorded
        self.hooks: Dict[str, Callable[[], Any]] = {}
        # name -> event awaited before the call returns
        self.gates: Dict[str, asyncio.Event] = {}

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def calls_to(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def _enter(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        hook = self.hooks.get(name)
        if hook is not None:
            hook()

    @staticmethod
    def _next(queue: List[Any], default: Any) -> Any:
        value = queue.pop(0) if queue else default
        if isinstance(value, Exception):
            raise value
        return value

    async def translate(self, page_id: str, language: str, variant: str) -> TranslateResponse:
        await self._enter("translate", page_id, language, variant)
        return TranslateResponse(id=self._next(self.translate_ids, f"tr-{page_id}-{language}"))

    async def analyze(
        self, translation_id: str, previous_context: Optional[PreviousContext] = None
    ) -> AnalysisResult:
        await self._enter("analyze", translation_id, previous_context)
        return self._next(self.analyses, AnalysisResult(quality_score=95))

    async def apply_fix(self, translation_id: str) -> FixResult:
        await self._enter("apply_fix", translation_id)
        return self._next(self.fixes, FixResult())

    async def translate_side_asset(
        self,
        translation_id: str,
        asset_url: str,
        language: str,
        aspect_ratio: Optional[str] = None,
    ) -> SideAssetResponse:
        await self._enter("translate_side_asset", translation_id, asset_url, language, aspect_ratio)
        if asset_url in self.failing_assets:
            raise ServiceError(self.failing_assets[asset_url])
        return SideAssetResponse(ok=True)

    @asynccontextmanager
    async def publish(self, translation_id: str) -> AsyncIterator[AsyncIterator[bytes]]:
        self.calls.append(("publish", translation_id))
        self.publish_opened += 1
        if self.publish_error is not None:
            raise self.publish_error
        yield self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        for chunk in self.publish_chunks:
            if chunk is PAUSE:
                await self.publish_gate.wait()
                continue
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk
            await asyncio.sleep(0)


class MemoryStore(ItemStore):
    """ItemStore keeping deep copies of every save."""

    def __init__(self):
        self.items: Dict[ItemKey, TranslationItem] = {}
        self.saves: List[TranslationItem] = []

    async def load(self, key: ItemKey) -> Optional[TranslationItem]:
        item = self.items.get(key)
        return item.model_copy(deep=True) if item else None

    async def save(self, item: TranslationItem) -> None:
        snapshot = item.model_copy(deep=True)
        self.items[item.key] = snapshot
        self.saves.append(snapshot)

    async def list_for_page(self, page_id: str) -> List[TranslationItem]:
        return [i.model_copy(deep=True) for k, i in self.items.items() if k.page_id == page_id]


def analysis(score: Optional[float], *corrections: tuple, **issues: Any) -> AnalysisResult:
    """Build an AnalysisResult with (find, replace) corrections."""
    return AnalysisResult(
        quality_score=score,
        suggested_corrections=[Correction(find=f, replace=r) for f, r in corrections],
        **issues,
    )


def fix(applied: int, *corrections: tuple, previous_score: Optional[float] = None) -> FixResult:
    return FixResult(
        corrections_applied=applied,
        applied_corrections=[Correction(find=f, replace=r) for f, r in corrections],
        previous_score=previous_score,
    )


async def wait_for(predicate: Callable[[], bool], attempts: int = 200) -> None:
    """Yield to the loop until predicate holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def item():
    return TranslationItem(page_id="page-1", language="de")


@pytest.fixture
def config():
    return ConvergenceConfig(
        quality_enabled=True,
        threshold=85,
        max_text_rounds=3,
        max_fix_rounds=3,
    )
