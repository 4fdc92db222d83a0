"""Batch Coordinator - runs items strictly one after another.

Items are never run in parallel: every runner calls rate-limited services,
so concurrency would only multiply burst load against those limits.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from landing_translator.core.exceptions import ServiceError
from landing_translator.core.services import TranslationServices
from landing_translator.models.database.enums import ItemStatus

from .models import (
    BatchItemResult,
    BatchRun,
    ConvergenceOutcome,
    ConvergenceResult,
    ItemKey,
    TranslationItem,
)
from .storage import ItemStore
from .watchdog import StallWatchdog

logger = logging.getLogger(__name__)

# Rich mode: bound full-pipeline run of one registered row
ItemRunner = Callable[[], Awaitable[ConvergenceResult]]
# Plain mode: bare translate call for an item without a registered row
PlainRunner = Callable[[ItemKey], Awaitable[ConvergenceResult]]
BatchProgress = Callable[[BatchRun], Any]


def plain_translate_runner(services: TranslationServices, store: ItemStore) -> PlainRunner:
    """Build a plain-mode runner: one translate call, no quality gating."""

    async def run(key: ItemKey) -> ConvergenceResult:
        item = await store.load(key) or TranslationItem(
            page_id=key.page_id, language=key.language, variant=key.variant
        )
        try:
            response = await services.translate(key.page_id, key.language, key.variant)
        except ServiceError as e:
            item.mark_error(str(e))
            await store.save(item)
            return ConvergenceResult(
                outcome=ConvergenceOutcome.FAILED, text_rounds=1, error=str(e)
            )

        item.id = response.id
        item.status = ItemStatus.TRANSLATED
        item.error_message = None
        item.clear_quality()
        await store.save(item)
        return ConvergenceResult(outcome=ConvergenceOutcome.UNSCORED, text_rounds=1)

    return run


class BatchCoordinator:
    """Runs batches of items with a runner registry and a stall watchdog.

    Mode is a capability check per item: a registered runner gets the full
    quality-converged pipeline, anything else falls back to the plain
    translate runner.
    """

    def __init__(
        self,
        plain_runner: PlainRunner,
        stall_timeout: float = 180.0,
        retention: float = 600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plain_runner = plain_runner
        self.stall_timeout = stall_timeout
        # Finished batches stay readable this long, then are dropped
        self.retention = retention
        self._sleep = sleep
        self._clock = clock
        self._runners: Dict[ItemKey, ItemRunner] = {}
        self._batches: Dict[str, BatchRun] = {}

    # =========================================================================
    # Runner registry
    # =========================================================================

    def register(self, key: ItemKey, runner: ItemRunner) -> Callable[[], None]:
        """Register the rich runner for one item.

        Returns:
            Function that removes this registration
        """
        self._runners[key] = runner

        def unregister() -> None:
            if self._runners.get(key) is runner:
                del self._runners[key]

        return unregister

    def unregister(self, key: ItemKey) -> None:
        self._runners.pop(key, None)

    def has_runner(self, key: ItemKey) -> bool:
        return key in self._runners

    # =========================================================================
    # Batches
    # =========================================================================

    def create_batch(self, keys: Iterable[ItemKey]) -> BatchRun:
        self._prune()
        batch = BatchRun(items=list(dict.fromkeys(keys)))
        self._batches[batch.id] = batch
        return batch

    def get(self, batch_id: str) -> Optional[BatchRun]:
        self._prune()
        return self._batches.get(batch_id)

    def _prune(self) -> None:
        now = self._clock()
        expired = [
            batch_id
            for batch_id, batch in self._batches.items()
            if batch.finished and now - batch.finished_at >= self.retention
        ]
        for batch_id in expired:
            del self._batches[batch_id]
            logger.debug(f"[Batch] Dropped finished batch {batch_id}")

    def snapshot(self, batch: BatchRun) -> Dict[str, Any]:
        return batch.to_dict(now=self._clock())

    def abort(self, batch_id: str) -> bool:
        """Stop scheduling further items; the in-flight item completes.

        Returns:
            False if the batch is unknown or already finished
        """
        batch = self._batches.get(batch_id)
        if batch is None or batch.finished or batch.aborted:
            return False
        batch.aborted = True
        logger.info(f"[Batch] {batch_id} aborted at {batch.done}/{batch.total}")
        return True

    async def run_batch(
        self, batch: BatchRun, on_progress: Optional[BatchProgress] = None
    ) -> BatchRun:
        """Run every item of the batch in order.

        A failing item is recorded and the batch moves on; only asyncio
        cancellation of the calling task stops it early besides abort().
        """
        def mark_stalled() -> None:
            batch.stalled = True

        watchdog = StallWatchdog(
            self.stall_timeout, on_stall=mark_stalled, sleep=self._sleep, clock=self._clock
        )
        batch.started_at = self._clock()
        watchdog.arm()
        logger.info(f"[Batch] {batch.id} started: {batch.total} items")

        try:
            for key in batch.items:
                if batch.aborted:
                    break
                batch.results[key] = await self._run_item(key)
                batch.done += 1
                self._notify(batch, on_progress)
        finally:
            watchdog.disarm()
            batch.finished_at = self._clock()

        failed = sum(1 for r in batch.results.values() if not r.ok)
        logger.info(
            f"[Batch] {batch.id} finished: {batch.done}/{batch.total} done, {failed} failed, "
            f"{batch.elapsed(self._clock()):.1f}s"
        )
        return batch

    async def _run_item(self, key: ItemKey) -> BatchItemResult:
        runner = self._runners.get(key)
        mode = "rich" if runner is not None else "plain"
        logger.debug(f"[Batch] {key} ({mode})")

        try:
            if runner is not None:
                result = await runner()
            else:
                result = await self.plain_runner(key)
        except Exception as e:
            logger.error(f"[Batch] {key} failed: {e}")
            return BatchItemResult(ok=False, outcome=ConvergenceOutcome.FAILED.value, error=str(e))

        if result.outcome == ConvergenceOutcome.CANCELLED:
            logger.info(f"[Batch] {key} cancelled")
            return BatchItemResult(ok=False, outcome=result.outcome.value)
        if not result.ok:
            logger.warning(f"[Batch] {key} failed: {result.error}")
        return BatchItemResult(ok=result.ok, outcome=result.outcome.value, error=result.error)

    @staticmethod
    def _notify(batch: BatchRun, on_progress: Optional[BatchProgress]) -> None:
        if on_progress is None:
            return
        try:
            on_progress(batch)
        except Exception as e:
            logger.warning(f"[Batch] Progress callback failed: {e}")
