"""Row Controller - per-item facade owning the cancellation token.

One row exists per (page, language, variant) the operator has opened. It
runs at most one operation at a time and creates a fresh token for each.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from landing_translator.core.exceptions import RowBusyError
from landing_translator.core.services import TranslationServices
from landing_translator.models.database.enums import ItemStatus

from .batch import BatchCoordinator
from .cancellation import CancellationToken
from .convergence import QualityConvergenceLoop
from .models import (
    ConvergenceConfig,
    ConvergenceResult,
    ItemKey,
    PublishRun,
    PublishStage,
    TranslationItem,
)
from .publish import PublishListener, PublishProgressConsumer
from .storage import ItemStore

logger = logging.getLogger(__name__)

ConfigFactory = Callable[[TranslationItem], ConvergenceConfig]


def default_config(item: TranslationItem) -> ConvergenceConfig:
    return ConvergenceConfig.from_settings(has_side_assets=bool(item.side_assets))


class RowController:
    """Drives translate, improve and publish for one item."""

    def __init__(
        self,
        item: TranslationItem,
        services: TranslationServices,
        store: ItemStore,
        config_factory: ConfigFactory = default_config,
    ):
        self.item = item
        self.services = services
        self.store = store
        self.config_factory = config_factory

        self._token: Optional[CancellationToken] = None
        self._operation: Optional[str] = None
        self._progress: Optional[str] = None
        self._publisher: Optional[PublishProgressConsumer] = None
        self.last_result: Optional[ConvergenceResult] = None

    @property
    def key(self) -> ItemKey:
        return self.item.key

    @property
    def busy(self) -> bool:
        return self._operation is not None

    @property
    def operation(self) -> Optional[str]:
        return self._operation

    @asynccontextmanager
    async def _operation_scope(self, name: str) -> AsyncIterator[CancellationToken]:
        if self.busy:
            raise RowBusyError(f"{self.key} is busy ({self._operation})")
        token = CancellationToken()
        self._token = token
        self._operation = name
        try:
            yield token
        finally:
            self._token = None
            self._operation = None
            self._progress = None

    def _on_progress(self, item: TranslationItem, step: str) -> None:
        self._progress = step

    # =========================================================================
    # Quality convergence
    # =========================================================================

    async def translate(self, config: Optional[ConvergenceConfig] = None) -> ConvergenceResult:
        """Run the full quality convergence loop for this item.

        Raises:
            RowBusyError: if another operation is in flight
        """
        async with self._operation_scope("translate") as token:
            loop = QualityConvergenceLoop(
                self.services, self.store, token, on_progress=self._on_progress
            )
            self.last_result = await loop.run(self.item, config or self.config_factory(self.item))
            return self.last_result

    async def improve(self, config: Optional[ConvergenceConfig] = None) -> ConvergenceResult:
        """Run the fix phase on the existing translation.

        Raises:
            RowBusyError: if another operation is in flight
            ValueError: if the item has not been translated yet
        """
        if not self.item.id:
            raise ValueError(f"{self.key} has not been translated yet")

        async with self._operation_scope("improve") as token:
            loop = QualityConvergenceLoop(
                self.services, self.store, token, on_progress=self._on_progress
            )
            self.last_result = await loop.improve(
                self.item, config or self.config_factory(self.item)
            )
            return self.last_result

    # =========================================================================
    # Publish
    # =========================================================================

    async def publish(self, listener: Optional[PublishListener] = None) -> PublishRun:
        """Publish the item, or join the publish of the current lifecycle.

        The terminal state is persisted once, by the call that started it.

        Raises:
            RowBusyError: if a translate or improve is in flight
            ValueError: if the item has not been translated yet
        """
        publisher = self._publisher
        if publisher is not None and publisher.started:
            return await self._follow(publisher, listener)

        if not self.item.id:
            raise ValueError(f"{self.key} has not been translated yet")

        async with self._operation_scope("publish") as token:
            publisher = PublishProgressConsumer(self.services, self.item.id, token)
            self._publisher = publisher
            self.item.status = ItemStatus.PUBLISHING
            self.item.error_message = None
            try:
                run = await self._follow(publisher, listener)
            except Exception as e:
                token.settle()
                self.item.mark_error(str(e))
                await self.store.save(self.item)
                raise
            token.settle()
            await self._persist_publish(run)
            return run

    async def close_publish(self) -> bool:
        """Close the publish lifecycle, cancelling an in-flight publish.

        Returns:
            True if the closed run reached ``done``
        """
        publisher = self._publisher
        if publisher is None:
            return False
        if publisher.in_flight:
            self.cancel()
            await publisher.consume()
        self._publisher = None
        return publisher.close()

    async def _follow(
        self, publisher: PublishProgressConsumer, listener: Optional[PublishListener]
    ) -> PublishRun:
        if listener is None:
            return await publisher.consume()
        listener(publisher.run.snapshot())
        unsubscribe = publisher.subscribe(listener)
        try:
            return await publisher.consume()
        finally:
            unsubscribe()

    async def _persist_publish(self, run: PublishRun) -> None:
        if run.cancelled:
            self.item.mark_cancelled()
        elif run.stage == PublishStage.DONE and run.published_url:
            self.item.mark_published(run.published_url)
        elif run.stage == PublishStage.DONE:
            self.item.mark_error("Publish finished without a URL")
        else:
            self.item.mark_error(run.error_message or "Publish failed")
        await self.store.save(self.item)
        logger.info(f"[Row] {self.key} publish -> {self.item.status.value}")

    # =========================================================================
    # Cancellation and state
    # =========================================================================

    def cancel(self) -> bool:
        """Abort the in-flight operation.

        Returns:
            False when nothing is in flight or it was already cancelled
        """
        token = self._token
        if token is None or not token.cancel():
            return False
        self._progress = None
        self.item.mark_cancelled()
        logger.info(f"[Row] {self.key} cancelled {self._operation}")
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "item": self.item.model_dump(mode="json"),
            "busy": self.busy,
            "operation": self._operation,
            "progress": self._progress,
            "publish": self._publisher.run.snapshot() if self._publisher else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    def dispose(self) -> None:
        self.cancel()
        self._publisher = None


class RowRegistry:
    """Creates rows on first access and wires them into the batch registry."""

    def __init__(
        self,
        services: TranslationServices,
        store: ItemStore,
        coordinator: BatchCoordinator,
        config_factory: ConfigFactory = default_config,
    ):
        self.services = services
        self.store = store
        self.coordinator = coordinator
        self.config_factory = config_factory
        self._rows: Dict[ItemKey, RowController] = {}
        self._unregister: Dict[ItemKey, Callable[[], None]] = {}

    def __contains__(self, key: ItemKey) -> bool:
        return key in self._rows

    def peek(self, key: ItemKey) -> Optional[RowController]:
        return self._rows.get(key)

    async def _load(self, key: ItemKey) -> TranslationItem:
        return await self.store.load(key) or TranslationItem(
            page_id=key.page_id, language=key.language, variant=key.variant
        )

    async def snapshot(self, key: ItemKey) -> Dict[str, Any]:
        """Live state of an open row, or the stored state without opening one."""
        row = self._rows.get(key)
        if row is None:
            row = RowController(await self._load(key), self.services, self.store)
        return row.snapshot()

    async def get(self, key: ItemKey) -> RowController:
        """Return the row for key, loading or creating its item."""
        row = self._rows.get(key)
        if row is not None:
            return row

        item = await self._load(key)
        # Another caller may have created it while we were loading
        row = self._rows.get(key)
        if row is None:
            row = RowController(item, self.services, self.store, self.config_factory)
            self._rows[key] = row
            self._unregister[key] = self.coordinator.register(key, row.translate)
            logger.debug(f"[Row] Opened {key}")
        return row

    def dispose(self, key: ItemKey) -> bool:
        row = self._rows.pop(key, None)
        if row is None:
            return False
        unregister = self._unregister.pop(key, None)
        if unregister is not None:
            unregister()
        row.dispose()
        logger.debug(f"[Row] Disposed {key}")
        return True

    def dispose_all(self) -> None:
        for key in list(self._rows):
            self.dispose(key)
