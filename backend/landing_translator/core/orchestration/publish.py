"""Publish Progress Consumer - maps the publish NDJSON stream onto a PublishRun.

Stream format: one JSON object per line, each a partial update
``{step?, current?, total?, message?, url?}``. Chunk boundaries are
arbitrary, so bytes are decoded incrementally and split on newlines.
"""

import asyncio
import codecs
import logging
from typing import Any, Callable, Dict, List, Optional

from landing_translator.core.exceptions import ServiceError
from landing_translator.core.services import TranslationServices

from .cancellation import CancellationToken
from .models import PublishRun, PublishStage

logger = logging.getLogger(__name__)

PublishListener = Callable[[Dict[str, Any]], Any]

STREAM_ENDED_REASON = "Publish stream ended before completion"


class LineBuffer:
    """Incremental UTF-8 decoder yielding complete lines."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Add bytes and return every line completed by them."""
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> List[str]:
        """Return the trailing unterminated line, if any."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail.strip() else []


class PublishProgressConsumer:
    """Consumes one item's publish stream at most once per lifecycle.

    A lifecycle starts when the consumer is created (or after ``close``)
    and ends with ``close``. Within it, ``consume`` opens exactly one
    request; concurrent or repeated callers await the same run.
    """

    def __init__(
        self,
        services: TranslationServices,
        translation_id: str,
        token: Optional[CancellationToken] = None,
    ):
        self.services = services
        self.translation_id = translation_id
        self.token = token or CancellationToken()
        self.run = PublishRun()
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[PublishListener] = []

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def started(self) -> bool:
        return self._task is not None

    def subscribe(self, listener: PublishListener) -> Callable[[], None]:
        """Receive a snapshot dict after every change.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def consume(self) -> PublishRun:
        """Start the publish request, or join the one already running."""
        if self._task is None:
            self._task = asyncio.create_task(self._consume(self.run))
        run = self.run
        # A caller giving up must not cancel the shared run
        await asyncio.shield(self._task)
        return run

    def close(self) -> bool:
        """End this lifecycle and start a fresh one.

        Returns:
            True if the closed run reached ``done``
        """
        published = self.run.stage == PublishStage.DONE
        if self.in_flight:
            self._task.cancel()
        self._task = None
        self.run = PublishRun()
        return published

    async def _consume(self, run: PublishRun) -> None:
        logger.info(f"[Publish] Starting publish of {self.translation_id}")
        self._emit(run)

        reader = asyncio.create_task(self._stream(run))
        unregister = self.token.register(reader.cancel)
        try:
            await reader
        except asyncio.CancelledError:
            if not run.terminal:
                run.cancelled = True
            current = asyncio.current_task()
            if (current is not None and current.cancelling()) or not self.token.cancelled:
                raise
            logger.info(f"[Publish] {self.translation_id} cancelled")
        except ServiceError as e:
            logger.warning(f"[Publish] {self.translation_id} failed: {e}")
            run.fail(str(e))
        except Exception as e:
            logger.error(f"[Publish] {self.translation_id} failed unexpectedly: {e}", exc_info=True)
            run.fail(str(e))
            raise
        finally:
            unregister()
            self._emit(run)

        if run.stage == PublishStage.DONE:
            logger.info(f"[Publish] {self.translation_id} published: {run.published_url}")

    async def _stream(self, run: PublishRun) -> None:
        buffer = LineBuffer()
        async with self.services.publish(self.translation_id) as chunks:
            async for chunk in chunks:
                for line in buffer.feed(chunk):
                    self._apply(run, line)
                if run.terminal:
                    break
            else:
                for line in buffer.flush():
                    self._apply(run, line)

        if not run.terminal:
            run.fail(STREAM_ENDED_REASON)

    def _apply(self, run: PublishRun, line: str) -> None:
        if run.apply_line(line):
            self._emit(run)

    def _emit(self, run: PublishRun) -> None:
        snapshot = run.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"[Publish] Listener failed: {e}")
