"""Cooperative cancellation token shared by one in-flight operation."""

import logging
from typing import Callable, List

from landing_translator.core.exceptions import OperationCancelled

from .models import CANCELLED_REASON

logger = logging.getLogger(__name__)


class CancellationToken:
    """Flag plus callbacks, checked at every suspension point.

    Callbacks let non-cooperative work (a stream read) be interrupted
    immediately; everything else polls ``raise_if_cancelled``.
    """

    def __init__(self):
        self._cancelled = False
        self._settled = False
        self._reason = CANCELLED_REASON
        self._callbacks: List[Callable[[], object]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = CANCELLED_REASON) -> bool:
        """Cancel the token.

        Returns:
            False if the token was already cancelled or settled
        """
        if self._cancelled or self._settled:
            return False
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)
        return True

    def settle(self) -> bool:
        """Mark the outcome of the operation as decided; later cancels are no-ops.

        Returns:
            False if the token was cancelled first
        """
        if self._cancelled:
            return False
        self._settled = True
        self._callbacks = []
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason)

    def register(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Run ``callback`` on cancel; runs at once if already cancelled.

        Returns:
            Function removing the callback
        """
        if self._cancelled:
            self._invoke(callback)
            return lambda: None

        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    @staticmethod
    def _invoke(callback: Callable[[], object]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"[Cancel] Callback failed: {e}")
