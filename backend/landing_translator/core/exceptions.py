"""Orchestrator exception hierarchy.

Transport failures are converted to ``ServiceError`` at the gateway so that
raw ``httpx`` exceptions never cross a component boundary. Cancellation is
modelled separately by ``OperationCancelled`` so callers can tell an
operator abort apart from a network failure.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ServiceError(OrchestratorError):
    """An external service call failed.

    Attributes:
        status_code: HTTP status when the service answered, None for
            transport-level failures
        transient: True when retrying the same call may succeed
            (rate limits, 5xx, connection problems)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.transient = transient

    def __str__(self) -> str:
        return self.message


class OperationCancelled(OrchestratorError):
    """Raised when a cancellation token is checked after cancel()."""

    def __init__(self, reason: str = "Cancelled"):
        super().__init__(reason)
        self.reason = reason


class RowBusyError(OrchestratorError):
    """Another operation is already in flight for the same item."""


def is_transient(error: BaseException) -> bool:
    """Retry predicate for tenacity: only transient service failures."""
    return isinstance(error, ServiceError) and error.transient
