"""API dependencies resolving the orchestrator components built at startup.

The lifespan handler in ``main.py`` stores the row registry, batch
coordinator and item store on ``app.state``; routes receive them through
these dependencies so tests can swap in fakes.
"""

from fastapi import Request

from landing_translator.core.orchestration import BatchCoordinator, ItemStore, RowRegistry


# =============================================================================
# Orchestrator Dependencies
# =============================================================================


def get_rows(request: Request) -> RowRegistry:
    return request.app.state.rows


def get_coordinator(request: Request) -> BatchCoordinator:
    return request.app.state.coordinator


def get_store(request: Request) -> ItemStore:
    return request.app.state.store
