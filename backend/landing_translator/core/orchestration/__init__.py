"""Translation production orchestration package.

Architecture:
- models.py: Item, run and result models, publish stage machine
- cancellation.py: Cooperative cancellation token
- storage.py: Item persistence (abstract + SQLAlchemy)
- convergence.py: Quality Convergence Loop (translate/analyze/fix)
- publish.py: Publish Progress Consumer (NDJSON stream)
- watchdog.py: Advisory stall watchdog
- batch.py: Batch Coordinator with runner registry
- row.py: Row Controller and Row registry
"""

# Re-export models for convenience
from .models import (
    CANCELLED_REASON,
    BatchItemResult,
    BatchRun,
    ConvergenceConfig,
    ConvergenceOutcome,
    ConvergenceResult,
    ConvergenceRun,
    ItemKey,
    PublishRun,
    PublishStage,
    QualityIssues,
    SideAsset,
    TranslationItem,
)

# Re-export components
from .cancellation import CancellationToken
from .storage import ItemStore, SqlItemStore
from .convergence import QualityConvergenceLoop
from .publish import LineBuffer, PublishProgressConsumer
from .watchdog import StallWatchdog
from .batch import BatchCoordinator, plain_translate_runner
from .row import RowController, RowRegistry

__all__ = [
    # Models
    "CANCELLED_REASON",
    "BatchItemResult",
    "BatchRun",
    "ConvergenceConfig",
    "ConvergenceOutcome",
    "ConvergenceResult",
    "ConvergenceRun",
    "ItemKey",
    "PublishRun",
    "PublishStage",
    "QualityIssues",
    "SideAsset",
    "TranslationItem",
    # Components
    "CancellationToken",
    "ItemStore",
    "SqlItemStore",
    "QualityConvergenceLoop",
    "LineBuffer",
    "PublishProgressConsumer",
    "StallWatchdog",
    "BatchCoordinator",
    "plain_translate_runner",
    "RowController",
    "RowRegistry",
]
