"""Orchestration state models.

- TranslationItem: persisted unit of work, mutated in place by every round
- ConvergenceConfig / ConvergenceRun / ConvergenceResult: one QCL execution
- BatchRun / BatchItemResult: one batch over many items
- PublishRun: state machine fed by the publish progress stream
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from landing_translator.config import settings
from landing_translator.core.services.models import AnalysisResult, Correction, PublishEvent
from landing_translator.models.database.enums import ItemStatus, ItemVariant, SideAssetStatus

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled"


# =============================================================================
# Translation Item
# =============================================================================


class ItemKey(NamedTuple):
    """Identity of a translation item."""

    page_id: str
    language: str
    variant: str = ItemVariant.CONTROL.value

    def __str__(self) -> str:
        return f"{self.page_id}/{self.language}/{self.variant}"


class QualityIssues(BaseModel):
    """Issue lists from the latest analysis."""

    fluency: List[str] = Field(default_factory=list)
    grammar: List[str] = Field(default_factory=list)
    context_errors: List[str] = Field(default_factory=list)
    unlocalized_names: List[str] = Field(default_factory=list)


class SideAsset(BaseModel):
    """An embedded asset (image) translated alongside the page text."""

    url: str
    aspect_ratio: Optional[str] = None
    status: SideAssetStatus = SideAssetStatus.PENDING
    error: Optional[str] = None


class TranslationItem(BaseModel):
    """One (page, language, variant) unit of translation work."""

    page_id: str
    language: str
    variant: str = ItemVariant.CONTROL.value

    id: Optional[str] = Field(default=None, description="Translation id from the service")
    status: ItemStatus = ItemStatus.NONE
    error_message: Optional[str] = None
    published_url: Optional[str] = None

    quality_score: Optional[float] = None
    quality_issues: QualityIssues = Field(default_factory=QualityIssues)
    # None = no analysis yet, or one stored before corrections were suggested
    suggested_corrections: Optional[List[Correction]] = None

    side_assets: List[SideAsset] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_status_fields(self) -> "TranslationItem":
        if self.status == ItemStatus.PUBLISHED and not self.published_url:
            raise ValueError("published items must carry a published_url")
        if self.status == ItemStatus.ERROR and not self.error_message:
            raise ValueError("items in error must carry an error_message")
        return self

    @property
    def key(self) -> ItemKey:
        return ItemKey(self.page_id, self.language, self.variant)

    @property
    def is_cancelled(self) -> bool:
        return self.status == ItemStatus.ERROR and self.error_message == CANCELLED_REASON

    def mark_error(self, reason: str) -> None:
        self.status = ItemStatus.ERROR
        self.error_message = reason or "Unknown error"

    def mark_cancelled(self) -> None:
        self.mark_error(CANCELLED_REASON)

    def mark_published(self, url: str) -> None:
        if not url:
            raise ValueError("published_url is required")
        self.status = ItemStatus.PUBLISHED
        self.published_url = url
        self.error_message = None

    def clear_quality(self) -> None:
        self.quality_score = None
        self.quality_issues = QualityIssues()
        self.suggested_corrections = None

    def apply_analysis(self, analysis: AnalysisResult) -> None:
        self.quality_score = analysis.quality_score
        self.quality_issues = QualityIssues(
            fluency=list(analysis.fluency_issues),
            grammar=list(analysis.grammar_issues),
            context_errors=list(analysis.context_errors),
            unlocalized_names=list(analysis.name_localization),
        )
        self.suggested_corrections = list(analysis.suggested_corrections)


# =============================================================================
# Quality Convergence
# =============================================================================


class ConvergenceOutcome(str, Enum):
    """How a QCL run ended."""

    CONVERGED = "converged"  # Score reached the threshold
    BELOW_THRESHOLD = "below_threshold"  # Budgets or corrections exhausted
    UNSCORED = "unscored"  # Quality disabled or analysis unavailable
    FAILED = "failed"  # Translate failed
    CANCELLED = "cancelled"


class FixExit(str, Enum):
    """Why the fix phase stopped."""

    THRESHOLD_MET = "threshold_met"
    NO_CORRECTIONS = "no_corrections"
    NOTHING_APPLIED = "nothing_applied"
    BUDGET_EXHAUSTED = "budget_exhausted"
    DEGRADED = "degraded"  # Fix or re-analysis call failed


@dataclass
class ConvergenceConfig:
    """Per-run settings of the quality convergence loop."""

    quality_enabled: bool = True
    threshold: float = 85.0
    max_text_rounds: int = 3
    max_fix_rounds: int = 3
    has_side_assets: bool = False

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ConvergenceConfig":
        values: Dict[str, Any] = {
            "quality_enabled": settings.quality_enabled,
            "threshold": settings.quality_threshold,
            "max_text_rounds": settings.max_text_rounds,
            "max_fix_rounds": settings.max_fix_rounds,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class ConvergenceRun:
    """Ephemeral state of one QCL execution."""

    max_text_rounds: int
    max_fix_rounds: int
    text_round: int = 0
    fix_round: int = 0
    cancelled: bool = False
    last_analysis: Optional[AnalysisResult] = None
    # Cumulative, sent back to the analyzer so fixed issues are not re-flagged
    applied_corrections: List[Correction] = field(default_factory=list)


@dataclass
class ConvergenceResult:
    """Outcome of a QCL execution."""

    outcome: ConvergenceOutcome
    quality_score: Optional[float] = None
    text_rounds: int = 0
    fix_rounds: int = 0
    error: Optional[str] = None
    side_asset_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome not in (ConvergenceOutcome.FAILED, ConvergenceOutcome.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "quality_score": self.quality_score,
            "text_rounds": self.text_rounds,
            "fix_rounds": self.fix_rounds,
            "error": self.error,
            "side_asset_errors": dict(self.side_asset_errors),
        }


# =============================================================================
# Batch
# =============================================================================


@dataclass
class BatchItemResult:
    """Recorded outcome of one batch item."""

    ok: bool
    outcome: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchRun:
    """State of the batch coordinator across a set of items."""

    items: List[ItemKey]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    done: int = 0
    stalled: bool = False
    aborted: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    results: Dict[ItemKey, BatchItemResult] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def elapsed(self, now: Optional[float] = None) -> float:
        if self.started_at is None:
            return 0.0
        if self.finished_at is not None:
            end = self.finished_at
        else:
            end = now if now is not None else time.monotonic()
        return max(0.0, end - self.started_at)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "done": self.done,
            "total": self.total,
            "stalled": self.stalled,
            "aborted": self.aborted,
            "finished": self.finished,
            "elapsed_seconds": round(self.elapsed(now), 1),
            "results": {
                str(key): {"ok": r.ok, "outcome": r.outcome, "error": r.error}
                for key, r in self.results.items()
            },
        }


# =============================================================================
# Publish
# =============================================================================


class PublishStage(str, Enum):
    """Stages of the publish pipeline as reported by the stream."""

    STARTING = "starting"
    IMAGES = "images"  # Asset compression
    DEPLOY = "deploy"
    UPLOAD = "upload"
    DONE = "done"
    ERROR = "error"


STAGE_ORDER = [
    PublishStage.STARTING,
    PublishStage.IMAGES,
    PublishStage.DEPLOY,
    PublishStage.UPLOAD,
    PublishStage.DONE,
]

TERMINAL_STAGES = (PublishStage.DONE, PublishStage.ERROR)


@dataclass
class PublishRun:
    """State of one streaming publish request.

    Fed one record at a time; each record is a partial update.
    """

    stage: PublishStage = PublishStage.STARTING
    current: int = 0
    total: int = 0
    message: str = "Starting publish..."
    published_url: Optional[str] = None
    error_message: Optional[str] = None
    cancelled: bool = False

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def finished(self) -> bool:
        return self.terminal or self.cancelled

    def fail(self, reason: str) -> None:
        if self.terminal:
            return
        self.stage = PublishStage.ERROR
        self.error_message = reason or "Publish failed"

    def apply(self, event: PublishEvent) -> bool:
        """Apply one progress record.

        Returns:
            True if any field changed
        """
        if self.finished:
            return False

        changed = False
        if event.step is not None:
            changed |= self._advance(event.step)
        if event.total is not None and max(0, event.total) != self.total:
            self.total = max(0, event.total)
            changed = True
        if event.current is not None and max(0, event.current) != self.current:
            self.current = max(0, event.current)
            changed = True
        # Clamped against the latest total, whichever field moved
        if self.total and self.current > self.total:
            self.current = self.total
            changed = True
        if event.message and event.message != self.message:
            self.message = event.message
            changed = True
        if event.url and event.url != self.published_url:
            self.published_url = event.url
            changed = True
        if self.stage == PublishStage.ERROR and self.error_message is None:
            self.error_message = event.message or "Publish failed"
        return changed

    def apply_line(self, line: str) -> bool:
        """Parse and apply one NDJSON line; malformed lines are skipped."""
        text = line.strip()
        if not text:
            return False
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("record is not an object")
            event = PublishEvent.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.debug(f"[Publish] Skipping malformed record: {text[:120]!r} ({e})")
            return False
        return self.apply(event)

    def _advance(self, step: str) -> bool:
        try:
            stage = PublishStage(step)
        except ValueError:
            logger.debug(f"[Publish] Ignoring unknown step {step!r}")
            return False

        if stage == self.stage:
            return False
        if stage == PublishStage.ERROR:
            self.stage = stage
            return True
        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(self.stage):
            logger.debug(f"[Publish] Ignoring backward step {self.stage.value} -> {stage.value}")
            return False
        self.stage = stage
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "current": self.current,
            "total": self.total,
            "message": self.message,
            "url": self.published_url,
            "error": self.error_message,
            "cancelled": self.cancelled,
            "finished": self.finished,
        }
