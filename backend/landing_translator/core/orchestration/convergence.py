"""Quality Convergence Loop - drives one item through translate/analyze/fix rounds."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from landing_translator.config import settings
from landing_translator.core.exceptions import OperationCancelled, ServiceError, is_transient
from landing_translator.core.services import (
    AnalysisResult,
    PreviousContext,
    PreviousIssues,
    TranslationServices,
)
from landing_translator.models.database.enums import ItemStatus, SideAssetStatus

from .cancellation import CancellationToken
from .models import (
    ConvergenceConfig,
    ConvergenceOutcome,
    ConvergenceResult,
    ConvergenceRun,
    FixExit,
    TranslationItem,
)
from .storage import ItemStore

logger = logging.getLogger(__name__)

ProgressHook = Callable[[TranslationItem, str], Any]

# Fix phase exits that mean the text itself needs regenerating
REGENERATE_EXITS = (FixExit.NO_CORRECTIONS, FixExit.NOTHING_APPLIED)


class QualityConvergenceLoop:
    """Runs translate -> analyze -> fix -> re-analyze for one item.

    Two independently bounded phases:
    - text rounds: full translate calls, at most ``max_text_rounds``
    - fix rounds: fix calls, at most ``max_fix_rounds`` per run

    Every network call is bracketed by token checks so a cancelled run
    issues no further calls and discards stale results. Analyze and asset
    calls retry transient failures, checking the token before each attempt.
    The final item state is written to the store exactly once per run.
    """

    def __init__(
        self,
        services: TranslationServices,
        store: ItemStore,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressHook] = None,
        retry_attempts: Optional[int] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        """Initialize the loop.

        Args:
            services: Gateway to translate/analyze/fix/asset services
            store: Persistence collaborator, written once at exit
            token: Cancellation token of the owning operation
            on_progress: Called as on_progress(item, step) after each step
            retry_attempts: Attempts per retried call, defaults to settings
            retry_wait: tenacity wait strategy between attempts
        """
        self.services = services
        self.store = store
        self.token = token or CancellationToken()
        self.on_progress = on_progress
        self.retry_attempts = max(1, retry_attempts or settings.service_max_retries)
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(
        self, item: TranslationItem, config: ConvergenceConfig
    ) -> ConvergenceResult:
        """Translate the item and converge its quality score."""
        state = ConvergenceRun(
            max_text_rounds=max(1, config.max_text_rounds),
            max_fix_rounds=max(0, config.max_fix_rounds),
        )
        logger.info(
            f"[QCL] Run {item.key}: quality={config.quality_enabled}, "
            f"threshold={config.threshold}, text_rounds={state.max_text_rounds}, "
            f"fix_rounds={state.max_fix_rounds}"
        )
        return await self._execute(item, state, self._run(item, config, state))

    async def improve(
        self, item: TranslationItem, config: ConvergenceConfig
    ) -> ConvergenceResult:
        """Run only the fix phase on an existing translation.

        Raises:
            ValueError: if the item has never been translated
        """
        if not item.id:
            raise ValueError(f"{item.key} has no translation to improve")

        state = ConvergenceRun(
            max_text_rounds=0,
            max_fix_rounds=max(0, config.max_fix_rounds),
        )
        logger.info(f"[QCL] Improve {item.key}: fix_rounds={state.max_fix_rounds}")
        return await self._execute(item, state, self._improve(item, config, state))

    async def _execute(
        self,
        item: TranslationItem,
        state: ConvergenceRun,
        body: Awaitable[ConvergenceResult],
    ) -> ConvergenceResult:
        try:
            result = await body
            # Outcome is decided from here on; a cancel during the save is a no-op
            if not self.token.settle():
                raise OperationCancelled(self.token.reason)
        except OperationCancelled:
            state.cancelled = True
            item.mark_cancelled()
            logger.info(f"[QCL] {item.key} cancelled")
            result = self._result(ConvergenceOutcome.CANCELLED, item, state)
            result.error = item.error_message
        except Exception as e:
            self.token.settle()
            item.mark_error(str(e))
            logger.error(f"[QCL] {item.key} failed unexpectedly: {e}", exc_info=True)
            await self.store.save(item)
            raise

        await self.store.save(item)
        logger.info(
            f"[QCL] {item.key} -> {result.outcome.value} "
            f"(score={result.quality_score}, text_rounds={result.text_rounds}, "
            f"fix_rounds={result.fix_rounds})"
        )
        return result

    # =========================================================================
    # Phases
    # =========================================================================

    async def _run(
        self,
        item: TranslationItem,
        config: ConvergenceConfig,
        state: ConvergenceRun,
    ) -> ConvergenceResult:
        side_errors: Dict[str, str] = {}
        run_side_assets = config.has_side_assets and bool(item.side_assets)

        while True:
            state.text_round += 1
            first_round = state.text_round == 1

            if not await self._translate(item):
                result = self._result(ConvergenceOutcome.FAILED, item, state, side_errors)
                result.error = item.error_message
                return result

            # New text invalidates everything learned about the old one
            item.clear_quality()
            state.applied_corrections = []
            state.last_analysis = None

            if not config.quality_enabled:
                if first_round and run_side_assets:
                    await self._translate_side_assets(item, side_errors)
                return self._finish(item, config, state, side_errors)

            if first_round and run_side_assets:
                results = await asyncio.gather(
                    self._analyze(item, state),
                    self._translate_side_assets(item, side_errors),
                    return_exceptions=True,
                )
                for outcome in results:
                    if isinstance(outcome, BaseException):
                        raise outcome
                analysis = results[0]
            else:
                analysis = await self._analyze(item, state)

            if analysis is None:
                return self._finish(item, config, state, side_errors)

            exit_reason = await self._fix_phase(item, config, state)

            if (
                exit_reason in REGENERATE_EXITS
                and state.text_round < state.max_text_rounds
            ):
                logger.info(
                    f"[QCL] {item.key} score {item.quality_score} below {config.threshold} "
                    f"with nothing to fix, regenerating (round {state.text_round + 1}/"
                    f"{state.max_text_rounds})"
                )
                continue

            return self._finish(item, config, state, side_errors)

    async def _improve(
        self,
        item: TranslationItem,
        config: ConvergenceConfig,
        state: ConvergenceRun,
    ) -> ConvergenceResult:
        item.status = ItemStatus.TRANSLATING
        item.error_message = None

        # Missing score or pre-corrections analysis shape: re-analyze first
        if item.quality_score is None or item.suggested_corrections is None:
            logger.info(f"[QCL] {item.key} has a stale analysis, re-analyzing before fix")
            if await self._analyze(item, state) is None:
                return self._finish(item, config, state, {})

        await self._fix_phase(item, config, state)
        return self._finish(item, config, state, {})

    async def _fix_phase(
        self,
        item: TranslationItem,
        config: ConvergenceConfig,
        state: ConvergenceRun,
    ) -> FixExit:
        """Apply corrections and re-analyze until a stop condition holds."""
        while True:
            if item.quality_score is not None and item.quality_score >= config.threshold:
                return FixExit.THRESHOLD_MET
            if not item.suggested_corrections:
                return FixExit.NO_CORRECTIONS
            if state.fix_round >= state.max_fix_rounds:
                return FixExit.BUDGET_EXHAUSTED

            state.fix_round += 1
            try:
                fix = await self._guarded(self.services.apply_fix, item.id)
            except ServiceError as e:
                logger.warning(f"[QCL] {item.key} fix round {state.fix_round} failed: {e}")
                return FixExit.DEGRADED
            self._notify(item, "fixing")

            if fix.corrections_applied == 0:
                logger.info(f"[QCL] {item.key} fix round {state.fix_round} applied nothing")
                return FixExit.NOTHING_APPLIED

            state.applied_corrections.extend(fix.applied_corrections)
            context = PreviousContext(
                applied_corrections=list(state.applied_corrections),
                previous_score=(
                    fix.previous_score if fix.previous_score is not None else item.quality_score
                ),
                previous_issues=PreviousIssues(
                    fluency_issues=list(item.quality_issues.fluency),
                    grammar_issues=list(item.quality_issues.grammar),
                    context_errors=list(item.quality_issues.context_errors),
                ),
            )
            if await self._analyze(item, state, context, step="reanalyzing") is None:
                return FixExit.DEGRADED

    # =========================================================================
    # Service calls
    # =========================================================================

    async def _guarded(
        self, call: Callable[..., Awaitable[Any]], *args: Any, retry: bool = False
    ) -> Any:
        """Issue one service call between token checks.

        With ``retry`` transient failures are retried, but never once the
        token is cancelled; each attempt re-checks the token first.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(self._retryable),
            stop=stop_after_attempt(self.retry_attempts if retry else 1),
            wait=self.retry_wait,
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                self.token.raise_if_cancelled()
                try:
                    result = await call(*args)
                except ServiceError:
                    self.token.raise_if_cancelled()
                    raise
                # Stale result of a cancelled run is discarded
                self.token.raise_if_cancelled()
        return result

    def _retryable(self, error: BaseException) -> bool:
        return is_transient(error) and not self.token.cancelled

    @staticmethod
    def _log_retry(retry_state: Any) -> None:
        logger.warning(
            f"[QCL] Transient failure, retrying (attempt {retry_state.attempt_number}): "
            f"{retry_state.outcome.exception()}"
        )

    async def _translate(self, item: TranslationItem) -> bool:
        item.status = ItemStatus.TRANSLATING
        item.error_message = None
        try:
            response = await self._guarded(
                self.services.translate, item.page_id, item.language, item.variant
            )
        except ServiceError as e:
            logger.error(f"[QCL] {item.key} translate failed: {e}")
            item.mark_error(str(e))
            return False

        item.id = response.id
        self._notify(item, "translating")
        return True

    async def _analyze(
        self,
        item: TranslationItem,
        state: ConvergenceRun,
        previous_context: Optional[PreviousContext] = None,
        step: str = "analyzing",
    ) -> Optional[AnalysisResult]:
        try:
            analysis = await self._guarded(
                self.services.analyze, item.id, previous_context, retry=True
            )
        except ServiceError as e:
            logger.warning(f"[QCL] {item.key} analysis failed, continuing unscored: {e}")
            return None

        if analysis.quality_score is None:
            logger.warning(f"[QCL] {item.key} analysis returned no score")
            return None

        state.last_analysis = analysis
        item.apply_analysis(analysis)
        logger.debug(
            f"[QCL] {item.key} {step}: score={analysis.quality_score}, "
            f"corrections={len(analysis.suggested_corrections)}"
        )
        self._notify(item, step)
        return analysis

    async def _translate_side_assets(
        self, item: TranslationItem, errors: Dict[str, str]
    ) -> None:
        """Translate embedded assets one at a time; failures are collected."""
        for asset in item.side_assets:
            try:
                response = await self._guarded(
                    self.services.translate_side_asset,
                    item.id,
                    asset.url,
                    item.language,
                    asset.aspect_ratio,
                    retry=True,
                )
            except ServiceError as e:
                reason = str(e)
            else:
                if response.ok:
                    asset.status = SideAssetStatus.TRANSLATED
                    asset.error = None
                    continue
                reason = "Image translation failed"

            logger.warning(f"[QCL] {item.key} asset {asset.url} failed: {reason}")
            asset.status = SideAssetStatus.ERROR
            asset.error = reason
            errors[asset.url] = reason

        self._notify(item, "side_assets")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _notify(self, item: TranslationItem, step: str) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(item, step)
        except Exception as e:
            logger.warning(f"[QCL] Progress hook failed at {step}: {e}")

    def _finish(
        self,
        item: TranslationItem,
        config: ConvergenceConfig,
        state: ConvergenceRun,
        side_errors: Dict[str, str],
    ) -> ConvergenceResult:
        item.status = ItemStatus.TRANSLATED
        item.error_message = None

        if item.quality_score is None:
            outcome = ConvergenceOutcome.UNSCORED
        elif item.quality_score >= config.threshold:
            outcome = ConvergenceOutcome.CONVERGED
        else:
            outcome = ConvergenceOutcome.BELOW_THRESHOLD
        return self._result(outcome, item, state, side_errors)

    @staticmethod
    def _result(
        outcome: ConvergenceOutcome,
        item: TranslationItem,
        state: ConvergenceRun,
        side_errors: Optional[Dict[str, str]] = None,
    ) -> ConvergenceResult:
        return ConvergenceResult(
            outcome=outcome,
            quality_score=item.quality_score,
            text_rounds=state.text_round,
            fix_rounds=state.fix_round,
            side_asset_errors=dict(side_errors or {}),
        )
