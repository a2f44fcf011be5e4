"""
Processing loop.

Drives a run's job queue one claim at a time until the queue is drained,
the user stops it, or an error ends it. The loop runs as a plain coroutine
on the caller's event loop; while it runs a ticker task feeds smoothing
ticks to the ETA estimator.
"""

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from rewriteflow.config.models import EtaConfig, PipelineConfig
from rewriteflow.engine import EngineClient, EngineError
from rewriteflow.models import ClaimResult, ErrorCategory, JobStatus, PipelineMode
from rewriteflow.orchestrator.context import RunContext
from rewriteflow.orchestrator.state import (
    LoopFinished,
    LoopStarted,
    PipelineState,
    SmoothingTick,
    StatusRefreshed,
    UnitProcessed,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[Exception], None]


class BackoffPolicy(ABC):
    """Delays between loop iterations."""

    @abstractmethod
    def after_job(self) -> float:
        """Seconds to wait after a processed job."""

    @abstractmethod
    def after_empty(self) -> float:
        """Seconds to wait after an empty claim."""

    @abstractmethod
    def after_error(self, consecutive_errors: int) -> float:
        """Seconds to wait after a transient error."""


class FixedBackoff(BackoffPolicy):
    """Constant delays; errors back off linearly up to ``max_error_delay``."""

    def __init__(
        self,
        job_delay: float = 0.2,
        empty_delay: float = 0.5,
        error_delay: float = 1.0,
        max_error_delay: float = 10.0,
    ) -> None:
        self.job_delay = job_delay
        self.empty_delay = empty_delay
        self.error_delay = error_delay
        self.max_error_delay = max_error_delay

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "FixedBackoff":
        return cls(job_delay=config.job_delay_seconds, empty_delay=config.empty_delay_seconds)

    def after_job(self) -> float:
        return self.job_delay

    def after_empty(self) -> float:
        return self.empty_delay

    def after_error(self, consecutive_errors: int) -> float:
        return min(self.error_delay * consecutive_errors, self.max_error_delay)


class NoBackoff(BackoffPolicy):
    """Zero delays everywhere. Used by tests."""

    def after_job(self) -> float:
        return 0.0

    def after_empty(self) -> float:
        return 0.0

    def after_error(self, consecutive_errors: int) -> float:
        return 0.0


@dataclass(frozen=True)
class LoopSettings:
    """Loop tuning.

    Attributes:
        max_empty_polls: Consecutive empty claims that end the loop
        refresh_every: Processed jobs between full status refreshes
        max_consecutive_errors: Transient errors in a row before giving up
        tick_interval: Smoothing tick period in seconds, 0 disables ticking
    """

    max_empty_polls: int = 2
    refresh_every: int = 5
    max_consecutive_errors: int = 5
    tick_interval: float = 1.0

    @classmethod
    def from_config(cls, pipeline: PipelineConfig, eta: EtaConfig) -> "LoopSettings":
        return cls(
            max_empty_polls=pipeline.max_empty_polls,
            refresh_every=pipeline.refresh_every,
            max_consecutive_errors=pipeline.max_consecutive_errors,
            tick_interval=eta.tick_interval_seconds,
        )


def _describe_unit(claim: ClaimResult) -> str:
    if claim.skipped:
        return f"Unit {claim.unit_number} skipped (already done)"
    details = []
    if claim.duration_ms:
        details.append(f"{claim.duration_ms / 1000:.1f}s")
    if claim.delta_pct is not None:
        details.append(f"{claim.delta_pct:+g}%")
    status = (claim.status or JobStatus.DONE).value
    suffix = f" ({' '.join(details)})" if details else ""
    if claim.error:
        suffix += f": {claim.error}"
    return f"Unit {claim.unit_number} {status}{suffix}"


class ProcessingLoop:
    """Claims and processes jobs one at a time.

    Args:
        engine: Engine client
        settings: Loop tuning
        backoff: Delay policy between iterations
        clock: Monotonic clock in seconds
        notify: Called with errors that need the user's attention
    """

    def __init__(
        self,
        engine: EngineClient,
        settings: LoopSettings | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        notify: Notifier | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or LoopSettings()
        self._backoff = backoff or FixedBackoff()
        self._clock = clock
        self._notify = notify

    @property
    def settings(self) -> LoopSettings:
        return self._settings

    async def run(self, ctx: RunContext, run_id: str) -> PipelineState:
        """Process the run's queue until it drains, stops or fails.

        Transient engine errors count as failed iterations. Resource
        exhaustion and precondition errors end the loop in ``error`` and
        are passed to the notifier; they are not raised.

        Args:
            ctx: Run context
            run_id: Run whose jobs are processed

        Returns:
            The state after the loop finished
        """
        token = ctx.cancel_token
        token.reset()
        ctx.dispatch(LoopStarted(now=self._clock()))
        ctx.activity.info("Processing started")
        logger.info(f"Processing loop started for run {run_id}")

        ticker: asyncio.Task | None = None
        if self._settings.tick_interval > 0:
            ticker = asyncio.create_task(self._tick(ctx))

        try:
            return await self._drain(ctx, run_id)
        except EngineError as e:
            return self._abort(ctx, e)
        finally:
            if ticker is not None:
                ticker.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await ticker
            if ctx.state.loop_active:
                ctx.dispatch(LoopFinished(mode=PipelineMode.IDLE))
            logger.info(f"Processing loop finished for run {run_id}: {ctx.state.mode.value}")

    async def _drain(self, ctx: RunContext, run_id: str) -> PipelineState:
        token = ctx.cancel_token
        version_id = ctx.source_version_id
        processed = 0
        empty_polls = 0
        consecutive_errors = 0

        while not token.cancelled:
            try:
                claim = await self._engine.claim_next(run_id, version_id)
                if token.cancelled:
                    break

                if not claim.processed:
                    consecutive_errors = 0
                    empty_polls += 1
                    if empty_polls >= self._settings.max_empty_polls:
                        break
                    if await token.sleep(self._backoff.after_empty()):
                        break
                    continue

                empty_polls = 0
                consecutive_errors = 0
                processed += 1
                ctx.dispatch(UnitProcessed(claim=claim, now=self._clock()))
                if claim.unit_number is not None:
                    level = "success" if claim.status in (None, JobStatus.DONE) else "error"
                    ctx.activity.push(level, _describe_unit(claim))

                if processed % self._settings.refresh_every == 0:
                    snapshot = await self._engine.status(run_id, version_id)
                    if token.cancelled:
                        break
                    ctx.dispatch(StatusRefreshed(snapshot=snapshot, now=self._clock()))
                    if snapshot.queued == 0 and snapshot.running == 0:
                        break
            except EngineError as e:
                if e.category != ErrorCategory.TRANSIENT:
                    raise
                consecutive_errors += 1
                ctx.activity.error(f"Processing error: {e}")
                logger.warning(
                    f"Transient error in processing loop "
                    f"({consecutive_errors}/{self._settings.max_consecutive_errors}): {e}"
                )
                if consecutive_errors >= self._settings.max_consecutive_errors:
                    message = f"Processing stopped after {consecutive_errors} consecutive errors: {e}"
                    ctx.activity.error(message)
                    ctx.dispatch(LoopFinished(mode=PipelineMode.ERROR, error=message))
                    return ctx.state
                if await token.sleep(self._backoff.after_error(consecutive_errors)):
                    break
                continue

            if await token.sleep(self._backoff.after_job()):
                break

        if token.cancelled:
            ctx.dispatch(LoopFinished(mode=PipelineMode.IDLE))
            return ctx.state

        return await self._finish(ctx, run_id)

    async def _finish(self, ctx: RunContext, run_id: str) -> PipelineState:
        """Take one authoritative status and settle the outcome."""
        try:
            snapshot = await self._engine.status(run_id, ctx.source_version_id)
        except EngineError as e:
            if e.category != ErrorCategory.TRANSIENT:
                raise
            ctx.activity.error(f"Final status refresh failed: {e}")
            ctx.dispatch(LoopFinished(mode=PipelineMode.IDLE))
            return ctx.state

        ctx.dispatch(StatusRefreshed(snapshot=snapshot, now=self._clock()))
        aggregate = ctx.state.aggregate

        if aggregate.all_done:
            ctx.activity.success(f"All {aggregate.total} units rewritten successfully")
            ctx.dispatch(LoopFinished(mode=PipelineMode.COMPLETE))
        elif aggregate.failed > 0 and aggregate.is_drained:
            message = f"{aggregate.failed} unit(s) failed"
            ctx.activity.warn(f"{message}, retry available")
            ctx.dispatch(LoopFinished(mode=PipelineMode.ERROR, error=message))
        else:
            ctx.dispatch(LoopFinished(mode=PipelineMode.IDLE))
        return ctx.state

    def _abort(self, ctx: RunContext, error: EngineError) -> PipelineState:
        message = str(error)
        logger.error(f"Processing loop aborted ({error.category.value}): {message}")
        ctx.activity.error(f"Processing error: {message}")
        ctx.dispatch(LoopFinished(mode=PipelineMode.ERROR, error=message))
        if self._notify is not None:
            self._notify(error)
        return ctx.state

    async def _tick(self, ctx: RunContext) -> None:
        interval = self._settings.tick_interval
        while True:
            await asyncio.sleep(interval)
            ctx.dispatch(SmoothingTick(now=self._clock()))
