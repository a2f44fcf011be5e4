"""
Rewrite Orchestrator.

Facade that drives a rewrite run through its phases:
- Probe the source for its unit structure
- Plan the scope of the requested notes (optional)
- Enqueue one job per targeted unit
- Process the queue one job at a time
- Verify continuity and expand the scope on failure
- Assemble the final artifact

All per-run state lives on the caller's RunContext; the orchestrator only
holds collaborators and settings, so one instance can serve many runs.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from rewriteflow.config.models import RewriteflowConfig
from rewriteflow.engine import EngineClient, EngineError
from rewriteflow.models import (
    AssembleResult,
    EnqueueResult,
    ErrorCategory,
    PipelineMode,
    PreviewResult,
    ProbeResult,
    Provenance,
    ScopePlan,
    StrategySelection,
    Verification,
    VerificationFailure,
)
from rewriteflow.orchestrator.activity import ActivityLog
from rewriteflow.orchestrator.context import RunContext
from rewriteflow.orchestrator.eta import EtaSettings
from rewriteflow.orchestrator.identity import (
    IdentityTier,
    KeyValueStore,
    RunIdentityManager,
    create_store,
)
from rewriteflow.orchestrator.loop import BackoffPolicy, FixedBackoff, LoopSettings, ProcessingLoop
from rewriteflow.orchestrator.scope import (
    ScopePlanner,
    expand_plan,
    expansion_targets,
    failure_units,
)
from rewriteflow.orchestrator.state import (
    AssemblyFailed,
    AssemblyStarted,
    AssemblySucceeded,
    EnqueueFailed,
    EnqueueStarted,
    EnqueueSucceeded,
    Failed,
    PipelineState,
    ProbeFailed,
    ProbeStarted,
    ProbeSucceeded,
    Reset,
    RunIdentified,
    ScopeCleared,
    ScopeExpanded,
    ScopePlanned,
    StatusLoaded,
    StatusRefreshed,
    Stopped,
    StrategySelected,
    VerificationRecorded,
)

logger = logging.getLogger(__name__)

# Type alias for notification callback
NotificationCallback = Callable[[Exception], None]

_STRATEGY_REASONS = {
    StrategySelection.AUTO: "auto_probe_scene",
    StrategySelection.SCENE: "user_selected_scene",
    StrategySelection.CHUNK: "fallback_error",
}

_EXPANDABLE_MODES = frozenset({PipelineMode.IDLE, PipelineMode.COMPLETE, PipelineMode.ERROR})


class RewriteOrchestrator:
    """Runs rewrite pipelines against a remote rewrite engine.

    Usage:
        orchestrator = RewriteOrchestrator(engine, store=MemoryStore())
        ctx = orchestrator.new_context("src-1", "ver-1", notes=[...])
        state = await orchestrator.run(ctx)
    """

    def __init__(
        self,
        engine: EngineClient,
        store: KeyValueStore | None = None,
        config: RewriteflowConfig | None = None,
        backoff: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            engine: Engine client
            store: Identity store (defaults to the configured backend)
            config: Configuration (defaults apply when omitted)
            backoff: Loop delay policy (defaults to configured fixed delays)
            clock: Monotonic clock in seconds
        """
        self._config = config or RewriteflowConfig()
        self._engine = engine
        self._clock = clock
        self._identity = RunIdentityManager(engine, store or create_store(self._config.identity))
        self._planner = ScopePlanner(engine)
        self._loop = ProcessingLoop(
            engine,
            settings=LoopSettings.from_config(self._config.pipeline, self._config.eta),
            backoff=backoff or FixedBackoff.from_config(self._config.pipeline),
            clock=clock,
            notify=self._notify,
        )
        self._notification_callbacks: list[NotificationCallback] = []

    @classmethod
    def from_config(
        cls,
        config: RewriteflowConfig,
        store: KeyValueStore | None = None,
    ) -> "RewriteOrchestrator":
        """Build an orchestrator and its engine client from configuration."""
        return cls(EngineClient.from_config(config.engine), store=store, config=config)

    @property
    def engine(self) -> EngineClient:
        return self._engine

    @property
    def identity(self) -> RunIdentityManager:
        return self._identity

    @property
    def config(self) -> RewriteflowConfig:
        return self._config

    def new_context(
        self,
        source_id: str,
        source_version_id: str,
        notes: list[Any] | None = None,
        protected_items: list[Any] | None = None,
    ) -> RunContext:
        """Create a run context configured for this orchestrator."""
        return RunContext(
            source_id=source_id,
            source_version_id=source_version_id,
            notes=list(notes or []),
            protected_items=list(protected_items or []),
            activity=ActivityLog(limit=self._config.pipeline.activity_limit),
            eta_settings=EtaSettings.from_config(self._config.eta),
        )

    def on_notify(self, callback: NotificationCallback) -> None:
        """Register a callback for errors that need the user's attention.

        Called for precondition and resource-exhaustion errors.

        Args:
            callback: Function called with the error
        """
        self._notification_callbacks.append(callback)

    def _notify(self, error: Exception) -> None:
        for callback in self._notification_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.warning(f"Notification callback failed: {e}")

    def _report(self, ctx: RunContext, what: str, error: Exception) -> None:
        """Log a failed operation and notify when the category demands it."""
        ctx.activity.error(f"{what} failed: {error}")
        category = getattr(error, "category", ErrorCategory.TRANSIENT)
        if category != ErrorCategory.TRANSIENT:
            self._notify(error)

    @staticmethod
    def _is_precondition(error: Exception) -> bool:
        return getattr(error, "category", None) == ErrorCategory.PRECONDITION

    # Probe and strategy

    async def probe(self, ctx: RunContext) -> ProbeResult | None:
        """Discover the unit structure of the source version.

        Returns:
            ProbeResult, or None when the probe failed

        Raises:
            AuthenticationError: If there is no valid session
        """
        ctx.dispatch(ProbeStarted())
        try:
            result = await self._engine.probe(ctx.source_id, ctx.source_version_id)
        except EngineError as e:
            ctx.dispatch(ProbeFailed(error=str(e)))
            self._report(ctx, "Probe", e)
            if self._is_precondition(e):
                raise
            return None

        ctx.dispatch(ProbeSucceeded(result=result, at=datetime.now(timezone.utc)))
        ctx.activity.info(
            f"Probe: {result.unit_count} units detected "
            f"({result.content_size:,} chars), strategy {result.strategy.value}"
        )
        return result

    def select_strategy(self, ctx: RunContext, selection: StrategySelection | str) -> None:
        """Choose the rewrite strategy (auto, scene or chunk)."""
        ctx.dispatch(StrategySelected(selection=StrategySelection(selection)))

    # Scope

    async def plan_scope(self, ctx: RunContext) -> ScopePlan:
        """Plan which units the context's notes require rewriting.

        Probes first when no probe result is cached. Never fails on engine
        errors: the fallback plan targets every unit.

        Raises:
            AuthenticationError: If there is no valid session
        """
        probe = ctx.state.probe or await self.probe(ctx)
        unit_numbers = probe.unit_numbers if probe else None

        plan = await self._planner.plan(
            ctx.source_id,
            ctx.source_version_id,
            ctx.notes,
            unit_numbers,
        )
        ctx.dispatch(ScopePlanned(plan=plan))

        if plan.fallback:
            ctx.activity.warn("Scope planning failed, falling back to full rewrite")
        else:
            total = len(unit_numbers) if unit_numbers else "?"
            ctx.activity.info(
                f"Scope: {len(plan.target_unit_numbers)} of {total} units targeted"
                + (f" ({plan.reason})" if plan.reason else "")
            )
        return plan

    def widen_scope(self, ctx: RunContext) -> None:
        """Drop the scope plan so the next enqueue rewrites every unit."""
        ctx.dispatch(ScopeCleared())
        ctx.activity.warn("Scope widened to all units, re-enqueue required")

    # Identity

    async def resolve_run_id(self, ctx: RunContext) -> str | None:
        """Find the run id through memory, the store and the engine."""
        run_id, tier = await self._identity.resolve(
            ctx.source_id,
            ctx.source_version_id,
            cached=ctx.state.run_id,
        )
        if run_id and tier != IdentityTier.MEMORY:
            ctx.dispatch(RunIdentified(run_id=run_id))
        return run_id

    # Enqueue

    def _ensure_idle(self, ctx: RunContext, operation: str) -> None:
        state = ctx.state
        if state.loop_active or state.mode != PipelineMode.IDLE:
            raise PipelineBusyError(
                f"Cannot {operation} while pipeline is {state.mode.value}"
                + (" (processing loop active)" if state.loop_active else "")
            )

    def _default_targets(self, ctx: RunContext) -> list[int] | None:
        plan = ctx.state.scope_plan
        if plan is None or plan.fallback:
            return None
        if not plan.target_unit_numbers:
            raise OrchestratorError("Scope plan targets no units; widen the scope to rewrite everything")
        return plan.target_unit_numbers

    async def enqueue(
        self,
        ctx: RunContext,
        target_unit_numbers: list[int] | None = None,
    ) -> EnqueueResult:
        """Create the jobs of a run, or resume the identical existing run.

        Without explicit targets the scope plan decides; no plan or a
        fallback plan means a full rewrite.

        Args:
            ctx: Run context
            target_unit_numbers: Units to enqueue

        Returns:
            EnqueueResult

        Raises:
            PipelineBusyError: If the pipeline is not idle
            EngineError: If the engine call fails
        """
        self._ensure_idle(ctx, "enqueue")
        targets = target_unit_numbers if target_unit_numbers is not None else self._default_targets(ctx)
        return await self._enqueue(ctx, targets)

    async def _enqueue(
        self,
        ctx: RunContext,
        targets: list[int] | None,
        run_id: str | None = None,
        notes: list[Any] | None = None,
        protected_items: list[Any] | None = None,
    ) -> EnqueueResult:
        ctx.dispatch(EnqueueStarted())
        ctx.activity.info("Enqueuing unit jobs…")
        try:
            result = await self._engine.enqueue(
                ctx.source_id,
                ctx.source_version_id,
                edits=notes if notes is not None else ctx.notes,
                protected_items=protected_items if protected_items is not None else ctx.protected_items,
                target_unit_numbers=sorted(set(targets)) if targets is not None else None,
                run_id=run_id,
            )
        except EngineError as e:
            ctx.dispatch(EnqueueFailed(error=str(e)))
            self._report(ctx, "Enqueue", e)
            raise

        # Persist before anything is processed
        self._identity.persist(ctx.source_id, ctx.source_version_id, result.run_id)
        ctx.dispatch(
            EnqueueSucceeded(result=result, now=self._clock(), extends_run=run_id is not None)
        )

        if result.already_exists:
            ctx.activity.warn(f"Jobs already exist ({result.total_units} units), resuming")
            await self._refresh(ctx, result.run_id)
        elif run_id is not None:
            ctx.activity.success(f"Enqueued {result.queued} additional unit job(s)")
            await self._refresh(ctx, result.run_id)
        else:
            ctx.activity.success(f"Enqueued {result.total_units} unit jobs")
        return result

    async def _refresh(self, ctx: RunContext, run_id: str) -> None:
        """Best-effort authoritative status refresh."""
        try:
            snapshot = await self._engine.status(run_id, ctx.source_version_id)
        except EngineError as e:
            if self._is_precondition(e):
                raise
            logger.warning(f"Status refresh failed for run {run_id}: {e}")
            return
        ctx.dispatch(StatusRefreshed(snapshot=snapshot, now=self._clock()))

    # Processing

    async def process(self, ctx: RunContext) -> PipelineState:
        """Run the processing loop, then verify and assemble when done.

        When every unit is done and auto-assembly is enabled, a selective
        run is verified first; a failed verification expands the scope and
        processes again, up to the expansion limit.

        Raises:
            PipelineBusyError: If a loop is already running or another
                phase is in progress
            MissingRunIdentityError: If no run can be found
        """
        state = ctx.state
        if state.loop_active or state.mode in (
            PipelineMode.PROBING,
            PipelineMode.ENQUEUING,
            PipelineMode.ASSEMBLING,
        ):
            raise PipelineBusyError(f"Cannot process while pipeline is {state.mode.value}")

        run_id = await self.resolve_run_id(ctx)
        if run_id is None:
            error = MissingRunIdentityError("No run to process; enqueue first")
            ctx.dispatch(Failed(error=str(error)))
            self._report(ctx, "Processing", error)
            raise error

        state = await self._loop.run(ctx, run_id)
        if state.mode != PipelineMode.COMPLETE or not self._config.pipeline.auto_assemble:
            return state
        if state.new_artifact_id is not None:
            return state

        plan = state.scope_plan
        if plan is not None and not plan.fallback:
            verification = await self.verify(ctx)
            if verification is None:
                return ctx.state
            if not verification.passed:
                await self.expand_and_continue(ctx, verification.failures)
                return ctx.state
        elif plan is None and (state.probe is None or state.aggregate.total < state.probe.unit_count):
            ctx.activity.warn("Scope plan unknown, assembling without verification")

        await self.assemble(ctx)
        return ctx.state

    def stop(self, ctx: RunContext) -> None:
        """Ask the processing loop to stop after the current call."""
        ctx.cancel_token.cancel()
        ctx.dispatch(Stopped())
        ctx.activity.warn("Processing stopped by user")

    # Verification and expansion

    async def verify(self, ctx: RunContext) -> Verification | None:
        """Check cross-unit continuity of the rewritten units.

        Returns:
            Verification, or None when the engine call failed
        """
        try:
            verification = await self._engine.verify(ctx.source_version_id, ctx.state.scope_plan)
        except EngineError as e:
            self._report(ctx, "Verification", e)
            if self._is_precondition(e):
                raise
            return None

        ctx.dispatch(VerificationRecorded(verification=verification))
        if verification.passed:
            ctx.activity.success("Verification passed")
        else:
            units = ", ".join(str(n) for n in verification.failed_unit_numbers) or "none"
            ctx.activity.warn(
                f"Verification failed: {len(verification.failures)} issue(s), units {units}"
            )
        return verification

    async def expand(
        self,
        ctx: RunContext,
        failures: list[VerificationFailure],
        notes: list[Any] | None = None,
        protected_items: list[Any] | None = None,
    ) -> bool:
        """Grow the scope around failing units and enqueue the new targets.

        Args:
            ctx: Run context
            failures: Verification failures to expand around
            notes: Notes for the new jobs (defaults to the context's)
            protected_items: Protected items (defaults to the context's)

        Returns:
            True if new jobs were enqueued

        Raises:
            MissingRunIdentityError: If no run can be found
            EngineError: If enqueueing the new targets fails
        """
        plan = ctx.state.scope_plan
        max_expansions = self._config.pipeline.max_expansions

        if plan is None or plan.fallback:
            ctx.activity.info("Full rewrite already covers every unit, nothing to expand")
            return False
        if plan.propagation_depth >= max_expansions:
            ctx.activity.warn(
                f"Max scope expansions ({max_expansions}) reached, manual review required"
            )
            return False
        if ctx.state.loop_active or ctx.state.mode not in _EXPANDABLE_MODES:
            raise PipelineBusyError(f"Cannot expand scope while pipeline is {ctx.state.mode.value}")

        probe = ctx.state.probe or await self.probe(ctx)
        unit_numbers = probe.unit_numbers if probe else sorted(
            set(plan.target_unit_numbers) | set(plan.context_unit_numbers) | set(plan.at_risk_unit_numbers)
        )

        run_id = await self.resolve_run_id(ctx)
        if run_id is None:
            error = MissingRunIdentityError("No run to expand; enqueue first")
            self._report(ctx, "Scope expansion", error)
            raise error

        try:
            snapshot = await self._engine.status(run_id, ctx.source_version_id)
        except EngineError as e:
            self._report(ctx, "Scope expansion", e)
            if self._is_precondition(e):
                raise
            return False

        enqueued = {job.unit_number for job in snapshot.jobs} | set(plan.target_unit_numbers)
        new_targets = expansion_targets(failure_units(failures), unit_numbers, enqueued)
        if not new_targets:
            ctx.activity.info("Nothing to expand to")
            return False

        # The plan only grows once the new jobs exist
        await self._enqueue(
            ctx,
            new_targets,
            run_id=run_id,
            notes=notes,
            protected_items=protected_items,
        )

        expanded = expand_plan(plan, new_targets)
        ctx.dispatch(ScopeExpanded(plan=expanded, expanded_from=tuple(plan.target_unit_numbers)))
        ctx.activity.warn(
            f"Scope expanded to units {', '.join(str(n) for n in new_targets)} "
            f"(depth {expanded.propagation_depth}/{max_expansions})"
        )
        return True

    async def expand_and_continue(
        self,
        ctx: RunContext,
        failures: list[VerificationFailure] | None = None,
        notes: list[Any] | None = None,
        protected_items: list[Any] | None = None,
    ) -> bool:
        """Expand the scope and resume processing.

        Failures default to those of the last verification.

        Returns:
            False when nothing was expanded
        """
        if failures is None:
            verification = ctx.state.verification
            failures = verification.failures if verification else []
        if not await self.expand(ctx, failures, notes=notes, protected_items=protected_items):
            return False
        await self.process(ctx)
        return True

    # Assembly

    def build_provenance(self, state: PipelineState) -> Provenance:
        """Describe how the run's artifact came to be."""
        probe = state.probe
        return Provenance(
            strategy_selected=state.selected_strategy,
            strategy_effective=state.effective_strategy,
            strategy_reason=_STRATEGY_REASONS[state.selected_strategy],
            strategy_debug={
                "selected": state.selected_strategy.value,
                "probed_has_units": probe.has_units if probe else None,
                "probed_unit_count": probe.unit_count if probe else None,
            },
            probe=probe,
            scope_plan=state.scope_plan,
            scope_expanded_from=list(state.scope_expanded_from) if state.scope_expanded_from else None,
            verification=state.verification,
        )

    async def assemble(
        self,
        ctx: RunContext,
        provenance: Provenance | None = None,
    ) -> AssembleResult:
        """Assemble the final artifact from completed units.

        Args:
            ctx: Run context
            provenance: Provenance record (derived from the state by default)

        Returns:
            AssembleResult

        Raises:
            MissingRunIdentityError: If no run can be found
            EngineError: If the engine call fails
        """
        run_id = await self.resolve_run_id(ctx)
        if run_id is None:
            error = MissingRunIdentityError("No run to assemble; enqueue first")
            ctx.dispatch(Failed(error=str(error)))
            self._report(ctx, "Assembly", error)
            raise error

        ctx.dispatch(AssemblyStarted())
        ctx.activity.info("Assembling final artifact…")
        try:
            result = await self._engine.assemble(
                run_id,
                ctx.source_id,
                ctx.source_version_id,
                provenance or self.build_provenance(ctx.state),
            )
        except EngineError as e:
            ctx.dispatch(AssemblyFailed(error=str(e)))
            self._report(ctx, "Assembly", e)
            raise

        self._identity.clear(ctx.source_id, ctx.source_version_id)
        ctx.dispatch(AssemblySucceeded(result=result))
        ctx.activity.success(
            f"Artifact {result.label or result.new_artifact_id} created "
            f"({result.char_count:,} chars, {result.unit_count} units)"
        )
        return result

    # Recovery and maintenance

    async def load_status(self, ctx: RunContext) -> PipelineState | None:
        """Reload the run's authoritative status without enqueueing.

        Returns:
            The new state, or None when there is no run or the call failed
        """
        run_id = await self.resolve_run_id(ctx)
        if run_id is None:
            ctx.activity.info("No existing run found")
            return None

        try:
            snapshot = await self._engine.status(run_id, ctx.source_version_id)
        except EngineError as e:
            self._report(ctx, "Status load", e)
            if self._is_precondition(e):
                raise
            return None

        state = ctx.dispatch(StatusLoaded(snapshot=snapshot, run_id=run_id, now=self._clock()))
        agg = state.aggregate
        ctx.activity.info(
            f"Loaded status: {agg.done}/{agg.total} done, {agg.failed} failed, {agg.queued} queued"
        )
        return state

    async def retry_failed(self, ctx: RunContext) -> int | None:
        """Requeue failed jobs, then reload the status.

        Returns:
            Number of jobs requeued, or None on failure
        """
        self._ensure_not_looping(ctx, "retry failed units")
        try:
            count = await self._engine.retry_failed(ctx.source_version_id, run_id=ctx.state.run_id)
        except EngineError as e:
            self._report(ctx, "Retry", e)
            if self._is_precondition(e):
                raise
            return None

        ctx.activity.info(f"Re-queued {count} failed unit(s)")
        await self.load_status(ctx)
        return count

    async def requeue_stuck(self, ctx: RunContext, stuck_minutes: int | None = None) -> int | None:
        """Requeue jobs that have been running too long, then reload the status.

        Returns:
            Number of jobs requeued, or None on failure
        """
        self._ensure_not_looping(ctx, "requeue stuck units")
        minutes = stuck_minutes if stuck_minutes is not None else self._config.pipeline.stuck_minutes
        try:
            count = await self._engine.requeue_stuck(
                ctx.source_version_id,
                minutes,
                run_id=ctx.state.run_id,
            )
        except EngineError as e:
            self._report(ctx, "Requeue", e)
            if self._is_precondition(e):
                raise
            return None

        ctx.activity.info(f"Requeued {count} stuck unit(s)")
        await self.load_status(ctx)
        return count

    def _ensure_not_looping(self, ctx: RunContext, operation: str) -> None:
        if ctx.state.loop_active:
            raise PipelineBusyError(f"Cannot {operation} while the processing loop is active")

    async def preview(self, ctx: RunContext, max_chars: int = 8000) -> PreviewResult | None:
        """Fetch the text rewritten so far.

        Returns:
            PreviewResult, or None on failure
        """
        run_id = await self.resolve_run_id(ctx)
        try:
            result = await self._engine.preview(run_id, ctx.source_version_id, max_chars=max_chars)
        except EngineError as e:
            self._report(ctx, "Preview", e)
            if self._is_precondition(e):
                raise
            return None

        if result.missing_unit_numbers:
            ctx.activity.info(
                f"Preview: {result.unit_count} units, "
                f"{len(result.missing_unit_numbers)} not yet rewritten"
            )
        return result

    def reset(self, ctx: RunContext) -> None:
        """Stop, forget the run identity and return to the initial state.

        The activity log is kept.
        """
        ctx.cancel_token.cancel()
        self._identity.clear(ctx.source_id, ctx.source_version_id)
        ctx.dispatch(Reset())
        ctx.activity.info("Pipeline reset")

    def clear_activity(self, ctx: RunContext) -> None:
        ctx.activity.clear()

    # Full pipeline

    async def run(self, ctx: RunContext, plan_scope: bool = True) -> PipelineState:
        """Run the whole pipeline end to end.

        Probe, plan the scope when there are notes, enqueue (or resume the
        identical run), process, verify/expand and assemble.

        Args:
            ctx: Run context
            plan_scope: Plan the scope of the notes before enqueueing

        Returns:
            Final state
        """
        logger.info(f"Starting rewrite of {ctx.source_id}/{ctx.source_version_id}")

        if ctx.state.probe is None:
            await self.probe(ctx)

        if plan_scope and ctx.notes and ctx.state.scope_plan is None:
            await self.plan_scope(ctx)

        try:
            await self.enqueue(ctx)
        except EngineError as e:
            logger.error(f"Enqueue failed: {e}")
            return ctx.state

        state = await self.process(ctx)
        logger.info(f"Rewrite of {ctx.source_id}/{ctx.source_version_id} ended: {state.mode.value}")
        return state


class OrchestratorError(Exception):
    """Raised when the orchestrator rejects or cannot perform an operation."""

    category: ErrorCategory = ErrorCategory.PRECONDITION


class MissingRunIdentityError(OrchestratorError):
    """Raised when an operation needs a run id and none can be found."""

    pass


class PipelineBusyError(OrchestratorError):
    """Raised when an operation is requested in a phase that forbids it."""

    pass
