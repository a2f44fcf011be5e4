"""
Pipeline state, events and the reducer.

PipelineState is immutable. Every change is expressed as an event and
applied by ``reduce(state, event)``, which returns a new state. The
reducer never performs I/O and never reads a clock: timestamps travel
inside the events.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from rewriteflow.models import (
    AssembleResult,
    ClaimResult,
    EnqueueResult,
    Job,
    JobStatus,
    PipelineMode,
    ProbeResult,
    RewriteStrategy,
    RunAggregate,
    ScopePlan,
    StatusSnapshot,
    StrategySelection,
    UnitMetrics,
    Verification,
)
from rewriteflow.orchestrator.eta import (
    DEFAULT_ETA_SETTINGS,
    EtaSettings,
    advance,
    estimate_remaining_ms,
    push_duration,
    rolling_average,
    smoothing_tick,
)

WORKING_MODES = frozenset({PipelineMode.PROBING, PipelineMode.ENQUEUING, PipelineMode.PROCESSING})
SMOOTHING_MODES = frozenset({PipelineMode.PROCESSING, PipelineMode.ENQUEUING})


@dataclass(frozen=True)
class PipelineState:
    """Snapshot of one orchestrated rewrite.

    Attributes:
        mode: Current phase
        loop_active: Whether a processing loop task is running
        aggregate: Job counts
        jobs: Known jobs, ordered by unit number
        unit_metrics: Per-unit measurements keyed by unit number
        probe: Last probe result
        selected_strategy: Strategy requested by the user
        last_probed_at: When the probe last succeeded
        scope_plan: Active scope plan (None means full rewrite)
        scope_expanded_from: Targets before the last expansion
        verification: Last verification result
        run_id: Cached run identity
        error: Last error message shown to the user
        new_artifact_id: Artifact produced by assembly
        artifact_label: Label of that artifact
        durations: Recent non-skipped unit durations in milliseconds
        avg_unit_ms: Rolling average unit duration
        eta_ms: Estimated remaining time
        smoothed_percent: Display percentage, monotonic within a job set
        last_progress_at: Monotonic time of the last real progress
        current_unit: Unit most recently processed
    """

    mode: PipelineMode = PipelineMode.IDLE
    loop_active: bool = False
    aggregate: RunAggregate = field(default_factory=RunAggregate)
    jobs: tuple[Job, ...] = ()
    unit_metrics: dict[int, UnitMetrics] = field(default_factory=dict)
    probe: ProbeResult | None = None
    selected_strategy: StrategySelection = StrategySelection.AUTO
    last_probed_at: datetime | None = None
    scope_plan: ScopePlan | None = None
    scope_expanded_from: tuple[int, ...] | None = None
    verification: Verification | None = None
    run_id: str | None = None
    error: str | None = None
    new_artifact_id: str | None = None
    artifact_label: str | None = None
    durations: tuple[float, ...] = ()
    avg_unit_ms: float | None = None
    eta_ms: float | None = None
    smoothed_percent: float = 0.0
    last_progress_at: float | None = None
    current_unit: int | None = None

    @property
    def actual_percent(self) -> float:
        return self.aggregate.actual_percent

    @property
    def expansion_count(self) -> int:
        """Number of scope expansions applied in this run."""
        return self.scope_plan.propagation_depth if self.scope_plan else 0

    @property
    def effective_strategy(self) -> RewriteStrategy:
        """Strategy the engine will actually use."""
        if self.selected_strategy == StrategySelection.AUTO:
            return self.probe.strategy if self.probe else RewriteStrategy.SCENE
        return RewriteStrategy(self.selected_strategy.value)

    @property
    def is_working(self) -> bool:
        return self.mode in WORKING_MODES or self.mode == PipelineMode.ASSEMBLING

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        agg = self.aggregate
        return {
            "mode": self.mode.value,
            "loop_active": self.loop_active,
            "run_id": self.run_id,
            "total": agg.total,
            "queued": agg.queued,
            "running": agg.running,
            "done": agg.done,
            "failed": agg.failed,
            "oldest_running_claimed_at": (
                agg.oldest_running_claimed_at.isoformat() if agg.oldest_running_claimed_at else None
            ),
            "smoothed_percent": round(self.smoothed_percent, 2),
            "eta_ms": self.eta_ms,
            "avg_unit_ms": self.avg_unit_ms,
            "expansion_count": self.expansion_count,
            "scope_plan": self.scope_plan.model_dump(mode="json") if self.scope_plan else None,
            "verification": (
                self.verification.model_dump(mode="json", by_alias=True) if self.verification else None
            ),
            "new_artifact_id": self.new_artifact_id,
            "artifact_label": self.artifact_label,
            "error": self.error,
        }


# Events


@dataclass(frozen=True)
class ProbeStarted:
    pass


@dataclass(frozen=True)
class ProbeSucceeded:
    result: ProbeResult
    at: datetime


@dataclass(frozen=True)
class ProbeFailed:
    error: str


@dataclass(frozen=True)
class StrategySelected:
    selection: StrategySelection


@dataclass(frozen=True)
class ScopePlanned:
    plan: ScopePlan


@dataclass(frozen=True)
class ScopeCleared:
    pass


@dataclass(frozen=True)
class EnqueueStarted:
    pass


@dataclass(frozen=True)
class EnqueueSucceeded:
    """Jobs were created, or an identical job set was found.

    ``extends_run`` marks an expansion that adds jobs to the current run.
    """

    result: EnqueueResult
    now: float
    extends_run: bool = False


@dataclass(frozen=True)
class EnqueueFailed:
    error: str


@dataclass(frozen=True)
class RunIdentified:
    run_id: str


@dataclass(frozen=True)
class LoopStarted:
    now: float


@dataclass(frozen=True)
class UnitProcessed:
    claim: ClaimResult
    now: float


@dataclass(frozen=True)
class StatusRefreshed:
    snapshot: StatusSnapshot
    now: float


@dataclass(frozen=True)
class LoopFinished:
    mode: PipelineMode
    error: str | None = None


@dataclass(frozen=True)
class StatusLoaded:
    """Authoritative status loaded after a reload, with no loop running."""

    snapshot: StatusSnapshot
    run_id: str
    now: float


@dataclass(frozen=True)
class SmoothingTick:
    now: float


@dataclass(frozen=True)
class VerificationRecorded:
    verification: Verification


@dataclass(frozen=True)
class ScopeExpanded:
    plan: ScopePlan
    expanded_from: tuple[int, ...]


@dataclass(frozen=True)
class AssemblyStarted:
    pass


@dataclass(frozen=True)
class AssemblySucceeded:
    result: AssembleResult


@dataclass(frozen=True)
class AssemblyFailed:
    error: str


@dataclass(frozen=True)
class Failed:
    error: str


@dataclass(frozen=True)
class Stopped:
    pass


@dataclass(frozen=True)
class Reset:
    pass


Event = (
    ProbeStarted
    | ProbeSucceeded
    | ProbeFailed
    | StrategySelected
    | ScopePlanned
    | ScopeCleared
    | EnqueueStarted
    | EnqueueSucceeded
    | EnqueueFailed
    | RunIdentified
    | LoopStarted
    | UnitProcessed
    | StatusRefreshed
    | LoopFinished
    | StatusLoaded
    | SmoothingTick
    | VerificationRecorded
    | ScopeExpanded
    | AssemblyStarted
    | AssemblySucceeded
    | AssemblyFailed
    | Failed
    | Stopped
    | Reset
)


# Helpers


def _with_eta(state: PipelineState, settings: EtaSettings) -> PipelineState:
    avg = rolling_average(state.durations, settings.window)
    return replace(
        state,
        avg_unit_ms=avg or None,
        eta_ms=estimate_remaining_ms(avg, state.aggregate.remaining),
    )


def _upsert_job(jobs: tuple[Job, ...], job: Job) -> tuple[Job, ...]:
    others = [j for j in jobs if j.unit_number != job.unit_number]
    return tuple(sorted([*others, job], key=lambda j: j.unit_number))


def _failed_message(aggregate: RunAggregate) -> str:
    return f"{aggregate.failed} unit(s) failed"


# Reducers


def _probe_started(state: PipelineState, event: ProbeStarted, settings: EtaSettings) -> PipelineState:
    return replace(state, mode=PipelineMode.PROBING)


def _probe_succeeded(
    state: PipelineState, event: ProbeSucceeded, settings: EtaSettings
) -> PipelineState:
    return replace(state, mode=PipelineMode.IDLE, probe=event.result, last_probed_at=event.at)


def _probe_failed(state: PipelineState, event: ProbeFailed, settings: EtaSettings) -> PipelineState:
    return replace(state, mode=PipelineMode.IDLE)


def _strategy_selected(
    state: PipelineState, event: StrategySelected, settings: EtaSettings
) -> PipelineState:
    return replace(state, selected_strategy=event.selection)


def _scope_planned(state: PipelineState, event: ScopePlanned, settings: EtaSettings) -> PipelineState:
    return replace(state, scope_plan=event.plan)


def _scope_cleared(state: PipelineState, event: ScopeCleared, settings: EtaSettings) -> PipelineState:
    return replace(state, scope_plan=None, scope_expanded_from=None, verification=None)


def _enqueue_started(
    state: PipelineState, event: EnqueueStarted, settings: EtaSettings
) -> PipelineState:
    return replace(
        state,
        mode=PipelineMode.ENQUEUING,
        error=None,
        new_artifact_id=None,
        artifact_label=None,
    )


def _enqueue_succeeded(
    state: PipelineState, event: EnqueueSucceeded, settings: EtaSettings
) -> PipelineState:
    result = event.result
    if result.already_exists:
        # Resume: counts stay until the next authoritative status
        return replace(
            state,
            mode=PipelineMode.IDLE,
            run_id=result.run_id,
            last_progress_at=event.now,
        )

    if event.extends_run:
        agg = state.aggregate
        aggregate = replace(agg, total=agg.total + result.queued, queued=agg.queued + result.queued)
        jobs = state.jobs
        metrics = state.unit_metrics
        durations = state.durations
    else:
        aggregate = RunAggregate(total=result.total_units, queued=result.queued or result.total_units)
        jobs = ()
        metrics = {}
        durations = ()

    new_state = replace(
        state,
        mode=PipelineMode.IDLE,
        run_id=result.run_id,
        aggregate=aggregate,
        jobs=jobs,
        unit_metrics=metrics,
        durations=durations,
        # New job set: smoothing restarts from the actual percentage
        smoothed_percent=aggregate.actual_percent,
        last_progress_at=event.now,
        current_unit=None,
    )
    return _with_eta(new_state, settings)


def _enqueue_failed(state: PipelineState, event: EnqueueFailed, settings: EtaSettings) -> PipelineState:
    return replace(state, mode=PipelineMode.ERROR, error=event.error)


def _run_identified(
    state: PipelineState, event: RunIdentified, settings: EtaSettings
) -> PipelineState:
    return replace(state, run_id=event.run_id)


def _loop_started(state: PipelineState, event: LoopStarted, settings: EtaSettings) -> PipelineState:
    return replace(
        state,
        mode=PipelineMode.PROCESSING,
        loop_active=True,
        error=None,
        last_progress_at=event.now,
    )


def _unit_processed(
    state: PipelineState, event: UnitProcessed, settings: EtaSettings
) -> PipelineState:
    claim = event.claim
    if not claim.processed or claim.unit_number is None:
        return state

    new_status = claim.status or (JobStatus.FAILED if claim.error else JobStatus.DONE)
    previous = next((j for j in state.jobs if j.unit_number == claim.unit_number), None)
    old_status = previous.status if previous else None

    job = (previous or Job(unit_number=claim.unit_number)).model_copy(
        update={
            "status": new_status,
            "error": claim.error,
            "attempts": (previous.attempts if previous else 0) + 1,
        }
    )
    aggregate = state.aggregate.shifted(old_status, new_status)
    metrics = {**state.unit_metrics, claim.unit_number: claim.to_metrics()}
    durations = push_duration(state.durations, claim.duration_ms, claim.skipped, settings.window)

    new_state = replace(
        state,
        jobs=_upsert_job(state.jobs, job),
        aggregate=aggregate,
        unit_metrics=metrics,
        durations=durations,
        smoothed_percent=advance(state.smoothed_percent, aggregate.actual_percent),
        last_progress_at=event.now,
        current_unit=claim.unit_number,
    )
    return _with_eta(new_state, settings)


def _status_refreshed(
    state: PipelineState, event: StatusRefreshed, settings: EtaSettings
) -> PipelineState:
    aggregate = RunAggregate.from_snapshot(event.snapshot)
    progressed = aggregate.done + aggregate.failed > state.aggregate.done + state.aggregate.failed
    new_state = replace(
        state,
        aggregate=aggregate,
        jobs=tuple(sorted(event.snapshot.jobs, key=lambda j: j.unit_number)) or state.jobs,
        smoothed_percent=advance(state.smoothed_percent, aggregate.actual_percent),
        last_progress_at=event.now if progressed else state.last_progress_at,
    )
    return _with_eta(new_state, settings)


def _loop_finished(state: PipelineState, event: LoopFinished, settings: EtaSettings) -> PipelineState:
    smoothed = 100.0 if state.aggregate.all_done else state.smoothed_percent
    return replace(
        state,
        mode=event.mode,
        loop_active=False,
        error=event.error,
        smoothed_percent=smoothed,
        eta_ms=None if state.aggregate.all_done else state.eta_ms,
    )


def _status_loaded(state: PipelineState, event: StatusLoaded, settings: EtaSettings) -> PipelineState:
    aggregate = RunAggregate.from_snapshot(event.snapshot)
    if aggregate.all_done:
        mode, error, smoothed = PipelineMode.COMPLETE, None, 100.0
    elif aggregate.failed > 0 and aggregate.is_drained:
        mode, error, smoothed = PipelineMode.ERROR, _failed_message(aggregate), aggregate.actual_percent
    else:
        mode, error, smoothed = PipelineMode.IDLE, None, aggregate.actual_percent

    new_state = replace(
        state,
        mode=mode,
        loop_active=False,
        error=error,
        run_id=event.run_id,
        aggregate=aggregate,
        jobs=tuple(sorted(event.snapshot.jobs, key=lambda j: j.unit_number)),
        smoothed_percent=smoothed,
        last_progress_at=event.now,
    )
    return _with_eta(new_state, settings)


def _smoothing_tick(state: PipelineState, event: SmoothingTick, settings: EtaSettings) -> PipelineState:
    if state.mode not in SMOOTHING_MODES:
        return state
    smoothed = smoothing_tick(
        state.smoothed_percent,
        state.actual_percent,
        event.now,
        state.last_progress_at,
        settings,
    )
    if smoothed == state.smoothed_percent:
        return state
    return replace(state, smoothed_percent=smoothed)


def _verification_recorded(
    state: PipelineState, event: VerificationRecorded, settings: EtaSettings
) -> PipelineState:
    return replace(state, verification=event.verification)


def _scope_expanded(
    state: PipelineState, event: ScopeExpanded, settings: EtaSettings
) -> PipelineState:
    # Expansion reopens a finished pass so the new targets can be enqueued
    mode = PipelineMode.IDLE if state.mode in (PipelineMode.COMPLETE, PipelineMode.ERROR) else state.mode
    return replace(
        state,
        mode=mode,
        error=None,
        scope_plan=event.plan,
        scope_expanded_from=event.expanded_from,
    )


def _assembly_started(
    state: PipelineState, event: AssemblyStarted, settings: EtaSettings
) -> PipelineState:
    return replace(state, mode=PipelineMode.ASSEMBLING, error=None)


def _assembly_succeeded(
    state: PipelineState, event: AssemblySucceeded, settings: EtaSettings
) -> PipelineState:
    return replace(
        state,
        mode=PipelineMode.COMPLETE,
        run_id=None,
        new_artifact_id=event.result.new_artifact_id,
        artifact_label=event.result.label,
        smoothed_percent=100.0,
        eta_ms=None,
    )


def _assembly_failed(
    state: PipelineState, event: AssemblyFailed, settings: EtaSettings
) -> PipelineState:
    return replace(state, mode=PipelineMode.ERROR, error=event.error)


def _failed(state: PipelineState, event: Failed, settings: EtaSettings) -> PipelineState:
    return replace(state, mode=PipelineMode.ERROR, loop_active=False, error=event.error)


def _stopped(state: PipelineState, event: Stopped, settings: EtaSettings) -> PipelineState:
    if state.mode in WORKING_MODES:
        return replace(state, mode=PipelineMode.IDLE)
    return state


def _reset(state: PipelineState, event: Reset, settings: EtaSettings) -> PipelineState:
    return PipelineState()


_REDUCERS: dict[type, Callable[[PipelineState, Any, EtaSettings], PipelineState]] = {
    ProbeStarted: _probe_started,
    ProbeSucceeded: _probe_succeeded,
    ProbeFailed: _probe_failed,
    StrategySelected: _strategy_selected,
    ScopePlanned: _scope_planned,
    ScopeCleared: _scope_cleared,
    EnqueueStarted: _enqueue_started,
    EnqueueSucceeded: _enqueue_succeeded,
    EnqueueFailed: _enqueue_failed,
    RunIdentified: _run_identified,
    LoopStarted: _loop_started,
    UnitProcessed: _unit_processed,
    StatusRefreshed: _status_refreshed,
    LoopFinished: _loop_finished,
    StatusLoaded: _status_loaded,
    SmoothingTick: _smoothing_tick,
    VerificationRecorded: _verification_recorded,
    ScopeExpanded: _scope_expanded,
    AssemblyStarted: _assembly_started,
    AssemblySucceeded: _assembly_succeeded,
    AssemblyFailed: _assembly_failed,
    Failed: _failed,
    Stopped: _stopped,
    Reset: _reset,
}


def reduce(
    state: PipelineState,
    event: Event,
    settings: EtaSettings = DEFAULT_ETA_SETTINGS,
) -> PipelineState:
    """Apply one event to a state and return the new state.

    Args:
        state: Current state (never modified)
        event: Event to apply
        settings: ETA estimator settings

    Returns:
        New PipelineState

    Raises:
        TypeError: If the event type is unknown
    """
    handler = _REDUCERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown pipeline event: {type(event).__name__}")
    return handler(state, event, settings)


# Derived views


@dataclass(frozen=True)
class ProgressView:
    """Display-oriented summary of a PipelineState.

    Attributes:
        phase: Coarse phase name
        total: Units in the run
        completed: Units done
        running: Units running
        failed: Units failed
        queued: Units queued
        percent: Integer display percentage
        label: Human-readable status line
        eta_ms: Estimated remaining time
        can_start: A fresh run can be started
        can_resume: Queued work remains and nothing is running locally
        can_assemble: Every unit is done and no artifact exists yet
    """

    phase: str
    total: int
    completed: int
    running: int
    failed: int
    queued: int
    percent: int
    label: str
    eta_ms: float | None
    can_start: bool
    can_resume: bool
    can_assemble: bool


_PHASES = {
    PipelineMode.IDLE: "queued",
    PipelineMode.PROBING: "probing",
    PipelineMode.ENQUEUING: "enqueuing",
    PipelineMode.PROCESSING: "processing_unit",
    PipelineMode.ASSEMBLING: "assembling",
    PipelineMode.COMPLETE: "complete",
    PipelineMode.ERROR: "error",
}


def _label(state: PipelineState) -> str:
    agg = state.aggregate
    if state.mode == PipelineMode.PROBING:
        return "Probing units…"
    if state.mode == PipelineMode.ENQUEUING:
        return "Splitting into units…"
    if state.mode == PipelineMode.PROCESSING:
        return f"Unit {agg.done}/{agg.total}"
    if state.mode == PipelineMode.ASSEMBLING:
        return "Assembling final artifact…"
    if state.mode == PipelineMode.COMPLETE:
        return "Complete"
    if state.mode == PipelineMode.ERROR:
        return state.error or "Error"
    return ""


def progress(state: PipelineState) -> ProgressView:
    """Summarize a state for display."""
    agg = state.aggregate
    return ProgressView(
        phase=_PHASES[state.mode],
        total=agg.total,
        completed=agg.done,
        running=agg.running,
        failed=agg.failed,
        queued=agg.queued,
        percent=int(round(state.smoothed_percent)),
        label=_label(state),
        eta_ms=state.eta_ms,
        can_start=state.mode == PipelineMode.IDLE and agg.total == 0,
        can_resume=(
            state.mode in (PipelineMode.IDLE, PipelineMode.ERROR)
            and not state.loop_active
            and agg.queued > 0
        ),
        can_assemble=agg.all_done and state.new_artifact_id is None,
    )


def is_stuck(state: PipelineState, now: datetime | None = None, stuck_minutes: int = 10) -> bool:
    """Whether the oldest running job was claimed more than stuck_minutes ago."""
    agg = state.aggregate
    if agg.running <= 0 or agg.oldest_running_claimed_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    claimed_at = agg.oldest_running_claimed_at
    if claimed_at.tzinfo is None:
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)
    return (now - claimed_at).total_seconds() > stuck_minutes * 60
