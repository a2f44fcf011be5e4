"""
Tests for the pipeline state reducer and derived views.

The reducer is pure, so every test feeds events and inspects the
returned state; no engine or clock is involved.
"""

from datetime import datetime, timedelta, timezone

import pytest

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
)
from rewriteflow.orchestrator.state import (
    AssemblySucceeded,
    EnqueueStarted,
    EnqueueSucceeded,
    LoopFinished,
    LoopStarted,
    PipelineState,
    ProbeStarted,
    ProbeSucceeded,
    Reset,
    ScopeExpanded,
    SmoothingTick,
    StatusLoaded,
    StatusRefreshed,
    Stopped,
    StrategySelected,
    UnitProcessed,
    is_stuck,
    progress,
    reduce,
)


def enqueued(total: int = 4, run_id: str = "run-1") -> PipelineState:
    result = EnqueueResult(run_id=run_id, total_units=total, queued=total)
    return reduce(PipelineState(), EnqueueSucceeded(result=result, now=0.0))


def claim(unit: int, status: JobStatus = JobStatus.DONE, duration_ms: float = 1000) -> UnitProcessed:
    return UnitProcessed(
        claim=ClaimResult(processed=True, unit_number=unit, status=status, duration_ms=duration_ms),
        now=float(unit),
    )


class TestReducerBasics:
    """Tests for simple transitions."""

    def test_initial_state(self):
        state = PipelineState()
        assert state.mode == PipelineMode.IDLE
        assert state.aggregate.total == 0
        assert state.effective_strategy == RewriteStrategy.SCENE

    def test_state_is_never_mutated(self):
        state = PipelineState()
        new_state = reduce(state, ProbeStarted())
        assert state.mode == PipelineMode.IDLE
        assert new_state.mode == PipelineMode.PROBING

    def test_unknown_event(self):
        with pytest.raises(TypeError, match="Unknown pipeline event"):
            reduce(PipelineState(), object())

    def test_probe_and_strategy(self):
        probe = ProbeResult(has_units=False, unit_count=3, strategy=RewriteStrategy.CHUNK)
        at = datetime.now(timezone.utc)
        state = reduce(PipelineState(), ProbeSucceeded(result=probe, at=at))

        assert state.probe == probe
        assert state.last_probed_at == at
        assert state.effective_strategy == RewriteStrategy.CHUNK

        state = reduce(state, StrategySelected(selection=StrategySelection.SCENE))
        assert state.effective_strategy == RewriteStrategy.SCENE

    def test_enqueue_started_clears_previous_artifact(self):
        state = PipelineState(new_artifact_id="a-1", error="old")
        state = reduce(state, EnqueueStarted())
        assert state.mode == PipelineMode.ENQUEUING
        assert state.new_artifact_id is None
        assert state.error is None


class TestEnqueue:
    """Tests for EnqueueSucceeded."""

    def test_fresh_run(self):
        state = enqueued(total=4)
        assert state.mode == PipelineMode.IDLE
        assert state.run_id == "run-1"
        assert state.aggregate == RunAggregate(total=4, queued=4)
        assert state.smoothed_percent == 0.0

    def test_already_exists_keeps_counts(self):
        state = reduce(enqueued(total=4), claim(1))
        result = EnqueueResult(run_id="run-1", total_units=4, already_exists=True)
        resumed = reduce(state, EnqueueSucceeded(result=result, now=9.0))

        assert resumed.aggregate == state.aggregate
        assert resumed.unit_metrics == state.unit_metrics

    def test_extension_adds_queued_units(self):
        state = reduce(reduce(enqueued(total=2), claim(1)), claim(2))
        result = EnqueueResult(run_id="run-1", total_units=4, queued=2)
        extended = reduce(state, EnqueueSucceeded(result=result, now=9.0, extends_run=True))

        assert extended.aggregate.total == 4
        assert extended.aggregate.queued == 2
        assert extended.aggregate.done == 2
        assert extended.smoothed_percent == 50.0
        assert len(extended.jobs) == 2

    def test_new_job_set_resets_smoothing(self):
        state = reduce(enqueued(total=1), claim(1))
        assert state.smoothed_percent == 100.0

        fresh = reduce(state, EnqueueSucceeded(result=EnqueueResult(run_id="run-2", total_units=5), now=1.0))
        assert fresh.smoothed_percent == 0.0
        assert fresh.jobs == ()
        assert fresh.durations == ()


class TestProcessing:
    """Tests for loop events."""

    def test_unit_processed_updates_counts_and_eta(self):
        state = reduce(enqueued(total=4), LoopStarted(now=0.0))
        state = reduce(state, claim(1, duration_ms=2000))

        assert state.mode == PipelineMode.PROCESSING
        assert state.loop_active
        assert state.aggregate.done == 1
        assert state.aggregate.queued == 3
        assert state.jobs[0].attempts == 1
        assert state.unit_metrics[1].duration_ms == 2000
        assert state.avg_unit_ms == 2000
        assert state.eta_ms == 6000
        assert state.smoothed_percent == 25.0
        assert state.current_unit == 1

    def test_failed_unit(self):
        state = reduce(enqueued(total=2), claim(1, status=JobStatus.FAILED))
        assert state.aggregate.failed == 1
        assert state.jobs[0].status == JobStatus.FAILED

    def test_retried_unit_moves_from_failed_to_done(self):
        state = reduce(enqueued(total=2), claim(1, status=JobStatus.FAILED))
        state = reduce(state, claim(1))
        assert state.aggregate.failed == 0
        assert state.aggregate.done == 1
        assert state.jobs[0].attempts == 2

    def test_empty_claim_is_ignored(self):
        state = enqueued()
        assert reduce(state, UnitProcessed(claim=ClaimResult(processed=False), now=1.0)) is state

    def test_status_refresh_overrides_optimistic_counts(self):
        state = reduce(enqueued(total=4), claim(1))
        snapshot = StatusSnapshot(
            total=4,
            queued=0,
            running=1,
            done=2,
            failed=1,
            jobs=[Job(unit_number=n, status=JobStatus.DONE) for n in (2, 1)],
        )
        state = reduce(state, StatusRefreshed(snapshot=snapshot, now=5.0))

        assert state.aggregate.done == 2
        assert state.aggregate.running == 1
        assert [job.unit_number for job in state.jobs] == [1, 2]
        assert state.last_progress_at == 5.0

    def test_smoothed_percent_is_monotonic(self):
        state = reduce(enqueued(total=4), claim(1))
        state = reduce(state, claim(2))
        assert state.smoothed_percent == 50.0

        snapshot = StatusSnapshot(total=4, queued=3, done=1)
        state = reduce(state, StatusRefreshed(snapshot=snapshot, now=3.0))
        assert state.aggregate.done == 1
        assert state.smoothed_percent == 50.0

    def test_smoothing_tick_only_while_processing(self):
        state = reduce(enqueued(total=4), LoopStarted(now=0.0))
        ticked = reduce(state, SmoothingTick(now=10.0))
        assert ticked.smoothed_percent > state.smoothed_percent

        idle = reduce(ticked, Stopped())
        assert idle.mode == PipelineMode.IDLE
        assert reduce(idle, SmoothingTick(now=20.0)) is idle

    def test_loop_finished_complete(self):
        state = reduce(reduce(enqueued(total=1), LoopStarted(now=0.0)), claim(1))
        state = reduce(state, LoopFinished(mode=PipelineMode.COMPLETE))

        assert state.mode == PipelineMode.COMPLETE
        assert not state.loop_active
        assert state.smoothed_percent == 100.0
        assert state.eta_ms is None


class TestStatusLoaded:
    """Tests for state recovery from an authoritative status."""

    def test_all_done_is_complete(self):
        snapshot = StatusSnapshot(total=3, done=3)
        state = reduce(PipelineState(), StatusLoaded(snapshot=snapshot, run_id="run-1", now=0.0))
        assert state.mode == PipelineMode.COMPLETE
        assert state.smoothed_percent == 100.0
        assert state.run_id == "run-1"

    def test_drained_with_failures_is_error(self):
        snapshot = StatusSnapshot(total=3, done=2, failed=1)
        state = reduce(PipelineState(), StatusLoaded(snapshot=snapshot, run_id="run-1", now=0.0))
        assert state.mode == PipelineMode.ERROR
        assert state.error == "1 unit(s) failed"

    def test_work_remaining_is_idle(self):
        snapshot = StatusSnapshot(total=3, queued=1, done=1, failed=1)
        state = reduce(PipelineState(), StatusLoaded(snapshot=snapshot, run_id="run-1", now=0.0))
        assert state.mode == PipelineMode.IDLE
        assert progress(state).can_resume

    def test_same_status_gives_same_state(self):
        snapshot = StatusSnapshot(total=5, queued=2, done=3, jobs=[Job(unit_number=1)])
        first = reduce(PipelineState(), StatusLoaded(snapshot=snapshot, run_id="run-1", now=0.0))
        second = reduce(enqueued(total=9), StatusLoaded(snapshot=snapshot, run_id="run-1", now=0.0))
        assert first.aggregate == second.aggregate
        assert first.mode == second.mode
        assert first.jobs == second.jobs


class TestExpansionAndAssembly:
    """Tests for scope expansion and assembly events."""

    def test_scope_expanded_reopens_complete(self):
        state = PipelineState(mode=PipelineMode.COMPLETE, scope_plan=ScopePlan(target_unit_numbers=[4, 7]))
        plan = ScopePlan(target_unit_numbers=[4, 6, 7, 8], propagation_depth=1)
        state = reduce(state, ScopeExpanded(plan=plan, expanded_from=(4, 7)))

        assert state.mode == PipelineMode.IDLE
        assert state.expansion_count == 1
        assert state.scope_expanded_from == (4, 7)

    def test_assembly_succeeded(self):
        state = reduce(enqueued(total=2), LoopStarted(now=0.0))
        result = AssembleResult(new_artifact_id="art-1", label="v2", char_count=10, unit_count=2)
        state = reduce(state, AssemblySucceeded(result=result))

        assert state.mode == PipelineMode.COMPLETE
        assert state.run_id is None
        assert state.new_artifact_id == "art-1"
        assert state.smoothed_percent == 100.0

    def test_reset(self):
        state = reduce(enqueued(total=2), claim(1))
        assert reduce(state, Reset()) == PipelineState()


class TestProgressView:
    """Tests for the derived display view."""

    @pytest.mark.parametrize(
        "mode, phase, label",
        [
            (PipelineMode.IDLE, "queued", ""),
            (PipelineMode.PROBING, "probing", "Probing units…"),
            (PipelineMode.ENQUEUING, "enqueuing", "Splitting into units…"),
            (PipelineMode.ASSEMBLING, "assembling", "Assembling final artifact…"),
            (PipelineMode.COMPLETE, "complete", "Complete"),
            (PipelineMode.ERROR, "error", "Error"),
        ],
    )
    def test_phase_and_label(self, mode, phase, label):
        view = progress(PipelineState(mode=mode))
        assert view.phase == phase
        assert view.label == label

    def test_processing_label(self):
        state = reduce(reduce(enqueued(total=4), LoopStarted(now=0.0)), claim(1))
        view = progress(state)
        assert view.phase == "processing_unit"
        assert view.label == "Unit 1/4"
        assert view.percent == 25
        assert not view.can_resume

    def test_can_assemble(self):
        state = PipelineState(aggregate=RunAggregate(total=2, done=2))
        assert progress(state).can_assemble
        assert not progress(PipelineState(aggregate=RunAggregate(total=2, done=2), new_artifact_id="a")).can_assemble

    def test_is_stuck(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        aggregate = RunAggregate(total=2, running=1, oldest_running_claimed_at=now - timedelta(minutes=11))
        state = PipelineState(aggregate=aggregate)

        assert is_stuck(state, now=now, stuck_minutes=10)
        assert not is_stuck(state, now=now, stuck_minutes=15)
        assert not is_stuck(PipelineState(), now=now)
