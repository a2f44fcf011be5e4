"""
rewriteflow Test Configuration and Fixtures

This module provides pytest fixtures for testing the rewrite orchestrator.
All fixtures avoid real network calls and provide deterministic behavior.

Fixture Categories:
- Fake Engine: In-memory rewrite engine speaking the RPC protocol
- Configuration: Test configuration with zero delays and no ticker
- Orchestrator: Orchestrator and run context wired to the fake engine
"""

import itertools
from collections.abc import Callable
from typing import Any

import pytest

from rewriteflow.config import EtaConfig, IdentityBackend, IdentityConfig, PipelineConfig, RewriteflowConfig
from rewriteflow.engine import EngineClient, EngineError
from rewriteflow.orchestrator import MemoryStore, NoBackoff, RewriteOrchestrator, RunContext

# =============================================================================
# Fake Engine
# =============================================================================


class FakeRun:
    """Job set of one run inside the fake engine."""

    def __init__(self, run_id: str, version_id: str, targets: list[int]):
        self.run_id = run_id
        self.version_id = version_id
        self.requested = tuple(targets)
        self.jobs: dict[int, dict[str, Any]] = {
            n: {"unit_number": n, "status": "queued", "attempts": 0, "error": None} for n in targets
        }
        self.assembled = False

    def add(self, targets: list[int]) -> int:
        added = 0
        for n in targets:
            if n not in self.jobs:
                self.jobs[n] = {"unit_number": n, "status": "queued", "attempts": 0, "error": None}
                added += 1
        return added

    def count(self, status: str) -> int:
        return sum(1 for job in self.jobs.values() if job["status"] == status)

    def snapshot(self) -> dict[str, Any]:
        return {
            "total": len(self.jobs),
            "queued": self.count("queued"),
            "running": self.count("running"),
            "done": self.count("done"),
            "failed": self.count("failed"),
            "jobs": [dict(job) for _, job in sorted(self.jobs.items())],
        }


class FakeEngine(EngineClient):
    """Rewrite engine simulated in memory.

    Replaces the HTTP transport so the whole client stack (action
    dispatch, retries, response parsing) is exercised.

    Args:
        unit_count: Units detected in every source
        scope: Response of the scope_plan action, or None to fail it
        verify_script: Failing unit lists returned by successive verify
            calls; once exhausted verification passes
        fail_units: Units whose first attempt fails
    """

    def __init__(
        self,
        unit_count: int = 5,
        scope: dict[str, Any] | None = None,
        verify_script: list[list[int]] | None = None,
        fail_units: set[int] | None = None,
        access_token: str | None = "test-token",
        **kwargs: Any,
    ):
        kwargs.setdefault("retry_backoff", 0)
        super().__init__(access_token=access_token, **kwargs)
        self.unit_count = unit_count
        self.scope = scope
        self.verify_script = list(verify_script or [])
        self.fail_units = set(fail_units or ())
        self.runs: dict[str, FakeRun] = {}
        self.calls: list[dict[str, Any]] = []
        self.errors: dict[str, list[Exception]] = {}
        self.on_claim: Callable[[], None] | None = None
        self.last_assemble: dict[str, Any] | None = None
        self._ids = itertools.count(1)

    def fail_next(self, action: str, *errors: Exception) -> None:
        """Raise the given errors on the next calls of an action."""
        self.errors.setdefault(action, []).extend(errors)

    def actions(self, name: str) -> list[dict[str, Any]]:
        return [body for body in self.calls if body["action"] == name]

    def active_run(self, version_id: str) -> FakeRun | None:
        for run in reversed(list(self.runs.values())):
            if run.version_id == version_id and not run.assembled:
                return run
        return None

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(body)
        action = body["action"]
        pending = self.errors.get(action)
        if pending:
            raise pending.pop(0)
        return getattr(self, f"_do_{action}")(body)

    def _do_probe(self, body: dict[str, Any]) -> dict[str, Any]:
        return {
            "has_units": self.unit_count > 0,
            "unit_count": self.unit_count,
            "strategy": "scene",
            "content_size": self.unit_count * 1000,
        }

    def _do_scope_plan(self, body: dict[str, Any]) -> dict[str, Any]:
        if self.scope is None:
            raise EngineError("Planner unavailable", status_code=500)
        return {"scope_plan": self.scope}

    def _do_enqueue(self, body: dict[str, Any]) -> dict[str, Any]:
        version_id = body["sourceVersionId"]
        targets = body.get("targetUnitNumbers") or list(range(1, self.unit_count + 1))

        if body.get("runId"):
            run = self.runs[body["runId"]]
            added = run.add(targets)
            return {"runId": run.run_id, "totalUnits": len(run.jobs), "queued": added}

        existing = self.active_run(version_id)
        if existing is not None and existing.requested == tuple(targets):
            return {"runId": existing.run_id, "totalUnits": len(existing.jobs), "alreadyExists": True}

        run = FakeRun(f"run-{next(self._ids)}", version_id, targets)
        self.runs[run.run_id] = run
        return {"runId": run.run_id, "totalUnits": len(run.jobs), "queued": len(run.jobs)}

    def _do_claim_next(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.runs[body["runId"]]
        queued = [n for n, job in sorted(run.jobs.items()) if job["status"] == "queued"]
        if not queued:
            return {"processed": False, "done": run.count("running") == 0}

        unit = queued[0]
        job = run.jobs[unit]
        job["attempts"] += 1
        if self.on_claim is not None:
            self.on_claim()

        if unit in self.fail_units and job["attempts"] == 1:
            job["status"] = "failed"
            job["error"] = "Model refused"
            return {
                "processed": True,
                "unit_number": unit,
                "status": "failed",
                "error": "Model refused",
                "duration_ms": 500,
            }

        job["status"] = "done"
        job["error"] = None
        return {
            "processed": True,
            "unit_number": unit,
            "status": "done",
            "duration_ms": 1000,
            "input_chars": 1000,
            "output_chars": 1030,
            "delta_pct": 3,
        }

    def _do_status(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.runs.get(body.get("runId") or "")
        if run is None:
            return {"total": 0, "queued": 0, "running": 0, "done": 0, "failed": 0, "jobs": []}
        return run.snapshot()

    def _do_retry_failed(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.runs.get(body.get("runId") or "") or self.active_run(body["sourceVersionId"])
        reset = 0
        for job in run.jobs.values():
            if job["status"] == "failed":
                job["status"] = "queued"
                job["error"] = None
                reset += 1
        return {"reset": reset}

    def _do_requeue_stuck(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.runs.get(body.get("runId") or "") or self.active_run(body["sourceVersionId"])
        requeued = 0
        for job in run.jobs.values():
            if job["status"] == "running":
                job["status"] = "queued"
                requeued += 1
        return {"requeued": requeued}

    def _do_verify(self, body: dict[str, Any]) -> dict[str, Any]:
        if not self.verify_script:
            return {"pass": True, "failures": []}
        units = self.verify_script.pop(0)
        return {
            "pass": False,
            "failures": [
                {"type": "knowledge_state", "detail": "Character knows too early", "unit_numbers": units}
            ],
        }

    def _do_assemble(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.runs[body["runId"]]
        run.assembled = True
        self.last_assemble = body
        return {
            "newArtifactId": f"artifact-{run.run_id}",
            "label": "Rewrite v2",
            "charCount": 1030 * len(run.jobs),
            "unitCount": len(run.jobs),
            "selective": len(run.jobs) < self.unit_count,
        }

    def _do_active_run_lookup(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.active_run(body["sourceVersionId"])
        return {"runId": run.run_id if run else None}

    def _do_preview(self, body: dict[str, Any]) -> dict[str, Any]:
        run = self.runs.get(body.get("runId") or "")
        done = [n for n, job in sorted(run.jobs.items()) if job["status"] == "done"] if run else []
        missing = [n for n in range(1, self.unit_count + 1) if n not in done]
        text = "\n\n".join(f"Scene {n} rewritten." for n in done)
        return {
            "preview_text": text[: body.get("maxChars", 8000)],
            "total_chars": len(text),
            "unit_count": len(done),
            "missing_unit_numbers": missing,
        }


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def test_config() -> RewriteflowConfig:
    """Configuration with an in-memory identity store and no smoothing ticker."""
    return RewriteflowConfig(
        pipeline=PipelineConfig(job_delay_seconds=0, empty_delay_seconds=0),
        eta=EtaConfig(tick_interval_seconds=0),
        identity=IdentityConfig(backend=IdentityBackend.MEMORY),
    )


# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def make_engine() -> type[FakeEngine]:
    """The FakeEngine class, for tests that need a custom engine."""
    return FakeEngine


@pytest.fixture
def fake_engine() -> FakeEngine:
    """Fake engine with five units and no scope planner."""
    return FakeEngine()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def make_orchestrator(test_config, store) -> Callable[..., RewriteOrchestrator]:
    """Factory building orchestrators that share the identity store."""

    def _make(engine: EngineClient, config: RewriteflowConfig | None = None) -> RewriteOrchestrator:
        return RewriteOrchestrator(
            engine,
            store=store,
            config=config or test_config,
            backoff=NoBackoff(),
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, fake_engine) -> RewriteOrchestrator:
    return make_orchestrator(fake_engine)


@pytest.fixture
def run_ctx(orchestrator) -> RunContext:
    return orchestrator.new_context("src-1", "ver-1")
