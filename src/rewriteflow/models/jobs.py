"""
Job, metrics and run-status models.

Wire models mirror the rewrite engine's JSON payloads. The engine mixes
camelCase and snake_case keys, so every model accepts either the alias or
the field name.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from rewriteflow.models.base import JobStatus


class Job(BaseModel):
    """One unit of work: the rewrite of a single scene.

    Attributes:
        unit_number: Stable ordinal of the unit within the source
        unit_heading: Scene heading, when the engine reports one
        status: Current job status
        attempts: Number of times the job has been claimed
        error: Last error message, if the job failed
        claimed_at: When the job was last claimed (used to detect stuck jobs)
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unit_number: int = Field(..., ge=0, description="Ordinal within the source")
    unit_heading: str | None = Field(default=None, description="Scene heading")
    status: JobStatus = Field(default=JobStatus.QUEUED)
    attempts: int = Field(default=0, ge=0)
    error: str | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None)


class UnitMetrics(BaseModel):
    """Per-unit measurements used for display and ETA estimation.

    Attributes:
        duration_ms: Wall time the engine spent on the unit
        input_chars: Size of the unit before rewriting
        output_chars: Size of the unit after rewriting
        delta_pct: Relative size change in percent
        skipped: True when a prior successful result was reused
    """

    duration_ms: float | None = None
    input_chars: int | None = None
    output_chars: int | None = None
    delta_pct: float | None = None
    skipped: bool = False


class ClaimResult(BaseModel):
    """Response of one ``claim_next`` call.

    ``processed`` is False when the queue had nothing to claim.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    processed: bool = False
    unit_number: int | None = None
    status: JobStatus | None = None
    error: str | None = None
    duration_ms: float | None = None
    input_chars: int | None = None
    output_chars: int | None = None
    delta_pct: float | None = None
    skipped: bool = False
    done: bool = False

    def to_metrics(self) -> UnitMetrics:
        """Extract the per-unit metrics carried by this result."""
        return UnitMetrics(
            duration_ms=self.duration_ms,
            input_chars=self.input_chars,
            output_chars=self.output_chars,
            delta_pct=self.delta_pct,
            skipped=self.skipped,
        )


class StatusSnapshot(BaseModel):
    """Authoritative run status as reported by the engine."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    total: int = 0
    queued: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0
    jobs: list[Job] = Field(default_factory=list)
    oldest_running_claimed_at: datetime | None = None


@dataclass(frozen=True)
class RunAggregate:
    """Counts derived from a job set.

    Either recounted from a job set, copied from an authoritative status
    snapshot, or shifted one unit at a time by optimistic updates between
    snapshots.
    """

    total: int = 0
    queued: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0
    oldest_running_claimed_at: datetime | None = None

    @classmethod
    def from_jobs(cls, jobs: Iterable[Job], total: int | None = None) -> "RunAggregate":
        """Recount an aggregate from a job set.

        Args:
            jobs: Jobs of the run
            total: Known total; defaults to the number of jobs

        Returns:
            Fresh aggregate
        """
        jobs = list(jobs)
        counts = {status: 0 for status in JobStatus}
        oldest: datetime | None = None
        for job in jobs:
            counts[job.status] += 1
            if job.status == JobStatus.RUNNING and job.claimed_at is not None:
                if oldest is None or job.claimed_at < oldest:
                    oldest = job.claimed_at

        return cls(
            total=total if total is not None else len(jobs),
            queued=counts[JobStatus.QUEUED],
            running=counts[JobStatus.RUNNING],
            done=counts[JobStatus.DONE],
            failed=counts[JobStatus.FAILED],
            oldest_running_claimed_at=oldest,
        )

    @classmethod
    def from_snapshot(cls, snapshot: StatusSnapshot) -> "RunAggregate":
        """Copy the counts of an authoritative status snapshot."""
        return cls(
            total=snapshot.total,
            queued=snapshot.queued,
            running=snapshot.running,
            done=snapshot.done,
            failed=snapshot.failed,
            oldest_running_claimed_at=snapshot.oldest_running_claimed_at,
        )

    def shifted(self, old: JobStatus | None, new: JobStatus) -> "RunAggregate":
        """Move one unit from bucket ``old`` to bucket ``new``.

        When the previous status is unknown the unit is taken from
        ``queued``. Counts never go negative.
        """
        counts = {
            JobStatus.QUEUED: self.queued,
            JobStatus.RUNNING: self.running,
            JobStatus.DONE: self.done,
            JobStatus.FAILED: self.failed,
        }
        source = old if old is not None else JobStatus.QUEUED
        if source == new:
            return self
        counts[source] = max(counts[source] - 1, 0)
        counts[new] += 1
        return replace(
            self,
            queued=counts[JobStatus.QUEUED],
            running=counts[JobStatus.RUNNING],
            done=counts[JobStatus.DONE],
            failed=counts[JobStatus.FAILED],
        )

    @property
    def remaining(self) -> int:
        """Units neither done nor failed."""
        return max(self.total - self.done - self.failed, 0)

    @property
    def actual_percent(self) -> float:
        """Share of units done, 0-100."""
        if self.total <= 0:
            return 0.0
        return self.done / self.total * 100

    @property
    def is_drained(self) -> bool:
        """Nothing left queued or running."""
        return self.queued == 0 and self.running == 0

    @property
    def all_done(self) -> bool:
        """Every unit of a non-empty run is done."""
        return self.total > 0 and self.done == self.total
