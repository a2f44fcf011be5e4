"""
Base enumerations used throughout the data models.

These enums provide type-safe values for the categorical fields exchanged
with the rewrite engine and for the orchestrator's own state machine.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a single unit rewrite job."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class PipelineMode(str, Enum):
    """Phase of the orchestrator state machine.

    ``complete`` and ``error`` are terminal for a processing pass, but a
    reset, retry or scope expansion moves the pipeline back to ``idle``.
    """

    IDLE = "idle"
    PROBING = "probing"
    ENQUEUING = "enqueuing"
    PROCESSING = "processing"
    ASSEMBLING = "assembling"
    COMPLETE = "complete"
    ERROR = "error"


class RewriteStrategy(str, Enum):
    """Granularity the engine rewrites at."""

    SCENE = "scene"  # One job per detected scene
    CHUNK = "chunk"  # Fixed-size chunks when no scene structure exists


class StrategySelection(str, Enum):
    """Strategy requested by the user; ``auto`` defers to the probe."""

    AUTO = "auto"
    SCENE = "scene"
    CHUNK = "chunk"


class ActivityLevel(str, Enum):
    """Severity tag attached to every activity log entry."""

    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


class ErrorCategory(str, Enum):
    """How an error is allowed to affect the pipeline.

    - PRECONDITION: fatal, abort immediately, never retried
    - TRANSIENT: logged; inside the processing loop counts as one failed
      iteration, elsewhere surfaces to the caller
    - RESOURCE_EXHAUSTED: credits or rate limit; stops the loop and is
      reported to the user
    """

    PRECONDITION = "precondition"
    TRANSIENT = "transient"
    RESOURCE_EXHAUSTED = "resource_exhausted"
