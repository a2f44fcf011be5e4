"""
rewriteflow orchestrator.

Drives rewrite runs on the remote engine:
- RewriteOrchestrator: phase operations and the end-to-end pipeline
- RunContext: caller-owned per-run state, activity log and stop token
- PipelineState / reduce: immutable state and its event reducer
- ProcessingLoop: one-job-at-a-time queue processing
- RunIdentityManager: run id recovery through memory, store and engine
- ETA estimation and progress smoothing
"""

from rewriteflow.orchestrator.activity import ActivityEntry, ActivityLog
from rewriteflow.orchestrator.context import CancellationToken, RunContext
from rewriteflow.orchestrator.eta import (
    DEFAULT_ETA_SETTINGS,
    EtaSettings,
    estimate_remaining_ms,
    rolling_average,
    smoothing_tick,
)
from rewriteflow.orchestrator.identity import (
    IdentityTier,
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
    RunIdentityManager,
    create_store,
    identity_key,
)
from rewriteflow.orchestrator.loop import (
    BackoffPolicy,
    FixedBackoff,
    LoopSettings,
    NoBackoff,
    ProcessingLoop,
)
from rewriteflow.orchestrator.orchestrator import (
    MissingRunIdentityError,
    OrchestratorError,
    PipelineBusyError,
    RewriteOrchestrator,
)
from rewriteflow.orchestrator.scope import (
    ScopePlanner,
    expand_plan,
    expansion_targets,
    failure_units,
)
from rewriteflow.orchestrator.state import (
    PipelineState,
    ProgressView,
    is_stuck,
    progress,
    reduce,
)

__all__ = [
    # Orchestrator
    "RewriteOrchestrator",
    "OrchestratorError",
    "MissingRunIdentityError",
    "PipelineBusyError",
    # Context and state
    "RunContext",
    "CancellationToken",
    "PipelineState",
    "ProgressView",
    "reduce",
    "progress",
    "is_stuck",
    # Activity
    "ActivityEntry",
    "ActivityLog",
    # ETA
    "EtaSettings",
    "DEFAULT_ETA_SETTINGS",
    "rolling_average",
    "estimate_remaining_ms",
    "smoothing_tick",
    # Identity
    "IdentityTier",
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "RunIdentityManager",
    "create_store",
    "identity_key",
    # Loop
    "BackoffPolicy",
    "FixedBackoff",
    "NoBackoff",
    "LoopSettings",
    "ProcessingLoop",
    # Scope
    "ScopePlanner",
    "expansion_targets",
    "expand_plan",
    "failure_units",
]
