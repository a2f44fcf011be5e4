"""
rewriteflow data models.

This module provides the pydantic models exchanged with the rewrite engine
and the enums used by the orchestrator's state machine:

- Base enums: JobStatus, PipelineMode, RewriteStrategy, StrategySelection,
  ActivityLevel, ErrorCategory
- Job models: Job, UnitMetrics, ClaimResult, StatusSnapshot, RunAggregate
- Scope models: ScopePlan, ContinuityContracts, Verification,
  VerificationFailure
- Result models: ProbeResult, EnqueueResult, AssembleResult, PreviewResult,
  Provenance
"""

from rewriteflow.models.base import (
    ActivityLevel,
    ErrorCategory,
    JobStatus,
    PipelineMode,
    RewriteStrategy,
    StrategySelection,
)
from rewriteflow.models.jobs import (
    ClaimResult,
    Job,
    RunAggregate,
    StatusSnapshot,
    UnitMetrics,
)
from rewriteflow.models.results import (
    AssembleResult,
    EnqueueResult,
    PreviewResult,
    ProbeResult,
    Provenance,
)
from rewriteflow.models.scope import (
    FALLBACK_REASON,
    ContinuityContracts,
    ScopePlan,
    Verification,
    VerificationFailure,
)

__all__ = [
    # Base enums
    "ActivityLevel",
    "ErrorCategory",
    "JobStatus",
    "PipelineMode",
    "RewriteStrategy",
    "StrategySelection",
    # Jobs
    "ClaimResult",
    "Job",
    "RunAggregate",
    "StatusSnapshot",
    "UnitMetrics",
    # Scope
    "FALLBACK_REASON",
    "ContinuityContracts",
    "ScopePlan",
    "Verification",
    "VerificationFailure",
    # Results
    "AssembleResult",
    "EnqueueResult",
    "PreviewResult",
    "ProbeResult",
    "Provenance",
]
