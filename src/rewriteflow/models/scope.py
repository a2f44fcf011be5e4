"""
Scope planning and verification models.

A ScopePlan describes which units a set of notes forces the engine to
rewrite, which units are read-only context, and which are at risk of
needing a rewrite later. A Verification is the engine's judgement on
whether the rewritten units still honour the continuity contracts.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

FALLBACK_REASON = "fallback: full rewrite"


class ContinuityContracts(BaseModel):
    """Continuity constraints the planner consulted.

    Attributes:
        arc_milestones: Character arc beats that must land
        canon_rules: Facts that must never change
        knowledge_state: Who knows what, and from which unit on
        setup_payoffs: Setups and the units that pay them off
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    arc_milestones: list[Any] = Field(default_factory=list)
    canon_rules: list[Any] = Field(default_factory=list)
    knowledge_state: list[Any] = Field(default_factory=list)
    setup_payoffs: list[Any] = Field(default_factory=list)

    @property
    def count(self) -> int:
        """Total number of contracts across all kinds."""
        return (
            len(self.arc_milestones)
            + len(self.canon_rules)
            + len(self.knowledge_state)
            + len(self.setup_payoffs)
        )


class ScopePlan(BaseModel):
    """Blast radius of a set of requested edits.

    Attributes:
        target_unit_numbers: Units to rewrite
        context_unit_numbers: Units passed along as read-only context
        at_risk_unit_numbers: Candidates for later expansion
        reason: Human-readable explanation of the plan
        propagation_depth: Number of expansions applied so far
        contracts: Continuity contracts consulted
        debug: Free-form planner metadata
        fallback: True for the local full-rewrite plan
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    target_unit_numbers: list[int] = Field(default_factory=list)
    context_unit_numbers: list[int] = Field(default_factory=list)
    at_risk_unit_numbers: list[int] = Field(default_factory=list)
    reason: str = ""
    propagation_depth: int = Field(default=0, ge=0)
    contracts: ContinuityContracts = Field(default_factory=ContinuityContracts)
    debug: dict[str, Any] = Field(default_factory=dict)
    fallback: bool = False

    @field_validator("target_unit_numbers", "context_unit_numbers", "at_risk_unit_numbers")
    @classmethod
    def sorted_unique(cls, v: list[int]) -> list[int]:
        """Deduplicate and sort unit numbers."""
        return sorted(set(v))

    @classmethod
    def full_rewrite(cls, unit_numbers: list[int], debug: dict[str, Any] | None = None) -> "ScopePlan":
        """Build the lower-confidence fallback plan that targets every unit."""
        return cls(
            target_unit_numbers=unit_numbers,
            reason=FALLBACK_REASON,
            propagation_depth=0,
            fallback=True,
            debug=debug or {},
        )

    def clamp(self, unit_numbers: list[int]) -> "ScopePlan":
        """Drop unit numbers that do not exist in the source."""
        known = set(unit_numbers)
        return self.model_copy(
            update={
                "target_unit_numbers": [n for n in self.target_unit_numbers if n in known],
                "context_unit_numbers": [n for n in self.context_unit_numbers if n in known],
                "at_risk_unit_numbers": [n for n in self.at_risk_unit_numbers if n in known],
            }
        )


class VerificationFailure(BaseModel):
    """One broken cross-unit invariant."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(default="continuity")
    description: str = Field(default="", alias="detail")
    unit_numbers: list[int] = Field(default_factory=list)


class Verification(BaseModel):
    """Result of a verification pass. Replaced wholesale, never patched."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    passed: bool = Field(..., alias="pass")
    failures: list[VerificationFailure] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed_unit_numbers(self) -> list[int]:
        """Every unit referenced by a failure, deduplicated and sorted."""
        return sorted({n for failure in self.failures for n in failure.unit_numbers})
