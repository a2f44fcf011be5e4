"""
Response models for the single-shot engine actions.

Covers probe, enqueue, assemble and preview responses, plus the provenance
record attached to every assembled artifact.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from rewriteflow.models.base import RewriteStrategy, StrategySelection
from rewriteflow.models.scope import ScopePlan, Verification


class ProbeResult(BaseModel):
    """Unit structure of a source version.

    Attributes:
        has_units: Whether the source can be split into units at all
        unit_count: Number of units detected
        strategy: Granularity the engine will use
        content_size: Size of the source in characters
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    has_units: bool = False
    unit_count: int = Field(default=0, ge=0)
    strategy: RewriteStrategy = RewriteStrategy.SCENE
    content_size: int = Field(default=0, ge=0)

    @property
    def unit_numbers(self) -> list[int]:
        """Unit numbers of the source, 1..unit_count."""
        return list(range(1, self.unit_count + 1))


class EnqueueResult(BaseModel):
    """Outcome of creating (or re-finding) a job set."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    run_id: str = Field(..., alias="runId")
    total_units: int = Field(default=0, alias="totalUnits", ge=0)
    queued: int = Field(default=0, ge=0)
    already_exists: bool = Field(default=False, alias="alreadyExists")


class AssembleResult(BaseModel):
    """The artifact produced from completed units."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    new_artifact_id: str = Field(..., alias="newArtifactId")
    label: str | None = None
    char_count: int = Field(default=0, alias="charCount")
    unit_count: int = Field(default=0, alias="unitCount")
    selective: bool = False


class PreviewResult(BaseModel):
    """Concatenated text of the units rewritten so far."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    preview_text: str = ""
    total_chars: int = 0
    unit_count: int = 0
    missing_unit_numbers: list[int] = Field(default_factory=list)


class Provenance(BaseModel):
    """How an artifact came to be: strategy, scope and verification history."""

    strategy_selected: StrategySelection = StrategySelection.AUTO
    strategy_effective: RewriteStrategy = RewriteStrategy.SCENE
    strategy_reason: str = "auto_probe_scene"
    strategy_debug: dict[str, Any] = Field(default_factory=dict)
    probe: ProbeResult | None = None
    scope_plan: ScopePlan | None = None
    scope_expanded_from: list[int] | None = None
    verification: Verification | None = None
