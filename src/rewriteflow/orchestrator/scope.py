"""
Scope planning and expansion.

The planner asks the engine which units a set of notes touches and falls
back to a full rewrite when the engine cannot answer. The expansion helper
decides which extra units to rewrite after a failed verification: the
failing units and their immediate neighbours, minus everything the run
already enqueued.
"""

import logging
from collections.abc import Iterable
from typing import Any

from rewriteflow.engine import AuthenticationError, EngineClient, EngineError
from rewriteflow.models import ScopePlan, Verification, VerificationFailure

logger = logging.getLogger(__name__)


class ScopePlanner:
    """Produces a ScopePlan for a set of notes.

    Args:
        engine: Engine client
    """

    def __init__(self, engine: EngineClient) -> None:
        self._engine = engine

    async def plan(
        self,
        source_id: str,
        source_version_id: str,
        notes: list[Any],
        unit_numbers: list[int] | None,
    ) -> ScopePlan:
        """Plan the blast radius of the notes.

        Args:
            source_id: Source identifier
            source_version_id: Source version identifier
            notes: Notes to plan for
            unit_numbers: Known unit numbers of the source, used to clamp
                the remote plan and to build the fallback plan

        Returns:
            Remote plan, or the full-rewrite fallback when the engine fails

        Raises:
            AuthenticationError: If there is no valid session
        """
        try:
            plan = await self._engine.scope_plan(source_id, source_version_id, notes)
        except AuthenticationError:
            raise
        except EngineError as e:
            logger.warning(f"Scope planning failed, falling back to full rewrite: {e}")
            return ScopePlan.full_rewrite(
                unit_numbers or [],
                debug={"error": str(e), "error_type": type(e).__name__},
            )

        if unit_numbers:
            plan = plan.clamp(unit_numbers)
        logger.info(
            f"Scope plan: {len(plan.target_unit_numbers)} target(s), "
            f"{len(plan.context_unit_numbers)} context, "
            f"{len(plan.at_risk_unit_numbers)} at risk"
        )
        return plan


def failure_units(failures: Iterable[VerificationFailure] | Verification) -> list[int]:
    """Units referenced by a set of verification failures."""
    if isinstance(failures, Verification):
        return failures.failed_unit_numbers
    return sorted({n for failure in failures for n in failure.unit_numbers})


def expansion_targets(
    failed_units: Iterable[int],
    unit_numbers: Iterable[int],
    already_enqueued: Iterable[int],
) -> list[int]:
    """New units to rewrite after a verification failure.

    Each failing unit contributes itself and its neighbours (n-1, n+1)
    when they exist in the source. Units already enqueued in the run are
    removed.

    Args:
        failed_units: Units named by the failures
        unit_numbers: All unit numbers of the source
        already_enqueued: Units that already have a job in this run

    Returns:
        Sorted, deduplicated new targets (possibly empty)
    """
    known = set(unit_numbers)
    candidates: set[int] = set()
    for unit in failed_units:
        for neighbour in (unit - 1, unit, unit + 1):
            if neighbour in known:
                candidates.add(neighbour)
    return sorted(candidates - set(already_enqueued))


def expand_plan(plan: ScopePlan, new_targets: list[int]) -> ScopePlan:
    """Merge new targets into a plan and count the expansion."""
    merged = sorted(set(plan.target_unit_numbers) | set(new_targets))
    return plan.model_copy(
        update={
            "target_unit_numbers": merged,
            "at_risk_unit_numbers": [
                n for n in plan.at_risk_unit_numbers if n not in set(new_targets)
            ],
            "propagation_depth": plan.propagation_depth + 1,
        }
    )
