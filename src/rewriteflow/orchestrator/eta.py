"""
ETA estimation and progress smoothing.

Pure functions over numbers; the reducer in ``state`` calls them so that
every estimate is reproducible in tests without a clock.

Smoothing rules:
- Real progress: ``smoothed = max(smoothed, actual)``
- Idle tick (no progress for ``idle_threshold`` seconds): move ``step``
  points toward ``min(actual + lead, cap)``, never beyond it
- Completion: 100
"""

from dataclasses import dataclass
from typing import Iterable

from rewriteflow.config.models import EtaConfig


@dataclass(frozen=True)
class EtaSettings:
    """Tuning knobs for the estimator.

    Attributes:
        window: Number of recent durations averaged
        idle_threshold: Seconds without progress before smoothing ticks apply
        step: Percentage points added per tick
        lead: Maximum distance smoothed progress may run ahead of actual
        cap: Ceiling for smoothed progress before completion
    """

    window: int = 5
    idle_threshold: float = 2.5
    step: float = 0.3
    lead: float = 2.0
    cap: float = 99.0

    @classmethod
    def from_config(cls, config: EtaConfig) -> "EtaSettings":
        return cls(
            window=config.window,
            idle_threshold=config.idle_threshold_seconds,
            step=config.smoothing_step,
            lead=config.smoothing_lead,
            cap=config.smoothing_cap,
        )


DEFAULT_ETA_SETTINGS = EtaSettings()


def push_duration(
    durations: tuple[float, ...],
    duration_ms: float | None,
    skipped: bool,
    window: int,
) -> tuple[float, ...]:
    """Append a unit duration, keeping only the last ``window`` entries.

    Skipped units and missing or non-positive durations are ignored, since
    they say nothing about how long real work takes.
    """
    if skipped or duration_ms is None or duration_ms <= 0:
        return durations
    return (durations + (float(duration_ms),))[-window:]


def rolling_average(durations: Iterable[float], window: int = 5) -> float:
    """Mean of the last ``window`` durations, 0 when there are none."""
    recent = list(durations)[-window:]
    if not recent:
        return 0.0
    return sum(recent) / len(recent)


def estimate_remaining_ms(avg_unit_ms: float, remaining: int) -> float | None:
    """Remaining time in milliseconds, None when it cannot be estimated."""
    if avg_unit_ms <= 0 or remaining <= 0:
        return None
    return avg_unit_ms * remaining


def advance(smoothed: float, actual: float) -> float:
    """Apply real progress: smoothed progress never moves backwards."""
    return max(smoothed, actual)


def smoothing_tick(
    smoothed: float,
    actual: float,
    now: float,
    last_progress_at: float | None,
    settings: EtaSettings = DEFAULT_ETA_SETTINGS,
) -> float:
    """Advance smoothed progress during a long-running unit.

    Args:
        smoothed: Current smoothed percentage
        actual: Actual percentage (done / total)
        now: Current monotonic time in seconds
        last_progress_at: Monotonic time of the last real progress
        settings: Estimator settings

    Returns:
        New smoothed percentage (unchanged when not idle long enough)
    """
    if last_progress_at is None or now - last_progress_at < settings.idle_threshold:
        return smoothed
    ceiling = min(actual + settings.lead, settings.cap)
    if smoothed >= ceiling:
        return smoothed
    return min(smoothed + settings.step, ceiling)
