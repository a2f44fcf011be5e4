"""Tests for ETA estimation and progress smoothing."""

import pytest

from rewriteflow.config import EtaConfig
from rewriteflow.orchestrator.eta import (
    EtaSettings,
    advance,
    estimate_remaining_ms,
    push_duration,
    rolling_average,
    smoothing_tick,
)


class TestDurations:
    """Tests for the rolling duration window."""

    def test_push_keeps_last_window(self):
        durations = ()
        for ms in (100, 200, 300, 400):
            durations = push_duration(durations, ms, skipped=False, window=3)
        assert durations == (200.0, 300.0, 400.0)

    @pytest.mark.parametrize(
        "duration_ms, skipped",
        [(None, False), (0, False), (-5, False), (1500, True)],
    )
    def test_push_ignores_unusable_durations(self, duration_ms, skipped):
        assert push_duration((100.0,), duration_ms, skipped, window=5) == (100.0,)

    def test_rolling_average(self):
        assert rolling_average([1000, 2000, 3000]) == 2000
        assert rolling_average([1, 1000, 2000], window=2) == 1500
        assert rolling_average([]) == 0.0

    def test_estimate_remaining(self):
        assert estimate_remaining_ms(2000, 3) == 6000
        assert estimate_remaining_ms(0, 3) is None
        assert estimate_remaining_ms(2000, 0) is None


class TestSmoothing:
    """Tests for smoothed progress."""

    def test_advance_never_moves_backwards(self):
        assert advance(40.0, 30.0) == 40.0
        assert advance(40.0, 50.0) == 50.0

    def test_tick_waits_for_idle_threshold(self):
        settings = EtaSettings(idle_threshold=2.5)
        assert smoothing_tick(20.0, 20.0, now=11.0, last_progress_at=10.0, settings=settings) == 20.0
        assert smoothing_tick(20.0, 20.0, now=13.0, last_progress_at=None, settings=settings) == 20.0

    def test_tick_moves_toward_ceiling(self):
        settings = EtaSettings(idle_threshold=2.5, step=0.3, lead=2.0)
        value = smoothing_tick(20.0, 20.0, now=13.0, last_progress_at=10.0, settings=settings)
        assert value == pytest.approx(20.3)

    def test_tick_never_exceeds_lead(self):
        settings = EtaSettings(step=0.3, lead=2.0)
        value = 20.0
        for i in range(20):
            value = smoothing_tick(value, 20.0, now=100.0 + i, last_progress_at=0.0, settings=settings)
        assert value == pytest.approx(22.0)

    def test_tick_respects_cap(self):
        settings = EtaSettings(step=0.3, lead=2.0, cap=99.0)
        value = smoothing_tick(98.9, 98.0, now=100.0, last_progress_at=0.0, settings=settings)
        assert value == pytest.approx(99.0)
        assert smoothing_tick(99.0, 98.0, now=100.0, last_progress_at=0.0, settings=settings) == 99.0

    def test_settings_from_config(self):
        settings = EtaSettings.from_config(EtaConfig(window=7, smoothing_step=0.5))
        assert settings.window == 7
        assert settings.step == 0.5
        assert settings.cap == 99.0
