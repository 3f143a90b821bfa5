"""Tests for linear temporal scaling of a plan onto the clip length."""

import importlib
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

timing = importlib.import_module("sonifier.timing")
events = importlib.import_module("sonifier.events")
normalizer = importlib.import_module("sonifier.normalizer")
NormalizedEvent = events.NormalizedEvent


def test_stretch_to_target():
    """A one second plan is stretched to two seconds."""
    plan = [NormalizedEvent(60, 0, 500), NormalizedEvent(64, 500, 500)]
    scaled = timing.scale_to_duration(plan, 2000)
    assert [(ev.start_ms, ev.duration_ms) for ev in scaled] == [(0, 1000), (1000, 1000)]


def test_compression_respects_minimum_duration():
    """Compressed notes never become shorter than 120 ms."""
    plan = [
        NormalizedEvent(60, 0, 250),
        NormalizedEvent(62, 250, 250),
        NormalizedEvent(64, 9750, 250),
    ]
    scaled = timing.scale_to_duration(plan, 1000)
    assert all(ev.duration_ms >= timing.MIN_SCALED_DURATION_MS for ev in scaled)
    assert [ev.start_ms for ev in scaled] == [0, 25, 975]


def test_within_tolerance_is_unchanged():
    """Plans already within half a percent of the target are left alone."""
    plan = [NormalizedEvent(60, 0, 500), NormalizedEvent(64, 500, 500)]
    assert timing.scale_to_duration(plan, 1004) == plan


def test_scaling_is_idempotent():
    """Scaling twice to the same target equals scaling once."""
    plan = normalizer.normalize_events(
        [{"noteName": n, "time": t, "noteType": "eighth"} for n, t in (("C4", 0), ("E4", 333), ("G4", 1777))]
    )
    once = timing.scale_to_duration(plan, 7000)
    assert timing.scale_to_duration(once, 7000) == once


def test_end_lands_on_target():
    """The scaled plan ends within 4% of the requested length."""
    plan = normalizer.normalize_events([], span_ms=3000)
    scaled = timing.scale_to_duration(plan, 12000)
    assert abs(events.plan_end(scaled) - 12000) <= 0.04 * 12000
    assert events.max_polyphony(scaled) <= events.MAX_VOICES


def test_empty_plan_gets_padding_note():
    """A plan that cannot reach the target is padded with a held note."""
    assert timing.scale_to_duration([], 8000) == [NormalizedEvent(72, 6000, 2000, 75)]
    assert timing.scale_to_duration([], 1000) == [NormalizedEvent(72, 0, 1000, 75)]


def test_missing_target_returns_sorted_plan():
    """Without a target the plan is only sorted."""
    plan = [NormalizedEvent(64, 500, 500), NormalizedEvent(60, 0, 500)]
    assert [ev.start_ms for ev in timing.scale_to_duration(plan, None)] == [0, 500]


def test_resolve_target_duration():
    """An explicit request wins over the analysed duration."""
    analysis = normalizer.normalize_analysis({"durationMs": 5000})
    assert timing.resolve_target_duration(None, None) is None
    assert timing.resolve_target_duration(3000, analysis) == 3000
    assert timing.resolve_target_duration(None, analysis) == 5000
    assert timing.resolve_target_duration(0, analysis) == 5000
