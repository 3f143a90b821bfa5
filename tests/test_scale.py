"""Tests for key detection and scale snapping."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

scale = importlib.import_module("sonifier.scale")
events = importlib.import_module("sonifier.events")
NormalizedEvent = events.NormalizedEvent
IntensitySegment = events.IntensitySegment


def _plan(pitches):
    return [NormalizedEvent(p, i * 500, 500) for i, p in enumerate(pitches)]


def test_white_keys_detect_c_major():
    """C major material ties with A minor; the lower root and major win."""
    ctx = scale.detect_scale(_plan([60, 62, 64, 65, 67, 69, 71, 72]))
    assert (ctx.root_name, ctx.mode) == ("C", "major")


def test_c_minor_detected():
    """Natural minor material resolves to the lower of its relative pair."""
    ctx = scale.detect_scale(_plan([60, 62, 63, 65, 67, 68, 70]))
    assert (ctx.root_name, ctx.mode) == ("C", "minor")


def test_empty_plan_defaults_to_c_major():
    """No pitches at all means C major."""
    ctx = scale.detect_scale([])
    assert (ctx.root_pitch_class, ctx.mode) == (0, "major")


def test_negative_mood_biases_towards_minor():
    """A sad picture flips an ambiguous key to minor."""
    plan = _plan([60, 62, 65, 67])
    assert scale.detect_scale(plan).mode == "major"
    sad = [IntensitySegment(0, 2000, mood="sad and dark")]
    ctx = scale.detect_scale(plan, sad)
    assert (ctx.root_pitch_class, ctx.mode) == (0, "minor")


def test_positive_mood_biases_towards_major(monkeypatch):
    """A happy picture flips a minor key to major when major is within a point."""
    # Without an outside penalty one flat third puts C major a single point
    # behind C minor.
    monkeypatch.setattr(scale, "_OUTSIDE_PENALTY", 0.0)
    plan = _plan([60, 62, 63, 65, 67])
    assert scale.detect_scale(plan).mode == "minor"
    happy = [IntensitySegment(0, 2000, mood="happy crowd")]
    ctx = scale.detect_scale(plan, happy)
    assert (ctx.root_pitch_class, ctx.mode) == (0, "major")


def test_positive_mood_keeps_clearly_minor_key():
    """The major alternative trails by more than a point, so minor stays."""
    plan = _plan([60, 62, 63, 65, 67])
    happy = [IntensitySegment(0, 2000, mood="bright")]
    ctx = scale.detect_scale(plan, happy)
    assert (ctx.root_pitch_class, ctx.mode) == (0, "minor")


def test_conflicting_moods_leave_key_alone():
    """When both lexicons match no bias is applied."""
    plan = _plan([60, 62, 65, 67])
    mixed = [IntensitySegment(0, 1000, mood="happy"), IntensitySegment(1000, 2000, mood="tense")]
    assert scale.detect_scale(plan, mixed).mode == "major"


def test_snap_prefers_downward_on_ties():
    """Out-of-scale pitches move down before up."""
    c_major = scale.ScaleContext.build(0, "major")
    assert scale.snap_to_scale(61, c_major) == 60
    assert scale.snap_to_scale(66, c_major) == 65
    assert scale.snap_to_scale(64, c_major) == 64


def test_scale_context_build_and_dict():
    """Roots wrap modulo 12 and unknown modes are rejected."""
    ctx = scale.ScaleContext.build(14, "major")
    assert ctx.root_pitch_class == 2
    assert ctx.to_dict() == {"root": "D", "mode": "major", "pitchClasses": [1, 2, 4, 6, 7, 9, 11]}
    with pytest.raises(ValueError):
        scale.ScaleContext.build(0, "dorian")


def test_degree_and_neighbour_helpers():
    """Scale degrees wrap into neighbouring octaves."""
    c_major = scale.ScaleContext.build(0, "major")
    assert scale.degree_pitch(c_major, 60, 7) == 72
    assert scale.degree_pitch(c_major, 60, -1) == 59
    assert scale.next_scale_pitch(60, c_major) == 62
    assert scale.next_scale_pitch(60, c_major, -1) == 59
    assert scale.scale_pitches(c_major, 60, 64) == [60, 62, 64]
