"""Tests for the additive WAV synthesizer.

The container is parsed back with the standard library :mod:`wave` module so
the header fields and the data length are checked independently of the
writer.
"""

import base64
import importlib
import io
import sys
import wave
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

synth = importlib.import_module("sonifier.synth")
events = importlib.import_module("sonifier.events")
errors = importlib.import_module("sonifier.errors")
NormalizedEvent = events.NormalizedEvent


def _read(data):
    with wave.open(io.BytesIO(data), "rb") as wav:
        return wav.getnchannels(), wav.getsampwidth(), wav.getframerate(), wav.getnframes()


def test_header_and_length():
    """A one second target yields exactly one second of stereo PCM."""
    plan = [NormalizedEvent(60, 0, 500, 90), NormalizedEvent(67, 250, 500, 70)]
    data = synth.synthesize_wav(plan, target_ms=1000)
    assert data[:4] == b"RIFF" and data[8:12] == b"WAVE"
    assert _read(data) == (2, 2, 44100, 44100)
    assert len(data) == 44 + 44100 * 4


def test_plan_longer_than_target_extends_buffer():
    """Notes past the target are not cut off."""
    data = synth.synthesize_wav([NormalizedEvent(60, 0, 2000)], target_ms=1000)
    assert _read(data)[3] == 88200


def test_empty_plan_renders_single_frame():
    """An empty plan still produces a valid, minimal file."""
    data = synth.synthesize_wav([])
    assert _read(data)[3] == 1


def test_peak_never_exceeds_full_scale():
    """Loud stacked notes are normalised instead of clipping."""
    plan = [NormalizedEvent(p, 0, 1000, 127) for p in (48, 52, 55, 60)]
    left, right = synth.render_plan(plan, target_ms=1000)
    assert np.max(np.abs(left)) <= 1.0
    assert np.max(np.abs(right)) <= 1.0


def test_low_notes_lean_left():
    """Pitch based panning sends bass to the left channel."""
    left, right = synth.render_plan([NormalizedEvent(36, 0, 500)])
    assert np.sum(np.abs(left)) > np.sum(np.abs(right))


def test_channel_mismatch_raises():
    """Channels of different length cannot be interleaved."""
    with pytest.raises(errors.EncodingError):
        synth.encode_wav(np.zeros(10), np.zeros(11))


def test_rendering_is_deterministic():
    """Identical plans render to identical bytes."""
    plan = [NormalizedEvent(64, 0, 750, 80), NormalizedEvent(71, 500, 250, 60)]
    assert synth.synthesize_wav(plan, 1000) == synth.synthesize_wav(plan, 1000)


def test_wav_data_uri():
    """The data URI round-trips through base64."""
    uri = synth.wav_data_uri(b"RIFFdata")
    assert uri.startswith("data:audio/wav;base64,")
    assert base64.b64decode(uri.split(",", 1)[1]) == b"RIFFdata"


def test_pitch_to_frequency():
    """A4 is 440 Hz and an octave doubles the frequency."""
    assert synth.pitch_to_frequency(69) == pytest.approx(440.0)
    assert synth.pitch_to_frequency(81) == pytest.approx(880.0)
