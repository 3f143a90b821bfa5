"""Utility functions for translating note names to MIDI pitch indices.

This module groups helpers dealing with pitch representation conversions.
The generative collaborator speaks in note names such as ``"F#4"`` while every
later stage works with integer MIDI numbers, so this is the single place where
the two representations meet.

Example
-------
>>> from sonifier.note_utils import name_to_pitch, pitch_to_name
>>> name_to_pitch("C4")
60
>>> pitch_to_name(61)
'C#4'
"""

# Modification Summary
# ---------------------
# * ``name_to_pitch`` accepts the Unicode sharp and flat glyphs emitted by some
#   language models (``F♯4``, ``B♭3``) and tolerates surrounding whitespace.
# * Failures raise :class:`~sonifier.errors.ParseError` instead of a bare
#   ``ValueError`` so the normalizer can tell parse problems apart from
#   programming errors. ``ParseError`` still subclasses ``ValueError``.
# * ``pitch_to_name`` rounds and clamps its input so it never fails, which lets
#   the symbolic plan always be reported back to callers.
# * Added ``clamp_pitch`` restricting pitches to the comfortable working range.

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Dict, List

from .errors import ParseError

__all__ = [
    "NOTE_TO_SEMITONE",
    "NOTES",
    "MIN_PITCH",
    "MAX_PITCH",
    "name_to_pitch",
    "pitch_to_name",
    "clamp_pitch",
    "pitch_class",
    "get_interval",
]

logger = logging.getLogger(__name__)

# NOTE_TO_SEMITONE maps both sharp and flat spellings to the correct semitone
# offset within an octave so enharmonic names resolve to the same pitch.
NOTE_TO_SEMITONE: Dict[str, int] = {
    "C": 0,
    "B#": 0,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "Fb": 4,
    "E#": 5,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
    "Cb": 11,
}

# Canonical spelling used for every name this package produces.
NOTES: List[str] = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

# Working range for every pitch that leaves the normalizer: C2 through C7.
MIN_PITCH = 36
MAX_PITCH = 96

_NAME_RE = re.compile(r"([A-Ga-g])([#b♯♭]?)(-?\d+)")
_GLYPHS = {"♯": "#", "♭": "b"}


@lru_cache(maxsize=None)
def name_to_pitch(name: str) -> int:
    """Convert a note string such as ``C#4`` into a MIDI number.

    Parameters
    ----------
    name:
        Note name including octave. The letter is case-insensitive, the
        accidental may be ``#``, ``b``, ``♯`` or ``♭`` and octaves may be
        negative or contain multiple digits.

    Returns
    -------
    int
        MIDI note number in the range ``0-127`` where ``60`` is ``C4``.

    Raises
    ------
    ParseError
        If ``name`` is not properly formatted or the computed value falls
        outside ``0-127``.
    """

    if not isinstance(name, str):
        raise ParseError(f"Note name must be a string, got {type(name).__name__}")
    match = _NAME_RE.fullmatch(name.strip())
    if not match:
        logger.debug("Invalid note format: %r", name)
        raise ParseError(f"Invalid note format: {name!r}")

    letter, accidental, octave_str = match.groups()
    accidental = _GLYPHS.get(accidental, accidental)
    semitone = NOTE_TO_SEMITONE[letter.upper() + accidental]

    # MIDI octaves are offset by one relative to scientific pitch notation.
    # Enharmonic spellings that cross the octave boundary keep the written
    # octave: ``B#3`` is ``C4`` numerically but ``Cb4`` is ``B3``.
    octave = int(octave_str) + 1
    if letter.upper() + accidental == "B#":
        octave += 1
    elif letter.upper() + accidental == "Cb":
        octave -= 1
    midi_val = semitone + octave * 12

    if not 0 <= midi_val <= 127:
        logger.debug("MIDI value out of range: %s -> %d", name, midi_val)
        raise ParseError(
            f"Computed MIDI value {midi_val} out of range 0-127 for note {name!r}"
        )
    return midi_val


def pitch_to_name(pitch: float) -> str:
    """Return the canonical sharp spelling of ``pitch`` (``61`` -> ``C#4``).

    Non-integral values are rounded and anything outside ``0-127`` is clamped
    so the conversion always succeeds.
    """

    midi_note = max(0, min(127, int(round(pitch))))
    octave = midi_note // 12 - 1
    return f"{NOTES[midi_note % 12]}{octave}"


def clamp_pitch(pitch: float, low: int = MIN_PITCH, high: int = MAX_PITCH) -> int:
    """Round ``pitch`` and restrict it to ``low..high`` inclusive."""

    return max(low, min(high, int(round(pitch))))


def pitch_class(pitch: int) -> int:
    """Return the pitch class (``0`` = C) of ``pitch``."""

    return int(pitch) % 12


def get_interval(note1: str, note2: str) -> int:
    """Return the interval between ``note1`` and ``note2`` in semitones."""

    return abs(name_to_pitch(note1) - name_to_pitch(note2))
