"""Independent rhythm generation module.

This file exposes a small :class:`RhythmGenerator` class implementing a
probabilistic grammar over note lengths in milliseconds. The regeneration
pass of the shaping engine uses it to lay down onsets for a video segment
before any pitches are chosen, so the groove follows the on-screen motion
first and the melody is layered on afterwards.

The transitions form a first-order Markov process so that each duration
suggests a few likely successors. :func:`motion_rhythm` builds a generator
whose vocabulary depends on how fast things move in the picture: quick
cuts get sixteenth-like values, slow pans get long tones.
"""

from __future__ import annotations

import random
from typing import Dict, List, Optional, Sequence, Tuple

__all__ = [
    "RhythmGenerator",
    "motion_duration_options",
    "motion_gap_factor",
    "motion_rhythm",
]

# Duration vocabularies keyed by the minimum motion speed that selects them.
_MOTION_OPTIONS: Tuple[Tuple[int, Tuple[int, ...]], ...] = (
    (8, (125, 150, 187, 250)),
    (6, (187, 250, 375, 500)),
    (4, (375, 500, 750, 1000)),
    (2, (750, 1000, 1500, 2000)),
    (0, (1000, 1500, 2000, 2500)),
)

# Fraction of a note's length the cursor advances before the next onset.
_GAP_FACTORS: Tuple[Tuple[int, float], ...] = (
    (8, 0.35),
    (6, 0.55),
    (4, 0.8),
    (0, 1.25),
)


class RhythmGenerator:
    """Generate rhythmic patterns using a simple Markov grammar."""

    def __init__(
        self,
        transitions: Optional[Dict[int, Dict[int, float]]] = None,
        *,
        start: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Create a new generator with optional custom transitions.

        Parameters
        ----------
        transitions:
            Mapping ``current_duration -> {next_duration: weight}``. Weights
            do not need to sum to one as they are normalised during
            generation. When ``None`` a quarter/eighth/sixteenth grammar is
            used.
        start:
            Optional initial duration. When ``None`` one is chosen from the
            keys of ``transitions`` at runtime.
        rng:
            Random source. A private unseeded instance is used when omitted.
        """

        self.transitions = transitions or {
            250: {250: 0.4, 500: 0.3, 125: 0.3},
            500: {250: 0.6, 500: 0.4},
            125: {125: 0.5, 250: 0.5},
        }
        self.start = start
        self.rng = rng or random.Random()

    def generate(self, length: int) -> List[int]:
        """Return a rhythm pattern ``length`` events long."""

        if length <= 0:
            raise ValueError("length must be positive")
        current = self.start
        if current is None:
            current = self.rng.choice(list(self.transitions))
        pattern = [current]
        while len(pattern) < length:
            choices = self.transitions.get(current)
            if not choices:
                choices = {d: 1.0 for d in self.transitions}
            durations = list(choices)
            weights = list(choices.values())
            current = self.rng.choices(durations, weights=weights, k=1)[0]
            pattern.append(current)
        return pattern[:length]


def motion_duration_options(motion: int) -> Tuple[int, ...]:
    """Return the duration vocabulary for a segment moving at ``motion``."""

    for threshold, options in _MOTION_OPTIONS:
        if motion >= threshold:
            return options
    return _MOTION_OPTIONS[-1][1]


def motion_gap_factor(motion: int) -> float:
    """Return how far the cursor advances, relative to a note's length."""

    for threshold, factor in _GAP_FACTORS:
        if motion >= threshold:
            return factor
    return _GAP_FACTORS[-1][1]


def _neighbour_transitions(options: Sequence[int]) -> Dict[int, Dict[int, float]]:
    # Staying put or moving to an adjacent value is twice as likely as a jump.
    table: Dict[int, Dict[int, float]] = {}
    for i, current in enumerate(options):
        table[current] = {
            other: 2.0 if abs(i - j) <= 1 else 1.0 for j, other in enumerate(options)
        }
    return table


def motion_rhythm(motion: int, rng: random.Random) -> RhythmGenerator:
    """Return a generator over the vocabulary for ``motion``."""

    return RhythmGenerator(
        _neighbour_transitions(motion_duration_options(motion)), rng=rng
    )
