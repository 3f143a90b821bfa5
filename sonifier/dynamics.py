"""Velocity helpers for plan events.

``humanize_velocities`` lightly randomises loudness so that rendered audio
does not sound overly mechanical, and ``phase_velocity`` gives regenerated
material an intro, build, climax and resolution arc. Events are frozen so new
lists are returned rather than mutating the input.
"""

from __future__ import annotations

import random
from dataclasses import replace
from typing import Iterable, List

from .events import NormalizedEvent

__all__ = ["clamp_velocity", "humanize_velocities", "phase_velocity"]


def clamp_velocity(velocity: float, low: int = 40, high: int = 110) -> int:
    return max(low, min(high, int(round(velocity))))


def humanize_velocities(
    events: Iterable[NormalizedEvent], rng: random.Random, spread: int = 6
) -> List[NormalizedEvent]:
    """Jitter the velocity of every event by up to ``±spread``.

    Results stay within the 40-110 range used throughout the plan.
    """

    return [
        replace(ev, velocity=clamp_velocity(ev.velocity + rng.randint(-spread, spread)))
        for ev in events
    ]


def phase_velocity(phase: float, motion: int) -> int:
    """Return the velocity for a note at ``phase`` (0-1) through the whole clip."""

    if phase < 0.15:
        return 60 + (motion % 5) * 4
    if phase < 0.55:
        return 72 + (motion % 6) * 5
    if phase < 0.8:
        return 90 + (motion % 4) * 5
    return 70 + (motion % 5) * 4
