"""Key detection and scale snapping.

The collaborator rarely states a key, and when it does the notes often
disagree with it, so the key is inferred from the notes themselves. A 12-bin
pitch-class histogram is scored against every major and natural minor scale;
in-scale notes count for one point and out-of-scale notes cost ``0.35``. The
mood words of the video analysis may then nudge a near-tie towards the mode
that matches the picture.

Example
-------
>>> from sonifier.scale import detect_scale, snap_to_scale
>>> ctx = detect_scale(events)
>>> ctx.root_name, ctx.mode
('C', 'major')
>>> snap_to_scale(61, ctx)
60
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .events import IntensitySegment, NormalizedEvent
from .note_utils import NOTES

__all__ = [
    "MODE_INTERVALS",
    "ScaleContext",
    "detect_scale",
    "snap_to_scale",
    "scale_pitches",
    "degree_pitch",
    "next_scale_pitch",
]

MODE_INTERVALS: Dict[str, Tuple[int, ...]] = {
    "major": (0, 2, 4, 5, 7, 9, 11),
    "minor": (0, 2, 3, 5, 7, 8, 10),
}

_OUTSIDE_PENALTY = 0.35

# Mood lexicons. Matching is by word stem so "celebration" and "celebratory"
# both count.
_POSITIVE_MOOD = re.compile(
    r"(happy|bright|celebrat|excite|uplift|triumph|joy|energetic|crowd)"
)
_NEGATIVE_MOOD = re.compile(
    r"(sad|tense|dark|melanch|somber|pressure|intense|defeat|loss)"
)


@dataclass(frozen=True)
class ScaleContext:
    """Detected key used by every pass that needs to stay in tune."""

    root_pitch_class: int
    mode: str
    scale_pitch_classes: FrozenSet[int]

    @classmethod
    def build(cls, root: int, mode: str) -> "ScaleContext":
        if mode not in MODE_INTERVALS:
            raise ValueError(f"Unknown mode: {mode}")
        root = root % 12
        return cls(
            root,
            mode,
            frozenset((root + step) % 12 for step in MODE_INTERVALS[mode]),
        )

    @property
    def root_name(self) -> str:
        return NOTES[self.root_pitch_class]

    def contains(self, pitch: int) -> bool:
        return pitch % 12 in self.scale_pitch_classes

    def to_dict(self) -> Dict[str, object]:
        return {
            "root": self.root_name,
            "mode": self.mode,
            "pitchClasses": sorted(self.scale_pitch_classes),
        }


def _score(histogram: Sequence[int], root: int, mode: str) -> float:
    pcs = {(root + step) % 12 for step in MODE_INTERVALS[mode]}
    inside = sum(count for pc, count in enumerate(histogram) if pc in pcs)
    outside = sum(count for pc, count in enumerate(histogram) if pc not in pcs)
    return inside - _OUTSIDE_PENALTY * outside


def _mood_text(segments: Optional[Iterable[IntensitySegment]]) -> str:
    return " ".join(seg.mood for seg in segments or []).lower()


def detect_scale(
    events: Iterable[NormalizedEvent],
    segments: Optional[Iterable[IntensitySegment]] = None,
) -> ScaleContext:
    """Infer the key of ``events``.

    Parameters
    ----------
    events:
        Plan whose pitches are histogrammed.
    segments:
        Optional analysis segments. Their moods bias the major/minor choice
        when exactly one of the positive or negative lexicons matches and the
        alternative mode at the same root scores within one point.

    Returns
    -------
    ScaleContext
        The best-scoring root and mode. Ties prefer the lower root and then
        major. An empty plan yields C major.
    """

    histogram: List[int] = [0] * 12
    for ev in events:
        histogram[ev.pitch % 12] += 1
    if not any(histogram):
        return ScaleContext.build(0, "major")

    best: Optional[Tuple[float, int, str]] = None
    for root in range(12):
        for mode in ("major", "minor"):
            score = _score(histogram, root, mode)
            # Strict comparison keeps the earliest candidate on ties, which is
            # the lower root and, within a root, major.
            if best is None or score > best[0]:
                best = (score, root, mode)
    assert best is not None
    score, root, mode = best

    mood = _mood_text(segments)
    positive = bool(_POSITIVE_MOOD.search(mood))
    negative = bool(_NEGATIVE_MOOD.search(mood))
    if positive != negative:
        wanted = "major" if positive else "minor"
        if mode != wanted and _score(histogram, root, wanted) >= score - 1:
            logging.debug(
                "Mood bias switched %s %s to %s", NOTES[root], mode, wanted
            )
            mode = wanted
    return ScaleContext.build(root, mode)


def snap_to_scale(pitch: int, ctx: ScaleContext) -> int:
    """Move ``pitch`` to the nearest pitch inside ``ctx``.

    In-scale pitches are returned unchanged. Otherwise distances ``1..6``
    semitones are tried, downward before upward, and the first hit wins. A
    scale with no reachable member leaves ``pitch`` untouched.
    """

    if ctx.contains(pitch):
        return pitch
    for distance in range(1, 7):
        for direction in (-1, 1):
            candidate = pitch + direction * distance
            if ctx.contains(candidate):
                return candidate
    return pitch


def scale_pitches(ctx: ScaleContext, low: int, high: int) -> List[int]:
    """Return every in-scale pitch between ``low`` and ``high`` inclusive."""

    return [p for p in range(low, high + 1) if ctx.contains(p)]


def degree_pitch(ctx: ScaleContext, tonic: int, degree: int) -> int:
    """Return the pitch ``degree`` scale steps away from ``tonic``.

    Degrees wrap into neighbouring octaves, so ``-1`` is the leading tone
    below ``tonic`` and ``7`` is the tonic an octave up.
    """

    intervals = MODE_INTERVALS[ctx.mode]
    octave, index = divmod(degree, len(intervals))
    return tonic + 12 * octave + intervals[index]


def next_scale_pitch(pitch: int, ctx: ScaleContext, direction: int = 1) -> int:
    """Return the next scale degree strictly above (or below) ``pitch``."""

    step = 1 if direction >= 0 else -1
    candidate = pitch + step
    for _ in range(12):
        if ctx.contains(candidate):
            return candidate
        candidate += step
    return pitch + step
