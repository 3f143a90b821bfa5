"""Plan data model and timeline helpers.

A *musical plan* is simply a list of :class:`NormalizedEvent` objects sorted
by ``(start_ms, pitch)``. Every stage of the pipeline receives a plan and
returns a new one; events are frozen dataclasses so a stage can never modify
the list it was handed.

Besides the dataclasses this module contains the small timeline utilities the
shaping passes share: sorting, measuring, canonical duration bucketing and the
voice limiter that keeps at most two notes sounding at once.

Design Notes
------------
Intervals are half-open: an event sounds during ``[start_ms, end_ms)`` so two
notes that merely touch do not overlap. Because the number of sounding notes
can only increase at an onset, checking each onset against the notes that are
still ringing is enough to bound polyphony over the whole timeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .note_utils import pitch_to_name

__all__ = [
    "NOTE_TYPE_MS",
    "CANONICAL_DURATIONS",
    "MAX_VOICES",
    "NormalizedEvent",
    "IntensitySegment",
    "VideoAnalysis",
    "sort_plan",
    "plan_end",
    "unique_pitches",
    "unique_durations",
    "snap_duration",
    "note_type_for",
    "active_at",
    "fits",
    "max_polyphony",
    "limit_polyphony",
    "onset_gaps",
]

# Rhythmic categories understood by the collaborator and the fixed number of
# milliseconds each one lasts at the implied 120 BPM.
NOTE_TYPE_MS: Dict[str, int] = {
    "sixteenth": 125,
    "eighth": 250,
    "quarter": 500,
    "half": 1000,
    "whole": 2000,
}

CANONICAL_DURATIONS: Tuple[int, ...] = (125, 250, 500, 1000, 2000)

# Upper bound on simultaneously sounding notes in a finished plan.
MAX_VOICES = 2

# Bucket boundaries used to map a raw millisecond duration onto a category.
_DURATION_BUCKETS: Tuple[Tuple[int, int], ...] = (
    (190, 125),
    (375, 250),
    (750, 500),
    (1500, 1000),
)


@dataclass(frozen=True)
class NormalizedEvent:
    """Single note of a musical plan.

    Attributes
    ----------
    pitch:
        MIDI pitch index.
    start_ms:
        Onset in milliseconds from the start of the clip.
    duration_ms:
        Length in milliseconds. Normalizer output is always one of
        :data:`CANONICAL_DURATIONS`; shaping passes may derive other lengths.
    velocity:
        Loudness in the MIDI ``0-127`` scale.
    """

    pitch: int
    start_ms: int
    duration_ms: int
    velocity: int = 80

    @property
    def end_ms(self) -> int:
        return self.start_ms + self.duration_ms

    @property
    def name(self) -> str:
        return pitch_to_name(self.pitch)

    @property
    def note_type(self) -> str:
        return note_type_for(self.duration_ms)

    def to_dict(self) -> Dict[str, object]:
        """Return the symbolic form reported back to API callers."""

        return {
            "noteName": self.name,
            "pitch": self.pitch,
            "time": self.start_ms,
            "duration": self.duration_ms,
            "noteType": self.note_type,
            "velocity": self.velocity,
        }


@dataclass(frozen=True)
class IntensitySegment:
    """Time span of the source video with its perceived energy."""

    start_ms: int
    end_ms: int
    intensity: float = 0.5
    mood: str = "neutral"
    motion_speed: int = 5
    action: str = ""

    def contains(self, time_ms: float) -> bool:
        return self.start_ms <= time_ms < self.end_ms

    def to_dict(self) -> Dict[str, object]:
        return {
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "intensity": self.intensity,
            "mood": self.mood,
            "motionSpeed": self.motion_speed,
            "action": self.action,
        }


@dataclass(frozen=True)
class VideoAnalysis:
    """Normalized segment analysis covering ``[0, duration_ms]``."""

    duration_ms: int
    segments: Tuple[IntensitySegment, ...] = field(default_factory=tuple)
    notes: str = ""

    def segment_at(self, time_ms: float) -> Optional[IntensitySegment]:
        return segment_at(self.segments, time_ms)

    def to_dict(self) -> Dict[str, object]:
        return {
            "durationMs": self.duration_ms,
            "segments": [seg.to_dict() for seg in self.segments],
            "notes": self.notes,
        }


def segment_at(
    segments: Sequence[IntensitySegment], time_ms: float
) -> Optional[IntensitySegment]:
    """Return the segment containing ``time_ms``.

    Times past the final segment resolve to the final segment so late notes
    still inherit the closing mood. ``None`` is returned only when there are
    no segments at all.
    """

    if not segments:
        return None
    for seg in segments:
        if seg.contains(time_ms):
            return seg
    if time_ms < segments[0].start_ms:
        return segments[0]
    return segments[-1]


def sort_plan(events: Iterable[NormalizedEvent]) -> List[NormalizedEvent]:
    """Return ``events`` ordered by onset then pitch."""

    return sorted(events, key=lambda ev: (ev.start_ms, ev.pitch))


def plan_end(events: Iterable[NormalizedEvent]) -> int:
    """Return the latest end time in ``events`` (``0`` for an empty plan)."""

    return max((ev.end_ms for ev in events), default=0)


def unique_pitches(events: Iterable[NormalizedEvent]) -> int:
    return len({ev.pitch for ev in events})


def unique_durations(events: Iterable[NormalizedEvent]) -> int:
    return len({ev.duration_ms for ev in events})


def snap_duration(duration_ms: float) -> int:
    """Map an arbitrary positive duration onto the nearest rhythmic bucket."""

    for limit, value in _DURATION_BUCKETS:
        if duration_ms < limit:
            return value
    return 2000


def note_type_for(duration_ms: float) -> str:
    """Return the rhythmic category name for ``duration_ms``."""

    snapped = snap_duration(duration_ms)
    for name, value in NOTE_TYPE_MS.items():
        if value == snapped:
            return name
    return "whole"


def active_at(
    events: Iterable[NormalizedEvent], time_ms: int
) -> List[NormalizedEvent]:
    """Return events sounding at ``time_ms`` (half-open intervals)."""

    return [ev for ev in events if ev.start_ms <= time_ms < ev.end_ms]


def fits(
    events: Sequence[NormalizedEvent],
    candidate: NormalizedEvent,
    limit: int = MAX_VOICES,
) -> bool:
    """Return ``True`` when adding ``candidate`` keeps polyphony within ``limit``.

    Only onsets inside the candidate's span (including its own) can become new
    peaks, so those are the instants checked.
    """

    start, end = candidate.start_ms, candidate.end_ms
    overlapping = [ev for ev in events if ev.start_ms < end and ev.end_ms > start]
    if len(overlapping) < limit:
        return True
    checkpoints = {start} | {ev.start_ms for ev in overlapping if ev.start_ms > start}
    for t in checkpoints:
        sounding = sum(1 for ev in overlapping if ev.start_ms <= t < ev.end_ms)
        if sounding + 1 > limit:
            return False
    return True


def max_polyphony(events: Iterable[NormalizedEvent]) -> int:
    """Return the largest number of events sounding at the same instant."""

    boundaries: List[Tuple[int, int]] = []
    for ev in events:
        if ev.duration_ms <= 0:
            continue
        boundaries.append((ev.start_ms, 1))
        boundaries.append((ev.end_ms, -1))
    # Ends sort before starts at the same instant because intervals are
    # half-open.
    boundaries.sort(key=lambda item: (item[0], item[1]))
    peak = current = 0
    for _, delta in boundaries:
        current += delta
        peak = max(peak, current)
    return peak


def limit_polyphony(
    events: Iterable[NormalizedEvent],
    limit: int = MAX_VOICES,
    *,
    mode: str = "drop",
) -> List[NormalizedEvent]:
    """Return a copy of ``events`` where at most ``limit`` notes overlap.

    Parameters
    ----------
    events:
        Plan to scan; it does not need to be sorted.
    limit:
        Maximum number of simultaneously sounding notes.
    mode:
        ``"drop"`` discards any event whose onset would exceed the limit.
        ``"trim"`` instead shortens the earliest-ending notes already sounding
        so they stop at the new onset, and only drops the new event when every
        sounding note started at the very same instant. Trim mode therefore
        never removes an onset time from the plan.

    Returns
    -------
    List[NormalizedEvent]
        Sorted plan satisfying the polyphony bound.
    """

    if mode not in ("drop", "trim"):
        raise ValueError("mode must be 'drop' or 'trim'")
    accepted: List[NormalizedEvent] = []
    dropped = 0
    for ev in sort_plan(events):
        sounding = [
            (idx, other)
            for idx, other in enumerate(accepted)
            if other.end_ms > ev.start_ms
        ]
        if len(sounding) < limit:
            accepted.append(ev)
            continue
        if mode == "drop":
            dropped += 1
            continue
        excess = len(sounding) - limit + 1
        trimmable = sorted(
            (item for item in sounding if item[1].start_ms < ev.start_ms),
            key=lambda item: (item[1].end_ms, item[1].start_ms),
        )
        if len(trimmable) < excess:
            dropped += 1
            continue
        for idx, other in trimmable[:excess]:
            accepted[idx] = NormalizedEvent(
                other.pitch,
                other.start_ms,
                ev.start_ms - other.start_ms,
                other.velocity,
            )
        accepted.append(ev)
    if dropped:
        logging.debug("Voice limiter (%s) dropped %d event(s)", mode, dropped)
    return accepted


def onset_gaps(
    events: Sequence[NormalizedEvent], total_ms: Optional[int] = None
) -> List[Tuple[int, int]]:
    """Return ``(from, to)`` spans between consecutive onsets.

    The origin is treated as the first boundary and ``total_ms`` (the plan end
    when omitted) as the last, so the result describes every stretch of the
    timeline that has to be checked for a missing onset.
    """

    if total_ms is None:
        total_ms = plan_end(events)
    points = sorted({ev.start_ms for ev in events})
    bounds = [0] + points + [total_ms]
    return [(a, b) for a, b in zip(bounds, bounds[1:]) if b > a]
