"""Turn untrusted collaborator output into validated plan data.

Two kinds of payload arrive from the generative collaborator: a list of
candidate note events and a segment-by-segment analysis of the video. Neither
is trusted. This module converts both into the dataclasses from
:mod:`sonifier.events`, dropping what cannot be understood and clamping what
can.

Example
-------
>>> from sonifier.normalizer import normalize_events
>>> normalize_events([{"noteName": "C4", "time": 0, "noteType": "quarter"}])
[NormalizedEvent(pitch=60, start_ms=0, duration_ms=500, velocity=80)]

Design Notes
------------
``normalize_events`` never raises and never returns an empty list. When
nothing survives validation a deterministic 24-note scaffold is returned
instead, so downstream shaping always has material to work with.
"""

from __future__ import annotations

import logging
import math
import numbers
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .errors import ParseError
from .events import (
    NOTE_TYPE_MS,
    IntensitySegment,
    NormalizedEvent,
    VideoAnalysis,
    snap_duration,
    sort_plan,
)
from .note_utils import clamp_pitch, name_to_pitch

__all__ = [
    "DEFAULT_SPAN_MS",
    "FALLBACK_EVENT_COUNT",
    "normalize_event",
    "normalize_events",
    "fallback_events",
    "normalize_segments",
    "normalize_analysis",
    "fallback_segments",
]

logger = logging.getLogger(__name__)

DEFAULT_SPAN_MS = 8000
FALLBACK_EVENT_COUNT = 24

MIN_VELOCITY = 40
MAX_VELOCITY = 110
DEFAULT_VELOCITY = 80

_MAX_MOOD_CHARS = 24
_MAX_ACTION_CHARS = 48


def _finite_number(value: Any) -> Optional[float]:
    """Return ``value`` as a float when it is a real, finite number."""

    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return None
    value = float(value)
    if not math.isfinite(value):
        return None
    return value


def _parse_pitch(raw: Mapping[str, Any]) -> int:
    """Resolve the pitch of ``raw`` from its primary or legacy name field."""

    errors = []
    for key in ("noteName", "pitchName", "pitch"):
        name = raw.get(key)
        if name is None:
            continue
        if isinstance(name, str):
            try:
                return name_to_pitch(name)
            except ParseError as exc:
                errors.append(str(exc))
                continue
        number = _finite_number(name)
        if number is not None and 0 <= number <= 127:
            # Some responses put the MIDI number straight into ``pitch``.
            return int(round(number))
        errors.append(f"unusable pitch value {name!r}")
    raise ParseError("; ".join(errors) or "event has no pitch name")


def _parse_duration(raw: Mapping[str, Any]) -> int:
    label = raw.get("noteType", raw.get("noteTypeLabel"))
    if isinstance(label, str) and label.strip().lower() in NOTE_TYPE_MS:
        return NOTE_TYPE_MS[label.strip().lower()]
    duration = _finite_number(raw.get("duration"))
    if duration is not None and duration > 0:
        return snap_duration(duration)
    return NOTE_TYPE_MS["quarter"]


def _parse_velocity(raw: Mapping[str, Any]) -> int:
    velocity = _finite_number(raw.get("velocity"))
    if velocity is None:
        return DEFAULT_VELOCITY
    return max(MIN_VELOCITY, min(MAX_VELOCITY, int(round(velocity))))


def normalize_event(raw: Mapping[str, Any]) -> NormalizedEvent:
    """Validate a single candidate event.

    Parameters
    ----------
    raw:
        Mapping with any of ``noteName``/``pitch``, ``time``/``startMs``,
        ``noteType``, ``duration`` and ``velocity``.

    Returns
    -------
    NormalizedEvent
        Event with a clamped pitch, non-negative integer start, canonical
        duration and clamped velocity.

    Raises
    ------
    ParseError
        If the pitch cannot be resolved or the start time is missing or not a
        finite number.
    """

    if not isinstance(raw, Mapping):
        raise ParseError(f"event must be an object, got {type(raw).__name__}")
    pitch = clamp_pitch(_parse_pitch(raw))
    start = _finite_number(raw.get("time", raw.get("startMs")))
    if start is None:
        raise ParseError(f"event has no usable start time: {raw!r}")
    return NormalizedEvent(
        pitch=pitch,
        start_ms=max(0, int(round(start))),
        duration_ms=_parse_duration(raw),
        velocity=_parse_velocity(raw),
    )


def fallback_events(span_ms: Optional[float] = None) -> List[NormalizedEvent]:
    """Return the deterministic 24-note scaffold used when input is unusable.

    The pitches climb in fourths inside a 16-semitone window above middle C,
    durations cycle through short, medium and long values and velocities
    follow an intro, build, climax and resolution contour.
    """

    span = span_ms if span_ms and span_ms > 0 else DEFAULT_SPAN_MS
    step = span / FALLBACK_EVENT_COUNT
    events = []
    for i in range(FALLBACK_EVENT_COUNT):
        category = i % 6
        if category in (0, 1, 2):
            raw_duration = 220 + (i % 3) * 40
        elif category in (3, 4):
            raw_duration = 520 + (i % 4) * 80
        else:
            raw_duration = 1200
        phase = i / FALLBACK_EVENT_COUNT
        if phase < 0.2:
            velocity = 60 + (i % 4) * 4
        elif phase < 0.6:
            velocity = 75 + (i % 5) * 5
        elif phase < 0.85:
            velocity = 90 + (i % 3) * 6
        else:
            velocity = 70 + (i % 4) * 5
        events.append(
            NormalizedEvent(
                pitch=60 + (i * 5) % 16,
                start_ms=int(round(i * step)),
                duration_ms=snap_duration(raw_duration),
                velocity=max(MIN_VELOCITY, min(MAX_VELOCITY, velocity)),
            )
        )
    return events


def normalize_events(
    raw_events: Optional[Iterable[Any]], *, span_ms: Optional[float] = None
) -> List[NormalizedEvent]:
    """Validate ``raw_events`` and return a sorted, never-empty plan.

    Events whose pitch or start time cannot be understood are dropped and
    logged at ``DEBUG`` level. If nothing survives, :func:`fallback_events`
    supplies a scaffold spread over ``span_ms`` (8 s by default).
    """

    events: List[NormalizedEvent] = []
    dropped = 0
    for raw in raw_events or []:
        try:
            events.append(normalize_event(raw))
        except ParseError as exc:
            dropped += 1
            logger.debug("Dropping candidate event: %s", exc)
    if dropped:
        logger.info("Dropped %d malformed candidate event(s)", dropped)
    if not events:
        logger.warning("No usable candidate events; using fallback scaffold")
        return fallback_events(span_ms)
    return sort_plan(events)


def fallback_segments(duration_ms: int) -> List[IntensitySegment]:
    """Return eight evenly spaced segments with a rising energy arc."""

    count = 8
    span = duration_ms / count
    moods = ("calm", "building", "peak")
    segments = []
    for i in range(count):
        intensity = round(0.3 + 0.7 * (i / (count - 1)), 3)
        start = int(round(i * span))
        end = duration_ms if i == count - 1 else int(round((i + 1) * span))
        segments.append(
            IntensitySegment(
                start_ms=start,
                end_ms=end,
                intensity=intensity,
                mood=moods[min(len(moods) - 1, i * len(moods) // count)],
                motion_speed=int(round(intensity * 8)) + 1,
            )
        )
    return segments


def normalize_segments(
    raw_segments: Optional[Iterable[Any]], duration_ms: int
) -> List[IntensitySegment]:
    """Validate, order and stitch raw analysis segments.

    Overlaps are trimmed off the later segment (which is dropped if nothing is
    left) and gaps are bridged by stretching the earlier segment, so the
    result is contiguous. The first segment is pinned to
    ``0`` and a final segment ending before 97% of ``duration_ms`` is
    extended to the full duration.
    """

    cleaned: List[IntensitySegment] = []
    for raw in raw_segments or []:
        if not isinstance(raw, Mapping):
            continue
        start = _finite_number(raw.get("startMs"))
        end = _finite_number(raw.get("endMs"))
        if start is None or end is None or end <= start:
            continue
        intensity = _finite_number(raw.get("intensity"))
        intensity = 0.5 if intensity is None else max(0.0, min(1.0, intensity))
        mood = raw.get("mood")
        mood = mood.strip()[:_MAX_MOOD_CHARS] if isinstance(mood, str) and mood.strip() else "neutral"
        action = raw.get("action")
        action = action.strip()[:_MAX_ACTION_CHARS] if isinstance(action, str) else ""
        motion = _finite_number(raw.get("motionSpeed", raw.get("motion_speed")))
        if motion is None:
            motion = round(intensity * 8) + 1
        cleaned.append(
            IntensitySegment(
                start_ms=max(0, int(round(start))),
                end_ms=int(round(end)),
                intensity=intensity,
                mood=mood,
                motion_speed=max(1, min(10, int(round(motion)))),
                action=action,
            )
        )

    cleaned.sort(key=lambda seg: seg.start_ms)
    merged: List[IntensitySegment] = []
    for seg in cleaned:
        if merged:
            prev = merged[-1]
            if seg.start_ms < prev.end_ms:
                seg = _with_bounds(seg, prev.end_ms, seg.end_ms)
            elif seg.start_ms > prev.end_ms:
                merged[-1] = _with_bounds(prev, prev.start_ms, seg.start_ms)
        if seg.end_ms > seg.start_ms:
            merged.append(seg)

    if not merged:
        return fallback_segments(duration_ms)

    if merged[0].start_ms != 0:
        merged[0] = _with_bounds(merged[0], 0, merged[0].end_ms)
    last = merged[-1]
    if last.end_ms < duration_ms * 0.97:
        merged[-1] = _with_bounds(last, last.start_ms, duration_ms)
    return merged


def _with_bounds(seg: IntensitySegment, start: int, end: int) -> IntensitySegment:
    return IntensitySegment(
        start_ms=start,
        end_ms=end,
        intensity=seg.intensity,
        mood=seg.mood,
        motion_speed=seg.motion_speed,
        action=seg.action,
    )


def normalize_analysis(
    raw: Optional[Mapping[str, Any]], target_ms: Optional[float] = None
) -> VideoAnalysis:
    """Build a :class:`VideoAnalysis` from a collaborator payload.

    ``target_ms`` wins over the reported duration. Without either the end of
    the last segment is used, and an 8 second default covers the case where
    even that is missing.
    """

    raw = raw if isinstance(raw, Mapping) else {}
    segments_raw: Sequence[Any] = raw.get("segments") or []
    duration = _finite_number(target_ms)
    if duration is None or duration <= 0:
        duration = _finite_number(raw.get("durationMs"))
    if duration is None or duration <= 0:
        ends = [
            _finite_number(seg.get("endMs"))
            for seg in segments_raw
            if isinstance(seg, Mapping)
        ]
        ends = [end for end in ends if end is not None and end > 0]
        duration = max(ends) if ends else DEFAULT_SPAN_MS
    duration_ms = int(round(duration))
    notes = raw.get("notes")
    return VideoAnalysis(
        duration_ms=duration_ms,
        segments=tuple(normalize_segments(segments_raw, duration_ms)),
        notes=notes if isinstance(notes, str) else "",
    )
