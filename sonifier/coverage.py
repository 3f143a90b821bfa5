"""Coverage enforcement: no silent holes and no onset-free seconds.

Two guarantees are made here and nowhere else, so every plan leaving the
shaping engine has passed through this module:

* **Gap filling** - silence before the first note, between notes and after
  the last note (up to the target duration) is filled with filler notes whose
  lengths are taken greedily from the canonical set, longest first.
* **Onset density** - wherever two consecutive onsets are more than one
  second apart, short ornament notes are inserted so every rolling one second
  window contains at least one onset.

Example
-------
>>> plan = [NormalizedEvent(60, 0, 500), NormalizedEvent(64, 1000, 500)]
>>> [(ev.start_ms, ev.duration_ms) for ev in fill_gaps(plan)]
[(0, 500), (500, 500), (1000, 500)]
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from .dynamics import clamp_velocity
from .events import (
    NormalizedEvent,
    limit_polyphony,
    onset_gaps,
    plan_end,
    sort_plan,
)
from .note_utils import clamp_pitch
from .scale import ScaleContext, snap_to_scale

__all__ = [
    "FILLER_DURATIONS",
    "MAX_FILLERS",
    "MAX_ONSET_GAP_MS",
    "fill_gaps",
    "enforce_onset_density",
    "enforce_coverage",
]

FILLER_DURATIONS: Tuple[int, ...] = (2000, 1000, 500, 250, 125)
MAX_FILLERS = 120
MAX_ONSET_GAP_MS = 1000

# Silences shorter than this are inaudible and left alone.
MIN_GAP_MS = 20

_ORNAMENT_DURATION_MS = 250

logger = logging.getLogger(__name__)


def _split_gap(length: int) -> List[int]:
    """Return filler lengths covering ``length`` ms, longest first."""

    pieces: List[int] = []
    remaining = length
    while remaining >= FILLER_DURATIONS[-1]:
        piece = next(d for d in FILLER_DURATIONS if d <= remaining)
        pieces.append(piece)
        remaining -= piece
    if remaining > 0:
        if pieces:
            pieces[-1] += remaining
        else:
            pieces.append(remaining)
    return pieces


def _filler_pitch(
    before: Optional[NormalizedEvent],
    after: Optional[NormalizedEvent],
    index: int,
    scale: Optional[ScaleContext],
) -> int:
    neighbours = [ev.pitch for ev in (before, after) if ev is not None]
    base = round(sum(neighbours) / len(neighbours)) if neighbours else 60
    pitch = clamp_pitch(base + int(((index % 4) - 1.5) * 2))
    if scale is not None:
        pitch = clamp_pitch(snap_to_scale(pitch, scale))
    return pitch


def fill_gaps(
    events: Iterable[NormalizedEvent],
    target_ms: Optional[float] = None,
    scale: Optional[ScaleContext] = None,
    *,
    max_fillers: int = MAX_FILLERS,
) -> List[NormalizedEvent]:
    """Fill every silent stretch of the timeline with filler notes.

    Parameters
    ----------
    events:
        Plan to complete.
    target_ms:
        Optional clip length. When the plan ends earlier the tail is filled
        too.
    scale:
        Optional detected key; filler pitches are snapped into it.
    max_fillers:
        Safety cap on the number of inserted notes.

    Returns
    -------
    List[NormalizedEvent]
        Sorted plan. Each gap is covered by fillers laid end to end from the
        gap start to the gap end; a remainder shorter than 125 ms lengthens the
        last filler of that gap.
    """

    plan = sort_plan(events)
    if not plan:
        return plan

    gaps: List[Tuple[int, int, Optional[NormalizedEvent], Optional[NormalizedEvent]]] = []
    if plan[0].start_ms >= MIN_GAP_MS:
        gaps.append((0, plan[0].start_ms, None, plan[0]))
    running_end = plan[0].end_ms
    last = plan[0]
    for ev in plan[1:]:
        if ev.start_ms - running_end >= MIN_GAP_MS:
            gaps.append((running_end, ev.start_ms, last, ev))
        if ev.end_ms >= running_end:
            running_end = ev.end_ms
            last = ev
    if target_ms and target_ms - running_end >= MIN_GAP_MS:
        gaps.append((running_end, int(round(target_ms)), last, None))

    fillers: List[NormalizedEvent] = []
    for start, end, before, after in gaps:
        cursor = start
        for length in _split_gap(end - start):
            if len(fillers) >= max_fillers:
                logger.warning("Filler cap of %d reached; coverage incomplete", max_fillers)
                return sort_plan(plan + fillers)
            source = before or after
            velocity = source.velocity if source is not None else 70
            k = len(fillers)
            fillers.append(
                NormalizedEvent(
                    pitch=_filler_pitch(before, after, k, scale),
                    start_ms=cursor,
                    duration_ms=length,
                    velocity=clamp_velocity(velocity + ((k % 3) - 1) * 7),
                )
            )
            cursor += length
    if fillers:
        logger.debug("Inserted %d filler note(s) across %d gap(s)", len(fillers), len(gaps))
    return sort_plan(plan + fillers)


def _sounding_before(plan: Sequence[NormalizedEvent], time_ms: int) -> Optional[NormalizedEvent]:
    previous = [ev for ev in plan if ev.start_ms <= time_ms]
    return previous[-1] if previous else (plan[0] if plan else None)


def enforce_onset_density(
    events: Iterable[NormalizedEvent],
    total_ms: Optional[int] = None,
    scale: Optional[ScaleContext] = None,
    *,
    max_gap_ms: int = MAX_ONSET_GAP_MS,
) -> List[NormalizedEvent]:
    """Insert ornament onsets so no onset-free stretch exceeds ``max_gap_ms``.

    The origin and the plan end (or ``total_ms`` when larger) bound the first
    and last stretch. Inserted notes start strictly inside a stretch and end
    before the plan end, so the plan length is unchanged. Overlaps created by
    an insertion are resolved by trimming the notes already sounding.
    """

    plan = sort_plan(events)
    total = max(plan_end(plan), int(total_ms or 0))
    if total <= 0:
        return plan

    additions: List[NormalizedEvent] = []
    for start, end in onset_gaps(plan, total):
        span = end - start
        if span <= max_gap_ms:
            continue
        count = -(-span // max_gap_ms) - 1
        for j in range(1, count + 1):
            at = start + int(round(span * j / (count + 1)))
            anchor = _sounding_before(plan, at)
            base = anchor.pitch if anchor is not None else 60
            pitch = clamp_pitch(base + ((j % 3) - 1) * 2)
            if scale is not None:
                pitch = clamp_pitch(snap_to_scale(pitch, scale))
            velocity = anchor.velocity - 8 if anchor is not None else 70
            additions.append(
                NormalizedEvent(
                    pitch=pitch,
                    start_ms=at,
                    duration_ms=min(_ORNAMENT_DURATION_MS, max(1, total - at)),
                    velocity=clamp_velocity(velocity),
                )
            )
    if not additions:
        return plan
    logger.debug("Inserted %d ornament onset(s) for onset density", len(additions))
    return limit_polyphony(plan + additions, mode="trim")


def enforce_coverage(
    events: Iterable[NormalizedEvent],
    target_ms: Optional[float] = None,
    scale: Optional[ScaleContext] = None,
) -> List[NormalizedEvent]:
    """Run gap filling followed by onset-density enforcement."""

    filled = fill_gaps(events, target_ms, scale)
    return enforce_onset_density(filled, int(round(target_ms)) if target_ms else None, scale)
