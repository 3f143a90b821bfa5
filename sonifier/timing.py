"""Temporal scaling of a plan onto the requested clip length.

The collaborator's notion of time is loose: a plan for a 30 second video may
end after 19 seconds or run on to 41. :func:`scale_to_duration` stretches or
compresses the whole timeline linearly so the plan ends where the video ends.

Modification summary
--------------------
* Plans already within half a percent of the target are returned unchanged,
  which makes repeated scaling to the same target a no-op.
* The final voice-limiting step runs in trim mode so the 120 ms floor and
  the padding note never push polyphony above two voices.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, List, Optional

from .events import (
    NormalizedEvent,
    VideoAnalysis,
    limit_polyphony,
    plan_end,
    sort_plan,
)

__all__ = [
    "MIN_SCALED_DURATION_MS",
    "scale_to_duration",
    "resolve_target_duration",
]

MIN_SCALED_DURATION_MS = 120

# Relative slack within which a plan counts as already matching the target.
_TOLERANCE = 0.005

# Plans still ending before this fraction of the target get a padding note.
_COVERAGE_RATIO = 0.96

_PAD_DURATION_MS = 2000
_PAD_PITCH = 72
_PAD_VELOCITY = 75


def scale_to_duration(
    events: Iterable[NormalizedEvent], target_ms: Optional[float]
) -> List[NormalizedEvent]:
    """Stretch or compress ``events`` so the plan ends at ``target_ms``.

    Parameters
    ----------
    events:
        Plan to rescale.
    target_ms:
        Desired end time. ``None`` or a non-positive value returns the sorted
        plan unchanged.

    Returns
    -------
    List[NormalizedEvent]
        New plan. Onsets and end times are multiplied by ``target / end`` and
        rounded, durations never fall below 120 ms, and a sustained 2 s note
        ending exactly at the target is appended when the result still ends
        before 96% of it.
    """

    plan = sort_plan(events)
    if not target_ms or target_ms <= 0:
        return plan
    target = int(round(target_ms))
    end = plan_end(plan)

    if end > 0 and abs(end - target) > max(1.0, target * _TOLERANCE):
        factor = target / end
        scaled = []
        for ev in plan:
            start = int(round(ev.start_ms * factor))
            stop = int(round(ev.end_ms * factor))
            scaled.append(
                replace(
                    ev,
                    start_ms=start,
                    duration_ms=max(MIN_SCALED_DURATION_MS, stop - start),
                )
            )
        logging.debug("Scaled plan end %d ms -> %d ms (x%.3f)", end, target, factor)
        plan = scaled

    if plan_end(plan) < target * _COVERAGE_RATIO:
        pad = min(_PAD_DURATION_MS, target)
        logging.debug("Padding plan with a sustained note ending at %d ms", target)
        plan.append(NormalizedEvent(_PAD_PITCH, target - pad, pad, _PAD_VELOCITY))

    return limit_polyphony(plan, mode="trim")


def resolve_target_duration(
    requested_ms: Optional[float], analysis: Optional[VideoAnalysis] = None
) -> Optional[int]:
    """Return the clip length to aim for.

    An explicit request wins, then the video analysis duration. ``None`` means
    the plan keeps whatever length it has.
    """

    if requested_ms is not None and requested_ms > 0:
        return int(round(requested_ms))
    if analysis is not None and analysis.duration_ms > 0:
        return analysis.duration_ms
    return None
