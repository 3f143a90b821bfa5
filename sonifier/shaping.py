"""Shaping engine: ordered plan-to-plan transformation passes.

Raw collaborator output tends to be timid. It sits around middle C, repeats
the same four notes and uses one or two rhythmic values. The shaping engine
turns such a plan into something worth listening to while tying it to the
energy of the video. It is an ordered list of small pass objects; each one
receives a plan and returns a new plan, so passes can be tested in isolation
and reordered or removed without touching the others.

Pass order (see :func:`default_passes`)::

    early monotony guard -> register mapping -> enrichment
    -> pattern breaker -> minimum density -> motif / diversity
    -> rhythmic regeneration -> mid-pipeline scale
    -> coverage enforcement -> register breadth

Example
-------
>>> engine = ShapingEngine()
>>> ctx = ShapingContext(scale=detect_scale(plan), target_ms=8000,
...                      rng=random.Random(7))
>>> shaped = engine.run(plan, ctx)

Design Notes
------------
All randomness flows through ``ShapingContext.rng`` so a seeded request is
reproducible. Passes that add notes after the enrichment pass check the
two-voice limit before inserting, or fall back to trimming the notes already
sounding, so polyphony never exceeds :data:`~sonifier.events.MAX_VOICES`.
"""

from __future__ import annotations

import logging
import math
import random
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from .coverage import enforce_coverage
from .dynamics import clamp_velocity, humanize_velocities, phase_velocity
from .events import (
    IntensitySegment,
    NormalizedEvent,
    fits,
    limit_polyphony,
    plan_end,
    segment_at,
    sort_plan,
    unique_durations,
    unique_pitches,
)
from .note_utils import clamp_pitch
from .rhythm_engine import motion_gap_factor, motion_rhythm
from .scale import ScaleContext, degree_pitch, next_scale_pitch, snap_to_scale
from .timing import scale_to_duration

__all__ = [
    "ShapingContext",
    "ShapingPass",
    "EarlyMonotonyGuard",
    "RegisterMapping",
    "Enrichment",
    "PatternBreaker",
    "MinimumDensity",
    "MotifDiversity",
    "RhythmicRegeneration",
    "MidPipelineScale",
    "CoverageEnforcement",
    "RegisterBreadth",
    "ShapingEngine",
    "default_passes",
    "synthetic_segments",
]

logger = logging.getLogger(__name__)

# Monotony thresholds shared by several passes.
MONOTONE_PITCHES = 4
MONOTONE_DURATIONS = 2


@dataclass
class ShapingContext:
    """Per-request inputs shared by every pass.

    Attributes
    ----------
    scale:
        Detected key; passes snap new pitches into it.
    segments:
        Intensity segments supplied by the video analysis. Empty when no
        analysis is available.
    target_ms:
        Desired clip length or ``None`` to keep the plan's own length.
    rng:
        Random source for every stochastic choice in the engine.
    diagnostics:
        Filled in by :class:`ShapingEngine` with per-pass statistics.
    """

    scale: ScaleContext
    segments: Tuple[IntensitySegment, ...] = ()
    target_ms: Optional[int] = None
    rng: random.Random = field(default_factory=random.Random)
    diagnostics: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def intensity_at(self, time_ms: float) -> float:
        seg = segment_at(self.segments, time_ms)
        return seg.intensity if seg is not None else 0.5


class ShapingPass:
    """Base class for one plan transformation."""

    name = "pass"

    def apply(
        self, events: List[NormalizedEvent], ctx: ShapingContext
    ) -> List[NormalizedEvent]:
        raise NotImplementedError


class EarlyMonotonyGuard(ShapingPass):
    """Add passing tones when the raw plan is pitch- or rhythm-starved."""

    name = "early_monotony_guard"
    max_injections = 6

    def apply(self, events, ctx):
        if (
            unique_pitches(events) > MONOTONE_PITCHES
            and unique_durations(events) > MONOTONE_DURATIONS
        ):
            return events
        additions = []
        for i, ev in enumerate(events[: self.max_injections]):
            additions.append(
                NormalizedEvent(
                    pitch=clamp_pitch(ev.pitch + (5 if i % 2 else -3)),
                    start_ms=ev.start_ms + ev.duration_ms // 2,
                    duration_ms=max(160, int(round(ev.duration_ms * 0.35))),
                    velocity=clamp_velocity(ev.velocity + 10),
                )
            )
        return events + additions


# Register bands as (low, high) MIDI pitches selected by local intensity.
REGISTER_BANDS: Dict[str, Tuple[int, int]] = {
    "low": (52, 60),
    "mid": (57, 69),
    "high": (64, 76),
}
COMFORT_BAND = (60, 71)


def register_band(intensity: float) -> Tuple[int, int]:
    if intensity < 0.33:
        return REGISTER_BANDS["low"]
    if intensity < 0.66:
        return REGISTER_BANDS["mid"]
    return REGISTER_BANDS["high"]


class RegisterMapping(ShapingPass):
    """Pull pitches toward a register chosen by the local intensity."""

    name = "register_mapping"
    max_passing_tones = 6
    max_octave_shifts = 6

    def apply(self, events, ctx):
        if not events:
            return events
        monotone = unique_pitches(events) <= MONOTONE_PITCHES
        mapped: List[NormalizedEvent] = []
        for i, ev in enumerate(events):
            intensity = ctx.intensity_at(ev.start_ms)
            low, high = register_band(intensity)
            center = (low + high) / 2
            if monotone:
                pitch = center + ((i % 5) - 2) * 2 + (intensity - 0.5) * 8
            else:
                pitch = ev.pitch * 0.6 + center * 0.4 + (intensity - 0.5) * 6
            pitch = clamp_pitch(snap_to_scale(int(round(pitch)), ctx.scale))
            mapped.append(replace(ev, pitch=pitch))

        n = len(mapped)
        if unique_pitches(mapped) < min(8, math.ceil(n / 3)):
            stride = max(2, n // 10)
            additions = []
            for ev in mapped[::stride][: self.max_passing_tones]:
                additions.append(
                    NormalizedEvent(
                        pitch=clamp_pitch(next_scale_pitch(ev.pitch, ctx.scale)),
                        start_ms=ev.start_ms + ev.duration_ms // 2,
                        duration_ms=max(150, int(round(ev.duration_ms * 0.4))),
                        velocity=clamp_velocity(ev.velocity - 4),
                    )
                )
            mapped.extend(additions)

        return self._spread_comfort_band(mapped, ctx)

    def _spread_comfort_band(self, events, ctx):
        low, high = COMFORT_BAND
        in_band = [i for i, ev in enumerate(events) if low <= ev.pitch <= high]
        if len(in_band) <= 0.55 * len(events):
            return events
        shifted = list(events)
        stride = max(1, len(in_band) // self.max_octave_shifts)
        moves = 0
        for i in in_band[::stride]:
            if moves >= self.max_octave_shifts:
                break
            ev = shifted[i]
            for octave in (12, -12) if ctx.rng.random() < 0.5 else (-12, 12):
                candidate = ev.pitch + octave
                if not low <= candidate <= high and 36 <= candidate <= 90:
                    shifted[i] = replace(ev, pitch=candidate)
                    moves += 1
                    break
        return shifted


class Enrichment(ShapingPass):
    """Subdivide long notes, bridge gaps, add harmony and humanize velocity."""

    name = "enrichment"
    max_events = 80

    def apply(self, events, ctx):
        base = sort_plan(events)
        additions: List[NormalizedEvent] = []

        for i, ev in enumerate(base):
            if ev.duration_ms > 1100:
                additions.append(
                    NormalizedEvent(
                        pitch=clamp_pitch(ev.pitch + (2 if i % 2 == 0 else -2)),
                        start_ms=ev.start_ms + ev.duration_ms // 2,
                        duration_ms=max(180, int(round(ev.duration_ms * 0.3))),
                        velocity=clamp_velocity(ev.velocity + 5),
                    )
                )

        running_end = base[0].end_ms if base else 0
        previous = base[0] if base else None
        for i, ev in enumerate(base[1:]):
            gap = ev.start_ms - running_end
            if gap > 600 and previous is not None:
                additions.append(
                    NormalizedEvent(
                        pitch=clamp_pitch(previous.pitch + (5 if i % 2 == 0 else -3)),
                        start_ms=running_end + 120,
                        duration_ms=min(400, gap - 200),
                        velocity=clamp_velocity(previous.velocity + 8, 50, 100),
                    )
                )
            if ev.end_ms >= running_end:
                running_end = ev.end_ms
                previous = ev

        for i in range(0, len(base), 4):
            ev = base[i]
            interval = 4 if (i // 4) % 2 == 0 else 7
            if ev.pitch + interval <= 84:
                additions.append(
                    NormalizedEvent(
                        pitch=ev.pitch + interval,
                        start_ms=ev.start_ms + 10,
                        duration_ms=max(150, int(round(ev.duration_ms * 0.55))),
                        velocity=clamp_velocity(ev.velocity - 5, 45, 100),
                    )
                )

        # Original material always survives the cap; only additions are cut.
        additions = sort_plan(additions)[: max(0, self.max_events - len(base))]
        merged = humanize_velocities(base + additions, ctx.rng)
        return limit_polyphony(merged, mode="drop")


class PatternBreaker(ShapingPass):
    """Break an exact repeat of the opening four pitches."""

    name = "pattern_breaker"

    def apply(self, events, ctx):
        if len(events) < 8:
            return events
        if [ev.pitch for ev in events[:4]] != [ev.pitch for ev in events[4:8]]:
            return events
        broken = list(events)
        for i in range(4, 8):
            ev = broken[i]
            offset, factor = (3, 0.6) if i % 2 == 0 else (-2, 0.95)
            # Never lengthen a note here; the voice limit has already run.
            duration = max(min(ev.duration_ms, 150), int(round(ev.duration_ms * factor)))
            broken[i] = replace(
                ev, pitch=clamp_pitch(ev.pitch + offset), duration_ms=duration
            )
        logger.debug("Broke repeated opening pattern")
        return broken


class MinimumDensity(ShapingPass):
    """Top sparse plans up to one event per second of target duration."""

    name = "minimum_density"

    def apply(self, events, ctx):
        if not ctx.target_ms or not events:
            return events
        required = math.ceil(ctx.target_ms / 1000)
        if len(events) >= required:
            return events
        plan = list(events)
        taken = {(ev.start_ms, ev.pitch) for ev in plan}
        anchors = list(events)
        attempt = 0
        while len(plan) < required and attempt < required * 4:
            anchor = anchors[(attempt * 7) % len(anchors)]
            candidate = NormalizedEvent(
                pitch=clamp_pitch(
                    snap_to_scale(anchor.pitch + ((attempt % 3) - 1) * 2, ctx.scale)
                ),
                start_ms=anchor.start_ms + anchor.duration_ms // 2,
                duration_ms=180 + (attempt % 4) * 40,
                velocity=clamp_velocity(anchor.velocity + (4 if attempt % 2 else -4)),
            )
            attempt += 1
            if (candidate.start_ms, candidate.pitch) in taken or not fits(plan, candidate):
                continue
            plan.append(candidate)
            taken.add((candidate.start_ms, candidate.pitch))
        return plan


def synthetic_segments(total_ms: int) -> Tuple[IntensitySegment, ...]:
    """Return quartile segments with a calm, build, peak, resolve arc."""

    total = max(4, int(total_ms))
    shape = (("calm", 0.3), ("build", 0.5), ("peak", 0.8), ("resolve", 0.4))
    bounds = [int(round(total * q / 4)) for q in range(5)]
    return tuple(
        IntensitySegment(
            start_ms=bounds[i],
            end_ms=bounds[i + 1],
            intensity=intensity,
            mood=mood,
            motion_speed=int(round(intensity * 8)) + 1,
        )
        for i, (mood, intensity) in enumerate(shape)
    )


def motif_target(anchor: int, motif: Sequence[int], step: int) -> int:
    """Return the pitch the ``step``-th note of a repeated motif aims for.

    Each repetition drifts the step by 2 semitones in the direction of its
    interval, so rising steps climb and falling or repeated steps sink.
    """

    interval = motif[step % len(motif)]
    drift = 2 if interval > 0 else -2
    return anchor + interval + (step // len(motif)) * drift


class MotifDiversity(ShapingPass):
    """Imprint segment motifs, cap pitch repetition and guarantee some leaps."""

    name = "motif_diversity"
    motif_pool_size = 8
    motif_steps = (-7, -5, -4, -3, -2, -1, 1, 2, 3, 4, 5, 7)
    replacement_offsets = (-9, -7, -5, -4, -3, -2, 2, 3, 4, 5, 7, 9)
    histogram_share = 0.18

    def _motif(self, rng: random.Random) -> List[int]:
        length = rng.randint(3, 6)
        return [0] + [rng.choice(self.motif_steps) for _ in range(length - 1)]

    def apply(self, events, ctx):
        if not events:
            return events
        plan = list(events)
        segments = ctx.segments or synthetic_segments(ctx.target_ms or plan_end(plan))
        motifs = [self._motif(ctx.rng) for _ in range(self.motif_pool_size)]

        for k, seg in enumerate(segments):
            motif = motifs[k % len(motifs)]
            idxs = [i for i, ev in enumerate(plan) if seg.contains(ev.start_ms)]
            if len(idxs) < len(motif):
                continue
            anchor = plan[idxs[0]].pitch
            for j, idx in enumerate(idxs[: 2 * len(motif)]):
                target = motif_target(anchor, motif, j)
                blended = 0.6 * plan[idx].pitch + 0.4 * target
                plan[idx] = replace(plan[idx], pitch=clamp_pitch(blended))

        plan = self._balance_histogram(plan)
        plan = self._ensure_leaps(plan)
        return self._jitter(plan)

    def _balance_histogram(self, plan):
        cap = max(1, int(len(plan) * self.histogram_share))
        counts = Counter(ev.pitch for ev in plan)
        pool = sorted(
            {
                p + d
                for p in counts
                for d in self.replacement_offsets
                if 48 <= p + d <= 84
            }
        )
        balanced = list(plan)
        for i, ev in enumerate(balanced):
            if counts[ev.pitch] <= cap:
                continue
            free = [p for p in pool if counts[p] < cap]
            if not free:
                break
            new_pitch = min(free, key=lambda p: (abs(p - ev.pitch), p))
            counts[ev.pitch] -= 1
            counts[new_pitch] += 1
            balanced[i] = replace(ev, pitch=new_pitch)
        return balanced

    @staticmethod
    def _count_leaps(plan) -> int:
        return sum(1 for a, b in zip(plan, plan[1:]) if abs(b.pitch - a.pitch) >= 6)

    def _ensure_leaps(self, plan):
        required = max(3, int(round(len(plan) / 20)))
        leapt = list(plan)
        i = 4
        while self._count_leaps(leapt) < required and i < len(leapt):
            ev = leapt[i]
            shift = 7 if ev.pitch >= leapt[i - 1].pitch else -7
            candidate = ev.pitch + shift
            if not 36 <= candidate <= 96:
                candidate = ev.pitch - shift
            leapt[i] = replace(ev, pitch=candidate)
            i += 5
        return leapt

    def _jitter(self, plan):
        jittered = list(plan)
        for i in range(1, len(jittered) - 2):
            delta = ((i * 37) % 5) - 2
            if not delta:
                continue
            ev = jittered[i]
            moved = replace(ev, start_ms=max(0, ev.start_ms + delta))
            if fits(jittered[:i] + jittered[i + 1:], moved):
                jittered[i] = moved
        return jittered


class RhythmicRegeneration(ShapingPass):
    """Rebuild a monotone plan segment by segment from motion data."""

    name = "rhythmic_regeneration"

    def apply(self, events, ctx):
        if not ctx.segments or not events:
            return events
        if unique_pitches(events) > MONOTONE_PITCHES:
            return events
        mean_duration = sum(ev.duration_ms for ev in events) / len(events)
        if unique_durations(events) > MONOTONE_DURATIONS and mean_duration <= 800:
            return events

        rebuilt = limit_polyphony(self._rebuild(ctx), mode="drop")
        if unique_pitches(rebuilt) > unique_pitches(events) and len(rebuilt) >= 0.8 * len(events):
            logger.info(
                "Regenerated monotone plan: %d -> %d events, %d -> %d pitches",
                len(events),
                len(rebuilt),
                unique_pitches(events),
                unique_pitches(rebuilt),
            )
            return rebuilt
        logger.debug("Regeneration rejected; keeping original plan")
        return events

    def _rebuild(self, ctx: ShapingContext) -> List[NormalizedEvent]:
        rng = ctx.rng
        tonic = 60 + ctx.scale.root_pitch_class
        total = max(1, ctx.target_ms or ctx.segments[-1].end_ms)
        rebuilt: List[NormalizedEvent] = []
        for g, seg in enumerate(ctx.segments):
            length = seg.end_ms - seg.start_ms
            motion = seg.motion_speed
            count = max(2, int(round((0.6 + motion * 0.55) * length / 1000)))
            durations = motion_rhythm(motion, rng).generate(count)
            if motion >= 8:
                octave = 2
            elif motion >= 6:
                octave = 1
            elif motion <= 2:
                octave = -1
            else:
                octave = 0
            lift = 2 if "peak" in seg.mood.lower() else 0
            gap_factor = motion_gap_factor(motion)
            cursor = seg.start_ms
            degree = 0
            for m, raw in enumerate(durations):
                start = cursor + min(120, (g * 17 + m * 31) % 90)
                if start >= seg.end_ms:
                    break
                duration = max(120, int(round(raw * rng.uniform(0.8, 1.2))))
                # Notes may ring at most 200 ms past their segment.
                duration = min(duration, seg.end_ms + 200 - start)
                degree = max(-7, min(10, degree + rng.choice((-2, -1, 1, 1, 2, 3))))
                pitch = degree_pitch(ctx.scale, tonic, degree) + 12 * octave + lift
                rebuilt.append(
                    NormalizedEvent(
                        pitch=clamp_pitch(pitch),
                        start_ms=start,
                        duration_ms=duration,
                        velocity=clamp_velocity(
                            phase_velocity(start / total, motion)
                        ),
                    )
                )
                cursor += max(120, int(round(duration * gap_factor)))
        return rebuilt


class MidPipelineScale(ShapingPass):
    """Fit the plan to the target before coverage is computed."""

    name = "mid_pipeline_scale"

    def apply(self, events, ctx):
        return scale_to_duration(events, ctx.target_ms)


class CoverageEnforcement(ShapingPass):
    """Fill silent gaps and keep an onset in every second."""

    name = "coverage_enforcement"

    def apply(self, events, ctx):
        return enforce_coverage(events, ctx.target_ms, ctx.scale)


class RegisterBreadth(ShapingPass):
    """Make sure longer clips reach both the low and the high register."""

    name = "register_breadth"
    min_clip_ms = 5000
    required = 4
    low_ceiling = 55
    high_floor = 81

    def apply(self, events, ctx):
        total = plan_end(events)
        if total < self.min_clip_ms or not events:
            return events
        plan = list(events)
        anchors = list(events)
        forced = False

        low_needed = self.required - sum(1 for ev in plan if ev.pitch <= self.low_ceiling)
        for i in range(max(0, low_needed)):
            forced |= self._place(
                plan,
                anchors,
                i,
                max(0, low_needed),
                lambda a, i=i: NormalizedEvent(
                    pitch=max(36, min(self.low_ceiling, a.pitch - 24 + (i % 4) * 2)),
                    start_ms=a.start_ms + 15,
                    duration_ms=250,
                    velocity=clamp_velocity(a.velocity - 6),
                ),
                total,
            )

        high_needed = self.required - sum(1 for ev in plan if ev.pitch >= self.high_floor)
        for i in range(max(0, high_needed)):
            forced |= self._place(
                plan,
                anchors,
                i,
                max(0, high_needed),
                lambda a, i=i: NormalizedEvent(
                    pitch=min(96, max(self.high_floor, a.pitch + 24 - (i % 3) * 3)),
                    start_ms=a.start_ms + 30,
                    duration_ms=125,
                    velocity=clamp_velocity(a.velocity - 4),
                ),
                total,
            )

        if forced:
            return limit_polyphony(plan, mode="trim")
        return plan

    @staticmethod
    def _place(plan, anchors, index, needed, build, total) -> bool:
        """Insert one register note; return ``True`` if it had to be forced."""

        first = (index * len(anchors)) // max(1, needed)
        fallback = None
        for offset in range(len(anchors)):
            candidate = build(anchors[(first + offset) % len(anchors)])
            if candidate.end_ms > total:
                continue
            if fallback is None:
                fallback = candidate
            if fits(plan, candidate):
                plan.append(candidate)
                return False
        if fallback is not None:
            plan.append(fallback)
            return True
        return False


def default_passes() -> List[ShapingPass]:
    """Return a fresh list of the standard passes in execution order."""

    return [
        EarlyMonotonyGuard(),
        RegisterMapping(),
        Enrichment(),
        PatternBreaker(),
        MinimumDensity(),
        MotifDiversity(),
        RhythmicRegeneration(),
        MidPipelineScale(),
        CoverageEnforcement(),
        RegisterBreadth(),
    ]


class ShapingEngine:
    """Run an ordered list of :class:`ShapingPass` objects over a plan."""

    def __init__(self, passes: Optional[Sequence[ShapingPass]] = None) -> None:
        self.passes = list(passes) if passes is not None else default_passes()

    def run(
        self, events: Sequence[NormalizedEvent], ctx: ShapingContext
    ) -> List[NormalizedEvent]:
        """Apply every pass in order and return the shaped plan.

        The plan is re-sorted after each pass and a summary of its size and
        variety is recorded in ``ctx.diagnostics`` under the pass name.
        """

        plan = sort_plan(events)
        for shaping_pass in self.passes:
            plan = sort_plan(shaping_pass.apply(plan, ctx))
            stats = {
                "events": len(plan),
                "unique_pitches": unique_pitches(plan),
                "unique_durations": unique_durations(plan),
                "end_ms": plan_end(plan),
            }
            ctx.diagnostics[shaping_pass.name] = stats
            logger.debug("%s: %s", shaping_pass.name, stats)
        return plan
