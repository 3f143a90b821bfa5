"""Request orchestration: video in, plan plus WAV and MIDI out.

:func:`generate_plan` is the deterministic core. Given raw candidate events,
an optional video analysis, a target length and a random source it runs the
normalizer, the scale detector, the shaping engine and the final temporal
scaler and returns a :class:`PlanResult`.

:func:`sonify_video` wraps it in the full request:

1. the upload is written to a temporary file (always removed afterwards);
2. the collaborator analyses the video and proposes notes;
3. a repetitive or too-short proposal is sent back **once** with refinement
   directives;
4. if the collaborator fails, a local scaffold stands in for its notes;
5. the final plan is rendered to WAV and MIDI.

Example
-------
>>> result = generate_plan(PlanContext(raw_events, target_ms=2000, seed=3))
>>> result.plan_end_ms
2000
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import random
from dataclasses import dataclass, field
from tempfile import NamedTemporaryFile
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .collaborator import Collaborator, GeminiCollaborator, scaffold_events
from .coverage import enforce_onset_density
from .errors import ServiceError
from .events import NormalizedEvent, VideoAnalysis, plan_end
from .midi_io import encode_midi
from .normalizer import normalize_analysis, normalize_events
from .scale import ScaleContext, detect_scale
from .shaping import ShapingContext, ShapingEngine, ShapingPass
from .synth import synthesize_wav, wav_data_uri
from .timing import resolve_target_duration, scale_to_duration

__all__ = [
    "PlanContext",
    "PlanResult",
    "SonificationResult",
    "plan_stats",
    "refinement_reasons",
    "generate_plan",
    "render_assets",
    "sonify_video",
    "sonify_video_sync",
]

logger = logging.getLogger(__name__)

# Normalized input shorter than this share of the target triggers a retry.
_SHORT_PLAN_RATIO = 0.85


@dataclass
class PlanContext:
    """Inputs for one :func:`generate_plan` call.

    ``rng`` wins over ``seed``; with neither, a fresh OS-seeded generator is
    used. ``passes`` replaces the default shaping pass list.
    """

    raw_events: Optional[Sequence[Any]]
    analysis: Optional[VideoAnalysis] = None
    target_ms: Optional[int] = None
    seed: Optional[int] = None
    rng: Optional[random.Random] = None
    passes: Optional[Sequence[ShapingPass]] = None

    def random_source(self) -> random.Random:
        return self.rng if self.rng is not None else random.Random(self.seed)


@dataclass
class PlanResult:
    """Finished plan together with what was learned while building it."""

    events: List[NormalizedEvent]
    scale: ScaleContext
    target_ms: Optional[int]
    normalized: List[NormalizedEvent]
    diagnostics: Dict[str, Dict[str, int]] = field(default_factory=dict)
    refinement_reasons: List[str] = field(default_factory=list)

    @property
    def plan_end_ms(self) -> int:
        return plan_end(self.events)

    @property
    def needs_refinement(self) -> bool:
        return bool(self.refinement_reasons)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [ev.to_dict() for ev in self.events],
            "scale": self.scale.to_dict(),
            "targetMs": self.target_ms,
            "planEndMs": self.plan_end_ms,
            "inputStats": plan_stats(self.normalized),
            "diagnostics": self.diagnostics,
        }


def plan_stats(events: Sequence[NormalizedEvent]) -> Dict[str, int]:
    """Summarise ``events`` the way refinement requests describe a plan."""

    return {
        "eventCount": len(events),
        "uniquePitches": len({ev.name for ev in events}),
        "uniqueNoteTypes": len({ev.note_type for ev in events}),
        "endMs": plan_end(events),
    }


def refinement_reasons(
    events: Sequence[NormalizedEvent], target_ms: Optional[int]
) -> List[str]:
    """Return why a normalized proposal deserves a second attempt.

    ``"repetitive"`` means at least 8 events using at most 4 pitch names and a
    single rhythmic value. ``"too_short"`` means the proposal ends before 85%
    of the target.
    """

    reasons = []
    stats = plan_stats(events)
    if stats["eventCount"] >= 8 and stats["uniquePitches"] <= 4 and stats["uniqueNoteTypes"] == 1:
        reasons.append("repetitive")
    if target_ms and stats["endMs"] < _SHORT_PLAN_RATIO * target_ms:
        reasons.append("too_short")
    return reasons


def generate_plan(context: PlanContext) -> PlanResult:
    """Turn raw candidate events into a finished musical plan.

    Parameters
    ----------
    context:
        Raw events, optional analysis, target length and random source.

    Returns
    -------
    PlanResult
        Plan sorted by onset with at most two voices sounding at once, an
        onset in every second of the timeline and an end within 4% of the
        target when one is known.
    """

    rng = context.random_source()
    target = resolve_target_duration(context.target_ms, context.analysis)
    normalized = normalize_events(context.raw_events, span_ms=target)
    segments = context.analysis.segments if context.analysis is not None else ()
    scale = detect_scale(normalized, segments)
    logger.info(
        "Normalized %d event(s); detected %s %s",
        len(normalized),
        scale.root_name,
        scale.mode,
    )

    shaping_ctx = ShapingContext(
        scale=scale, segments=tuple(segments), target_ms=target, rng=rng
    )
    shaped = ShapingEngine(context.passes).run(normalized, shaping_ctx)
    final = scale_to_duration(shaped, target)
    final = enforce_onset_density(final, None, scale)
    logger.info("Plan finished with %d event(s) ending at %d ms", len(final), plan_end(final))
    return PlanResult(
        events=final,
        scale=scale,
        target_ms=target,
        normalized=normalized,
        diagnostics=shaping_ctx.diagnostics,
        refinement_reasons=refinement_reasons(normalized, target),
    )


def render_assets(result: PlanResult) -> Tuple[bytes, bytes]:
    """Return ``(wav_bytes, midi_bytes)`` for a finished plan."""

    return synthesize_wav(result.events, result.target_ms), encode_midi(result.events)


@dataclass
class SonificationResult:
    """Everything returned to the caller of one sonification request."""

    plan: PlanResult
    wav: bytes
    midi: bytes
    analysis: Optional[VideoAnalysis] = None
    fallback_used: bool = False
    fallback_reason: Optional[str] = None
    attempts: int = 0

    @property
    def audio_url(self) -> str:
        return wav_data_uri(self.wav)

    def to_dict(self) -> Dict[str, Any]:
        data = self.plan.to_dict()
        data.update(
            {
                "audioUrl": self.audio_url,
                "midi": base64.b64encode(self.midi).decode("ascii"),
                "analysis": self.analysis.to_dict() if self.analysis else None,
                "fallbackUsed": self.fallback_used,
                "fallbackReason": self.fallback_reason,
                "attempts": self.attempts,
            }
        )
        return data


def _refinement_context(base: Dict[str, Any], result: PlanResult) -> Dict[str, Any]:
    context = dict(base)
    context["previousPlanStats"] = plan_stats(result.normalized)
    context["refinementDirectives"] = {
        "requireMinPitchVariety": 7,
        "requireMixedDurations": True,
        "amplifyIntensityMapping": True,
        "coverFullDuration": "too_short" in result.refinement_reasons,
    }
    return context


async def sonify_video(
    video: bytes,
    *,
    collaborator: Optional[Collaborator] = None,
    target_ms: Optional[int] = None,
    seed: Optional[int] = None,
    mime_type: str = "video/mp4",
    suffix: str = ".mp4",
) -> SonificationResult:
    """Run a complete sonification request for the uploaded ``video`` bytes.

    Parameters
    ----------
    video:
        Raw bytes of the uploaded clip.
    collaborator:
        Service used for analysis and composition. Defaults to
        :class:`~sonifier.collaborator.GeminiCollaborator`.
    target_ms:
        Desired audio length. Falls back to the analysed video duration.
    seed:
        Seed for every random choice made while shaping the plan.
    mime_type, suffix:
        Describe the upload to the collaborator and the temporary file.

    Returns
    -------
    SonificationResult
        Final plan, rendered WAV and MIDI, analysis and fallback details.

    Raises
    ------
    EncodingError
        If the finished plan cannot be rendered.
    """

    rng = random.Random(seed)
    collaborator = collaborator or GeminiCollaborator()
    tmp = NamedTemporaryFile(suffix=suffix, delete=False)
    tmp_path = tmp.name

    analysis: Optional[VideoAnalysis] = None
    fallback_reason: Optional[str] = None
    attempts = 0
    try:
        try:
            tmp.write(video)
        finally:
            tmp.close()
        try:
            raw_analysis = await collaborator.analyze_video(tmp_path, target_ms, mime_type)
            analysis = normalize_analysis(raw_analysis, target_ms)
            target = resolve_target_duration(target_ms, analysis)
            context: Dict[str, Any] = {"videoAnalysis": analysis.to_dict()}
            raw_events = await collaborator.compose_events(tmp_path, target, context, mime_type)
            attempts = 1
            result = generate_plan(PlanContext(raw_events, analysis, target, rng=rng))
        except ServiceError as exc:
            logger.warning("Collaborator unavailable (%s); using local scaffold", exc)
            fallback_reason = str(exc)
            target = resolve_target_duration(target_ms, analysis)
            result = generate_plan(
                PlanContext(scaffold_events(rng, target), analysis, target, rng=rng)
            )
        else:
            if result.needs_refinement:
                logger.info(
                    "Proposal needs refinement (%s); requesting one more attempt",
                    ", ".join(result.refinement_reasons),
                )
                try:
                    raw_events = await collaborator.compose_events(
                        tmp_path, target, _refinement_context(context, result), mime_type
                    )
                except ServiceError as exc:
                    logger.warning("Refinement attempt failed (%s); keeping first plan", exc)
                else:
                    attempts = 2
                    result = generate_plan(PlanContext(raw_events, analysis, target, rng=rng))
    finally:
        collaborator.forget(tmp_path)
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

    wav, midi = render_assets(result)
    return SonificationResult(
        plan=result,
        wav=wav,
        midi=midi,
        analysis=analysis,
        fallback_used=fallback_reason is not None,
        fallback_reason=fallback_reason,
        attempts=attempts,
    )


def sonify_video_sync(video: bytes, **kwargs) -> SonificationResult:
    """Blocking wrapper around :func:`sonify_video` for the CLI and Flask."""

    return asyncio.run(sonify_video(video, **kwargs))
