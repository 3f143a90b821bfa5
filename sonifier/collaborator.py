"""External generative collaborator and its local stand-in.

The collaborator watches the uploaded video and answers two questions: how
the clip is structured over time (segments with intensity, mood and motion)
and which notes should accompany it. :class:`GeminiCollaborator` asks a
Gemini model through ``google-generativeai``; :func:`scaffold_events`
produces a randomized but musically sane stand-in used whenever that service
cannot be reached.

Responses are treated as untrusted text. :func:`extract_json` pulls the
first JSON document out of whatever the model returned and
:func:`parse_events_payload` accepts both ``{"events": [...]}`` and a bare
list. Anything unusable becomes a :class:`~sonifier.errors.ServiceError`.

Configuration
-------------
``GEMINI_API_KEY``
    API key. Without it every call raises ``ServiceError``.
``SONIFIER_MODEL``
    Default model name for both requests (``gemini-2.5-pro``).
``SONIFIER_ANALYSIS_MODEL`` / ``SONIFIER_COMPOSE_MODEL``
    Per-request overrides.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ServiceError
from .events import NOTE_TYPE_MS
from .note_utils import clamp_pitch, pitch_to_name
from .scale import MODE_INTERVALS

__all__ = [
    "DEFAULT_MODEL",
    "Collaborator",
    "GeminiCollaborator",
    "analysis_prompt",
    "compose_prompt",
    "extract_json",
    "parse_events_payload",
    "scaffold_events",
]

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-pro"

# Seconds between polls while an uploaded video is still being processed.
_UPLOAD_POLL_SECONDS = 1.0
_UPLOAD_MAX_POLLS = 120

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

PathLike = Union[str, Path]


class Collaborator:
    """Interface of the service that analyses videos and proposes notes."""

    async def analyze_video(
        self, video_path: PathLike, target_ms: Optional[int], mime_type: str = "video/mp4"
    ) -> Mapping[str, Any]:
        """Return a raw analysis payload with ``durationMs`` and ``segments``."""

        raise NotImplementedError

    async def compose_events(
        self,
        video_path: PathLike,
        target_ms: Optional[int],
        context: Mapping[str, Any],
        mime_type: str = "video/mp4",
    ) -> List[Any]:
        """Return raw candidate events for the video."""

        raise NotImplementedError

    def forget(self, video_path: PathLike) -> None:
        """Release anything held for ``video_path`` once a request is done."""


def analysis_prompt(target_ms: Optional[int]) -> str:
    """Return the instructions for the segment analysis request."""

    duration = target_ms or "the clip length"
    return (
        "Analyze the attached video and return a JSON object describing its "
        "structure over time.\n"
        "Keys: durationMs (integer), segments (array), notes (optional string).\n"
        "Each segment: startMs, endMs, intensity (0..1), mood (one or two words), "
        "action (at most eight words), motionSpeed (1 = static, 10 = frantic).\n"
        "Use 6-14 chronological segments covering the whole clip with no gaps "
        "or overlaps; the first starts at 0 and the last ends at durationMs.\n"
        "Judge intensity from camera and subject motion, number of subjects and "
        "apparent tension. Vary moods when the visuals change.\n"
        f"If unsure of the exact duration, use durationMs = {duration}.\n"
        "Respond with JSON only."
    )


def compose_prompt(target_ms: Optional[int], context: Mapping[str, Any]) -> str:
    """Return the instructions for the note composition request.

    ``context`` may carry ``videoAnalysis`` (segments to follow) and, on the
    refinement attempt, ``previousPlanStats`` and ``refinementDirectives``.
    """

    duration = target_ms or 8000
    lines = [
        "Compose a melody that accompanies the attached video.",
        f"The melody must span the full {duration} ms of the clip.",
        'Return JSON only: {"events": [{"noteName": "C4", "time": 0, '
        '"duration": 250, "noteType": "eighth", "velocity": 78}, ...]}.',
        "Use noteName only (scientific pitch such as C4, D#4 or Bb3); time and "
        "duration are milliseconds; noteType is one of "
        + ", ".join(NOTE_TYPE_MS)
        + "; velocity is 40-110.",
        "Follow the energy of the picture: quiet and sparse when calm, denser, "
        "louder and higher at peaks. Use at least 8 different pitches and mix "
        "rhythmic values.",
    ]
    analysis = context.get("videoAnalysis")
    if analysis:
        lines.append("Video segments: " + json.dumps(analysis, separators=(",", ":")))
    stats = context.get("previousPlanStats")
    if stats:
        lines.append(
            "A previous attempt was rejected. Its statistics: "
            + json.dumps(stats, separators=(",", ":"))
        )
    directives = context.get("refinementDirectives")
    if directives:
        lines.append(
            "Apply these directives: " + json.dumps(directives, separators=(",", ":"))
        )
    return "\n".join(lines)


def extract_json(text: str) -> Any:
    """Return the first JSON document found in ``text``.

    Plain JSON, fenced code blocks and JSON embedded in prose are accepted.

    Raises
    ------
    ServiceError
        If no JSON document can be decoded.
    """

    if not isinstance(text, str) or not text.strip():
        raise ServiceError("Collaborator returned an empty response")
    candidates = [text.strip()]
    candidates.extend(block.strip() for block in _FENCE_RE.findall(text))
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = text.find(opener), text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start:end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ServiceError("Collaborator response did not contain valid JSON")


def parse_events_payload(payload: Any) -> List[Any]:
    """Return the list of raw events from a decoded compose response."""

    if isinstance(payload, str):
        payload = extract_json(payload)
    if isinstance(payload, Mapping):
        payload = payload.get("events")
    if not isinstance(payload, list):
        raise ServiceError("Collaborator response has no events list")
    return payload


def scaffold_events(
    rng: random.Random, target_ms: Optional[float] = None
) -> List[Dict[str, Any]]:
    """Return a randomized local stand-in for a composition response.

    Sixteen to twenty-four notes are drawn from a random major or minor key
    across octaves 3-5 and spread evenly over ``target_ms`` (8 s when
    unknown) with up to 25 ms of timing jitter. The result uses the same
    field names as a collaborator response so it goes through the normal
    normalizer.
    """

    count = rng.randint(16, 24)
    root = rng.randrange(12)
    intervals = MODE_INTERVALS[rng.choice(("major", "minor"))]
    span = target_ms if target_ms and target_ms > 0 else 8000
    step = span / count
    note_types = list(NOTE_TYPE_MS)
    events = []
    for i in range(count):
        octave = rng.randint(3, 5)
        pitch = clamp_pitch(12 * (octave + 1) + root + rng.choice(intervals))
        events.append(
            {
                "noteName": pitch_to_name(pitch),
                "time": max(0, int(round(i * step + rng.uniform(-25, 25)))),
                "noteType": rng.choice(note_types),
                "velocity": rng.randint(60, 99),
            }
        )
    return events


class GeminiCollaborator(Collaborator):
    """Collaborator backed by Google's Gemini models."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        analysis_model: Optional[str] = None,
        compose_model: Optional[str] = None,
        temperature: float = 0.9,
    ) -> None:
        default_model = os.environ.get("SONIFIER_MODEL", DEFAULT_MODEL)
        self.api_key = api_key or os.environ.get("GEMINI_API_KEY")
        self.analysis_model = analysis_model or os.environ.get(
            "SONIFIER_ANALYSIS_MODEL", default_model
        )
        self.compose_model = compose_model or os.environ.get(
            "SONIFIER_COMPOSE_MODEL", default_model
        )
        self.temperature = temperature
        self._uploads: Dict[str, Any] = {}

    def _client(self):
        if not self.api_key:
            raise ServiceError("GEMINI_API_KEY is not set")
        try:
            import google.generativeai as genai
        except ModuleNotFoundError as exc:
            raise ServiceError(
                "google-generativeai is required for video analysis; install it "
                "with 'pip install google-generativeai'"
            ) from exc
        genai.configure(api_key=self.api_key)
        return genai

    async def _upload(self, genai, video_path: PathLike, mime_type: str):
        key = str(video_path)
        if key in self._uploads:
            return self._uploads[key]
        uploaded = await asyncio.to_thread(
            genai.upload_file, path=key, mime_type=mime_type
        )
        for _ in range(_UPLOAD_MAX_POLLS):
            state = getattr(getattr(uploaded, "state", None), "name", "ACTIVE")
            if state != "PROCESSING":
                break
            await asyncio.sleep(_UPLOAD_POLL_SECONDS)
            uploaded = await asyncio.to_thread(genai.get_file, uploaded.name)
        state = getattr(getattr(uploaded, "state", None), "name", "ACTIVE")
        if state not in ("ACTIVE", "STATE_UNSPECIFIED"):
            raise ServiceError(f"Uploaded video is not usable (state {state})")
        self._uploads[key] = uploaded
        return uploaded

    def forget(self, video_path: PathLike) -> None:
        self._uploads.pop(str(video_path), None)

    async def _ask(
        self, model_name: str, video_path: PathLike, prompt: str, mime_type: str
    ) -> Any:
        genai = self._client()
        try:
            uploaded = await self._upload(genai, video_path, mime_type)
            model = genai.GenerativeModel(
                model_name,
                generation_config=genai.types.GenerationConfig(
                    temperature=self.temperature,
                    response_mime_type="application/json",
                ),
            )
            response = await model.generate_content_async([uploaded, prompt])
            text = response.text
        except ServiceError:
            raise
        except Exception as exc:  # noqa: BLE001 - any client failure is a service failure
            logger.exception("Gemini request to %s failed", model_name)
            raise ServiceError(f"Gemini request failed: {exc}") from exc
        return extract_json(text)

    async def analyze_video(self, video_path, target_ms, mime_type="video/mp4"):
        payload = await self._ask(
            self.analysis_model, video_path, analysis_prompt(target_ms), mime_type
        )
        if not isinstance(payload, Mapping):
            raise ServiceError("Analysis response is not a JSON object")
        logger.info(
            "Video analysis returned %d segment(s)", len(payload.get("segments") or [])
        )
        return payload

    async def compose_events(self, video_path, target_ms, context, mime_type="video/mp4"):
        payload = await self._ask(
            self.compose_model, video_path, compose_prompt(target_ms, context), mime_type
        )
        events = parse_events_payload(payload)
        logger.info("Collaborator proposed %d candidate event(s)", len(events))
        return events
