#!/usr/bin/env python3
"""Video Sonifier library.

This package turns a short video into music. A generative collaborator
watches the clip and proposes a list of notes together with a timeline of
how intense the picture is; the library then cleans that proposal up,
shapes it into a coherent plan that follows the video and renders it both
as a stereo WAV file and as a Standard MIDI File. A command line tool and a
small Flask web interface wrap these calls so end users can sonify clips
without writing code.

Underlying Algorithm
--------------------
The proposal is never trusted. Every candidate note is validated and
snapped to a canonical rhythmic value, the key is inferred from the pitch
histogram, and an ordered chain of shaping passes then reworks the plan:
register follows intensity, long notes are subdivided, monotone material
is regenerated from the video's motion, and coverage enforcement makes sure
something new happens every second. Finally the timeline is scaled so the
music ends with the video.

Algorithm Pseudocode
--------------------
The following outlines :func:`generate_plan`::

    events = normalize_events(raw_events)
    scale = detect_scale(events, analysis.segments)
    for shaping_pass in default_passes():
        events = shaping_pass.apply(events, context)
    events = scale_to_duration(events, target_ms)
    wav = synthesize_wav(events)
    midi = encode_midi(events)

Features include:
- Tolerant note-name parsing (sharps, flats and Unicode accidentals).
- Key detection with a mood-driven major/minor bias.
- Ten composable shaping passes with reproducible, seedable randomness.
- Additive synthesis with harmonics, envelopes, vibrato and pitch panning.
- Single-track MIDI export through ``mido``.
- Automatic fallback to a local scaffold when the collaborator is offline.
- CLI, Flask web interface and process-pool batch rendering.
"""

__version__ = "0.1.0"

# ---------------------------------------------------------------
# Modification Summary
# ---------------------------------------------------------------
# * Settings are stored as JSON at ``SONIFIER_SETTINGS_FILE`` (or
#   ``~/.sonifier_settings.json``) and provide CLI defaults for the seed,
#   target duration and collaborator model.
# * Public helpers are re-exported here so callers can write
#   ``from sonifier import generate_plan`` without knowing the module layout.

import json
import logging
import os
from pathlib import Path

from .errors import EncodingError, ParseError, ServiceError, SonifierError  # noqa: F401
from .note_utils import (  # noqa: F401
    MAX_PITCH,
    MIN_PITCH,
    NOTE_TO_SEMITONE,
    NOTES,
    clamp_pitch,
    name_to_pitch,
    pitch_to_name,
)
from .events import (  # noqa: F401
    NOTE_TYPE_MS,
    IntensitySegment,
    NormalizedEvent,
    VideoAnalysis,
    max_polyphony,
    plan_end,
)
from .normalizer import normalize_analysis, normalize_events  # noqa: F401
from .scale import ScaleContext, detect_scale, snap_to_scale  # noqa: F401
from .shaping import ShapingContext, ShapingEngine, default_passes  # noqa: F401
from .coverage import enforce_coverage  # noqa: F401
from .timing import scale_to_duration  # noqa: F401
from .synth import synthesize_wav, wav_data_uri  # noqa: F401
from .midi_io import create_midi_file, encode_midi  # noqa: F401
from .collaborator import Collaborator, GeminiCollaborator, scaffold_events  # noqa: F401
from .pipeline import (  # noqa: F401
    PlanContext,
    PlanResult,
    SonificationResult,
    generate_plan,
    sonify_video,
    sonify_video_sync,
)

# Default path for storing user preferences. The file lives in the user's
# home directory so settings persist between runs.
env_path = os.environ.get("SONIFIER_SETTINGS_FILE")
if env_path:
    DEFAULT_SETTINGS_FILE = Path(env_path).expanduser()
else:
    DEFAULT_SETTINGS_FILE = Path.home() / ".sonifier_settings.json"


def load_settings(path: Path = DEFAULT_SETTINGS_FILE) -> dict:
    """Load saved user settings from ``path`` if it exists.

    @param path (Path): Location of the settings file.
    @returns dict: Loaded settings or an empty dictionary when unavailable.
    """
    if path.is_file():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logging.error("Could not load settings: %s", exc)
            return {}
        if isinstance(data, dict):
            return data
        logging.error("Ignoring settings file %s: expected a JSON object", path)
    return {}


def save_settings(settings: dict, path: Path = DEFAULT_SETTINGS_FILE) -> None:
    """Save user ``settings`` to ``path`` as JSON.

    @param settings (dict): Options to be persisted.
    @param path (Path): Destination file path.
    @returns None: Function does not return a value.
    """
    # Failing to save preferences is logged but never stops a render.
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(settings, fh, indent=2)
    except OSError as exc:
        logging.error("Could not save settings: %s", exc)


def main() -> None:
    """Console entry point; see :mod:`sonifier.cli`."""

    from .cli import main as cli_main

    cli_main()
