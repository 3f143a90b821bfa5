"""Command line helpers for Video Sonifier.

Modification summary
--------------------
* Split the console interface into two sub-commands. ``render`` works fully
  offline from a JSON list of candidate events, ``video`` sends a clip to the
  generative collaborator and falls back to the local scaffold when it is
  unavailable.
* ``--seed`` is passed explicitly to the pipeline instead of seeding the
  global ``random`` module, so a seeded run is reproducible even when other
  code draws random numbers.
* Defaults for ``seed``, ``target_ms`` and ``model`` are read from the JSON
  settings file (``--settings-file`` overrides its location).
* Output directories are created automatically and ``OSError`` while writing
  is reported with a non-zero exit code.

Example
-------
Running ``python -m sonifier render --events proposal.json --duration 8000 \
    --seed 7 --wav out.wav --midi out.mid`` shapes the proposal into an
8 second plan and writes both renderings. ``python -m sonifier video clip.mp4
--wav out.wav`` performs the full request; it needs ``GEMINI_API_KEY``.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from .errors import EncodingError
from .events import NOTE_TYPE_MS
from .normalizer import normalize_analysis

__all__ = ["run_cli", "main"]


def _fail(message: str, *args) -> None:
    logging.error(message, *args)
    sys.exit(1)


def _load_json(path: str, what: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except OSError as exc:
        _fail("Could not read %s file: %s", what, exc)
    except ValueError as exc:
        _fail("%s file is not valid JSON: %s", what.capitalize(), exc)


def _raw_events(payload: Any) -> List[Any]:
    if isinstance(payload, dict):
        payload = payload.get("events")
    if not isinstance(payload, list):
        _fail("Events file must contain a list or an object with an 'events' list.")
    return payload


def _write(path: Optional[str], data: bytes, label: str) -> None:
    if not path:
        return
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_bytes(data)
    except OSError as exc:
        _fail("Could not write %s file: %s", label, exc)
    logging.info("%s written to %s", label, path)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Turn a video, or a raw list of note events, into WAV and MIDI."
    )
    parser.add_argument("--list-note-types", action="store_true", help="List the rhythmic categories and exit")
    parser.add_argument("--settings-file", type=str, help="Path to the JSON settings file with default options")
    parser.add_argument("--verbose", action="store_true", help="Log per-pass shaping diagnostics")
    sub = parser.add_subparsers(dest="command")

    render = sub.add_parser("render", help="Shape and render a JSON list of candidate events")
    render.add_argument("--events", type=str, required=True, help="JSON file with candidate events")
    render.add_argument("--analysis", type=str, help="Optional JSON file with a video segment analysis")

    video = sub.add_parser("video", help="Analyse a video with the collaborator and render the result")
    video.add_argument("video", type=str, help="Path to the video file")
    video.add_argument("--mime-type", type=str, default="video/mp4", help="MIME type of the video (default: video/mp4)")
    video.add_argument("--model", type=str, help="Collaborator model name")

    for command in (render, video):
        command.add_argument("--duration", type=int, help="Target duration in milliseconds")
        command.add_argument("--seed", type=int, help="Random seed for reproducible output")
        command.add_argument("--wav", type=str, help="Output WAV file path")
        command.add_argument("--midi", type=str, help="Output MIDI file path")
        command.add_argument("--plan-json", type=str, help="Output path for the symbolic plan as JSON")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> None:
    """Parse CLI arguments, build the plan and write the requested files.

    Validation failures are logged and terminate the process with exit code
    ``1`` so shell scripts can detect them.
    """

    argv = list(sys.argv[1:] if argv is None else argv)
    if "--list-note-types" in argv:
        print("\n".join(f"{name} {ms}" for name, ms in NOTE_TYPE_MS.items()))
        return
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    from . import load_settings
    from .pipeline import PlanContext, generate_plan, render_assets

    settings = (
        load_settings(Path(args.settings_file).expanduser())
        if args.settings_file
        else load_settings()
    )
    seed = args.seed if args.seed is not None else settings.get("seed")
    duration = args.duration if args.duration is not None else settings.get("target_ms")

    if duration is not None and (not isinstance(duration, int) or duration <= 0):
        _fail("Duration must be a positive number of milliseconds.")
    if not (args.wav or args.midi or args.plan_json):
        _fail("Nothing to write; pass at least one of --wav, --midi or --plan-json.")
    if seed is not None:
        logging.info("Using random seed %s", seed)

    if args.command == "render":
        raw_events = _raw_events(_load_json(args.events, "events"))
        analysis = None
        if args.analysis:
            analysis = normalize_analysis(_load_json(args.analysis, "analysis"), duration)
        plan = generate_plan(PlanContext(raw_events, analysis, duration, seed=seed))
        try:
            wav, midi = render_assets(plan)
        except EncodingError as exc:
            _fail("Rendering failed: %s", exc)
        payload = plan.to_dict()
    else:
        from .collaborator import GeminiCollaborator
        from .pipeline import sonify_video_sync

        try:
            video_bytes = Path(args.video).read_bytes()
        except OSError as exc:
            _fail("Could not read video file: %s", exc)
        model = args.model or settings.get("model")
        collaborator = GeminiCollaborator(analysis_model=model, compose_model=model)
        try:
            result = sonify_video_sync(
                video_bytes,
                collaborator=collaborator,
                target_ms=duration,
                seed=seed,
                mime_type=args.mime_type,
            )
        except EncodingError as exc:
            _fail("Rendering failed: %s", exc)
        if result.fallback_used:
            logging.warning("Collaborator unavailable; the plan comes from the local scaffold.")
        wav, midi, payload = result.wav, result.midi, result.to_dict()
        payload.pop("audioUrl", None)

    _write(args.wav, wav, "WAV")
    _write(args.midi, midi, "MIDI")
    if args.plan_json:
        _write(args.plan_json, json.dumps(payload, indent=2).encode("utf-8"), "Plan")
    logging.info("Sonification complete.")


def main(argv: Optional[List[str]] = None) -> None:
    """Configure logging and run the command line interface."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    argv = list(sys.argv[1:] if argv is None else argv)
    if "--verbose" in argv:
        logging.getLogger().setLevel(logging.DEBUG)
    run_cli(argv)
