"""Utilities for writing a plan as a Standard MIDI File.

Modification summary
--------------------
* ``create_midi_file`` now works from millisecond timed plan events instead
  of note-name lists with a rhythm pattern. Onsets and lengths are converted
  to ticks at a fixed 120 BPM where one beat lasts 500 ms.
* Note-on and note-off messages are collected on an absolute tick timeline
  and converted to delta times afterwards, so overlapping notes are encoded
  correctly.
* Added ``encode_midi`` returning the file as bytes for the web and batch
  front ends, which never touch the filesystem.
* Imports from ``mido`` are deferred inside ``create_midi_file`` so the module
  can load even when the dependency is missing.

The output is a single-track (type 0) file with a tempo event, a program
change and one note-on/note-off pair per plan event.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Union

if TYPE_CHECKING:
    # ``MidiFile`` is only needed for type checking to avoid requiring the
    # optional dependency at import time.
    from mido import MidiFile

from .errors import EncodingError
from .events import NormalizedEvent, sort_plan

__all__ = ["TICKS_PER_BEAT", "BPM", "midi_velocity", "create_midi_file", "encode_midi"]

TICKS_PER_BEAT = 480
BPM = 120


def midi_velocity(velocity: Optional[float]) -> int:
    """Map a plan velocity onto the softer 10-100 range used in the file."""

    if velocity is None:
        return 70
    return min(100, max(10, int(round(velocity / 1.27))))


def create_midi_file(
    events: Iterable[NormalizedEvent],
    output_file: Optional[Union[str, Path]] = None,
    *,
    bpm: int = BPM,
    ticks_per_beat: int = TICKS_PER_BEAT,
    program: int = 0,
) -> "MidiFile":
    """Build a MIDI file for ``events`` and optionally save it.

    Parameters
    ----------
    events:
        Plan to encode.
    output_file:
        Destination path. The parent directory is created automatically.
        When ``None`` the file is only built in memory.
    bpm:
        Tempo written to the file and used to convert milliseconds to ticks.
    ticks_per_beat:
        MIDI resolution.
    program:
        General MIDI program for the single channel.

    Returns
    -------
    MidiFile
        In-memory representation for further inspection or saving.
    """
    # ``mido`` is imported lazily so projects depending on this module do not
    # need the MIDI dependency unless they actually render files.
    try:
        import mido
        from mido import Message, MetaMessage, MidiFile, MidiTrack
    except ModuleNotFoundError as exc:
        raise ImportError(
            "mido is required to create MIDI files; install it with 'pip install mido'"
        ) from exc

    if bpm <= 0:
        raise ValueError("bpm must be a positive integer")
    if not 0 <= program <= 127:
        raise ValueError("program must be between 0 and 127")

    mid = MidiFile(type=0, ticks_per_beat=ticks_per_beat)
    track = MidiTrack()
    mid.tracks.append(track)
    track.append(MetaMessage("track_name", name="Sonification", time=0))
    track.append(MetaMessage("set_tempo", tempo=mido.bpm2tempo(bpm), time=0))
    track.append(Message("program_change", program=program, time=0))

    beat_ms = 60000.0 / bpm
    # Shortest encodable note is a thirty-second.
    min_ticks = max(1, ticks_per_beat // 8)
    timeline = []
    for ev in sort_plan(events):
        on_tick = int(round(ev.start_ms / beat_ms * ticks_per_beat))
        length = max(min_ticks, int(round(ev.duration_ms / beat_ms * ticks_per_beat)))
        note = max(0, min(127, int(ev.pitch)))
        # The middle sort key places note-offs before note-ons on shared ticks
        # so a repeated pitch is released before it is struck again.
        timeline.append((on_tick, 1, note, midi_velocity(ev.velocity)))
        timeline.append((on_tick + length, 0, note, 0))
    timeline.sort(key=lambda item: (item[0], item[1], item[2]))

    last_tick = 0
    for tick, is_on, note, velocity in timeline:
        track.append(
            Message(
                "note_on" if is_on else "note_off",
                note=note,
                velocity=velocity,
                time=tick - last_tick,
            )
        )
        last_tick = tick
    track.append(MetaMessage("end_of_track", time=0))

    if output_file is not None:
        Path(output_file).parent.mkdir(parents=True, exist_ok=True)
        mid.save(str(output_file))
        logging.info("MIDI file saved to %s", output_file)
    return mid


def encode_midi(events: Iterable[NormalizedEvent], **kwargs) -> bytes:
    """Return the Standard MIDI File bytes for ``events``.

    Raises
    ------
    EncodingError
        If ``mido`` rejects a message or the file cannot be serialised.
    """

    try:
        mid = create_midi_file(events, **kwargs)
        buffer = io.BytesIO()
        mid.save(file=buffer)
    except (ValueError, TypeError, OSError) as exc:
        raise EncodingError(f"Could not encode MIDI: {exc}") from exc
    data = buffer.getvalue()
    if not data.startswith(b"MThd"):
        raise EncodingError("MIDI output is missing the MThd header")
    return data
