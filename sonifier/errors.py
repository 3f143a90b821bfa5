"""Exception hierarchy shared by every stage of the sonification pipeline.

The three concrete error types map onto the three ways a request can go
wrong:

* :class:`ParseError` - a single candidate event could not be understood.
  The normalizer catches it and drops the event.
* :class:`ServiceError` - the external generative collaborator failed or
  answered with garbage. The orchestrator catches it and switches to the
  local scaffold generator.
* :class:`EncodingError` - a WAV or MIDI rendering invariant was violated.
  Nothing downstream can recover so the request fails.

``ParseError`` also derives from :class:`ValueError` so callers that only
catch ``ValueError`` around note-name parsing keep working.
"""

from __future__ import annotations

__all__ = ["SonifierError", "ParseError", "ServiceError", "EncodingError"]


class SonifierError(Exception):
    """Base class for all errors raised by :mod:`sonifier`."""


class ParseError(SonifierError, ValueError):
    """Raised when a pitch name or raw event field cannot be interpreted."""


class ServiceError(SonifierError, RuntimeError):
    """Raised when the external collaborator is unavailable or misbehaves."""


class EncodingError(SonifierError, RuntimeError):
    """Raised when rendering a plan to WAV or MIDI bytes fails."""
