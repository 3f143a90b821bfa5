#!/usr/bin/env python3
"""Flask web interface for Video Sonifier.

This module provides a small web front-end around :func:`sonifier.sonify_video`.
Users upload a clip through a form, optionally choose a target length and a
seed, and the server answers with an in-browser audio player plus a MIDI
download. A JSON endpoint offers the same pipeline to scripts.

The module keeps the safeguards of the form-based generator it grew out of:

* **CSRF protection** – Flask-WTF's :class:`~flask_wtf.csrf.CSRFProtect`
  validates tokens for every form POST. The JSON endpoint is exempt because it
  is meant for non-browser clients.
* **WSGI-friendly entry point** – :func:`create_app` builds and configures the
  application so production servers like Gunicorn can serve it directly.
* **Request size limiting** – ``MAX_UPLOAD_MB`` (default 50) bounds uploads
  through Flask's ``MAX_CONTENT_LENGTH``.
* **Rate limiting** – an in-memory, thread-safe per-IP throttle answers with
  ``429`` and a ``Retry-After`` header once ``RATE_LIMIT_PER_MINUTE`` is
  exceeded.
* **Form state preservation** – validation failures re-render the form with
  the user's previous values and highlight the offending inputs.
"""
# The upload is handed to the pipeline as bytes. The pipeline owns the
# temporary file the collaborator needs and removes it after every request,
# including failed ones, so nothing accumulates under ``/tmp``.
#
# When the collaborator cannot be reached the request still succeeds with the
# local scaffold and the page flashes a notice so users know the music was not
# derived from their video.

from __future__ import annotations

from time import monotonic
from typing import Dict, Iterable, Mapping, Optional, Set, Tuple

from flask import (
    Flask,
    Response,
    current_app,
    flash,
    jsonify,
    make_response,
    render_template,
    request,
)
from flask_wtf.csrf import CSRFProtect
import base64
import logging
import math
import os
import secrets
from threading import Lock

from .collaborator import Collaborator
from .errors import SonifierError
from .pipeline import SonificationResult, sonify_video_sync

# Logger used throughout the module for diagnostic messages.
logger = logging.getLogger(__name__)

# CSRF protection instance. ``init_app`` is invoked inside ``create_app`` so
# tests can control when protection is enabled.
csrf = CSRFProtect()

# In-memory store tracking request counts per IP address. Each entry maps the
# client IP to a ``(window_start, count)`` tuple. Access is synchronized by
# ``REQUEST_LOCK`` because the development server can run multiple threads.
REQUEST_LOG: Dict[str, Tuple[float, int]] = {}
REQUEST_LOCK = Lock()

# Duration of a single rate-limit window in seconds.
RATE_LIMIT_WINDOW = 60.0

# Upload limit applied when ``MAX_UPLOAD_MB`` is missing or invalid.
DEFAULT_MAX_UPLOAD_MB = 50

# Longest target length accepted from the form, in seconds.
MAX_TARGET_SECONDS = 600

_ALLOWED_SUFFIXES = {".mp4": "video/mp4", ".mov": "video/quicktime", ".webm": "video/webm"}


def rate_limit() -> Optional[Response]:
    """Enforce a naive per-IP request limit.

    Registered as a ``before_request`` hook. ``RATE_LIMIT_PER_MINUTE`` is read
    from the application configuration; a missing, zero or invalid value
    disables throttling. Stale entries for every client are purged before the
    current request is counted.

    Returns:
        Optional[Response]: ``429`` response when the limit is exceeded,
        otherwise ``None`` so the request proceeds.
    """

    limit_raw = current_app.config.get("RATE_LIMIT_PER_MINUTE")
    if limit_raw is None:
        return None

    try:
        limit = int(limit_raw)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid RATE_LIMIT_PER_MINUTE %r; disabling rate limiting", limit_raw
        )
        return None

    if limit <= 0:
        if limit < 0:
            logger.warning(
                "RATE_LIMIT_PER_MINUTE must be positive; disabling rate limiting (received %r)",
                limit_raw,
            )
        return None

    now = monotonic()
    ip_addr = request.remote_addr or "unknown"

    with REQUEST_LOCK:
        expired = [
            ip for ip, (start, _) in REQUEST_LOG.items()
            if now - start >= RATE_LIMIT_WINDOW
        ]
        for ip in expired:
            del REQUEST_LOG[ip]

        window_start, count = REQUEST_LOG.get(ip_addr, (now, 0))

        if now - window_start >= RATE_LIMIT_WINDOW:
            REQUEST_LOG[ip_addr] = (now, 1)
            return None

        if count >= limit:
            # Round up so clients are never told to retry immediately.
            remaining = math.ceil(
                max(0.0, RATE_LIMIT_WINDOW - (now - window_start))
            )
            response = make_response("Too many requests", 429)
            response.headers["Retry-After"] = str(remaining)
            return response

        REQUEST_LOG[ip_addr] = (window_start, count + 1)

    return None


def _mime_type_for(filename: str, declared: Optional[str]) -> Tuple[str, str]:
    """Return ``(suffix, mime_type)`` for an uploaded file name."""

    suffix = os.path.splitext(filename or "")[1].lower()
    if suffix not in _ALLOWED_SUFFIXES:
        suffix = ".mp4"
    if declared and declared.startswith("video/"):
        return suffix, declared
    return suffix, _ALLOWED_SUFFIXES[suffix]


def _parse_options(values: Mapping[str, str]) -> Tuple[Optional[int], Optional[int], Set[str], Optional[str]]:
    """Validate the optional ``duration`` (seconds) and ``seed`` fields.

    Returns ``(target_ms, seed, error_fields, message)``; ``message`` is
    ``None`` when validation succeeded.
    """

    target_ms: Optional[int] = None
    seed: Optional[int] = None

    duration_raw = (values.get("duration") or "").strip()
    if duration_raw:
        try:
            seconds = float(duration_raw)
        except ValueError:
            return None, None, {"duration"}, "Duration must be a number of seconds."
        if not 0 < seconds <= MAX_TARGET_SECONDS:
            return None, None, {"duration"}, (
                f"Duration must be between 0 and {MAX_TARGET_SECONDS} seconds."
            )
        target_ms = int(round(seconds * 1000))

    seed_raw = (values.get("seed") or "").strip()
    if seed_raw:
        try:
            seed = int(seed_raw)
        except ValueError:
            return None, None, {"seed"}, "Seed must be an integer."

    return target_ms, seed, set(), None


def _run_request(upload, target_ms: Optional[int], seed: Optional[int]) -> SonificationResult:
    suffix, mime_type = _mime_type_for(upload.filename, upload.mimetype)
    collaborator: Optional[Collaborator] = current_app.config.get("SONIFIER_COLLABORATOR")
    return sonify_video_sync(
        upload.read(),
        collaborator=collaborator,
        target_ms=target_ms,
        seed=seed,
        mime_type=mime_type,
        suffix=suffix,
    )


def index():
    """Render the upload form and handle submissions.

    On ``GET`` the form is displayed. A ``POST`` runs the full sonification
    request and renders the player page; invalid input redisplays the form
    with a flash message instead of raising.
    """

    if request.method == "POST":
        form_values = _extract_form_values(request.form)
        upload = request.files.get("video")
        if upload is None or not upload.filename:
            flash("Please choose a video file to upload.")
            return _render_form(form_values, {"video"})

        target_ms, seed, error_fields, message = _parse_options(form_values)
        if message:
            flash(message)
            return _render_form(form_values, error_fields)

        try:
            result = _run_request(upload, target_ms, seed)
        except SonifierError as exc:
            logger.exception("Sonification failed")
            flash(f"Could not render audio: {exc}")
            return _render_form(form_values)

        if result.fallback_used:
            flash(
                "The video analysis service was unavailable; this music was "
                "generated locally and does not follow the clip."
            )
        return render_template(
            "play.html",
            audio=result.audio_url,
            midi=base64.b64encode(result.midi).decode("ascii"),
            scale=result.plan.scale.root_name + " " + result.plan.scale.mode,
            event_count=len(result.plan.events),
            duration_ms=result.plan.plan_end_ms,
        )

    return _render_form()


def api_sonify():
    """JSON endpoint returning the plan, audio data URI and base64 MIDI."""

    upload = request.files.get("video")
    if upload is None or not upload.filename:
        return jsonify({"error": "missing_video", "detail": "Upload a file in the 'video' field."}), 400

    target_ms, seed, _fields, message = _parse_options(request.form)
    if message:
        return jsonify({"error": "invalid_options", "detail": message}), 400

    try:
        result = _run_request(upload, target_ms, seed)
    except SonifierError as exc:
        logger.exception("Sonification failed")
        return jsonify({"error": "sonification_failed", "detail": str(exc)}), 500
    return jsonify(result.to_dict())


def create_app(collaborator: Optional[Collaborator] = None) -> Flask:
    """Build and configure the Flask application instance.

    ``collaborator`` replaces the default Gemini collaborator, which lets
    tests and alternative deployments inject their own service. In production
    (non-debug) mode ``FLASK_SECRET`` must be set; a missing value is logged
    as ``CRITICAL`` and raises :class:`RuntimeError`.

    Returns:
        Flask: Configured application ready for use by a WSGI server.
    Raises:
        RuntimeError: If ``FLASK_SECRET`` is absent when debug mode is
            disabled.
    """

    app = Flask(__name__, template_folder="templates", static_folder="static")

    secret = os.environ.get("FLASK_SECRET")
    try:
        max_mb = int(os.environ.get("MAX_UPLOAD_MB", str(DEFAULT_MAX_UPLOAD_MB)))
    except ValueError:
        max_mb = DEFAULT_MAX_UPLOAD_MB
        logger.warning(
            "Invalid MAX_UPLOAD_MB value; defaulting to %d MB.", DEFAULT_MAX_UPLOAD_MB
        )
    rate_limit_env = os.environ.get("RATE_LIMIT_PER_MINUTE")
    try:
        rate_limit_per_minute = int(rate_limit_env) if rate_limit_env else None
    except ValueError:
        logger.warning(
            "RATE_LIMIT_PER_MINUTE must be an integer. Disabling rate limiting."
        )
        rate_limit_per_minute = None

    if not app.debug and not secret:
        logger.critical("FLASK_SECRET environment variable must be set in production.")
        raise RuntimeError("Missing FLASK_SECRET")

    if not secret:
        secret = secrets.token_urlsafe(32)
        logger.warning(
            "FLASK_SECRET environment variable not set. "
            "Using a randomly generated key; sessions will not persist across restarts."
        )
    app.secret_key = secret
    app.config["MAX_CONTENT_LENGTH"] = max_mb * 1024 * 1024
    app.config["RATE_LIMIT_PER_MINUTE"] = rate_limit_per_minute
    app.config["SONIFIER_COLLABORATOR"] = collaborator

    csrf.init_app(app)

    app.add_url_rule("/", view_func=index, methods=["GET", "POST"])
    app.add_url_rule(
        "/api/sonify", view_func=csrf.exempt(api_sonify), methods=["POST"]
    )

    app.before_request(rate_limit)

    @app.errorhandler(413)
    def handle_request_too_large(_err):
        """Return a concise message when the client uploads too much data."""
        return "Request exceeds configured size limit.", 413

    return app


# ---------------------------------------------------------------------------
# Form rendering helpers
# ---------------------------------------------------------------------------

# Default values for text inputs, stored as strings so they can be injected
# directly into the HTML ``value`` attribute.
_FORM_TEXT_DEFAULTS: Dict[str, str] = {
    "duration": "",
    "seed": "",
}


def _extract_form_values(form: Mapping[str, str]) -> Dict[str, str]:
    """Return submitted text values merged with the defaults."""

    merged = dict(_FORM_TEXT_DEFAULTS)
    for field in _FORM_TEXT_DEFAULTS:
        if field in form:
            merged[field] = form.get(field, "")
    return merged


def _render_form(
    form_values: Optional[Mapping[str, str]] = None,
    error_fields: Optional[Iterable[str]] = None,
):
    """Render the upload form with supplied values and error highlights."""

    values = dict(_FORM_TEXT_DEFAULTS)
    if form_values is not None:
        for name, value in form_values.items():
            # Only known fields reach the template context.
            if name in values:
                values[name] = value
    highlighted: Set[str] = set(error_fields or [])
    return render_template(
        "index.html",
        form_values=values,
        error_fields=highlighted,
        max_seconds=MAX_TARGET_SECONDS,
    )


# Instantiate a default application for ad-hoc scripts and tests while still
# exposing ``create_app`` for production WSGI servers.
app = create_app()
