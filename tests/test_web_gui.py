"""Tests for the Flask based web GUI.

The web interface exposes the sonification pipeline through an upload form
and a JSON endpoint. These tests post files and form values to the Flask app
and verify that invalid input is rejected and valid input renders the
player. The collaborator is replaced by an in-process fake so no request
leaves the machine. The suite also asserts that ``FLASK_SECRET`` is enforced
in production mode and that oversized uploads are rejected based on
``MAX_CONTENT_LENGTH``.
"""

import importlib
import io
import json
import os
import sys
from pathlib import Path

import pytest

# Ensure the repository root is on ``sys.path`` so ``sonifier`` can be
# imported when tests execute from arbitrary locations.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

pytest.importorskip("flask")

# Provide required configuration so module import and the default
# ``create_app`` call succeed during tests.
os.environ.setdefault("FLASK_SECRET", "testing-secret")

web_gui = importlib.import_module("sonifier.web_gui")
collaborator = importlib.import_module("sonifier.collaborator")
errors = importlib.import_module("sonifier.errors")


class FakeCollaborator(collaborator.Collaborator):
    """Collaborator returning a fixed analysis and a varied melody."""

    async def analyze_video(self, video_path, target_ms, mime_type="video/mp4"):
        return {"durationMs": target_ms or 3000, "segments": []}

    async def compose_events(self, video_path, target_ms, context, mime_type="video/mp4"):
        names = ("C4", "E4", "G4", "B4", "D5", "F4", "A4", "C5")
        return [
            {"noteName": name, "time": i * 375, "noteType": ("eighth", "quarter")[i % 2]}
            for i, name in enumerate(names)
        ]


app = web_gui.app
# Disable CSRF protection for most tests to focus on form validation logic.
app.config["WTF_CSRF_ENABLED"] = False
app.config["SONIFIER_COLLABORATOR"] = FakeCollaborator()


def _upload(**fields):
    data = {"video": (io.BytesIO(b"\x00\x00\x00\x18ftypmp42"), "clip.mp4")}
    data.update(fields)
    return data


def test_index_get_shows_form():
    """The landing page renders the upload form."""
    client = app.test_client()
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"Sonify Video" in resp.data


def test_missing_video_flashes_message():
    """Submitting without a file re-renders the form with a notice."""
    client = app.test_client()
    resp = client.post("/", data={"duration": "4"}, content_type="multipart/form-data")
    assert resp.status_code == 200
    assert b"Please choose a video file to upload." in resp.data


def test_invalid_duration_preserves_input():
    """Bad durations are highlighted and the typed value is kept."""
    client = app.test_client()
    resp = client.post("/", data=_upload(duration="abc", seed="5"), content_type="multipart/form-data")
    html = resp.get_data(as_text=True)
    assert "Duration must be a number of seconds." in html
    assert 'value="abc"' in html
    assert 'value="5"' in html
    assert "input-error" in html


def test_duration_upper_bound():
    """Durations beyond the maximum are refused."""
    client = app.test_client()
    resp = client.post("/", data=_upload(duration="9000"), content_type="multipart/form-data")
    assert b"Duration must be between 0 and 600 seconds." in resp.data


def test_invalid_seed_rejected():
    """Seeds must be integers."""
    client = app.test_client()
    resp = client.post("/", data=_upload(seed="1.5"), content_type="multipart/form-data")
    assert b"Seed must be an integer." in resp.data


def test_valid_upload_renders_player():
    """A valid upload renders the audio player and MIDI link."""
    client = app.test_client()
    resp = client.post("/", data=_upload(duration="3", seed="2"), content_type="multipart/form-data")
    html = resp.get_data(as_text=True)
    assert resp.status_code == 200
    assert "Your soundtrack" in html
    assert "data:audio/wav;base64," in html
    assert "data:audio/midi;base64," in html


def test_fallback_notice_is_flashed(monkeypatch):
    """Users are told when the collaborator could not be reached."""

    class Offline(FakeCollaborator):
        async def analyze_video(self, video_path, target_ms, mime_type="video/mp4"):
            raise errors.ServiceError("offline")

    monkeypatch.setitem(app.config, "SONIFIER_COLLABORATOR", Offline())
    client = app.test_client()
    resp = client.post("/", data=_upload(duration="2"), content_type="multipart/form-data")
    assert b"generated locally" in resp.data


def test_render_failure_is_reported(monkeypatch):
    """Encoding errors re-render the form instead of crashing."""

    def boom(*_a, **_k):
        raise errors.EncodingError("bad header")

    monkeypatch.setattr(web_gui, "sonify_video_sync", boom)
    client = app.test_client()
    resp = client.post("/", data=_upload(), content_type="multipart/form-data")
    assert resp.status_code == 200
    assert b"Could not render audio: bad header" in resp.data


def test_api_requires_video():
    """The JSON endpoint rejects requests without an upload."""
    client = app.test_client()
    resp = client.post("/api/sonify", data={}, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "missing_video"


def test_api_rejects_invalid_options():
    """Validation errors are reported as JSON."""
    client = app.test_client()
    resp = client.post("/api/sonify", data=_upload(duration="-1"), content_type="multipart/form-data")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_options"


def test_api_returns_plan():
    """A valid upload returns the plan, audio URI and MIDI."""
    client = app.test_client()
    resp = client.post("/api/sonify", data=_upload(duration="3", seed="4"), content_type="multipart/form-data")
    assert resp.status_code == 200
    payload = json.loads(resp.data)
    assert payload["fallbackUsed"] is False
    assert payload["targetMs"] == 3000
    assert payload["audioUrl"].startswith("data:audio/wav;base64,")
    assert payload["events"]


def test_api_render_failure_returns_500(monkeypatch):
    """Pipeline failures map to HTTP 500 with details."""

    def boom(*_a, **_k):
        raise errors.EncodingError("bad header")

    monkeypatch.setattr(web_gui, "sonify_video_sync", boom)
    client = app.test_client()
    resp = client.post("/api/sonify", data=_upload(), content_type="multipart/form-data")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "sonification_failed", "detail": "bad header"}


def test_csrf_protection_enforced():
    """Form submissions without a CSRF token are rejected with HTTP 400."""
    protected_app = web_gui.create_app(FakeCollaborator())
    protected_app.config["WTF_CSRF_ENABLED"] = True
    client = protected_app.test_client()
    resp = client.post("/", data=_upload(), content_type="multipart/form-data")
    assert resp.status_code == 400


def test_api_is_csrf_exempt():
    """The JSON endpoint accepts uploads without a token."""
    protected_app = web_gui.create_app(FakeCollaborator())
    protected_app.config["WTF_CSRF_ENABLED"] = True
    client = protected_app.test_client()
    resp = client.post("/api/sonify", data=_upload(duration="2"), content_type="multipart/form-data")
    assert resp.status_code == 200


def test_request_too_large(monkeypatch):
    """Uploads beyond ``MAX_CONTENT_LENGTH`` return HTTP 413."""
    monkeypatch.setitem(app.config, "MAX_CONTENT_LENGTH", 10)
    client = app.test_client()
    data = {"video": (io.BytesIO(b"x" * 1024), "clip.mp4")}
    resp = client.post("/", data=data, content_type="multipart/form-data")
    assert resp.status_code == 413
    assert b"Request exceeds configured size limit." in resp.data


def test_max_upload_env(monkeypatch):
    """``MAX_UPLOAD_MB`` configures the upload limit."""
    monkeypatch.setenv("MAX_UPLOAD_MB", "2")
    assert web_gui.create_app().config["MAX_CONTENT_LENGTH"] == 2 * 1024 * 1024
    monkeypatch.setenv("MAX_UPLOAD_MB", "lots")
    assert web_gui.create_app().config["MAX_CONTENT_LENGTH"] == 50 * 1024 * 1024


def test_missing_secret_in_production(monkeypatch):
    """Without ``FLASK_SECRET`` the factory refuses to build the app."""
    monkeypatch.delenv("FLASK_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        web_gui.create_app()


def test_mime_type_for_upload():
    """Known suffixes map to video MIME types; unknown ones default to MP4."""
    assert web_gui._mime_type_for("clip.MOV", None) == (".mov", "video/quicktime")
    assert web_gui._mime_type_for("clip.bin", "application/octet-stream") == (".mp4", "video/mp4")
    assert web_gui._mime_type_for("clip.webm", "video/webm") == (".webm", "video/webm")
