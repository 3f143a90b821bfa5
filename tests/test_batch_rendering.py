import importlib
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

EVENTS = [
    {"noteName": "C4", "time": 0, "noteType": "quarter"},
    {"noteName": "G4", "time": 1000, "noteType": "eighth"},
]


class DummyExec:
    """Synchronous stand-in for ``ProcessPoolExecutor``."""

    calls = {}

    def __init__(self, max_workers=None):
        DummyExec.calls["workers"] = max_workers

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        pass

    def submit(self, fn, job):
        class DummyFut:
            def result(self_inner):
                return fn(job)

        return DummyFut()


def test_render_batch_uses_process_pool(monkeypatch, tmp_path):
    """``render_batch`` should create a ``ProcessPoolExecutor`` when workers>1."""

    batch = importlib.import_module("sonifier.batch_rendering")
    monkeypatch.setattr(batch, "ProcessPoolExecutor", DummyExec)

    jobs = [
        {"events": EVENTS, "target_ms": 2000, "seed": 1, "wav": str(tmp_path / "a.wav")},
        {"events": EVENTS, "target_ms": 3000, "seed": 2, "midi": str(tmp_path / "b" / "b.mid")},
    ]
    res = batch.render_batch(jobs, workers=2)

    assert DummyExec.calls["workers"] == 2
    assert [r["wav"] for r in res] == [str(tmp_path / "a.wav"), None]
    assert (tmp_path / "a.wav").read_bytes()[:4] == b"RIFF"
    assert (tmp_path / "b" / "b.mid").read_bytes()[:4] == b"MThd"
    assert abs(res[1]["endMs"] - 3000) <= 0.04 * 3000


def test_render_batch_reads_event_files(tmp_path):
    """Event sources may be JSON files holding an ``events`` object."""

    batch = importlib.import_module("sonifier.batch_rendering")
    source = tmp_path / "events.json"
    source.write_text(json.dumps({"events": EVENTS}), encoding="utf-8")
    plan_path = tmp_path / "plan.json"

    res = batch.render_batch(
        [{"events": str(source), "target_ms": 2000, "seed": 3, "plan_json": str(plan_path)}],
        workers=1,
    )

    assert res[0]["eventCount"] == len(json.loads(plan_path.read_text(encoding="utf-8"))["events"])
    assert res[0]["wavBytes"] > 44


def test_render_batch_analysis_sets_target(tmp_path):
    """A job without ``target_ms`` uses the analysed duration."""

    batch = importlib.import_module("sonifier.batch_rendering")
    res = batch.render_batch(
        [{"events": EVENTS, "analysis": {"durationMs": 4000, "segments": []}, "seed": 1}],
        workers=1,
    )
    assert abs(res[0]["endMs"] - 4000) <= 0.04 * 4000


@pytest.mark.parametrize("workers", [0, -1])
def test_render_batch_rejects_bad_worker_counts(workers):
    """Zero or negative worker counts raise ``ValueError``."""

    batch = importlib.import_module("sonifier.batch_rendering")
    with pytest.raises(ValueError):
        batch.render_batch([], workers=workers)


def test_render_batch_async_requires_celery(monkeypatch):
    """Asynchronous helper should fail when Celery support is unavailable."""

    batch = importlib.import_module("sonifier.batch_rendering")
    monkeypatch.setattr(batch, "Celery", None)
    monkeypatch.setattr(batch, "celery_app", None)

    with pytest.raises(RuntimeError):
        batch.render_batch_async([{"events": EVENTS}])


def test_render_batch_async_requires_app(monkeypatch):
    """Without an app or broker URL the helper explains what is missing."""

    batch = importlib.import_module("sonifier.batch_rendering")
    monkeypatch.setattr(batch, "Celery", object)
    monkeypatch.setattr(batch, "celery_app", None)
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)

    with pytest.raises(RuntimeError, match="No Celery app configured"):
        batch.render_batch_async([])


def test_render_batch_async_dispatches_task(monkeypatch):
    """When provided a Celery app the async helper should queue the task."""

    batch = importlib.import_module("sonifier.batch_rendering")

    class DummyAsyncResult:
        """Mimics ``celery.result.AsyncResult`` for unit testing."""

        def __init__(self, payload):
            self.payload = payload

        def get(self, timeout=None):
            return self.payload

    class DummyTask:
        """Simple callable task storing ``apply_async`` invocations."""

        def __init__(self, func):
            self.func = func
            self.calls = []

        def apply_async(self, args=None, kwargs=None, countdown=None):
            result = self.func(*(args or []), **(kwargs or {}))
            self.calls.append({"args": args, "countdown": countdown})
            return DummyAsyncResult(result)

    class DummyCelery:
        """Minimal stand-in implementing ``task`` and ``tasks`` mapping."""

        def __init__(self):
            self.tasks = {}

        def task(self, name=None):
            def decorator(func):
                task = DummyTask(func)
                self.tasks[name or func.__name__] = task
                return task

            return decorator

    dummy_app = DummyCelery()
    monkeypatch.setattr(batch, "Celery", DummyCelery)
    batch.configure_celery(dummy_app)

    result = batch.render_batch_async(
        [{"events": EVENTS, "target_ms": 2000, "seed": 1}], countdown=3, celery_app=dummy_app
    )

    task = dummy_app.tasks[batch._CELERY_TASK_NAME]
    assert task.calls[0]["countdown"] == 3
    summaries = result.get()
    assert len(summaries) == 1 and summaries[0]["eventCount"] > 0
    batch.configure_celery(None)


def test_render_batch_async_negative_countdown(monkeypatch):
    """Negative countdown values should be rejected with ``ValueError``."""

    batch = importlib.import_module("sonifier.batch_rendering")
    monkeypatch.setattr(batch, "Celery", object)
    monkeypatch.setattr(batch, "celery_app", object())

    with pytest.raises(ValueError):
        batch.render_batch_async([], countdown=-1)
