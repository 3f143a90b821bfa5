"""Parallel plan rendering helpers.

Modification summary
--------------------
* Each job is a plain dictionary so it pickles cleanly for worker processes
  and serializes to JSON for Celery brokers.
* Added ``render_batch_async`` and supporting helpers so large exports can be
  dispatched to Celery workers when the optional dependency is installed. The
  asynchronous path validates configuration eagerly and reuses a lazily
  registered task.

Shaping and synthesis are CPU bound, so :func:`render_batch` offloads every
job to a worker process via :class:`concurrent.futures.ProcessPoolExecutor`.

Example
-------
>>> jobs = [
...     {"events": [{"noteName": "C4", "time": 0, "noteType": "quarter"}],
...      "target_ms": 4000, "seed": 1, "wav": "out/a.wav"},
...     {"events": "proposal.json", "target_ms": 6000, "midi": "out/b.mid"},
... ]
>>> render_batch(jobs, workers=2)
[{"wav": "out/a.wav", "midi": None, "eventCount": 11, ...}, ...]

Design Notes
------------
A job accepts these keys:

``events``
    Raw candidate events, or a path to a JSON file holding them (a bare list
    or an object with an ``events`` list).
``analysis``
    Optional raw analysis payload (``durationMs`` and ``segments``).
``target_ms`` / ``seed``
    Forwarded to :class:`~sonifier.pipeline.PlanContext`.
``wav`` / ``midi`` / ``plan_json``
    Output paths. Missing keys skip that output.

Each job returns a small summary dictionary instead of the rendered bytes so
results stay cheap to send back across process boundaries.
"""

from __future__ import annotations

import json
import logging
import os
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .normalizer import normalize_analysis
from .pipeline import PlanContext, generate_plan, render_assets

# Celery is optional; when it is unavailable the synchronous ``render_batch``
# helper remains the only entry point and callers attempting to use the
# asynchronous API receive a descriptive ``RuntimeError``.
try:  # pragma: no cover - Celery is not required for unit tests
    from celery import Celery
except Exception:  # pragma: no cover - optional dependency missing
    Celery = None  # type: ignore

logger = logging.getLogger(__name__)

# Application configured via ``configure_celery``.
celery_app: Optional["Celery"] = None

# Name used when registering the Celery task.
_CELERY_TASK_NAME = "sonifier.batch_rendering.render_batch"

# Cache of the lazily registered Celery task; ``None`` until first dispatch.
_celery_task = None


def _load_events(source: Any) -> Any:
    if isinstance(source, (str, os.PathLike)):
        with open(source, "r", encoding="utf-8") as fh:
            source = json.load(fh)
    if isinstance(source, dict):
        source = source.get("events")
    return source


def _render_single(job: Dict[str, Any]) -> Dict[str, Any]:
    """Wrapper used by worker processes to build and render one plan."""

    target_ms = job.get("target_ms")
    analysis = None
    if job.get("analysis") is not None:
        analysis = normalize_analysis(job["analysis"], target_ms)
    result = generate_plan(
        PlanContext(
            _load_events(job.get("events")),
            analysis,
            target_ms,
            seed=job.get("seed"),
        )
    )
    wav, midi = render_assets(result)

    outputs = {"wav": wav, "midi": midi}
    for key, data in outputs.items():
        path = job.get(key)
        if path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_bytes(data)
    if job.get("plan_json"):
        Path(job["plan_json"]).parent.mkdir(parents=True, exist_ok=True)
        Path(job["plan_json"]).write_text(
            json.dumps(result.to_dict(), indent=2), encoding="utf-8"
        )

    return {
        "wav": job.get("wav"),
        "midi": job.get("midi"),
        "plan_json": job.get("plan_json"),
        "eventCount": len(result.events),
        "endMs": result.plan_end_ms,
        "scale": result.scale.to_dict(),
        "wavBytes": len(wav),
        "midiBytes": len(midi),
    }


def render_batch(
    jobs: Iterable[Dict[str, Any]], *, workers: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Render multiple plans in parallel.

    Parameters
    ----------
    jobs:
        Iterable of job dictionaries (see the module notes).
    workers:
        Optional number of worker processes. When ``None`` the CPU count is
        used. ``1`` disables multiprocessing and runs serially. ``ValueError``
        is raised when ``workers`` is ``0`` or negative.

    Returns
    -------
    List[Dict[str, Any]]
        One summary per job, in input order.
    """

    job_list = list(jobs)
    if workers is not None and workers <= 0:
        raise ValueError("workers must be positive")
    if workers is None:
        workers = os.cpu_count() or 1
    logger.info("Rendering %d plan(s) with %d worker(s)", len(job_list), workers)
    if workers <= 1:
        return [_render_single(job) for job in job_list]

    with ProcessPoolExecutor(max_workers=workers) as pool:
        futs = [pool.submit(_render_single, job) for job in job_list]
        return [f.result() for f in futs]


def configure_celery(app: "Celery") -> None:
    """Register the Celery application used for asynchronous batch renders.

    Passing a new application replaces the previous one and clears the cached
    task so the next asynchronous call re-registers itself.
    """

    global celery_app, _celery_task
    celery_app = app
    _celery_task = None


def _ensure_celery_task(app: "Celery"):
    """Return the Celery task object used for asynchronous rendering.

    A task already registered under ``_CELERY_TASK_NAME`` is reused;
    otherwise one wrapping :func:`_render_batch_serial` is created.
    """

    global _celery_task
    if _celery_task is None:
        registered = getattr(app, "tasks", {})
        if _CELERY_TASK_NAME in registered:
            _celery_task = registered[_CELERY_TASK_NAME]
        else:
            _celery_task = app.task(name=_CELERY_TASK_NAME)(_render_batch_serial)
    return _celery_task


def _render_batch_serial(jobs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Serial helper used by Celery workers, which already run one job each."""

    return [_render_single(job) for job in jobs]


def render_batch_async(
    jobs: Iterable[Dict[str, Any]],
    *,
    countdown: Optional[int] = None,
    celery_app: Optional["Celery"] = None,
):
    """Dispatch ``jobs`` to a Celery worker for asynchronous rendering.

    Parameters
    ----------
    jobs:
        Iterable of job dictionaries. Event sources given as paths must be
        readable by the worker.
    countdown:
        Optional delay in seconds before Celery executes the task. Values
        must be non-negative.
    celery_app:
        Specific Celery application to use. Defaults to the one supplied via
        :func:`configure_celery`.

    Returns
    -------
    celery.result.AsyncResult
        Handle whose ``get()`` yields the list of job summaries.

    Raises
    ------
    RuntimeError
        If Celery is unavailable or no application has been configured.
    ValueError
        If ``countdown`` is negative.
    """

    if Celery is None:
        raise RuntimeError(
            "Celery is required for render_batch_async; install the 'worker' extra to use this feature."
        )

    if countdown is not None and countdown < 0:
        raise ValueError("countdown must be None or non-negative")

    app = celery_app or globals().get("celery_app")
    if app is None and os.environ.get("CELERY_BROKER_URL"):
        configure_celery(Celery(__name__, broker=os.environ["CELERY_BROKER_URL"]))
        app = globals()["celery_app"]
    if app is None:
        raise RuntimeError(
            "No Celery app configured. Set CELERY_BROKER_URL, call configure_celery() "
            "or pass the app explicitly."
        )

    job_list = [dict(job) for job in jobs]
    logger.info("Queueing %d render job(s) on Celery", len(job_list))
    return _ensure_celery_task(app).apply_async(args=[job_list], countdown=countdown)
