"""
BuildTrack
Scheduler Service.

Lightweight interval scheduler for background jobs (the alert sweep).

Architecture:
    - Job functions register themselves with ``@register_job(name)``
    - Each registered job has a ScheduledJob row (config + run history)
    - ``run_job`` executes one job inside the app context and records the run
    - ``start`` launches a daemon thread that runs enabled interval jobs
      when they are due; manual runs go through the API or CLI
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Callable

from flask import Flask

from buildtrack.core.exceptions import ConflictError
from buildtrack.models import db
from buildtrack.models.scheduling import ScheduledJob
from buildtrack.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_default_schedules: dict[str, dict] = {}


def register_job(name: str, *, every_minutes: int | None = None):
    """Decorator to register a job function.

    Usage:
        @register_job("alert_sweep", every_minutes=5)
        def run_alert_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if every_minutes:
            _default_schedules[name] = {"minutes": every_minutes}
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Manages job records, execution and the optional background loop.

    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    TICK_SECONDS = 30

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job lacking one."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if existing:
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    schedule_type="interval",
                    schedule_config=_get_default_schedule(cls._app, name),
                    status="active",
                    is_enabled=True,
                    run_count=0,
                    error_count=0,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error. A job that
            raises ConflictError (e.g. a sweep already in flight) is
            recorded as "skipped".
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except ConflictError as exc:
            status = "skipped"
            error = str(exc)
            logger.info("Job %s skipped: %s", job_name, exc)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ──────────────────────────────────────────────────

    @classmethod
    def due_jobs(cls, now=None) -> list[str]:
        """Names of enabled interval jobs whose next run time has passed."""
        now = now or utcnow()
        due = []
        for job in ScheduledJob.query.filter_by(is_enabled=True).all():
            if job.job_name not in _job_registry:
                continue
            minutes = job.interval_minutes
            if not minutes:
                continue
            last = as_utc(job.last_run_at)
            if last is None or now - last >= timedelta(minutes=minutes):
                due.append(job.job_name)
        return due

    @classmethod
    def tick(cls, now=None) -> list[dict]:
        """Run every due job once."""
        if not cls._app:
            return []
        with cls._app.app_context():
            names = cls.due_jobs(now)
        return [cls.run_job(name) for name in names]

    @classmethod
    def start(cls) -> bool:
        if not cls._app or (cls._thread and cls._thread.is_alive()):
            return False
        cls.ensure_jobs_registered()
        cls._stop = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, name="scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler loop started (tick=%ss)", cls.TICK_SECONDS)
        return True

    @classmethod
    def stop(cls) -> None:
        if cls._stop is not None:
            cls._stop.set()
        if cls._thread is not None:
            cls._thread.join(timeout=5)
        cls._thread = None

    @classmethod
    def _loop(cls) -> None:
        stop = cls._stop
        while not stop.is_set():
            try:
                cls.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop.wait(cls.TICK_SECONDS)


def _get_default_schedule(app: Flask, job_name: str) -> dict:
    if job_name == "alert_sweep":
        return {"minutes": int(app.config.get("ALERT_SWEEP_INTERVAL_MINUTES", 5))}
    return dict(_default_schedules.get(job_name, {"minutes": 60}))
