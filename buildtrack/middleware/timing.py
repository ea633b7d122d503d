"""
Request timing middleware.

Every response carries X-Request-Duration-Ms and X-Request-ID. The request
log line is tagged with the workflow ids found in the URL or JSON body so a
completion or alert action can be followed across the ops log.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

SLOW_THRESHOLD_MS = 1000

_QUIET_PATHS = frozenset({"/api/v1/health"})
_SCOPE_KEYS = ("project_id", "line_item_id", "alert_id")


def _as_int(value):
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _workflow_scope() -> dict:
    """project/line item/alert ids from view args, query string or body."""
    view_args = request.view_args or {}
    body = request.get_json(silent=True) if request.is_json else None
    if not isinstance(body, dict):
        body = {}
    scope = {}
    for key in _SCOPE_KEYS:
        raw = view_args.get(key, request.args.get(key, body.get(key)))
        scope[key] = _as_int(raw)
    return scope


def _level_for(status: int, duration_ms: float) -> tuple[int, str]:
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING, "Slow request"
    if status >= 500:
        return logging.ERROR, "Server error"
    return logging.DEBUG, "Request"


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.path in _QUIET_PATHS and response.status_code < 500:
            return response

        level, label = _level_for(response.status_code, duration_ms)
        logger.log(
            level, "%s: %s %s %d (%.0fms)", label,
            request.method, request.path, response.status_code, duration_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.remote_addr,
                "request_id": g.request_id,
                **_workflow_scope(),
            },
        )
        return response
