"""
BuildTrack
Alerts & Scheduler Blueprint.

Endpoints:
    GET  /api/v1/alerts                        list (project_id, user_id, status, priority, unassigned, overdue)
    GET  /api/v1/alerts/stats                  counts by status / priority
    POST /api/v1/alerts/<id>/acknowledge       PENDING/SENT → READ
    POST /api/v1/alerts/<id>/dismiss           → DISMISSED
    POST /api/v1/alerts/<id>/sent              PENDING → SENT
    POST /api/v1/alerts/<id>/reassign          body {user_id}
    POST /api/v1/alerts/sweep                  body {project_id?} → sweep report
    GET  /api/v1/scheduler/jobs                registered jobs + run history
    POST /api/v1/scheduler/jobs/<name>/run     run a job now
    POST /api/v1/scheduler/jobs/<name>/toggle  body {enabled}
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from buildtrack.services import alert_service
from buildtrack.services.alert_engine import build_alert_engine
from buildtrack.services.scheduler_service import SchedulerService, get_registered_jobs
from buildtrack.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

alert_bp = Blueprint("alerts", __name__, url_prefix="/api/v1")
register_error_handlers(alert_bp)


# ═══════════════════════════════════════════════════════════════════════════
#  ALERTS
# ═══════════════════════════════════════════════════════════════════════════

@alert_bp.route("/alerts", methods=["GET"])
def list_alerts():
    result = alert_service.list_alerts(
        project_id=request.args.get("project_id", type=int),
        user_id=request.args.get("user_id", type=int),
        status=request.args.get("status") or None,
        priority=request.args.get("priority") or None,
        unassigned=request.args.get("unassigned", "").lower() in ("1", "true", "yes"),
        overdue=request.args.get("overdue", "").lower() in ("1", "true", "yes"),
        limit=request.args.get("limit", 50, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify(result)


@alert_bp.route("/alerts/stats", methods=["GET"])
def alert_stats():
    return jsonify(alert_service.alert_stats(project_id=request.args.get("project_id", type=int)))


@alert_bp.route("/alerts/<int:alert_id>/acknowledge", methods=["POST"])
def acknowledge_alert(alert_id):
    return jsonify(alert_service.acknowledge_alert(alert_id).to_dict())


@alert_bp.route("/alerts/<int:alert_id>/dismiss", methods=["POST"])
def dismiss_alert(alert_id):
    return jsonify(alert_service.dismiss_alert(alert_id).to_dict())


@alert_bp.route("/alerts/<int:alert_id>/sent", methods=["POST"])
def mark_alert_sent(alert_id):
    return jsonify(alert_service.mark_alert_sent(alert_id).to_dict())


@alert_bp.route("/alerts/<int:alert_id>/reassign", methods=["POST"])
def reassign_alert(alert_id):
    data = request.get_json(silent=True) or {}
    if "user_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    user_id = data["user_id"]
    if user_id is not None and (isinstance(user_id, bool) or not isinstance(user_id, int)):
        return api_error(E.VALIDATION_INVALID, "user_id must be an integer or null", status=400)
    return jsonify(alert_service.reassign_alert(alert_id, user_id).to_dict())


@alert_bp.route("/alerts/sweep", methods=["POST"])
def trigger_sweep():
    """Run an alert sweep now, for one project or all of them."""
    data = request.get_json(silent=True) or {}
    project_id = data.get("project_id")
    if project_id is not None and (isinstance(project_id, bool) or not isinstance(project_id, int)):
        return api_error(E.VALIDATION_INVALID, "project_id must be an integer", status=400)
    report = build_alert_engine().run_sweep(project_id=project_id)
    return jsonify(report.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULER
# ═══════════════════════════════════════════════════════════════════════════

@alert_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    SchedulerService.ensure_jobs_registered()
    return jsonify({"jobs": SchedulerService.list_jobs()})


@alert_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    return jsonify(result), 200 if result["status"] != "failed" else 500


@alert_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["POST"])
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if not isinstance(enabled, bool):
        return api_error(E.VALIDATION_REQUIRED, "enabled (boolean) is required")
    SchedulerService.ensure_jobs_registered()
    job = SchedulerService.toggle_job(job_name, enabled)
    if job is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(job)
