"""
BuildTrack
Workflow Blueprint.

Endpoints:
    POST /api/v1/projects/<id>/workflow            initialize tracker
    GET  /api/v1/projects/<id>/workflow            tracker status + progress
    POST /api/v1/projects/<id>/workflow/complete   complete current line item
    GET  /api/v1/projects/<id>/workflow/history    completion history
    GET  /api/v1/workflow/template                 ordered template
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from buildtrack.services.repository import SqlAlchemyWorkflowRepository
from buildtrack.services.template_store import get_template_store
from buildtrack.services.workflow_service import WorkflowService
from buildtrack.utils.errors import E, api_error, register_error_handlers

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _optional_int(data: dict, key: str):
    value = data.get(key)
    if value is None or value == "":
        return None, None
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{key} must be an integer", status=400)


@workflow_bp.route("/projects/<int:project_id>/workflow", methods=["POST"])
def initialize_workflow(project_id):
    """Put the project into the workflow at the first line item."""
    repo = SqlAlchemyWorkflowRepository()
    existed = repo.get_tracker(project_id) is not None
    tracker = WorkflowService(repo=repo).initialize_workflow(project_id)
    return jsonify(tracker.to_dict()), 200 if existed else 201


@workflow_bp.route("/projects/<int:project_id>/workflow", methods=["GET"])
def workflow_status(project_id):
    return jsonify(WorkflowService().get_workflow_status(project_id))


@workflow_bp.route("/projects/<int:project_id>/workflow/complete", methods=["POST"])
def complete_line_item(project_id):
    """Complete the tracker's current line item.

    Body: {"line_item_id": int, "actor_id": int?, "notes": str?}
    Repeating a completion returns 200 with ``advanced: false``.
    """
    data = request.get_json(silent=True) or {}

    if data.get("line_item_id") is None:
        return api_error(E.VALIDATION_REQUIRED, "line_item_id is required")
    line_item_id, err = _optional_int(data, "line_item_id")
    if err:
        return err
    actor_id, err = _optional_int(data, "actor_id")
    if err:
        return err
    notes = data.get("notes")
    if notes is not None and not isinstance(notes, str):
        return api_error(E.VALIDATION_INVALID, "notes must be a string", status=400)

    result = WorkflowService().complete_line_item(project_id, line_item_id, actor_id=actor_id, notes=notes)
    return jsonify(result.to_dict())


@workflow_bp.route("/projects/<int:project_id>/workflow/history", methods=["GET"])
def completion_history(project_id):
    items = WorkflowService().list_completed_items(project_id)
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)})


@workflow_bp.route("/workflow/template", methods=["GET"])
def get_template():
    store = get_template_store()
    return jsonify({"phases": store.to_tree(), "total_line_items": store.count()})
