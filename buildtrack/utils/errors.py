"""Standardised API error responses.

Usage
-----
    from buildtrack.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Alert not found")
    return api_error(E.VALIDATION_REQUIRED, "line_item_id is required")

Blueprints call ``register_error_handlers(bp)`` once so that service
exceptions map to the same JSON body everywhere:

    {"error": "...", "code": "ERR_...", "details": {...}}
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from buildtrack.core.exceptions import (
    ConflictError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("buildtrack.ops")


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    NOT_CURRENT_STEP = "ERR_NOT_CURRENT_STEP"
    WORKFLOW_COMPLETED = "ERR_WORKFLOW_COMPLETED"
    ALERT_TRANSITION = "ERR_ALERT_TRANSITION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONCURRENCY_CONFLICT = "ERR_CONCURRENCY_CONFLICT"
    SWEEP_RUNNING = "ERR_SWEEP_RUNNING"

    # Server – HTTP 500
    WORKFLOW_CONFIGURATION = "ERR_WORKFLOW_CONFIGURATION"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_CURRENT_STEP: 422,
    E.WORKFLOW_COMPLETED: 422,
    E.ALERT_TRANSITION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONCURRENCY_CONFLICT: 409,
    E.SWEEP_RUNNING: 409,
    E.WORKFLOW_CONFIGURATION: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override. Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)``, a drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Map the service exception hierarchy to JSON errors on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(error.code, str(error), status=422, details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(error.code, str(error), status=409, details=error.details)

    @bp.errorhandler(WorkflowError)
    def _handle_workflow(error: WorkflowError):
        ops_logger.error("Workflow configuration error on %s: %s", request.path, error,
                         extra={"event_type": "workflow_configuration_error"})
        return api_error(E.WORKFLOW_CONFIGURATION, str(error))
