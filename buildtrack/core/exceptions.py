"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from buildtrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=42)
    raise OutOfOrderCompletion(project_id=42, line_item_id=7, current_line_item_id=6)
"""

from __future__ import annotations


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Project", "Alert").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses.
    """

    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with concurrent state. Maps to HTTP 409."""

    code = "ERR_CONFLICT_STATE"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Workflow progression ─────────────────────────────────────────────────────


class TrackerNotFound(NotFoundError):
    """No workflow tracker exists for the project."""

    def __init__(self, project_id: int) -> None:
        self.project_id = project_id
        super().__init__("WorkflowTracker", resource_id=f"project:{project_id}")


class UnknownLineItem(NotFoundError):
    """The line item id is not part of the workflow template."""

    def __init__(self, line_item_id: int) -> None:
        self.line_item_id = line_item_id
        super().__init__("LineItem", resource_id=line_item_id)


class TrackerTerminal(ValidationError):
    """The project's workflow has already completed."""

    code = "ERR_WORKFLOW_COMPLETED"

    def __init__(self, project_id: int) -> None:
        self.project_id = project_id
        super().__init__(
            f"Workflow for project {project_id} is already completed",
            details={"project_id": project_id},
        )


class OutOfOrderCompletion(ValidationError):
    """A line item other than the tracker's current one was completed."""

    code = "ERR_NOT_CURRENT_STEP"

    def __init__(self, project_id: int, line_item_id: int, current_line_item_id: int | None) -> None:
        self.project_id = project_id
        self.line_item_id = line_item_id
        self.current_line_item_id = current_line_item_id
        super().__init__(
            f"Line item {line_item_id} is not the current step for project {project_id}",
            details={
                "project_id": project_id,
                "line_item_id": line_item_id,
                "current_line_item_id": current_line_item_id,
            },
        )


class InvalidAlertTransition(ValidationError):
    """An alert status change is not allowed from its current status."""

    code = "ERR_ALERT_TRANSITION"

    def __init__(self, alert_id: int, current: str, target: str) -> None:
        self.alert_id = alert_id
        self.current_status = current
        self.target_status = target
        super().__init__(
            f"Cannot move alert {alert_id} from {current} to {target}",
            details={"alert_id": alert_id, "from": current, "to": target},
        )


class ConcurrencyConflict(ConflictError):
    """Lost a race on a tracker or completion write; the caller should re-read."""

    code = "ERR_CONCURRENCY_CONFLICT"

    def __init__(self, message: str = "Concurrent modification detected", details: dict | None = None) -> None:
        super().__init__(message, details=details)


class SweepAlreadyRunning(ConflictError):
    """A sweep over an overlapping scope is already in flight."""

    code = "ERR_SWEEP_RUNNING"

    def __init__(self, scope: str) -> None:
        self.scope = scope
        super().__init__(f"An alert sweep is already running for scope {scope}", details={"scope": scope})


class WorkflowError(Exception):
    """Base class for workflow template configuration failures."""

    code = "ERR_WORKFLOW_CONFIGURATION"


class EmptyTemplate(WorkflowError):
    """The workflow template has no line items."""

    def __init__(self) -> None:
        super().__init__("Workflow template contains no line items")


class TemplateInconsistency(WorkflowError):
    """A tracker points at a line item the template no longer recognises.

    Fatal for that project only; the tracker is left unchanged.
    """

    def __init__(self, project_id: int, line_item_id: int | None) -> None:
        self.project_id = project_id
        self.line_item_id = line_item_id
        super().__init__(
            f"Tracker for project {project_id} references unknown line item {line_item_id}"
        )


class RoleResolutionWarning(UserWarning):
    """No user holds the role a line item requires. Logged, never raised."""

    def __init__(self, project_id: int, role: str) -> None:
        self.project_id = project_id
        self.role = role
        super().__init__(f"No team member holds role {role} on project {project_id}")
