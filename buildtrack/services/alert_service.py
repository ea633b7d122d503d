"""
Alert Service — lifecycle operations on stored alerts.

    list_alerts       filtered, newest first; overdue report
    acknowledge_alert PENDING/SENT → READ
    dismiss_alert     any non-terminal → DISMISSED
    reassign_alert    change assignee of a non-terminal alert
    mark_alert_sent   PENDING → SENT (dispatch layer)
    alert_stats       counts by status and priority

Every mutation runs under the project's lock and re-reads the alert once
the lock is held, so it cannot interleave with a sweep or a completion
touching the same alerts.
"""

from __future__ import annotations

import logging

from buildtrack.core.exceptions import InvalidAlertTransition, NotFoundError, ValidationError
from buildtrack.models.alert import (
    TERMINAL_STATUSES,
    AlertPriority,
    AlertStatus,
    validate_alert_transition,
)
from buildtrack.services.project_locks import project_locks
from buildtrack.services.repository import SqlAlchemyWorkflowRepository
from buildtrack.utils.helpers import utcnow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

_STATUS_VALUES = [s.value for s in AlertStatus]
_PRIORITY_VALUES = [p.value for p in AlertPriority]


def _repo(repo):
    return repo if repo is not None else SqlAlchemyWorkflowRepository()


def list_alerts(project_id=None, user_id=None, status=None, priority=None,
                unassigned=False, overdue=False, limit=50, offset=0, repo=None, now=None) -> dict:
    """Return ``{"items": [...], "total": n, "limit": .., "offset": ..}``.

    ``overdue=True`` keeps open or acknowledged alerts whose due date has
    passed (the overdue report).
    """
    if status and status not in _STATUS_VALUES:
        raise ValidationError(f"Invalid status. Must be one of: {_STATUS_VALUES}")
    if priority and priority not in _PRIORITY_VALUES:
        raise ValidationError(f"Invalid priority. Must be one of: {_PRIORITY_VALUES}")
    limit = min(max(int(limit), 1), MAX_PAGE_SIZE)
    offset = max(int(offset), 0)

    alerts, total = _repo(repo).query_alerts(
        project_id=project_id, user_id=user_id, status=status,
        priority=priority, unassigned=unassigned,
        overdue_before=(now or utcnow()) if overdue else None,
        limit=limit, offset=offset,
    )
    return {
        "items": [a.to_dict() for a in alerts],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def _get_alert(repo, alert_id, reload=False):
    alert = repo.reload_alert(alert_id) if reload else repo.get_alert(alert_id)
    if alert is None:
        raise NotFoundError(resource="Alert", resource_id=alert_id)
    return alert


def _transition(alert_id, target, repo=None, now=None):
    repo = _repo(repo)
    project_id = _get_alert(repo, alert_id).project_id
    with project_locks.hold(project_id):
        # Status may have moved while waiting for the lock.
        alert = _get_alert(repo, alert_id, reload=True)
        if not validate_alert_transition(alert.status, target):
            raise InvalidAlertTransition(alert.id, alert.status, target)
        old = alert.status
        now = now or utcnow()
        alert.status = target
        alert.updated_at = now
        if target in TERMINAL_STATUSES:
            alert.resolved_at = now
        repo.commit()
    logger.info("Alert %s moved %s → %s", alert.id, old, target,
                extra={"project_id": alert.project_id, "alert_id": alert.id, "rule_key": alert.rule_key})
    return alert


def acknowledge_alert(alert_id, repo=None, now=None):
    return _transition(alert_id, AlertStatus.READ.value, repo=repo, now=now)


def dismiss_alert(alert_id, repo=None, now=None):
    return _transition(alert_id, AlertStatus.DISMISSED.value, repo=repo, now=now)


def mark_alert_sent(alert_id, repo=None, now=None):
    return _transition(alert_id, AlertStatus.SENT.value, repo=repo, now=now)


def reassign_alert(alert_id, user_id, repo=None, now=None):
    """Assign to ``user_id`` (None puts the alert back in the unassigned queue)."""
    repo = _repo(repo)
    project_id = _get_alert(repo, alert_id).project_id
    with project_locks.hold(project_id):
        alert = _get_alert(repo, alert_id, reload=True)
        if alert.is_terminal:
            raise ValidationError(
                f"Alert {alert.id} is {alert.status} and cannot be reassigned",
                details={"alert_id": alert.id, "status": alert.status},
            )
        alert.assigned_to_user_id = user_id
        alert.updated_at = now or utcnow()
        repo.commit()
    logger.info("Alert %s reassigned to %s", alert.id, user_id,
                extra={"project_id": alert.project_id, "alert_id": alert.id})
    return alert


def alert_stats(project_id=None, repo=None) -> dict:
    by_status = {s: 0 for s in _STATUS_VALUES}
    by_priority = {p: 0 for p in _PRIORITY_VALUES}
    total = 0
    for status, priority, count in _repo(repo).alert_counts(project_id):
        by_status[status] = by_status.get(status, 0) + count
        by_priority[priority] = by_priority.get(priority, 0) + count
        total += count
    return {
        "project_id": project_id,
        "total": total,
        "by_status": by_status,
        "by_priority": by_priority,
    }
