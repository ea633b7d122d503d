"""
Tests — Alert Service (lifecycle, listing, stats).
"""

from contextlib import contextmanager
from datetime import timedelta

import pytest
from sqlalchemy import update

from buildtrack.core.exceptions import InvalidAlertTransition, NotFoundError, ValidationError
from buildtrack.models import db
from buildtrack.models.alert import ALERT_TRANSITIONS, Alert, validate_alert_transition
from buildtrack.services import alert_service
from buildtrack.services.project_locks import ProjectLockRegistry

from factories import T0, create_project


def _create_alert(project_id, *, rule_key="ON_HOLD", status="PENDING", priority="HIGH",
                  assigned_to_user_id=None, created_at=T0, due_date=None):
    """Create an Alert directly in DB."""
    alert = Alert(
        project_id=project_id, rule_key=rule_key, type="WORKFLOW_ALERT", priority=priority,
        title="Project On Hold", message="Paused", status=status,
        assigned_to_user_id=assigned_to_user_id, created_at=created_at, updated_at=created_at,
        due_date=due_date,
        action_data={"project_id": project_id},
    )
    db.session.add(alert)
    db.session.commit()
    return alert


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Transition table
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitionTable:
    @pytest.mark.parametrize("old,new", [
        ("PENDING", "SENT"), ("PENDING", "READ"), ("SENT", "READ"),
        ("READ", "COMPLETED"), ("READ", "DISMISSED"), ("PENDING", "DISMISSED"),
    ])
    def test_allowed(self, old, new):
        assert validate_alert_transition(old, new)

    @pytest.mark.parametrize("old,new", [
        ("READ", "SENT"), ("READ", "PENDING"), ("COMPLETED", "READ"),
        ("DISMISSED", "PENDING"), ("SENT", "PENDING"),
    ])
    def test_rejected(self, old, new):
        assert not validate_alert_transition(old, new)

    def test_terminal_states_have_no_moves(self):
        assert not ALERT_TRANSITIONS["COMPLETED"]
        assert not ALERT_TRANSITIONS["DISMISSED"]


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Lifecycle operations
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_acknowledge(self, project):
        alert = _create_alert(project.id)
        result = alert_service.acknowledge_alert(alert.id, now=T0 + timedelta(hours=1))
        assert result.status == "READ"
        assert result.resolved_at is None

    def test_mark_sent_then_acknowledge(self, project):
        alert = _create_alert(project.id)
        assert alert_service.mark_alert_sent(alert.id).status == "SENT"
        assert alert_service.acknowledge_alert(alert.id).status == "READ"

    def test_dismiss_sets_resolved_at(self, project):
        alert = _create_alert(project.id)
        now = T0 + timedelta(hours=2)
        result = alert_service.dismiss_alert(alert.id, now=now)
        assert result.status == "DISMISSED"
        assert result.to_dict()["resolved_at"] == now.isoformat()

    def test_acknowledge_twice_rejected(self, project):
        alert = _create_alert(project.id)
        alert_service.acknowledge_alert(alert.id)
        with pytest.raises(InvalidAlertTransition):
            alert_service.acknowledge_alert(alert.id)

    def test_terminal_alert_cannot_move(self, project):
        alert = _create_alert(project.id, status="DISMISSED")
        with pytest.raises(InvalidAlertTransition):
            alert_service.dismiss_alert(alert.id)
        with pytest.raises(InvalidAlertTransition):
            alert_service.mark_alert_sent(alert.id)

    def test_unknown_alert(self):
        with pytest.raises(NotFoundError):
            alert_service.acknowledge_alert(424242)

    def test_reassign(self, project):
        alert = _create_alert(project.id, assigned_to_user_id=5)
        assert alert_service.reassign_alert(alert.id, 9).assigned_to_user_id == 9
        assert alert_service.reassign_alert(alert.id, None).assigned_to_user_id is None

    def test_reassign_terminal_rejected(self, project):
        alert = _create_alert(project.id, status="COMPLETED")
        with pytest.raises(ValidationError):
            alert_service.reassign_alert(alert.id, 9)


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Changes made while waiting for the project lock
# ═══════════════════════════════════════════════════════════════════════════

class _DismissingLocks(ProjectLockRegistry):
    """Lock registry that lets another writer dismiss the alert just before granting the lock."""

    def __init__(self, alert_id):
        super().__init__()
        self.alert_id = alert_id

    @contextmanager
    def hold(self, project_id):
        db.session.execute(
            update(Alert).where(Alert.id == self.alert_id)
            .values(status="DISMISSED", resolved_at=T0)
            .execution_options(synchronize_session=False)
        )
        with super().hold(project_id):
            yield


class TestLockedReads:
    @pytest.fixture()
    def raced_alert(self, project, monkeypatch):
        alert = _create_alert(project.id, assigned_to_user_id=5)
        assert alert.status == "PENDING"
        monkeypatch.setattr(alert_service, "project_locks", _DismissingLocks(alert.id))
        return alert

    def test_acknowledge_sees_status_written_before_lock(self, raced_alert):
        with pytest.raises(InvalidAlertTransition):
            alert_service.acknowledge_alert(raced_alert.id)
        db.session.expire_all()
        assert db.session.get(Alert, raced_alert.id).status == "DISMISSED"

    def test_reassign_sees_status_written_before_lock(self, raced_alert):
        with pytest.raises(ValidationError):
            alert_service.reassign_alert(raced_alert.id, 9)
        db.session.expire_all()
        stored = db.session.get(Alert, raced_alert.id)
        assert stored.status == "DISMISSED"
        assert stored.assigned_to_user_id == 5


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Listing & stats
# ═══════════════════════════════════════════════════════════════════════════

class TestListAlerts:
    @pytest.fixture()
    def alerts(self):
        p1 = create_project(name="One")
        p2 = create_project(name="Two")
        return {
            "a": _create_alert(p1.id, rule_key="ON_HOLD", assigned_to_user_id=5, created_at=T0),
            "b": _create_alert(p1.id, rule_key="BUDGET_OVERRUN", priority="HIGH", status="READ",
                               assigned_to_user_id=5, created_at=T0 + timedelta(hours=1)),
            "c": _create_alert(p2.id, rule_key="LEAD_READY", priority="MEDIUM",
                               created_at=T0 + timedelta(hours=2)),
            "p1": p1, "p2": p2,
        }

    def test_newest_first(self, alerts):
        result = alert_service.list_alerts()
        assert [a["id"] for a in result["items"]] == [alerts["c"].id, alerts["b"].id, alerts["a"].id]
        assert result["total"] == 3

    def test_filters(self, alerts):
        assert alert_service.list_alerts(project_id=alerts["p2"].id)["total"] == 1
        assert alert_service.list_alerts(user_id=5)["total"] == 2
        assert alert_service.list_alerts(status="READ")["items"][0]["id"] == alerts["b"].id
        assert alert_service.list_alerts(priority="MEDIUM")["total"] == 1
        assert [a["id"] for a in alert_service.list_alerts(unassigned=True)["items"]] == [alerts["c"].id]

    def test_pagination(self, alerts):
        page = alert_service.list_alerts(limit=1, offset=1)
        assert page["total"] == 3
        assert [a["id"] for a in page["items"]] == [alerts["b"].id]
        assert alert_service.list_alerts(limit=10_000)["limit"] == alert_service.MAX_PAGE_SIZE

    def test_overdue_lists_open_alerts_past_due(self, alerts):
        p1 = alerts["p1"]
        late = _create_alert(p1.id, rule_key="LINE_ITEM_DUE:1", due_date=T0 - timedelta(days=1))
        _create_alert(p1.id, rule_key="LINE_ITEM_DUE:2", due_date=T0 + timedelta(days=1))
        _create_alert(p1.id, rule_key="LINE_ITEM_DUE:3", status="DISMISSED", due_date=T0 - timedelta(days=2))
        read = _create_alert(p1.id, rule_key="LINE_ITEM_DUE:4", status="READ",
                             due_date=T0 - timedelta(hours=1), created_at=T0 + timedelta(hours=3))

        result = alert_service.list_alerts(overdue=True, now=T0)

        assert [a["id"] for a in result["items"]] == [read.id, late.id]
        assert result["total"] == 2
        assert alert_service.list_alerts(overdue=True, now=T0 - timedelta(days=3))["total"] == 0

    @pytest.mark.parametrize("kwargs", [{"status": "OPEN"}, {"priority": "URGENT"}])
    def test_invalid_filters(self, kwargs):
        with pytest.raises(ValidationError):
            alert_service.list_alerts(**kwargs)

    def test_stats(self, alerts):
        stats = alert_service.alert_stats()
        assert stats["total"] == 3
        assert stats["by_status"]["PENDING"] == 2
        assert stats["by_status"]["READ"] == 1
        assert stats["by_status"]["DISMISSED"] == 0
        assert stats["by_priority"] == {"LOW": 0, "MEDIUM": 1, "HIGH": 2}

        scoped = alert_service.alert_stats(project_id=alerts["p1"].id)
        assert scoped["total"] == 2
        assert scoped["project_id"] == alerts["p1"].id
