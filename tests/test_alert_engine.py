"""
Tests — Alert Rule Engine (sweeps against the database).

Covers:
    1. Dedup: one open alert per (project, rule key), idempotent sweeps
    2. Episodes: clear → dismiss, re-fire on a new episode
    3. Once-only rules
    4. Acknowledged / reassigned alerts survive sweeps
    5. Line item due: escalation, routing, auto-completion
    6. Failure isolation and sweep targets
    7. Re-entrancy guard
"""

from datetime import timedelta

import pytest

from buildtrack.core.exceptions import ConcurrencyConflict, SweepAlreadyRunning
from buildtrack.models import db
from buildtrack.models.alert import Alert, AlertRuleState
from buildtrack.services import alert_rules, alert_service
from buildtrack.services.alert_engine import (
    AlertRuleEngine,
    SweepCoordinator,
    SweepReport,
    build_alert_engine,
    sweep_coordinator,
)
from buildtrack.services.repository import SqlAlchemyWorkflowRepository
from buildtrack.services.workflow_service import WorkflowService

from factories import T0, add_team_member, create_project
from fakes import FixedClock


def _engine(**kwargs):
    return AlertRuleEngine(**kwargs)


def _alerts(project_id, rule_key=None):
    query = Alert.query.filter_by(project_id=project_id)
    if rule_key is not None:
        query = query.filter_by(rule_key=rule_key)
    return query.order_by(Alert.id).all()


def _open(project_id, rule_key):
    return [a for a in _alerts(project_id, rule_key) if a.status in ("PENDING", "SENT")]


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Dedup
# ═══════════════════════════════════════════════════════════════════════════

class TestDedup:
    def test_budget_overrun_created_once(self):
        project = create_project(budget=10000, actual_cost=11500)

        first = _engine().run_sweep(project.id, now=T0)
        [alert] = _alerts(project.id, "BUDGET_OVERRUN")
        assert alert.status == "PENDING"
        assert alert.priority == "HIGH"
        assert alert.action_data["overage"] == 15.0
        assert alert.assigned_to_user_id == 100
        assert len(first.created) == 2  # budget + progress milestone

        second = _engine().run_sweep(project.id, now=T0 + timedelta(minutes=5))
        assert len(second.created) == 0
        assert len(second.updated) == 0
        assert len(_alerts(project.id, "BUDGET_OVERRUN")) == 1

    def test_changed_condition_updates_in_place(self):
        project = create_project(budget=10000, actual_cost=11500)
        _engine().run_sweep(project.id, now=T0)

        project.actual_cost = 13000
        db.session.commit()
        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=1))

        assert len(report.created) == 0
        assert len(report.updated) == 1
        [alert] = _alerts(project.id, "BUDGET_OVERRUN")
        assert alert.action_data["overage"] == 30.0
        assert "30.0% over budget" in alert.message

    def test_open_index_rejects_second_open_alert(self):
        project = create_project()
        repo = SqlAlchemyWorkflowRepository()
        for _ in range(2):
            repo.add(Alert(project_id=project.id, rule_key="ON_HOLD", type="WORKFLOW_ALERT",
                           priority="HIGH", title="Project On Hold", message="x", status="PENDING"))
        with pytest.raises(ConcurrencyConflict):
            repo.commit()
        assert Alert.query.count() == 0

    def test_closed_alert_does_not_block_index(self):
        project = create_project()
        db.session.add(Alert(project_id=project.id, rule_key="ON_HOLD", type="WORKFLOW_ALERT",
                             priority="HIGH", title="t", message="m", status="DISMISSED"))
        db.session.add(Alert(project_id=project.id, rule_key="ON_HOLD", type="WORKFLOW_ALERT",
                             priority="HIGH", title="t", message="m", status="PENDING"))
        db.session.commit()
        assert len(_alerts(project.id, "ON_HOLD")) == 2


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Episodes
# ═══════════════════════════════════════════════════════════════════════════

class TestEpisodes:
    def test_overdue_supersedes_deadline(self):
        project = create_project(end_date=T0 + timedelta(days=3))

        _engine().run_sweep(project.id, now=T0)
        [deadline] = _alerts(project.id, "DEADLINE")
        assert deadline.action_data["days_until_deadline"] == 3

        report = _engine().run_sweep(project.id, now=T0 + timedelta(days=5))

        assert len(report.created) == 1
        assert len(report.dismissed) == 1
        [deadline] = _alerts(project.id, "DEADLINE")
        assert deadline.status == "DISMISSED"
        assert deadline.resolved_at is not None
        [overdue] = _alerts(project.id, "OVERDUE")
        assert overdue.status == "PENDING"
        assert overdue.action_data["days_overdue"] == 2

    def test_on_hold_leave_and_return_refires(self):
        project = create_project(status="ON_HOLD")
        _engine().run_sweep(project.id, now=T0)
        assert len(_open(project.id, "ON_HOLD")) == 1

        project.status = "IN_PROGRESS"
        db.session.commit()
        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=1))
        assert len(report.dismissed) == 1
        assert _open(project.id, "ON_HOLD") == []

        project.status = "ON_HOLD"
        db.session.commit()
        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))

        statuses = [a.status for a in _alerts(project.id, "ON_HOLD")]
        assert statuses == ["DISMISSED", "PENDING"]
        state = AlertRuleState.query.filter_by(project_id=project.id, rule_key="ON_HOLD").one()
        assert state.is_active is True

    def test_progress_bucket_moves(self):
        project = create_project(progress=10)
        _engine().run_sweep(project.id, now=T0)

        project.progress = 55
        db.session.commit()
        report = _engine().run_sweep(project.id, now=T0 + timedelta(days=1))

        assert len(report.created) == 1
        assert len(report.dismissed) == 1
        assert _alerts(project.id, "PROGRESS_MILESTONE:0-25")[0].status == "DISMISSED"
        assert _alerts(project.id, "PROGRESS_MILESTONE:50-75")[0].title == "Project Milestone Reached"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Once-only rules
# ═══════════════════════════════════════════════════════════════════════════

class TestOnceRules:
    def test_project_completed_never_refires(self):
        project = create_project(status="COMPLETED")
        _engine().run_sweep(project.id, now=T0)
        [alert] = _alerts(project.id, "PROJECT_COMPLETED")
        alert_service.dismiss_alert(alert.id)

        project.status = "IN_PROGRESS"
        db.session.commit()
        _engine().run_sweep(project.id, now=T0 + timedelta(days=1))
        project.status = "COMPLETED"
        db.session.commit()
        _engine().run_sweep(project.id, now=T0 + timedelta(days=2))

        assert len(_alerts(project.id, "PROJECT_COMPLETED")) == 1

    def test_team_assigned_once_per_worker(self):
        project = create_project()
        add_team_member(project.id, 55, role="Worker")
        _engine().run_sweep(project.id, now=T0)
        _engine().run_sweep(project.id, now=T0 + timedelta(days=1))

        [alert] = _alerts(project.id, "TEAM_ASSIGNED:55")
        assert alert.assigned_to_user_id == 55
        assert alert.type == "TASK_ASSIGNED"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: User actions survive sweeps
# ═══════════════════════════════════════════════════════════════════════════

class TestUserActions:
    def test_acknowledged_alert_not_recreated(self):
        project = create_project(budget=10000, actual_cost=11500)
        _engine().run_sweep(project.id, now=T0)
        [alert] = _alerts(project.id, "BUDGET_OVERRUN")
        alert_service.acknowledge_alert(alert.id)

        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=1))

        assert len(report.created) == 0
        [alert] = _alerts(project.id, "BUDGET_OVERRUN")
        assert alert.status == "READ"

    def test_acknowledged_alert_dismissed_when_condition_clears(self):
        project = create_project(budget=10000, actual_cost=11500)
        _engine().run_sweep(project.id, now=T0)
        [alert] = _alerts(project.id, "BUDGET_OVERRUN")
        alert_service.acknowledge_alert(alert.id)

        project.actual_cost = 9000
        db.session.commit()
        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=1))
        assert len(report.dismissed) == 1
        assert _alerts(project.id, "BUDGET_OVERRUN")[0].status == "DISMISSED"

        project.actual_cost = 12000
        db.session.commit()
        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))
        assert len(report.created) == 1
        assert [a.status for a in _alerts(project.id, "BUDGET_OVERRUN")] == ["DISMISSED", "PENDING"]

    def test_reassignment_sticks(self):
        project = create_project(status="ON_HOLD")
        _engine().run_sweep(project.id, now=T0)
        [alert] = _alerts(project.id, "ON_HOLD")
        alert_service.reassign_alert(alert.id, 777)

        _engine().run_sweep(project.id, now=T0 + timedelta(hours=1))

        [alert] = _alerts(project.id, "ON_HOLD")
        assert alert.assigned_to_user_id == 777


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 5: Line item due
# ═══════════════════════════════════════════════════════════════════════════

class TestLineItemDue:
    @pytest.fixture()
    def started(self, template):
        """Project in the workflow since T0 with an OFFICE user on the team."""
        project = create_project()
        add_team_member(project.id, 21, workflow_role="OFFICE")
        clock = FixedClock(T0)
        svc = WorkflowService(clock=clock)
        svc.initialize_workflow(project.id)
        return project, svc, clock, template

    def test_escalates_and_never_deescalates(self, started):
        project, _, _, template = started
        key = f"LINE_ITEM_DUE:{template[0]}"

        _engine().run_sweep(project.id, now=T0 + timedelta(minutes=30))
        assert _alerts(project.id, key)[0].priority == "LOW"

        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))
        assert len(report.updated) == 1
        assert _alerts(project.id, key)[0].priority == "MEDIUM"

        _engine().run_sweep(project.id, now=T0 + timedelta(days=2, hours=1))
        [alert] = _alerts(project.id, key)
        assert alert.priority == "HIGH"
        assert alert.message.startswith("OVERDUE:")
        assert alert.assigned_to_user_id == 21
        assert alert.action_data["recipients"] == [21, 100]
        assert alert.action_data["previous_priority"] == "MEDIUM"

        _engine().run_sweep(project.id, now=T0 + timedelta(minutes=45))
        [alert] = _alerts(project.id, key)
        assert alert.priority == "HIGH"

    def test_routed_to_role_holder(self, started):
        project, _, _, template = started
        _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))
        [alert] = _alerts(project.id, f"LINE_ITEM_DUE:{template[0]}")
        assert alert.assigned_to_user_id == 21
        assert alert.line_item_id == template[0]
        assert alert.title.startswith("1A: ")
        assert alert.type == "WORK_FLOW_LINE_ITEM"

    def test_completion_auto_completes_alert(self, started):
        project, svc, clock, template = started
        _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))
        [alert] = _alerts(project.id, f"LINE_ITEM_DUE:{template[0]}")

        clock.advance(timedelta(hours=3))
        result = svc.complete_line_item(project.id, template[0], actor_id=21)

        assert [a.id for a in result.resolved_alerts] == [alert.id]
        db.session.expire_all()
        alert = db.session.get(Alert, alert.id)
        assert alert.status == "COMPLETED"
        assert alert.resolved_at is not None

        # Next sweep watches the next item; the completed one stays closed.
        report = _engine().run_sweep(project.id, now=clock.now + timedelta(minutes=90))
        assert len(_alerts(project.id, f"LINE_ITEM_DUE:{template[0]}")) == 1
        assert len(_alerts(project.id, f"LINE_ITEM_DUE:{template[1]}")) == 1
        assert len(report.dismissed) == 0

    def test_unroutable_goes_to_unassigned_queue(self, template):
        project = create_project(project_manager_id=None)
        WorkflowService(clock=FixedClock(T0)).initialize_workflow(project.id)

        report = _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))

        [alert] = _alerts(project.id, f"LINE_ITEM_DUE:{template[0]}")
        assert alert.assigned_to_user_id is None
        assert report.warnings and report.warnings[0]["project_id"] == project.id
        listed = alert_service.list_alerts(unassigned=True)
        assert alert.id in [a["id"] for a in listed["items"]]

    def test_overdue_unassigned_alert_goes_to_project_manager(self, template):
        project = create_project()
        WorkflowService(clock=FixedClock(T0)).initialize_workflow(project.id)
        key = f"LINE_ITEM_DUE:{template[0]}"

        _engine().run_sweep(project.id, now=T0 + timedelta(hours=2))
        [alert] = _alerts(project.id, key)
        assert alert.assigned_to_user_id is None

        _engine().run_sweep(project.id, now=T0 + timedelta(days=2, hours=1))
        db.session.expire_all()
        [alert] = _alerts(project.id, key)
        assert alert.priority == "HIGH"
        assert alert.assigned_to_user_id == 100
        assert alert.action_data["recipients"] == [100]
        assert alert.action_data["escalated_to_user_id"] == 100

    def test_completed_workflow_has_no_line_item_alert(self, started):
        project, svc, clock, template = started
        for line_item_id in template:
            svc.complete_line_item(project.id, line_item_id)
        _engine().run_sweep(project.id, now=T0 + timedelta(days=30))
        assert [a for a in _alerts(project.id) if a.rule_key.startswith("LINE_ITEM_DUE:")
                and a.status in ("PENDING", "SENT")] == []


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 6: Failure isolation and targets
# ═══════════════════════════════════════════════════════════════════════════

class TestSweepTargets:
    def test_failing_project_does_not_abort_sweep(self, monkeypatch):
        bad = create_project(name="Bad", status="ON_HOLD")
        good = create_project(name="Good", status="ON_HOLD")

        def exploding_rule(ctx):
            if ctx.project.id == bad.id:
                raise RuntimeError("rule blew up")
            return []

        monkeypatch.setitem(alert_rules._rule_registry, "EXPLODING", exploding_rule)
        report = _engine().run_sweep(now=T0)

        assert report.projects == 1
        assert report.skipped == [{"project_id": bad.id, "reason": "rule blew up"}]
        assert len(_alerts(good.id, "ON_HOLD")) == 1
        assert _alerts(bad.id) == []

    def test_unknown_project_is_skipped(self):
        report = _engine().run_sweep(99999, now=T0)
        assert report.projects == 0
        assert report.skipped[0]["reason"] == "project not found"

    def test_cancelled_project_without_tracker_excluded(self):
        create_project(status="CANCELLED")
        live = create_project(status="PENDING")
        report = _engine().run_sweep(now=T0)
        assert report.projects == 1
        assert _alerts(live.id, "LEAD_READY")

    def test_build_alert_engine_reads_config(self, app):
        app.config["DEADLINE_WARNING_DAYS"] = 14
        try:
            engine = build_alert_engine()
            assert engine.thresholds.deadline_warning_days == 14
            assert engine.max_workers == 1
        finally:
            app.config["DEADLINE_WARNING_DAYS"] = 7

    def test_report_merge_and_dict(self):
        opened = Alert(id=1, project_id=1, rule_key="ON_HOLD", type="WORKFLOW_ALERT", priority="HIGH",
                       title="Project On Hold", message="Paused", status="PENDING")
        closed = Alert(id=2, project_id=2, rule_key="DEADLINE", type="WORKFLOW_ALERT", priority="MEDIUM",
                       title="Deadline", message="Soon", status="DISMISSED")
        a = SweepReport(projects=1, created=[opened], warnings=[{"w": 1}])
        a.merge(SweepReport(projects=1, dismissed=[closed], skipped=[{"project_id": 3, "reason": "x"}]))

        assert a.alerts() == [opened, closed]
        body = a.to_dict()
        assert body["projects"] == 2
        assert [d["rule_key"] for d in body["created"]] == ["ON_HOLD"]
        assert body["updated"] == []
        assert body["dismissed"] == [closed.to_dict()]
        assert body["skipped"] == [{"project_id": 3, "reason": "x"}]
        assert body["warnings"] == [{"w": 1}]
        assert body["counts"] == {"created": 1, "updated": 0, "dismissed": 1, "skipped": 1}
        assert a.summary()["created"] == 1

    def test_report_lists_the_alerts_it_touched(self):
        project = create_project(budget=10000, actual_cost=11500)
        first = _engine().run_sweep(project.id, now=T0)
        assert all(isinstance(a, Alert) for a in first.created)
        assert sorted(a.rule_key for a in first.created) == sorted(
            a.rule_key for a in _alerts(project.id))

        project.actual_cost = 13000
        db.session.commit()
        second = _engine().run_sweep(project.id, now=T0 + timedelta(hours=1))
        [updated] = second.updated
        assert updated.rule_key == "BUDGET_OVERRUN"
        assert second.to_dict()["updated"][0]["action_data"]["overage"] == 30.0
        assert second.to_dict()["updated"][0]["id"] == updated.id


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 7: Re-entrancy guard
# ═══════════════════════════════════════════════════════════════════════════

class TestSweepCoordinator:
    def test_full_sweep_blocks_everything(self):
        coordinator = SweepCoordinator()
        with coordinator.claim():
            with pytest.raises(SweepAlreadyRunning):
                with coordinator.claim(5):
                    pass
            with pytest.raises(SweepAlreadyRunning):
                with coordinator.claim():
                    pass
        assert not coordinator.is_running()

    def test_project_sweeps_overlap_only_on_same_project(self):
        coordinator = SweepCoordinator()
        with coordinator.claim(5):
            with coordinator.claim(6):
                assert coordinator.is_running()
            with pytest.raises(SweepAlreadyRunning):
                with coordinator.claim(5):
                    pass
            with pytest.raises(SweepAlreadyRunning):
                with coordinator.claim():
                    pass

    def test_engine_rejects_overlapping_sweep(self):
        project = create_project()
        with sweep_coordinator.claim(project.id):
            with pytest.raises(SweepAlreadyRunning):
                _engine().run_sweep(project.id, now=T0)
        assert _alerts(project.id) == []
        assert _engine().run_sweep(project.id, now=T0).projects == 1
