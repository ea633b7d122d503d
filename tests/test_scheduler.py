"""
Tests — Scheduler service, scheduled jobs, scheduler API and CLI commands.

Covers:
    1. Job registry and ScheduledJob records
    2. run_job outcomes (success, skipped, unknown)
    3. Interval due-ness and tick
    4. Scheduler endpoints
    5. Flask CLI commands
"""

from datetime import timedelta

from buildtrack.models import db
from buildtrack.models.alert import Alert
from buildtrack.models.scheduling import ScheduledJob
from buildtrack.models.workflow import LineItem
from buildtrack.services.alert_engine import sweep_coordinator
from buildtrack.services.scheduler_service import SchedulerService, get_registered_jobs
from buildtrack.utils.helpers import utcnow

from factories import create_project


def _job_record(name="alert_sweep"):
    db.session.expire_all()
    return ScheduledJob.query.filter_by(job_name=name).first()


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Registry & records
# ═══════════════════════════════════════════════════════════════════════════

class TestJobRegistry:
    def test_alert_sweep_registered(self):
        assert "alert_sweep" in get_registered_jobs()

    def test_ensure_jobs_registered_creates_once(self):
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == len(get_registered_jobs())
        assert SchedulerService.ensure_jobs_registered() == []

        job = _job_record()
        assert job.schedule_type == "interval"
        assert job.schedule_config == {"minutes": 5}
        assert job.interval_minutes == 5
        assert job.is_enabled is True


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: run_job
# ═══════════════════════════════════════════════════════════════════════════

class TestRunJob:
    def test_sweep_job_runs_and_records(self):
        project = create_project(status="ON_HOLD")
        SchedulerService.ensure_jobs_registered()

        result = SchedulerService.run_job("alert_sweep")

        assert result["status"] == "success"
        assert result["result"]["projects"] == 1
        assert result["result"]["created"] == 1
        job = _job_record()
        assert job.run_count == 1
        assert job.last_run_status == "success"
        assert Alert.query.filter_by(project_id=project.id, rule_key="ON_HOLD").count() == 1

    def test_overlapping_sweep_is_skipped(self):
        SchedulerService.ensure_jobs_registered()
        with sweep_coordinator.claim():
            result = SchedulerService.run_job("alert_sweep")
        assert result["status"] == "skipped"
        assert "already running" in result["error"]
        assert _job_record().error_count == 0

    def test_unknown_job(self):
        result = SchedulerService.run_job("no_such_job")
        assert result["status"] == "error"


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Due jobs & tick
# ═══════════════════════════════════════════════════════════════════════════

class TestDueJobs:
    def test_never_run_job_is_due(self):
        SchedulerService.ensure_jobs_registered()
        assert SchedulerService.due_jobs() == ["alert_sweep"]

    def test_interval_respected(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.run_job("alert_sweep")
        db.session.expire_all()
        now = utcnow()
        assert SchedulerService.due_jobs(now) == []
        assert SchedulerService.due_jobs(now + timedelta(minutes=6)) == ["alert_sweep"]

    def test_disabled_job_not_due(self):
        SchedulerService.ensure_jobs_registered()
        db.session.expire_all()
        toggled = SchedulerService.toggle_job("alert_sweep", False)
        assert toggled["is_enabled"] is False
        assert SchedulerService.due_jobs() == []

    def test_tick_runs_due_jobs(self):
        SchedulerService.ensure_jobs_registered()
        results = SchedulerService.tick()
        assert [r["job_name"] for r in results] == ["alert_sweep"]
        assert SchedulerService.tick() == []


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Scheduler API
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerAPI:
    def test_list_jobs(self, client):
        res = client.get("/api/v1/scheduler/jobs")
        assert res.status_code == 200
        jobs = res.get_json()["jobs"]
        assert jobs[0]["job_name"] == "alert_sweep"
        assert jobs[0]["db_record"]["schedule_config"] == {"minutes": 5}

    def test_run_job(self, client):
        create_project(status="PENDING")
        res = client.post("/api/v1/scheduler/jobs/alert_sweep/run")
        assert res.status_code == 200
        assert res.get_json()["result"]["created"] == 1

    def test_run_unknown_job(self, client):
        res = client.post("/api/v1/scheduler/jobs/nope/run")
        assert res.status_code == 404

    def test_toggle(self, client):
        res = client.post("/api/v1/scheduler/jobs/alert_sweep/toggle", json={"enabled": False})
        assert res.status_code == 200
        assert res.get_json()["status"] == "paused"

        assert client.post("/api/v1/scheduler/jobs/alert_sweep/toggle", json={}).status_code == 400


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 5: CLI
# ═══════════════════════════════════════════════════════════════════════════

class TestCLI:
    def test_seed_workflow_template(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["seed-workflow-template"])
        assert result.exit_code == 0
        assert "Seeded" in result.output
        assert LineItem.query.count() > 0

        again = runner.invoke(args=["seed-workflow-template"])
        assert "Seeded 0 workflow line items." in again.output

    def test_run_alert_sweep(self, app):
        project = create_project(status="ON_HOLD")
        result = app.test_cli_runner().invoke(args=["run-alert-sweep", "--project-id", str(project.id)])
        assert result.exit_code == 0
        assert "Sweep: 1 projects, 1 created" in result.output
        assert "created ON_HOLD (alert " in result.output
        assert f"project {project.id})" in result.output
