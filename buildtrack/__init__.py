"""
BuildTrack
Flask Application Factory.

Usage:
    from buildtrack import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from buildtrack.config import config
from buildtrack.models import db
from buildtrack.middleware.logging_config import configure_logging
from buildtrack.middleware.rate_limiter import init_rate_limits
from buildtrack.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per-blueprint
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from buildtrack.models import workflow as _workflow_models      # noqa: F401
    from buildtrack.models import project as _project_models        # noqa: F401
    from buildtrack.models import tracker as _tracker_models        # noqa: F401
    from buildtrack.models import alert as _alert_models            # noqa: F401
    from buildtrack.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from buildtrack.blueprints.workflow_bp import workflow_bp
    from buildtrack.blueprints.alert_bp import alert_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(alert_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-workflow-template")
    def seed_workflow_template_cmd():
        """Seed the default workflow template (phases, sections, line items)."""
        from buildtrack.services.template_seed import seed_default_template
        count = seed_default_template()
        click.echo(f"Seeded {count} workflow line items.")

    @app.cli.command("run-alert-sweep")
    @click.option("--project-id", type=int, default=None, help="Sweep a single project.")
    def run_alert_sweep_cmd(project_id):
        """Evaluate alert rules now and print the sweep report."""
        from buildtrack.services.alert_engine import build_alert_engine
        report = build_alert_engine().run_sweep(project_id=project_id)
        click.echo(
            f"Sweep: {report.projects} projects, {len(report.created)} created, "
            f"{len(report.updated)} updated, {len(report.dismissed)} dismissed, "
            f"{len(report.skipped)} skipped"
        )
        for alert in report.created:
            click.echo(f"  created {alert.rule_key} (alert {alert.id}, project {alert.project_id})")
        for entry in report.skipped:
            click.echo(f"  skipped project {entry['project_id']}: {entry['reason']}")

    # ── Health check ─────────────────────────────────────────────────────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "BuildTrack"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Completion listeners + scheduler jobs (import to register) ───────
    importlib.import_module("buildtrack.services.alert_engine")
    importlib.import_module("buildtrack.services.scheduled_jobs")
    from buildtrack.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        _SchedulerSvc.start()

    return app
