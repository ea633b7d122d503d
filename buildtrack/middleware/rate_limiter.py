"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in buildtrack/__init__.py with no default limits; this module
applies limits per route category.

Usage:
    from buildtrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
SWEEP_LIMIT = "6/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow completion / tracker routes: 60/minute
        - Alert listing and lifecycle routes:    200/minute
        - Manual alert sweep:                    6/minute

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("alerts")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    sweep_view = app.view_functions.get("alerts.trigger_sweep")
    if sweep_view:
        limiter.limit(SWEEP_LIMIT)(sweep_view)

    app.logger.info(
        "Rate limiter configured: workflow=%s alerts=%s sweep=%s",
        WRITE_LIMIT, READ_LIMIT, SWEEP_LIMIT,
    )
