"""
BuildTrack
Scheduled Jobs.

Jobs:
    - alert_sweep: evaluates alert rules for every live project
"""

from __future__ import annotations

import logging
from typing import Any

from buildtrack.services.alert_engine import build_alert_engine
from buildtrack.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("alert_sweep", every_minutes=5)
def run_alert_sweep(app) -> dict[str, Any]:
    """Evaluate alert rules for all live projects."""
    report = build_alert_engine(app).run_sweep()
    return report.summary()
