"""
Alert Rules Registry

Each rule inspects one project's state and returns zero or more
``AlertCandidate`` objects. Rules are independent of each other; the engine
(``services.alert_engine``) owns dedup, episodes and persistence.

Rule keys:
    LEAD_READY                     project waiting to start
    PROGRESS_MILESTONE:<lo>-<hi>   progress bucket while IN_PROGRESS
    ON_HOLD                        project paused
    PROJECT_COMPLETED              project finished (once ever)
    DEADLINE / OVERDUE             end_date approaching / passed
    BUDGET_OVERRUN                 actual cost above budget by > threshold
    TEAM_ASSIGNED:<user_id>        crew member added as Worker (once ever)
    LINE_ITEM_DUE:<line_item_id>   current workflow step due / overdue

Usage:
    from buildtrack.services.alert_rules import RuleContext, evaluate_rules
    candidates = evaluate_rules(ctx)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from buildtrack.core.exceptions import RoleResolutionWarning
from buildtrack.models.alert import AlertPriority, AlertType
from buildtrack.models.project import WORKER_ROLE, ProjectStatus
from buildtrack.utils.helpers import as_utc, iso, round_half_up

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Types
# ═════════════════════════════════════════════════════════════════════════════

class FiringPolicy(str, Enum):
    EPISODE = "episode"   # fire when the condition starts holding, clear when it stops
    ONCE = "once"         # fire once per key, never cleared


@dataclass(frozen=True)
class RuleThresholds:
    deadline_warning_days: int = 7
    budget_overrun_pct: float = 10.0


@dataclass
class AlertCandidate:
    """An alert a rule wants to exist right now."""
    rule_key: str
    alert_type: AlertType
    priority: AlertPriority
    title: str
    message: str
    policy: FiringPolicy = FiringPolicy.EPISODE
    assigned_to_user_id: int | None = None
    due_date: datetime | None = None
    action_data: dict = field(default_factory=dict)
    line_item_id: int | None = None
    section_id: int | None = None
    phase_id: int | None = None
    escalate_only: bool = False


@dataclass
class RuleContext:
    """Everything a rule may look at for one project."""
    project: Any
    tracker: Any
    current: Any            # LineItemRef of the tracker's current item, or None
    team_members: list
    resolver: Any
    now: datetime
    thresholds: RuleThresholds = field(default_factory=RuleThresholds)
    warnings: list[dict] = field(default_factory=list)

    @property
    def project_name(self) -> str:
        return self.project.name or f"#{self.project.id}"

    def base_action_data(self) -> dict:
        return {"project_id": self.project.id, "project_name": self.project_name}


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════

_rule_registry: dict[str, Callable[[RuleContext], list[AlertCandidate]]] = {}

ONCE_KEY_PREFIXES = ("PROJECT_COMPLETED", "TEAM_ASSIGNED:")
LINE_ITEM_DUE_PREFIX = "LINE_ITEM_DUE:"

PROGRESS_BUCKETS = ((0, 25), (25, 50), (50, 75), (75, 90), (90, 100))
_BUCKET_TITLES = {
    (0, 25): "Project Started",
    (25, 50): "Project Progress Update",
    (50, 75): "Project Milestone Reached",
    (75, 90): "Project Progress Update",
    (90, 100): "Project Nearing Completion",
}
_BUCKET_NOTES = {
    (0, 25): "Work has begun.",
    (25, 50): "Work is underway.",
    (50, 75): "Great progress!",
    (75, 90): "Most of the work is done.",
    (90, 100): "Final stages approaching.",
}

_CLOSED_PROJECT_STATUSES = (ProjectStatus.COMPLETED.value, ProjectStatus.CANCELLED.value)


def register_rule(name: str):
    """Decorator adding a rule function to the evaluation order."""
    def decorator(fn):
        _rule_registry[name] = fn
        return fn
    return decorator


def get_registered_rules() -> dict[str, Callable]:
    return dict(_rule_registry)


def policy_for_key(rule_key: str) -> FiringPolicy:
    if rule_key.startswith(ONCE_KEY_PREFIXES):
        return FiringPolicy.ONCE
    return FiringPolicy.EPISODE


def line_item_rule_key(line_item_id: int) -> str:
    return f"{LINE_ITEM_DUE_PREFIX}{line_item_id}"


def evaluate_rules(ctx: RuleContext) -> list[AlertCandidate]:
    """Run every registered rule; later candidates with a duplicate key are dropped."""
    candidates: list[AlertCandidate] = []
    seen: set[str] = set()
    for name, rule in _rule_registry.items():
        for candidate in rule(ctx) or []:
            if candidate.rule_key in seen:
                logger.debug("Rule %s produced duplicate key %s", name, candidate.rule_key)
                continue
            seen.add(candidate.rule_key)
            candidates.append(candidate)
    return candidates


def days_until(target: datetime, now: datetime) -> int:
    """Whole days until ``target``, rounded up (negative once passed)."""
    return math.ceil((as_utc(target) - as_utc(now)).total_seconds() / 86400)


def progress_bucket(progress) -> tuple[int, int]:
    value = min(max(int(progress or 0), 0), 100)
    for lo, hi in PROGRESS_BUCKETS:
        if lo <= value < hi:
            return lo, hi
    return PROGRESS_BUCKETS[-1]


def _plural(n: int, word: str = "day") -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _money(value: float) -> str:
    return f"${value:,.2f}"


# ═════════════════════════════════════════════════════════════════════════════
# Project status rules
# ═════════════════════════════════════════════════════════════════════════════

@register_rule("LEAD_READY")
def lead_ready(ctx: RuleContext) -> list[AlertCandidate]:
    if ctx.project.status != ProjectStatus.PENDING.value:
        return []
    return [AlertCandidate(
        rule_key="LEAD_READY",
        alert_type=AlertType.PROJECT_UPDATE,
        priority=AlertPriority.MEDIUM,
        title="Project Ready to Start",
        message=f"Project {ctx.project_name} is pending and ready to begin.",
        assigned_to_user_id=ctx.project.project_manager_id,
        action_data=ctx.base_action_data(),
    )]


@register_rule("PROGRESS_MILESTONE")
def progress_milestone(ctx: RuleContext) -> list[AlertCandidate]:
    if ctx.project.status != ProjectStatus.IN_PROGRESS.value:
        return []
    lo, hi = progress_bucket(ctx.project.progress)
    progress = min(max(int(ctx.project.progress or 0), 0), 100)
    data = ctx.base_action_data()
    data["bucket"] = f"{lo}-{hi}"
    return [AlertCandidate(
        rule_key=f"PROGRESS_MILESTONE:{lo}-{hi}",
        alert_type=AlertType.PROJECT_UPDATE,
        priority=AlertPriority.LOW,
        title=_BUCKET_TITLES[(lo, hi)],
        message=f"Project {ctx.project_name} is {progress}% complete. {_BUCKET_NOTES[(lo, hi)]}",
        assigned_to_user_id=ctx.project.project_manager_id,
        action_data=data,
    )]


@register_rule("ON_HOLD")
def on_hold(ctx: RuleContext) -> list[AlertCandidate]:
    if ctx.project.status != ProjectStatus.ON_HOLD.value:
        return []
    data = ctx.base_action_data()
    data["status"] = ctx.project.status
    return [AlertCandidate(
        rule_key="ON_HOLD",
        alert_type=AlertType.WORKFLOW_ALERT,
        priority=AlertPriority.HIGH,
        title="Project On Hold",
        message=f"Project {ctx.project_name} has been placed on hold. Action required.",
        assigned_to_user_id=ctx.project.project_manager_id,
        action_data=data,
    )]


@register_rule("PROJECT_COMPLETED")
def project_completed(ctx: RuleContext) -> list[AlertCandidate]:
    if ctx.project.status != ProjectStatus.COMPLETED.value:
        return []
    data = ctx.base_action_data()
    data["status"] = ctx.project.status
    return [AlertCandidate(
        rule_key="PROJECT_COMPLETED",
        alert_type=AlertType.TASK_COMPLETED,
        priority=AlertPriority.LOW,
        title="Project Completed",
        message=f"Congratulations! Project {ctx.project_name} has been completed successfully.",
        policy=FiringPolicy.ONCE,
        assigned_to_user_id=ctx.project.project_manager_id,
        action_data=data,
    )]


# ═════════════════════════════════════════════════════════════════════════════
# Schedule & cost rules
# ═════════════════════════════════════════════════════════════════════════════

@register_rule("DEADLINE")
def deadline(ctx: RuleContext) -> list[AlertCandidate]:
    """DEADLINE inside the warning window, OVERDUE once end_date has passed."""
    project = ctx.project
    if not project.end_date or project.status in _CLOSED_PROJECT_STATUSES:
        return []

    days = days_until(project.end_date, ctx.now)
    end_date = as_utc(project.end_date)
    data = ctx.base_action_data()

    if 0 < days <= ctx.thresholds.deadline_warning_days:
        data["days_until_deadline"] = days
        data["progress"] = project.progress
        return [AlertCandidate(
            rule_key="DEADLINE",
            alert_type=AlertType.REMINDER,
            priority=AlertPriority.MEDIUM,
            title="Project Deadline Approaching",
            message=(
                f"Project {ctx.project_name} deadline is in {_plural(days)}. "
                f"Current progress: {project.progress or 0}%"
            ),
            assigned_to_user_id=project.project_manager_id,
            due_date=end_date,
            action_data=data,
        )]

    if days < 0:
        data["days_overdue"] = abs(days)
        return [AlertCandidate(
            rule_key="OVERDUE",
            alert_type=AlertType.WORKFLOW_ALERT,
            priority=AlertPriority.HIGH,
            title="Project Overdue",
            message=(
                f"Project {ctx.project_name} is {_plural(abs(days))} overdue. "
                "Immediate attention required."
            ),
            assigned_to_user_id=project.project_manager_id,
            due_date=end_date,
            action_data=data,
        )]
    return []


@register_rule("BUDGET_OVERRUN")
def budget_overrun(ctx: RuleContext) -> list[AlertCandidate]:
    project = ctx.project
    if not project.budget or not project.actual_cost:
        return []
    budget = float(project.budget)
    actual = float(project.actual_cost)
    if budget <= 0:
        return []

    overage = (actual - budget) * 100 / budget
    if overage <= ctx.thresholds.budget_overrun_pct:
        return []

    rounded = round_half_up(overage, 1)
    data = ctx.base_action_data()
    data.update({"overage": rounded, "actual_cost": actual, "budget": budget})
    return [AlertCandidate(
        rule_key="BUDGET_OVERRUN",
        alert_type=AlertType.WORKFLOW_ALERT,
        priority=AlertPriority.HIGH,
        title="Budget Overrun Alert",
        message=(
            f"Project {ctx.project_name} is {rounded:.1f}% over budget. "
            f"Current: {_money(actual)}, Budget: {_money(budget)}"
        ),
        assigned_to_user_id=project.project_manager_id,
        action_data=data,
    )]


# ═════════════════════════════════════════════════════════════════════════════
# Team & workflow rules
# ═════════════════════════════════════════════════════════════════════════════

@register_rule("TEAM_ASSIGNED")
def team_assigned(ctx: RuleContext) -> list[AlertCandidate]:
    candidates = []
    for member in ctx.team_members:
        if member.role != WORKER_ROLE:
            continue
        data = ctx.base_action_data()
        data["role"] = member.role
        candidates.append(AlertCandidate(
            rule_key=f"TEAM_ASSIGNED:{member.user_id}",
            alert_type=AlertType.TASK_ASSIGNED,
            priority=AlertPriority.MEDIUM,
            title="New Task Assignment",
            message=f"You have been assigned to project {ctx.project_name} as a worker.",
            policy=FiringPolicy.ONCE,
            assigned_to_user_id=member.user_id,
            action_data=data,
        ))
    return candidates


@register_rule("LINE_ITEM_DUE")
def line_item_due(ctx: RuleContext) -> list[AlertCandidate]:
    """Current line item is inside its alert window, due, or overdue.

    due_at = line_item_started_at + estimated_minutes. The alert opens
    alert_days before due_at (LOW), becomes MEDIUM at due_at and HIGH once
    overdue by alert_days or more. At HIGH the project manager joins the
    recipients and takes the alert when the responsible role has nobody.
    """
    ref = ctx.current
    tracker = ctx.tracker
    if ref is None or tracker is None or tracker.line_item_started_at is None:
        return []

    started = as_utc(tracker.line_item_started_at)
    now = as_utc(ctx.now)
    due_at = started + timedelta(minutes=ref.estimated_minutes)
    window = timedelta(days=ref.alert_days)
    if now < due_at - window:
        return []

    step = f'{ref.phase_name} step "{ref.name}" for project "{ctx.project_name}"'
    if now < due_at:
        priority = AlertPriority.LOW
        days = days_until(due_at, now)
        message = f"REMINDER: {step} is due in {_plural(days)}. Please plan accordingly."
    elif now - due_at < window:
        priority = AlertPriority.MEDIUM
        message = f"IMPORTANT: {step} is due now. Please prioritize."
    else:
        priority = AlertPriority.HIGH
        days_over = max(int((now - due_at).total_seconds() // 86400), 1)
        message = f"OVERDUE: {step} is {_plural(days_over)} overdue. Immediate attention required!"

    recipients = ctx.resolver.resolve(ctx.project, ref.responsible_role)
    rule_key = line_item_rule_key(ref.line_item_id)
    if not recipients:
        ctx.warnings.append({
            "project_id": ctx.project.id,
            "rule_key": rule_key,
            "warning": str(RoleResolutionWarning(ctx.project.id, ref.responsible_role)),
        })

    data = ctx.base_action_data()
    data.update({
        "line_item_id": ref.line_item_id,
        "code": ref.code,
        "phase_type": ref.phase_type,
        "section_number": ref.section_number,
        "responsible_role": ref.responsible_role,
        "due_at": iso(due_at),
        "recipients": recipients,
    })
    assignee = recipients[0] if recipients else None

    if priority is AlertPriority.HIGH:
        manager_id = getattr(ctx.project, "project_manager_id", None)
        data.update({
            "escalation_reason": "OVERDUE",
            "escalated_at": iso(due_at + window),
            "previous_priority": AlertPriority.MEDIUM.value,
        })
        if manager_id is not None:
            if manager_id not in recipients:
                data["recipients"] = recipients + [manager_id]
            data["escalated_to_user_id"] = manager_id
            if assignee is None:
                assignee = manager_id

    return [AlertCandidate(
        rule_key=rule_key,
        alert_type=AlertType.WORK_FLOW_LINE_ITEM,
        priority=priority,
        title=f"{ref.code}: {ref.name}",
        message=message,
        assigned_to_user_id=assignee,
        due_date=due_at,
        action_data=data,
        line_item_id=ref.line_item_id,
        section_id=ref.section_id,
        phase_id=ref.phase_id,
        escalate_only=True,
    )]
