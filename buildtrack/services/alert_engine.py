"""
BuildTrack
Alert Rule Engine — sweeps, dedup and auto-resolution.

run_sweep evaluates ``services.alert_rules`` for one project or for every
live project and reconciles the result with stored alerts:

    - one PENDING/SENT alert per (project, rule_key), updated in place
    - episode rules fire when their condition starts holding; when it
      clears, the rule state is closed and a still-open alert is DISMISSED
    - once-only rules (PROJECT_COMPLETED, TEAM_ASSIGNED) never re-fire
    - acknowledged or dismissed alerts are not re-created while the
      episode lasts

Completing a line item auto-completes its LINE_ITEM_DUE alert through the
``resolve_line_item_alerts`` completion listener, in the completion's
transaction.

Usage:
    from buildtrack.services.alert_engine import build_alert_engine

    report = build_alert_engine().run_sweep()
    report.created          # [Alert, ...] opened by this sweep
    report.summary()        # {"projects": 4, "created": 3, "updated": 0, ...}

Each project is evaluated under a commit gate: if the project runs past
SWEEP_PROJECT_TIMEOUT_SECONDS its changes are rolled back and it is listed
in ``report.skipped``, whether the sweep runs inline or pooled.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable

from buildtrack.core.exceptions import SweepAlreadyRunning, TemplateInconsistency, UnknownLineItem
from buildtrack.models.alert import (
    OPEN_STATUSES,
    PRIORITY_RANK,
    Alert,
    AlertRuleState,
    AlertStatus,
)
from buildtrack.services.alert_rules import (
    FiringPolicy,
    RuleContext,
    RuleThresholds,
    evaluate_rules,
    line_item_rule_key,
    policy_for_key,
)
from buildtrack.services.project_locks import project_locks
from buildtrack.services.repository import SqlAlchemyWorkflowRepository
from buildtrack.services.role_resolver import RoleResolver
from buildtrack.services.template_store import get_template_store
from buildtrack.services.workflow_service import on_line_item_completed
from buildtrack.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("buildtrack.ops")


# ═══════════════════════════════════════════════════════════════════════════
#  Sweep report
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SweepReport:
    """Alerts a sweep opened, changed and dismissed, plus skipped projects."""
    projects: int = 0
    created: list[Alert] = field(default_factory=list)
    updated: list[Alert] = field(default_factory=list)
    dismissed: list[Alert] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)

    def merge(self, other: "SweepReport") -> None:
        self.projects += other.projects
        self.created.extend(other.created)
        self.updated.extend(other.updated)
        self.dismissed.extend(other.dismissed)
        self.skipped.extend(other.skipped)
        self.warnings.extend(other.warnings)

    def alerts(self) -> list[Alert]:
        return [*self.created, *self.updated, *self.dismissed]

    def counts(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "dismissed": len(self.dismissed),
            "skipped": len(self.skipped),
        }

    def summary(self) -> dict[str, Any]:
        """Counts only; stored as the scheduled job's run result."""
        return {
            "projects": self.projects,
            **self.counts(),
            "skipped": list(self.skipped),
            "warnings": list(self.warnings),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "projects": self.projects,
            "created": [a.to_dict() for a in self.created],
            "updated": [a.to_dict() for a in self.updated],
            "dismissed": [a.to_dict() for a in self.dismissed],
            "skipped": list(self.skipped),
            "warnings": list(self.warnings),
            "counts": self.counts(),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Per-project commit gate
# ═══════════════════════════════════════════════════════════════════════════

class ProjectSweepTimeout(Exception):
    def __init__(self, project_id: int, timeout: float | None):
        self.project_id = project_id
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s")


class _ProjectRun:
    """Decides whether one project's evaluation may commit.

    The deadline starts once the project lock is held. A run that reaches
    ``begin_commit`` late, or after the sweep cancelled it, raises
    ProjectSweepTimeout and its changes are rolled back. A run already
    committing can no longer be cancelled.
    """

    def __init__(self, project_id: int, timeout: float | None):
        self.project_id = project_id
        self.timeout = timeout
        self.deadline: float | None = None
        self._state = "pending"
        self._lock = threading.Lock()

    def start(self) -> None:
        with self._lock:
            if self._state == "cancelled":
                raise ProjectSweepTimeout(self.project_id, self.timeout)
            self._state = "running"
            if self.timeout:
                self.deadline = time.monotonic() + self.timeout

    def cancel(self) -> bool:
        """Forbid the commit; False when the run is already committing."""
        with self._lock:
            if self._state == "committing":
                return False
            self._state = "cancelled"
            return True

    def begin_commit(self) -> None:
        with self._lock:
            expired = self.deadline is not None and time.monotonic() > self.deadline
            if self._state == "cancelled" or expired:
                self._state = "cancelled"
                raise ProjectSweepTimeout(self.project_id, self.timeout)
            self._state = "committing"


# ═══════════════════════════════════════════════════════════════════════════
#  Re-entrancy guard
# ═══════════════════════════════════════════════════════════════════════════

class SweepCoordinator:
    """Rejects a sweep whose scope overlaps one already in flight.

    A full sweep overlaps everything; a single-project sweep overlaps a
    full sweep and another sweep of the same project.
    """

    ALL = "*"

    def __init__(self):
        self._active: set = set()
        self._lock = threading.Lock()

    @contextmanager
    def claim(self, project_id: int | None = None):
        scope = self.ALL if project_id is None else project_id
        with self._lock:
            if self.ALL in self._active or scope in self._active or (scope == self.ALL and self._active):
                raise SweepAlreadyRunning(str(scope))
            self._active.add(scope)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(scope)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._active)


sweep_coordinator = SweepCoordinator()


# ═══════════════════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════════════════

class AlertRuleEngine:
    """Evaluates alert rules and reconciles stored alerts.

    Args:
        repo: repository used for inline sweeps and target selection.
        template_store: TemplateStore; defaults to the shared store.
        locks: per-project lock registry shared with the completion engine.
        coordinator: SweepCoordinator guarding overlapping sweeps.
        max_workers: 1 evaluates inline; more uses a thread pool (even for a
            single project) where each worker gets its own repository from
            ``repo_factory``.
        project_timeout: seconds one project may take before its changes
            are discarded; None disables the bound.
        thresholds: RuleThresholds for deadline / budget rules.
        repo_factory: zero-arg callable building a repository for a worker.
        context_factory: zero-arg callable returning a context manager the
            worker runs inside (e.g. ``app.app_context``).
    """

    def __init__(self, repo=None, template_store=None, locks=None, coordinator=None,
                 max_workers: int = 1, project_timeout: float | None = None,
                 thresholds: RuleThresholds | None = None,
                 repo_factory: Callable | None = None,
                 context_factory: Callable | None = None):
        self.repo = repo if repo is not None else SqlAlchemyWorkflowRepository()
        self._store = template_store
        self.locks = locks if locks is not None else project_locks
        self.coordinator = coordinator if coordinator is not None else sweep_coordinator
        self.max_workers = max(1, int(max_workers or 1))
        self.project_timeout = project_timeout
        self.thresholds = thresholds or RuleThresholds()
        self.repo_factory = repo_factory or SqlAlchemyWorkflowRepository
        self.context_factory = context_factory or nullcontext

    @property
    def store(self):
        if self._store is None:
            self._store = get_template_store(self.repo)
        return self._store

    # ── Public API ───────────────────────────────────────────────────────

    def run_sweep(self, project_id: int | None = None, now=None) -> SweepReport:
        """Evaluate rules for one project (or all live projects).

        Raises SweepAlreadyRunning when an overlapping sweep is in flight.
        Per-project failures never abort the sweep; they land in
        ``report.skipped``.
        """
        now = as_utc(now) if now is not None else utcnow()
        with self.coordinator.claim(project_id):
            if project_id is not None:
                targets = [project_id]
            else:
                targets = self.repo.list_sweep_project_ids()

            # Build the store up front so workers never race to load it.
            self.store  # noqa: B018

            if self.max_workers > 1:
                report = self._run_pooled(targets, now)
            else:
                report = self._run_inline(targets, now)

        counts = report.counts()
        logger.info(
            "Alert sweep finished: %d projects, %d created, %d updated, %d dismissed, %d skipped",
            report.projects, counts["created"], counts["updated"], counts["dismissed"], counts["skipped"],
            extra={"event_type": "alert_sweep", "project_id": project_id},
        )
        return report

    # ── Execution modes ──────────────────────────────────────────────────

    def _run_inline(self, targets, now) -> SweepReport:
        report = SweepReport()
        for pid in targets:
            report.merge(self._sweep_one(self.repo, pid, now, _ProjectRun(pid, self.project_timeout)))
        return report

    def _run_pooled(self, targets, now) -> SweepReport:
        report = SweepReport()
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="alert-sweep")
        try:
            runs = [_ProjectRun(pid, self.project_timeout) for pid in targets]
            futures = [(run, executor.submit(self._sweep_isolated, run, now)) for run in runs]
            for run, future in futures:
                try:
                    report.merge(future.result(timeout=self.project_timeout))
                except FuturesTimeout:
                    if not run.cancel():
                        # Commit already under way; its writes stand.
                        report.merge(future.result())
                        continue
                    reason = str(ProjectSweepTimeout(run.project_id, self.project_timeout))
                    ops_logger.error(
                        "Alert sweep for project %s %s", run.project_id, reason,
                        extra={"project_id": run.project_id, "event_type": "alert_sweep_timeout"},
                    )
                    report.skipped.append({"project_id": run.project_id, "reason": reason})
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return report

    def _sweep_isolated(self, run, now) -> SweepReport:
        with self.context_factory():
            repo = self.repo_factory()
            report = self._sweep_one(repo, run.project_id, now, run)
            # Load alert state before this worker's session goes away.
            for alert in report.alerts():
                repo.refresh(alert)
            return report

    def _sweep_one(self, repo, project_id, now, run) -> SweepReport:
        try:
            with self.locks.hold(project_id):
                run.start()
                return self._evaluate_project(repo, project_id, now, run)
        except ProjectSweepTimeout as exc:
            repo.rollback()
            ops_logger.error(
                "Alert sweep for project %s rolled back: %s", project_id, exc,
                extra={"project_id": project_id, "event_type": "alert_sweep_timeout"},
            )
            return SweepReport(skipped=[{"project_id": project_id, "reason": str(exc)}])
        except Exception as exc:
            repo.rollback()
            ops_logger.error(
                "Alert sweep failed for project %s: %s", project_id, exc,
                exc_info=not isinstance(exc, TemplateInconsistency),
                extra={"project_id": project_id, "event_type": "alert_sweep_project_failed"},
            )
            return SweepReport(skipped=[{"project_id": project_id, "reason": str(exc)}])

    # ── Per-project evaluation ───────────────────────────────────────────

    def _evaluate_project(self, repo, project_id, now, run) -> SweepReport:
        report = SweepReport()
        project = repo.get_project(project_id)
        if project is None:
            report.skipped.append({"project_id": project_id, "reason": "project not found"})
            return report

        tracker = repo.get_tracker(project_id)
        current = None
        if tracker is not None and not tracker.is_completed and tracker.current_line_item_id is not None:
            try:
                current = self.store.lookup(tracker.current_line_item_id)
            except UnknownLineItem:
                raise TemplateInconsistency(project_id, tracker.current_line_item_id) from None

        ctx = RuleContext(
            project=project,
            tracker=tracker,
            current=current,
            team_members=repo.list_team_members(project_id),
            resolver=RoleResolver(repo),
            now=now,
            thresholds=self.thresholds,
        )
        candidates = evaluate_rules(ctx)
        self._apply(repo, project_id, candidates, now, report)
        run.begin_commit()
        repo.commit()

        report.projects = 1
        report.warnings.extend(ctx.warnings)
        return report

    def _apply(self, repo, project_id, candidates, now, report: SweepReport) -> None:
        states = {s.rule_key: s for s in repo.list_rule_states(project_id)}
        unresolved = repo.list_unresolved_alerts(project_id)
        open_by_key = {a.rule_key: a for a in unresolved if a.status in OPEN_STATUSES}
        live_by_key: dict[str, Alert] = {}
        for alert in unresolved:
            live_by_key.setdefault(alert.rule_key, alert)

        held = set()
        for candidate in candidates:
            key = candidate.rule_key
            held.add(key)
            state = states.get(key)
            alert = open_by_key.get(key)

            if state is None or (not state.is_active and candidate.policy is FiringPolicy.EPISODE):
                if state is None:
                    state = AlertRuleState(project_id=project_id, rule_key=key)
                    repo.add(state)
                    states[key] = state
                state.is_active = True
                state.fired_at = now
                state.cleared_at = None
                if alert is not None:
                    if self._update(alert, candidate, now):
                        report.updated.append(alert)
                    continue
                new_alert = self._create(project_id, candidate, now)
                repo.add(new_alert)
                live_by_key[key] = new_alert
                report.created.append(new_alert)
                logger.debug("Created alert %s for project %s", key, project_id,
                             extra={"project_id": project_id, "rule_key": key})
                continue

            if alert is not None and self._update(alert, candidate, now):
                report.updated.append(alert)

        for key, state in states.items():
            if not state.is_active or key in held or policy_for_key(key) is FiringPolicy.ONCE:
                continue
            state.is_active = False
            state.cleared_at = now
            alert = live_by_key.get(key)
            if alert is not None and not alert.is_terminal:
                alert.status = AlertStatus.DISMISSED.value
                alert.resolved_at = now
                alert.updated_at = now
                report.dismissed.append(alert)
                logger.debug("Dismissed alert %s for project %s, condition cleared", key, project_id,
                             extra={"project_id": project_id, "rule_key": key})

        repo.flush()

    @staticmethod
    def _create(project_id, candidate, now) -> Alert:
        return Alert(
            project_id=project_id,
            line_item_id=candidate.line_item_id,
            section_id=candidate.section_id,
            phase_id=candidate.phase_id,
            rule_key=candidate.rule_key,
            type=candidate.alert_type.value,
            priority=candidate.priority.value,
            title=candidate.title,
            message=candidate.message,
            assigned_to_user_id=candidate.assigned_to_user_id,
            status=AlertStatus.PENDING.value,
            due_date=candidate.due_date,
            action_data=dict(candidate.action_data),
            created_at=now,
            updated_at=now,
            resolved_at=None,
        )

    @staticmethod
    def _update(alert: Alert, candidate, now) -> bool:
        """Apply mutable fields; return True when anything changed."""
        changed = False

        priority = candidate.priority.value
        if candidate.escalate_only and PRIORITY_RANK[alert.priority] > PRIORITY_RANK[priority]:
            priority = alert.priority

        for attr, value in (
            ("title", candidate.title),
            ("message", candidate.message),
            ("priority", priority),
            ("action_data", dict(candidate.action_data)),
        ):
            if getattr(alert, attr) != value:
                setattr(alert, attr, value)
                changed = True

        if as_utc(alert.due_date) != as_utc(candidate.due_date):
            alert.due_date = candidate.due_date
            changed = True

        # User reassignments stick; only fill an empty assignee.
        if alert.assigned_to_user_id is None and candidate.assigned_to_user_id is not None:
            alert.assigned_to_user_id = candidate.assigned_to_user_id
            changed = True

        if changed:
            alert.updated_at = now
        return changed


# ═══════════════════════════════════════════════════════════════════════════
#  Completion listener
# ═══════════════════════════════════════════════════════════════════════════

@on_line_item_completed
def resolve_line_item_alerts(repo, event) -> list[Alert]:
    """Move the completed item's open LINE_ITEM_DUE alert to COMPLETED."""
    key = line_item_rule_key(event.line_item_id)
    resolved = []
    for alert in repo.list_unresolved_alerts(event.project_id):
        if alert.rule_key != key:
            continue
        alert.status = AlertStatus.COMPLETED.value
        alert.resolved_at = event.completed_at
        alert.updated_at = event.completed_at
        resolved.append(alert)

    for state in repo.list_rule_states(event.project_id):
        if state.rule_key == key and state.is_active:
            state.is_active = False
            state.cleared_at = event.completed_at

    if resolved:
        logger.info(
            "Auto-completed %d alert(s) for line item %s on project %s",
            len(resolved), event.line_item_id, event.project_id,
            extra={"project_id": event.project_id, "rule_key": key, "event_type": "alert_auto_completed"},
        )
    return resolved


# ═══════════════════════════════════════════════════════════════════════════
#  Factory
# ═══════════════════════════════════════════════════════════════════════════

def build_alert_engine(app=None, repo=None) -> AlertRuleEngine:
    """Engine configured from the Flask app config (current_app by default)."""
    if app is None:
        from flask import current_app
        app = current_app._get_current_object()

    cfg = app.config
    return AlertRuleEngine(
        repo=repo,
        max_workers=cfg.get("SWEEP_MAX_WORKERS", 4),
        project_timeout=cfg.get("SWEEP_PROJECT_TIMEOUT_SECONDS", 30),
        thresholds=RuleThresholds(
            deadline_warning_days=cfg.get("DEADLINE_WARNING_DAYS", 7),
            budget_overrun_pct=float(cfg.get("BUDGET_OVERRUN_THRESHOLD_PCT", 10)),
        ),
        context_factory=app.app_context,
    )


def run_sweep(project_id: int | None = None, now=None) -> SweepReport:
    return build_alert_engine().run_sweep(project_id=project_id, now=now)
