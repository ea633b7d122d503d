"""
BuildTrack
Workflow Service — project tracker and line item completion engine.

Responsibilities:
    - initialize_workflow: create the tracker at the first template line item
    - complete_line_item: validate, record history, advance the pointer and
      notify completion listeners inside one transaction
    - get_workflow_status / list_completed_items: read side

Completion is strictly sequential: only the tracker's current line item can
be completed. Repeating a completion is a no-op success (advanced=False).

Listeners registered with ``@on_line_item_completed`` run before commit and
share the repository (and therefore the transaction) with the completion.

Usage:
    from buildtrack.services.workflow_service import WorkflowService

    svc = WorkflowService()
    svc.initialize_workflow(project_id)
    result = svc.complete_line_item(project_id, line_item_id, actor_id=7)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from buildtrack.core.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    OutOfOrderCompletion,
    TemplateInconsistency,
    TrackerNotFound,
    TrackerTerminal,
    UnknownLineItem,
)
from buildtrack.models.tracker import CompletedItem, ProjectTracker, TrackerStatus
from buildtrack.services.project_locks import project_locks
from buildtrack.services.repository import SqlAlchemyWorkflowRepository
from buildtrack.services.template_store import TERMINAL, get_template_store
from buildtrack.utils.helpers import round_half_up, utcnow

logger = logging.getLogger(__name__)
ops_logger = logging.getLogger("buildtrack.ops")


# ═══════════════════════════════════════════════════════════════════════════
#  Completion events
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LineItemCompleted:
    """Emitted after a completion is staged, before the transaction commits."""
    project_id: int
    line_item_id: int
    section_id: int
    phase_id: int
    completed_by: int | None
    completed_at: datetime
    next_line_item_id: int | None
    workflow_completed: bool


_completion_listeners: list[Callable] = []


def on_line_item_completed(fn: Callable) -> Callable:
    """Register ``fn(repo, event)`` to run inside every completion transaction.

    The listener may return a list of objects it touched (e.g. resolved
    alerts); they are collected into ``CompletionResult.resolved_alerts``.
    """
    if fn not in _completion_listeners:
        _completion_listeners.append(fn)
    return fn


def get_completion_listeners() -> list[Callable]:
    return list(_completion_listeners)


@dataclass
class CompletionResult:
    tracker: ProjectTracker
    advanced: bool
    completed_item: CompletedItem | None = None
    resolved_alerts: list = field(default_factory=list)
    workflow_completed: bool = False
    phase_completed: bool = False
    section_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "advanced": self.advanced,
            "tracker": self.tracker.to_dict() if self.tracker is not None else None,
            "completed_item": self.completed_item.to_dict() if self.completed_item else None,
            "resolved_alert_ids": [a.id for a in self.resolved_alerts],
            "workflow_completed": self.workflow_completed,
            "phase_completed": self.phase_completed,
            "section_completed": self.section_completed,
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════════════════

class WorkflowService:
    """Tracker lifecycle and completion engine.

    Args:
        repo: WorkflowRepository; defaults to the SQLAlchemy implementation.
        template_store: TemplateStore; defaults to the shared cached store.
        locks: ProjectLockRegistry serializing mutations per project.
        clock: zero-arg callable returning an aware UTC datetime.
    """

    def __init__(self, repo=None, template_store=None, locks=None, clock=None):
        self.repo = repo if repo is not None else SqlAlchemyWorkflowRepository()
        self._store = template_store
        self.locks = locks if locks is not None else project_locks
        self.clock = clock or utcnow

    @property
    def store(self):
        if self._store is None:
            self._store = get_template_store(self.repo)
        return self._store

    # ── Tracker creation ─────────────────────────────────────────────────

    def initialize_workflow(self, project_id: int) -> ProjectTracker:
        """Create the project's tracker at the first line item.

        Returns the existing tracker when the project is already in the
        workflow. Raises NotFoundError for an unknown project and
        EmptyTemplate when there is nothing to track.
        """
        with self.locks.hold(project_id):
            if self.repo.get_project(project_id) is None:
                raise NotFoundError(resource="Project", resource_id=project_id)

            existing = self.repo.get_tracker(project_id)
            if existing is not None:
                return existing

            first = self.store.first()
            now = self.clock()
            tracker = ProjectTracker(
                project_id=project_id,
                current_phase_id=first.phase_id,
                current_section_id=first.section_id,
                current_line_item_id=first.line_item_id,
                status=TrackerStatus.ACTIVE.value,
                started_at=now,
                phase_started_at=now,
                section_started_at=now,
                line_item_started_at=now,
                completed_at=None,
            )
            self.repo.add(tracker)
            try:
                self.repo.commit()
            except ConcurrencyConflict:
                tracker = self.repo.get_tracker(project_id)
                if tracker is None:
                    raise
                return tracker

            logger.info(
                "Workflow initialized for project %s at line item %s",
                project_id, first.line_item_id,
                extra={"project_id": project_id, "event_type": "workflow_initialized"},
            )
            return tracker

    # ── Completion ───────────────────────────────────────────────────────

    def complete_line_item(self, project_id: int, line_item_id: int,
                           actor_id: int | None = None, notes: str | None = None) -> CompletionResult:
        """Complete the tracker's current line item and advance.

        Raises:
            TrackerNotFound: project has no tracker.
            TrackerTerminal: workflow already completed.
            UnknownLineItem: line_item_id is not part of the template.
            OutOfOrderCompletion: line_item_id is not the current item.
            TemplateInconsistency: tracker points at an id the template lacks.
        """
        with self.locks.hold(project_id):
            try:
                return self._complete(project_id, line_item_id, actor_id, notes)
            except ConcurrencyConflict:
                # Lost a race to another writer; the winner's result stands.
                existing = self.repo.get_completed_item(project_id, line_item_id)
                if existing is None:
                    raise
                tracker = self.repo.get_tracker(project_id)
                logger.info(
                    "Concurrent completion of line item %s on project %s resolved as no-op",
                    line_item_id, project_id,
                    extra={"project_id": project_id, "line_item_id": line_item_id},
                )
                return CompletionResult(
                    tracker=tracker,
                    advanced=False,
                    completed_item=existing,
                    workflow_completed=bool(tracker is not None and tracker.is_completed),
                )
            except Exception:
                self.repo.rollback()
                raise

    def _complete(self, project_id, line_item_id, actor_id, notes) -> CompletionResult:
        tracker = self.repo.get_tracker(project_id)
        if tracker is None:
            raise TrackerNotFound(project_id)

        existing = self.repo.get_completed_item(project_id, line_item_id)
        if existing is not None:
            return CompletionResult(
                tracker=tracker,
                advanced=False,
                completed_item=existing,
                workflow_completed=tracker.is_completed,
            )

        if tracker.is_completed:
            raise TrackerTerminal(project_id)

        if line_item_id != tracker.current_line_item_id:
            if line_item_id not in self.store:
                raise UnknownLineItem(line_item_id)
            raise OutOfOrderCompletion(project_id, line_item_id, tracker.current_line_item_id)

        try:
            current = self.store.lookup(tracker.current_line_item_id)
        except UnknownLineItem:
            err = TemplateInconsistency(project_id, tracker.current_line_item_id)
            ops_logger.error(
                str(err),
                extra={
                    "project_id": project_id,
                    "line_item_id": tracker.current_line_item_id,
                    "event_type": "template_inconsistency",
                },
            )
            raise err from None

        now = self.clock()
        completed = CompletedItem(
            project_id=project_id,
            line_item_id=current.line_item_id,
            phase_id=current.phase_id,
            section_id=current.section_id,
            completed_at=now,
            completed_by=actor_id,
            notes=notes,
        )
        self.repo.add(completed)

        nxt = self.store.next(current)
        if nxt is TERMINAL:
            tracker.status = TrackerStatus.COMPLETED.value
            tracker.current_phase_id = None
            tracker.current_section_id = None
            tracker.current_line_item_id = None
            tracker.line_item_started_at = None
            tracker.completed_at = now
            section_completed = phase_completed = workflow_completed = True
        else:
            section_completed = nxt.section_id != current.section_id
            phase_completed = nxt.phase_id != current.phase_id
            workflow_completed = False
            tracker.current_phase_id = nxt.phase_id
            tracker.current_section_id = nxt.section_id
            tracker.current_line_item_id = nxt.line_item_id
            tracker.line_item_started_at = now
            if section_completed:
                tracker.section_started_at = now
            if phase_completed:
                tracker.phase_started_at = now

        self.repo.flush()

        event = LineItemCompleted(
            project_id=project_id,
            line_item_id=current.line_item_id,
            section_id=current.section_id,
            phase_id=current.phase_id,
            completed_by=actor_id,
            completed_at=now,
            next_line_item_id=None if nxt is TERMINAL else nxt.line_item_id,
            workflow_completed=workflow_completed,
        )
        resolved = []
        for listener in _completion_listeners:
            resolved.extend(listener(self.repo, event) or [])

        self.repo.commit()

        logger.info(
            "Line item %s completed on project %s by %s",
            current.line_item_id, project_id, actor_id,
            extra={
                "project_id": project_id,
                "line_item_id": current.line_item_id,
                "event_type": "line_item_completed",
            },
        )
        return CompletionResult(
            tracker=tracker,
            advanced=True,
            completed_item=completed,
            resolved_alerts=resolved,
            workflow_completed=workflow_completed,
            phase_completed=phase_completed,
            section_completed=section_completed,
        )

    # ── Read side ────────────────────────────────────────────────────────

    def get_workflow_status(self, project_id: int) -> dict[str, Any]:
        tracker = self.repo.get_tracker(project_id)
        if tracker is None:
            raise TrackerNotFound(project_id)

        total = self.store.count()
        completed = self.repo.count_completed_items(project_id)
        progress = int(round_half_up(completed / total * 100, 0)) if total else 0

        current = None
        if tracker.current_line_item_id is not None and tracker.current_line_item_id in self.store:
            current = self.store.lookup(tracker.current_line_item_id)

        return {
            "project_id": project_id,
            "tracker": tracker.to_dict(),
            "current_phase": {
                "id": current.phase_id,
                "phase_type": current.phase_type,
                "name": current.phase_name,
            } if current else None,
            "current_section": {
                "id": current.section_id,
                "section_number": current.section_number,
                "name": current.section_name,
            } if current else None,
            "current_line_item": current.to_dict() if current else None,
            "completed_items": completed,
            "total_items": total,
            "progress": progress,
            "is_complete": tracker.is_completed,
        }

    def list_completed_items(self, project_id: int) -> list[CompletedItem]:
        if self.repo.get_tracker(project_id) is None:
            raise TrackerNotFound(project_id)
        return self.repo.list_completed_items(project_id)


# ── Module-level shortcuts (default repository, shared store and locks) ──

def initialize_workflow(project_id: int) -> ProjectTracker:
    return WorkflowService().initialize_workflow(project_id)


def complete_line_item(project_id: int, line_item_id: int,
                       actor_id: int | None = None, notes: str | None = None) -> CompletionResult:
    return WorkflowService().complete_line_item(project_id, line_item_id, actor_id, notes)


def get_workflow_status(project_id: int) -> dict[str, Any]:
    return WorkflowService().get_workflow_status(project_id)
