"""
BuildTrack
Workflow repository — persistence boundary for the engines.

The completion engine, the alert rule engine and the alert operations take
a ``WorkflowRepository`` instead of reaching for ``db.session`` directly.
Production code uses ``SqlAlchemyWorkflowRepository``; engine tests can
inject an in-memory implementation.

Usage:
    from buildtrack.services.repository import SqlAlchemyWorkflowRepository

    repo = SqlAlchemyWorkflowRepository()
    tracker = repo.get_tracker(project_id)
    ...
    repo.commit()
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from buildtrack.core.exceptions import ConcurrencyConflict
from buildtrack.models import db
from buildtrack.models.alert import TERMINAL_STATUSES, Alert, AlertRuleState
from buildtrack.models.project import Project, ProjectStatus, ProjectTeamMember
from buildtrack.models.tracker import CompletedItem, ProjectTracker, TrackerStatus
from buildtrack.models.workflow import LineItem, Phase, Section

logger = logging.getLogger(__name__)


class WorkflowRepository(ABC):
    """Storage operations the workflow and alert engines depend on."""

    # ── Template ─────────────────────────────────────────────────────────

    @abstractmethod
    def list_template_rows(self) -> list[tuple[Phase, Section, LineItem]]:
        """Every (phase, section, line item) triple, in any order."""

    # ── Projects ─────────────────────────────────────────────────────────

    @abstractmethod
    def get_project(self, project_id: int) -> Project | None: ...

    @abstractmethod
    def list_sweep_project_ids(self) -> list[int]:
        """Projects with an ACTIVE tracker or a status other than CANCELLED."""

    @abstractmethod
    def list_team_members(self, project_id: int) -> list[ProjectTeamMember]: ...

    # ── Tracker & history ────────────────────────────────────────────────

    @abstractmethod
    def get_tracker(self, project_id: int) -> ProjectTracker | None: ...

    @abstractmethod
    def get_completed_item(self, project_id: int, line_item_id: int) -> CompletedItem | None: ...

    @abstractmethod
    def list_completed_items(self, project_id: int) -> list[CompletedItem]:
        """Completion history, oldest first."""

    @abstractmethod
    def count_completed_items(self, project_id: int) -> int: ...

    # ── Alerts ───────────────────────────────────────────────────────────

    @abstractmethod
    def get_alert(self, alert_id: int) -> Alert | None: ...

    @abstractmethod
    def reload_alert(self, alert_id: int) -> Alert | None:
        """Like get_alert, but overwrites any copy already held in memory."""

    @abstractmethod
    def list_unresolved_alerts(self, project_id: int) -> list[Alert]:
        """Alerts of the project that are not COMPLETED or DISMISSED."""

    @abstractmethod
    def query_alerts(self, *, project_id=None, user_id=None, status=None,
                     priority=None, unassigned=False, overdue_before=None,
                     limit=50, offset=0) -> tuple[list[Alert], int]:
        """Filtered alerts, newest first, plus the unpaginated total.

        overdue_before keeps non-terminal alerts whose due_date is earlier.
        """

    @abstractmethod
    def alert_counts(self, project_id: int | None = None) -> list[tuple[str, str, int]]:
        """(status, priority, count) rows, optionally for one project."""

    @abstractmethod
    def list_rule_states(self, project_id: int) -> list[AlertRuleState]: ...

    # ── Unit of work ─────────────────────────────────────────────────────

    @abstractmethod
    def add(self, obj) -> None: ...

    @abstractmethod
    def flush(self) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    def refresh(self, obj) -> None:
        """Load obj's stored state now; stores without a session have nothing to do."""


class SqlAlchemyWorkflowRepository(WorkflowRepository):
    """Repository over a SQLAlchemy session (``db.session`` by default).

    Unique-constraint violations and stale tracker versions surface as
    ``ConcurrencyConflict`` after the session has been rolled back.
    """

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def list_template_rows(self):
        stmt = (
            select(Phase, Section, LineItem)
            .join(Section, Section.phase_id == Phase.id)
            .join(LineItem, LineItem.section_id == Section.id)
            .order_by(Phase.display_order, Section.display_order, LineItem.display_order)
        )
        return [tuple(row) for row in self.session.execute(stmt).all()]

    def get_project(self, project_id):
        return self.session.get(Project, project_id)

    def list_sweep_project_ids(self):
        stmt = (
            select(Project.id)
            .outerjoin(ProjectTracker, ProjectTracker.project_id == Project.id)
            .where(
                (ProjectTracker.status == TrackerStatus.ACTIVE.value)
                | (Project.status != ProjectStatus.CANCELLED.value)
            )
            .order_by(Project.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def list_team_members(self, project_id):
        stmt = (
            select(ProjectTeamMember)
            .where(ProjectTeamMember.project_id == project_id)
            .order_by(ProjectTeamMember.user_id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_tracker(self, project_id):
        stmt = select(ProjectTracker).where(ProjectTracker.project_id == project_id)
        return self.session.execute(stmt).scalars().first()

    def get_completed_item(self, project_id, line_item_id):
        stmt = select(CompletedItem).where(
            CompletedItem.project_id == project_id,
            CompletedItem.line_item_id == line_item_id,
        )
        return self.session.execute(stmt).scalars().first()

    def list_completed_items(self, project_id):
        stmt = (
            select(CompletedItem)
            .where(CompletedItem.project_id == project_id)
            .order_by(CompletedItem.completed_at, CompletedItem.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def count_completed_items(self, project_id):
        stmt = select(func.count(CompletedItem.id)).where(CompletedItem.project_id == project_id)
        return self.session.execute(stmt).scalar_one()

    def get_alert(self, alert_id):
        return self.session.get(Alert, alert_id)

    def reload_alert(self, alert_id):
        return self.session.get(Alert, alert_id, populate_existing=True)

    def list_unresolved_alerts(self, project_id):
        stmt = (
            select(Alert)
            .where(Alert.project_id == project_id, Alert.status.notin_(TERMINAL_STATUSES))
            .order_by(Alert.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def query_alerts(self, *, project_id=None, user_id=None, status=None,
                     priority=None, unassigned=False, overdue_before=None,
                     limit=50, offset=0):
        stmt = select(Alert)
        if project_id is not None:
            stmt = stmt.where(Alert.project_id == project_id)
        if user_id is not None:
            stmt = stmt.where(Alert.assigned_to_user_id == user_id)
        elif unassigned:
            stmt = stmt.where(Alert.assigned_to_user_id.is_(None))
        if status:
            stmt = stmt.where(Alert.status == status)
        if priority:
            stmt = stmt.where(Alert.priority == priority)
        if overdue_before is not None:
            stmt = stmt.where(
                Alert.due_date < overdue_before,
                Alert.status.notin_(TERMINAL_STATUSES),
            )

        total = self.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()
        page = self.session.execute(
            stmt.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit).offset(offset)
        ).scalars().all()
        return list(page), total

    def alert_counts(self, project_id=None):
        stmt = select(Alert.status, Alert.priority, func.count(Alert.id)).group_by(Alert.status, Alert.priority)
        if project_id is not None:
            stmt = stmt.where(Alert.project_id == project_id)
        return [tuple(row) for row in self.session.execute(stmt).all()]

    def list_rule_states(self, project_id):
        stmt = select(AlertRuleState).where(AlertRuleState.project_id == project_id)
        return list(self.session.execute(stmt).scalars().all())

    def add(self, obj):
        self.session.add(obj)

    def flush(self):
        try:
            self.session.flush()
        except (IntegrityError, StaleDataError) as exc:
            self._raise_conflict(exc)

    def commit(self):
        try:
            self.session.commit()
        except (IntegrityError, StaleDataError) as exc:
            self._raise_conflict(exc)

    def rollback(self):
        self.session.rollback()

    def refresh(self, obj):
        self.session.refresh(obj)

    def _raise_conflict(self, exc):
        self.session.rollback()
        logger.info("Concurrent write rejected: %s", exc.__class__.__name__)
        raise ConcurrencyConflict(details={"cause": exc.__class__.__name__}) from exc
