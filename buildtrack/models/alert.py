"""
BuildTrack
Workflow alert models.

Models:
    - Alert: one actionable alert, created by the rule engine and consumed
      by notification / UI layers
    - AlertRuleState: per (project, rule_key) trigger episode bookkeeping

Lifecycle:
    PENDING → SENT → READ → {COMPLETED | DISMISSED}

At most one PENDING/SENT alert may exist per (project_id, rule_key). The
partial unique index below enforces that at the storage level; the engine
upserts by the same key.
"""

from datetime import datetime, timezone
from enum import Enum

from buildtrack.models import db
from buildtrack.utils.helpers import iso


class AlertType(str, Enum):
    PROJECT_UPDATE = "PROJECT_UPDATE"
    WORKFLOW_ALERT = "WORKFLOW_ALERT"
    REMINDER = "REMINDER"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    WORK_FLOW_LINE_ITEM = "WORK_FLOW_LINE_ITEM"


class AlertPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    READ = "READ"
    COMPLETED = "COMPLETED"
    DISMISSED = "DISMISSED"


PRIORITY_RANK = {
    AlertPriority.LOW.value: 0,
    AlertPriority.MEDIUM.value: 1,
    AlertPriority.HIGH.value: 2,
}

# Statuses covered by the one-open-alert-per-rule_key index.
OPEN_STATUSES = (AlertStatus.PENDING.value, AlertStatus.SENT.value)
TERMINAL_STATUSES = (AlertStatus.COMPLETED.value, AlertStatus.DISMISSED.value)

ALERT_TRANSITIONS = {
    "PENDING":   ["SENT", "READ", "COMPLETED", "DISMISSED"],
    "SENT":      ["READ", "COMPLETED", "DISMISSED"],
    "READ":      ["COMPLETED", "DISMISSED"],
    "COMPLETED": [],
    "DISMISSED": [],
}


def validate_alert_transition(old_status, new_status):
    """Return True if transition is valid, False otherwise."""
    return new_status in ALERT_TRANSITIONS.get(old_status, [])


class Alert(db.Model):
    __tablename__ = "workflow_alerts"
    __table_args__ = (
        db.Index("ix_workflow_alerts_project_status", "project_id", "status"),
        db.Index("ix_workflow_alerts_assignee_status", "assigned_to_user_id", "status"),
        db.Index(
            "uq_workflow_alerts_open_rule",
            "project_id",
            "rule_key",
            unique=True,
            postgresql_where=db.text("status IN ('PENDING', 'SENT')"),
            sqlite_where=db.text("status IN ('PENDING', 'SENT')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_item_id = db.Column(db.Integer, db.ForeignKey("workflow_line_items.id"), nullable=True)
    section_id = db.Column(db.Integer, db.ForeignKey("workflow_sections.id"), nullable=True)
    phase_id = db.Column(db.Integer, db.ForeignKey("workflow_phases.id"), nullable=True)

    rule_key = db.Column(db.String(100), nullable=False,
                         comment="Dedup key, e.g. BUDGET_OVERRUN or LINE_ITEM_DUE:42")
    type = db.Column(db.String(30), nullable=False)
    priority = db.Column(db.String(10), nullable=False, default=AlertPriority.MEDIUM.value)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False, default="")
    assigned_to_user_id = db.Column(db.Integer, nullable=True,
                                    comment="NULL = unassigned queue")
    status = db.Column(db.String(20), nullable=False, default=AlertStatus.PENDING.value)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    action_data = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "rule_key": self.rule_key,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "status": self.status,
            "project_id": self.project_id,
            "line_item_id": self.line_item_id,
            "section_id": self.section_id,
            "phase_id": self.phase_id,
            "assigned_to_user_id": self.assigned_to_user_id,
            "due_date": iso(self.due_date),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "resolved_at": iso(self.resolved_at),
            "action_data": self.action_data or {},
        }

    def __repr__(self):
        return f"<Alert {self.id} {self.rule_key} [{self.status}/{self.priority}]>"


class AlertRuleState(db.Model):
    """
    Trigger episode for one rule on one project.

    is_active is True while the rule's condition holds. Episode rules flip
    it back to False when the condition clears; once-only rules never do.
    """

    __tablename__ = "alert_rule_states"
    __table_args__ = (
        db.UniqueConstraint("project_id", "rule_key", name="uq_alert_rule_states_project_rule"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    rule_key = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    fired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cleared_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "rule_key": self.rule_key,
            "is_active": self.is_active,
            "fired_at": iso(self.fired_at),
            "cleared_at": iso(self.cleared_at),
        }

    def __repr__(self):
        return f"<AlertRuleState p={self.project_id} {self.rule_key} active={self.is_active}>"
