"""
BuildTrack
Workflow progress models.

Models:
    - ProjectTracker: one per project, points at the line item to do next
    - CompletedItem: immutable completion history

The tracker carries a version counter (SQLAlchemy ``version_id_col``) so a
stale concurrent update fails with StaleDataError instead of overwriting.
CompletedItem is unique per (project, line item); a second insert is the
other signal of a lost race.
"""

from datetime import datetime, timezone
from enum import Enum

from buildtrack.models import db
from buildtrack.utils.helpers import iso


class TrackerStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class ProjectTracker(db.Model):
    __tablename__ = "project_workflow_trackers"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    current_phase_id = db.Column(db.Integer, db.ForeignKey("workflow_phases.id"), nullable=True)
    current_section_id = db.Column(db.Integer, db.ForeignKey("workflow_sections.id"), nullable=True)
    current_line_item_id = db.Column(db.Integer, db.ForeignKey("workflow_line_items.id"), nullable=True,
                                     comment="NULL only once the workflow is COMPLETED")
    status = db.Column(db.String(20), nullable=False, default=TrackerStatus.ACTIVE.value)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    phase_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    section_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    line_item_started_at = db.Column(db.DateTime(timezone=True), nullable=True,
                                     comment="Activation time of the current line item")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_completed(self) -> bool:
        return self.status == TrackerStatus.COMPLETED.value

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "current_phase_id": self.current_phase_id,
            "current_section_id": self.current_section_id,
            "current_line_item_id": self.current_line_item_id,
            "status": self.status,
            "started_at": iso(self.started_at),
            "phase_started_at": iso(self.phase_started_at),
            "section_started_at": iso(self.section_started_at),
            "line_item_started_at": iso(self.line_item_started_at),
            "completed_at": iso(self.completed_at),
            "version": self.version,
        }

    def __repr__(self):
        return f"<ProjectTracker p={self.project_id} li={self.current_line_item_id} [{self.status}]>"


class CompletedItem(db.Model):
    __tablename__ = "completed_workflow_items"
    __table_args__ = (
        db.UniqueConstraint("project_id", "line_item_id", name="uq_completed_workflow_items_project_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    line_item_id = db.Column(db.Integer, db.ForeignKey("workflow_line_items.id"), nullable=False)
    phase_id = db.Column(db.Integer, db.ForeignKey("workflow_phases.id"), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey("workflow_sections.id"), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=False,
                             default=lambda: datetime.now(timezone.utc))
    completed_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "line_item_id": self.line_item_id,
            "phase_id": self.phase_id,
            "section_id": self.section_id,
            "completed_at": iso(self.completed_at),
            "completed_by": self.completed_by,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<CompletedItem p={self.project_id} li={self.line_item_id}>"
