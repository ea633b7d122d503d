"""
BuildTrack
Project and team models.

Projects and their crews are owned by the surrounding application; the
workflow engine keeps the fields it evaluates (status, progress, budget,
schedule, manager, team) in local tables.
"""

from datetime import datetime, timezone
from enum import Enum

from buildtrack.models import db
from buildtrack.utils.helpers import iso


class ProjectStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


PROJECT_STATUSES = {s.value for s in ProjectStatus}

# Crew role that receives a task-assignment alert when added to a project.
WORKER_ROLE = "Worker"


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ProjectStatus.PENDING.value,
                       comment="PENDING, IN_PROGRESS, ON_HOLD, COMPLETED, CANCELLED")
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0..100")
    budget = db.Column(db.Float, nullable=True)
    actual_cost = db.Column(db.Float, nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    project_manager_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    team_members = db.relationship(
        "ProjectTeamMember", backref="project", lazy="select",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    tracker = db.relationship(
        "ProjectTracker", backref="project", uselist=False,
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "budget": self.budget,
            "actual_cost": self.actual_cost,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "project_manager_id": self.project_manager_id,
        }

    def __repr__(self):
        return f"<Project {self.id} {self.name!r} [{self.status}]>"


class ProjectTeamMember(db.Model):
    __tablename__ = "project_team_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_team_members_project_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, nullable=False, index=True)
    role = db.Column(db.String(50), nullable=True, comment="Crew role, e.g. Worker, Foreman")
    workflow_role = db.Column(db.String(30), nullable=True,
                              comment="ResponsibleRole this member covers on workflow line items")
    added_at = db.Column(db.DateTime(timezone=True),
                         default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
            "workflow_role": self.workflow_role,
            "added_at": iso(self.added_at),
        }

    def __repr__(self):
        return f"<ProjectTeamMember p={self.project_id} u={self.user_id} {self.role}>"
