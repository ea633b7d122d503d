"""
BuildTrack
Workflow template models.

Models:
    - Phase: top level of the template (LEAD → COMPLETION)
    - Section: numbered group of work inside a phase
    - LineItem: single unit of work, owned by a responsible role

The template is static reference data. It is seeded once and read through
``services.template_store``; nothing in the request path writes to it.

Traversal order is (Phase.display_order, Section.display_order,
LineItem.display_order). Phase order is global; section order is unique
within a phase and line item order within a section.
"""

from enum import Enum

from buildtrack.models import db


class PhaseType(str, Enum):
    LEAD = "LEAD"
    PROSPECT = "PROSPECT"
    APPROVED = "APPROVED"
    EXECUTION = "EXECUTION"
    SECOND_SUPPLEMENT = "SECOND_SUPPLEMENT"
    COMPLETION = "COMPLETION"


class ResponsibleRole(str, Enum):
    OFFICE = "OFFICE"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    FIELD_DIRECTOR = "FIELD_DIRECTOR"
    ADMINISTRATION = "ADMINISTRATION"
    ROOF_SUPERVISOR = "ROOF_SUPERVISOR"


PHASE_TYPES = {p.value for p in PhaseType}
RESPONSIBLE_ROLES = {r.value for r in ResponsibleRole}


class Phase(db.Model):
    __tablename__ = "workflow_phases"

    id = db.Column(db.Integer, primary_key=True)
    phase_type = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(120), nullable=False)
    display_order = db.Column(db.Integer, nullable=False, unique=True)

    sections = db.relationship(
        "Section", backref="phase", lazy="select",
        cascade="all, delete-orphan", order_by="Section.display_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "phase_type": self.phase_type,
            "name": self.name,
            "display_order": self.display_order,
        }

    def __repr__(self):
        return f"<Phase {self.phase_type} #{self.display_order}>"


class Section(db.Model):
    __tablename__ = "workflow_sections"
    __table_args__ = (
        db.UniqueConstraint("phase_id", "display_order", name="uq_workflow_sections_phase_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(
        db.Integer, db.ForeignKey("workflow_phases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    section_number = db.Column(db.String(10), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    display_order = db.Column(db.Integer, nullable=False)

    line_items = db.relationship(
        "LineItem", backref="section", lazy="select",
        cascade="all, delete-orphan", order_by="LineItem.display_order",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "section_number": self.section_number,
            "name": self.name,
            "display_order": self.display_order,
        }

    def __repr__(self):
        return f"<Section {self.section_number} {self.name!r}>"


class LineItem(db.Model):
    __tablename__ = "workflow_line_items"
    __table_args__ = (
        db.UniqueConstraint("section_id", "display_order", name="uq_workflow_line_items_section_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(
        db.Integer, db.ForeignKey("workflow_sections.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    item_letter = db.Column(db.String(5), nullable=False)
    name = db.Column(db.String(300), nullable=False)
    display_order = db.Column(db.Integer, nullable=False)
    responsible_role = db.Column(db.String(30), nullable=False,
                                 comment="OFFICE, PROJECT_MANAGER, FIELD_DIRECTOR, ADMINISTRATION, ROOF_SUPERVISOR")
    estimated_minutes = db.Column(db.Integer, nullable=False, default=30)
    alert_days = db.Column(db.Integer, nullable=False, default=1,
                           comment="Days before the due time that the line item alert opens")

    def to_dict(self):
        return {
            "id": self.id,
            "section_id": self.section_id,
            "item_letter": self.item_letter,
            "name": self.name,
            "display_order": self.display_order,
            "responsible_role": self.responsible_role,
            "estimated_minutes": self.estimated_minutes,
            "alert_days": self.alert_days,
        }

    def __repr__(self):
        return f"<LineItem {self.item_letter} {self.name!r}>"
