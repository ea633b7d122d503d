"""
Default workflow template (roofing / restoration job lifecycle).

seed_default_template() inserts the phases, sections and line items below
when the template tables are empty, then reloads the shared Template Store.
Running it again is a no-op.

Layout per section:
    (section_number, name, responsible_role, [line item names...])
Items are lettered A, B, C... in list order.
"""

from __future__ import annotations

import logging
from string import ascii_uppercase

from buildtrack.models import db
from buildtrack.models.workflow import LineItem, Phase, PhaseType, ResponsibleRole, Section
from buildtrack.services.template_store import reload_template_store

logger = logging.getLogger(__name__)

_OFFICE = ResponsibleRole.OFFICE.value
_PM = ResponsibleRole.PROJECT_MANAGER.value
_FIELD = ResponsibleRole.FIELD_DIRECTOR.value
_ADMIN = ResponsibleRole.ADMINISTRATION.value
_ROOF = ResponsibleRole.ROOF_SUPERVISOR.value

DEFAULT_TEMPLATE = [
    (PhaseType.LEAD, "Lead", [
        ("1", "Input Customer Information", _OFFICE, [
            "Make sure the name is spelled correctly",
            "Make sure the email is correct. Send a confirmation email to confirm email",
            "Add home and property information",
            "Upload initial property photos",
        ]),
        ("2", "Complete Questions to Ask Checklist", _OFFICE, [
            "Input answers from Question Checklist into notes",
            "Record property details",
        ]),
        ("3", "Input Lead Property Information", _OFFICE, [
            "Add Home View photos",
            "Add Street View photos",
            "Add elevation screenshot",
        ]),
        ("4", "Assign A Project Manager", _OFFICE, [
            "Use Slack and Asana to assign the Project Manager",
        ]),
        ("5", "Schedule Initial Inspection", _OFFICE, [
            "Call customer and coordinate with PM schedule",
            "Create calendar appointment",
        ]),
    ]),
    (PhaseType.PROSPECT, "Prospect", [
        ("6", "Site Inspection", _PM, [
            "Take site photos",
            "Complete inspection form",
            "Document material colors",
        ]),
        ("7", "Write Estimate", _PM, [
            "Fill out estimate form",
            "Write initial estimate and send to customer",
        ]),
        ("8", "Insurance Process", _ADMIN, [
            "Compare field vs insurance estimates",
            "Identify supplemental items",
        ]),
        ("9", "Agreement Preparation", _ADMIN, [
            "Trade cost analysis",
            "Prepare estimate forms",
        ]),
        ("10", "Agreement Signing", _ADMIN, [
            "Review agreement with customer",
            "Collect signatures",
        ]),
    ]),
    (PhaseType.APPROVED, "Approved", [
        ("11", "Administrative Setup", _ADMIN, [
            "Confirm shingle choice",
            "Order materials",
            "Create labor orders",
        ]),
        ("12", "Pre-Job Actions", _OFFICE, [
            "Pull permits",
        ]),
        ("13", "Prepare for Production", _ADMIN, [
            "All pictures in Job (Gutter, Ventilation, Screens)",
            "Verify labor order in scheduler",
        ]),
    ]),
    (PhaseType.EXECUTION, "Execution", [
        ("14", "Installation", _FIELD, [
            "Document work start",
            "Capture progress photos",
        ]),
        ("15", "Quality Check", _ROOF, [
            "Field director quality walk",
            "Upload roof packet",
        ]),
        ("16", "Multiple Trades", _ADMIN, [
            "Confirm start date for additional trades",
        ]),
        ("17", "Subcontractor Work", _ADMIN, [
            "Confirm subcontractor start and completion dates",
        ]),
        ("18", "Update Customer", _ADMIN, [
            "Send progress update to customer",
        ]),
    ]),
    (PhaseType.SECOND_SUPPLEMENT, "2nd Supplement", [
        ("19", "Create Supp in Xactimate", _ADMIN, [
            "Check roof packet and checklist",
            "Submit supplement to insurance",
        ]),
        ("20", "Follow-Up Calls", _ADMIN, [
            "Call insurance adjuster twice weekly",
        ]),
        ("21", "Review Approved Supp", _ADMIN, [
            "Update trade cost",
            "Prepare counter supplement if needed",
        ]),
        ("22", "Customer Update", _ADMIN, [
            "Share supplement outcome with customer",
        ]),
    ]),
    (PhaseType.COMPLETION, "Completion", [
        ("23", "Financial Processing", _ADMIN, [
            "Verify worksheet",
            "Final invoice and payment link",
        ]),
        ("24", "Project Closeout", _OFFICE, [
            "Register warranty",
            "Send final documentation to customer",
        ]),
    ]),
]

# Estimated minutes and alert window per responsible role.
_ROLE_TIMING = {
    _OFFICE: (60, 1),
    _PM: (240, 2),
    _FIELD: (480, 2),
    _ADMIN: (120, 2),
    _ROOF: (240, 1),
}


def seed_default_template(template=None) -> int:
    """Insert the default template if none exists. Returns line items created."""
    if db.session.query(Phase.id).first() is not None:
        logger.info("Workflow template already present, skipping seed")
        return 0

    created = 0
    for phase_order, (phase_type, phase_name, sections) in enumerate(template or DEFAULT_TEMPLATE, start=1):
        phase = Phase(phase_type=phase_type.value, name=phase_name, display_order=phase_order)
        db.session.add(phase)
        for section_order, (number, name, role, items) in enumerate(sections, start=1):
            section = Section(section_number=number, name=name, display_order=section_order)
            phase.sections.append(section)
            minutes, alert_days = _ROLE_TIMING[role]
            for item_order, item_name in enumerate(items, start=1):
                section.line_items.append(LineItem(
                    item_letter=ascii_uppercase[item_order - 1],
                    name=item_name,
                    display_order=item_order,
                    responsible_role=role,
                    estimated_minutes=minutes,
                    alert_days=alert_days,
                ))
                created += 1

    db.session.commit()
    reload_template_store()
    logger.info("Seeded workflow template with %d line items", created)
    return created
