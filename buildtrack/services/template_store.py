"""
BuildTrack
Template Store — ordered, read-only view of the workflow template.

The template (Phase → Section → LineItem) is flattened once into a list
sorted by (phase order, section order, line item order). Every entry knows
its index and whether it opens a section or a phase, so next/lookup are
O(1) and no query runs on the completion path.

Sections and phases without line items never appear in the flat list and
are therefore skipped by traversal.

Usage:
    from buildtrack.services.template_store import get_template_store, TERMINAL

    store = get_template_store()
    ref = store.first()
    nxt = store.next(ref)
    if nxt is TERMINAL:
        ...
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Iterable, Iterator

from buildtrack.core.exceptions import EmptyTemplate, UnknownLineItem, WorkflowError

logger = logging.getLogger(__name__)


class _Terminal:
    """Returned by ``TemplateStore.next`` after the last line item."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "TERMINAL"

    def __bool__(self):
        return False


TERMINAL = _Terminal()


@dataclass(frozen=True)
class LineItemRef:
    """Immutable position of one line item in the template."""
    line_item_id: int
    section_id: int
    phase_id: int
    phase_type: str
    phase_name: str
    section_number: str
    section_name: str
    item_letter: str
    name: str
    responsible_role: str
    estimated_minutes: int
    alert_days: int
    index: int
    is_section_start: bool
    is_phase_start: bool

    @property
    def code(self) -> str:
        return f"{self.section_number}{self.item_letter}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["code"] = self.code
        return data


class TemplateStore:
    """Flat, pre-sorted arena of line item references."""

    def __init__(self, refs: list[LineItemRef]):
        self._refs = tuple(refs)
        self._by_id = {ref.line_item_id: ref for ref in self._refs}

    @classmethod
    def from_rows(cls, rows: Iterable[tuple]) -> "TemplateStore":
        """Build from (phase, section, line_item) triples in any order.

        Raises WorkflowError when two line items share the same
        (phase, section, line item) display order.
        """
        ordered = sorted(
            rows,
            key=lambda r: (r[0].display_order, r[1].display_order, r[2].display_order),
        )
        refs: list[LineItemRef] = []
        prev_key = None
        prev_phase_id = None
        prev_section_id = None
        for index, (phase, section, item) in enumerate(ordered):
            key = (phase.display_order, section.display_order, item.display_order)
            if key == prev_key:
                raise WorkflowError(f"Duplicate template position {key} for line item {item.id}")
            refs.append(LineItemRef(
                line_item_id=item.id,
                section_id=section.id,
                phase_id=phase.id,
                phase_type=phase.phase_type,
                phase_name=phase.name,
                section_number=section.section_number,
                section_name=section.name,
                item_letter=item.item_letter,
                name=item.name,
                responsible_role=item.responsible_role,
                estimated_minutes=item.estimated_minutes or 0,
                alert_days=item.alert_days or 0,
                index=index,
                is_section_start=section.id != prev_section_id,
                is_phase_start=phase.id != prev_phase_id,
            ))
            prev_key = key
            prev_phase_id = phase.id
            prev_section_id = section.id
        return cls(refs)

    # ── Traversal ────────────────────────────────────────────────────────

    def first(self) -> LineItemRef:
        if not self._refs:
            raise EmptyTemplate()
        return self._refs[0]

    def next(self, ref: LineItemRef):
        """Line item after ``ref`` in global order, or TERMINAL."""
        index = ref.index + 1
        if index < len(self._refs):
            return self._refs[index]
        return TERMINAL

    def lookup(self, line_item_id: int) -> LineItemRef:
        try:
            return self._by_id[line_item_id]
        except KeyError:
            raise UnknownLineItem(line_item_id) from None

    def position(self, line_item_id: int) -> int:
        """Zero-based traversal index of a line item."""
        return self.lookup(line_item_id).index

    def count(self) -> int:
        return len(self._refs)

    def __contains__(self, line_item_id) -> bool:
        return line_item_id in self._by_id

    def __iter__(self) -> Iterator[LineItemRef]:
        return iter(self._refs)

    def __len__(self) -> int:
        return len(self._refs)

    def to_tree(self) -> list[dict]:
        """Nested phases → sections → line items, in traversal order."""
        phases: list[dict] = []
        for ref in self._refs:
            if ref.is_phase_start:
                phases.append({
                    "id": ref.phase_id,
                    "phase_type": ref.phase_type,
                    "name": ref.phase_name,
                    "sections": [],
                })
            if ref.is_section_start:
                phases[-1]["sections"].append({
                    "id": ref.section_id,
                    "section_number": ref.section_number,
                    "name": ref.section_name,
                    "line_items": [],
                })
            phases[-1]["sections"][-1]["line_items"].append({
                "id": ref.line_item_id,
                "code": ref.code,
                "item_letter": ref.item_letter,
                "name": ref.name,
                "responsible_role": ref.responsible_role,
                "estimated_minutes": ref.estimated_minutes,
                "alert_days": ref.alert_days,
            })
        return phases


# ═══════════════════════════════════════════════════════════════════════════
#  Process-wide cache
# ═══════════════════════════════════════════════════════════════════════════

_store: TemplateStore | None = None
_store_lock = threading.Lock()


def get_template_store(repo=None) -> TemplateStore:
    """Return the shared store, building it from the repository on first use."""
    global _store
    store = _store
    if store is not None:
        return store
    with _store_lock:
        if _store is None:
            _store = _build(repo)
        return _store


def reload_template_store(repo=None) -> TemplateStore:
    """Rebuild the shared store after the template has been (re)seeded."""
    global _store
    with _store_lock:
        _store = _build(repo)
        return _store


def reset_template_store() -> None:
    global _store
    with _store_lock:
        _store = None


def _build(repo) -> TemplateStore:
    if repo is None:
        from buildtrack.services.repository import SqlAlchemyWorkflowRepository
        repo = SqlAlchemyWorkflowRepository()
    store = TemplateStore.from_rows(repo.list_template_rows())
    logger.info("Template store loaded with %d line items", store.count())
    return store
