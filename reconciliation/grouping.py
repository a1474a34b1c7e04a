"""Partition rows by school code and fix the order entity types are applied in."""
from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from .controller import ReconciliationGroup
from .rows import SourceRow

logger = logging.getLogger(__name__)

HIERARCHY_ORDER = (
    "schools",
    "branches",
    "classes",
    "academic_years",
    "sections",
    "fee_structures",
)

CROSS_CUTTING_ORDER = (
    "parents",
    "students",
    "parent_student_relationships",
    "student_enrollments",
    "student_fee_assignments",
    "fee_payments",
    "users",
    "teacher_assignments",
)

TABLE_ORDER = HIERARCHY_ORDER + CROSS_CUTTING_ORDER

SHEET_ALIASES = {
    "relationships": "parent_student_relationships",
    "enrollments": "student_enrollments",
    "fee_assignments": "student_fee_assignments",
    "staff": "users",
    "staff_users": "users",
}

_SEP = re.compile(r"[\s\-]+")


def normalize_name(name: str) -> str:
    """'Academic Years' / 'academic-years' -> 'academic_years'."""
    return _SEP.sub("_", str(name).strip().lower())


def table_for_sheet(sheet_name: str):
    name = normalize_name(sheet_name)
    name = SHEET_ALIASES.get(name, name)
    return name if name in TABLE_ORDER else None


def group_rows(
    rows: Iterable[SourceRow], entities: Sequence[str]
) -> Tuple[List[ReconciliationGroup], List[SourceRow]]:
    """Stable partition by school code; every group feeds the same rows to each entity.

    Returns ``(groups, unprocessable)`` where unprocessable rows lack a school code.
    """
    groups: Dict[str, ReconciliationGroup] = {}
    unprocessable: List[SourceRow] = []
    for row in rows:
        code = row.school_code
        if code is None:
            unprocessable.append(row)
            continue
        group = groups.get(code)
        if group is None:
            group = groups[code] = ReconciliationGroup(code)
        for entity in entities:
            group.add(entity, row)
    return list(groups.values()), unprocessable


def group_sheets(
    sheets: Mapping[str, Sequence[SourceRow]],
) -> Tuple[List[ReconciliationGroup], List[SourceRow], List[str]]:
    """Workbook mode: rows of every known sheet, grouped by school code.

    Sheet order in the file does not matter; stages later run in TABLE_ORDER.
    Returns ``(groups, unprocessable, unknown_sheet_names)``.
    """
    groups: Dict[str, ReconciliationGroup] = {}
    unprocessable: List[SourceRow] = []
    unknown: List[str] = []
    for sheet_name, rows in sheets.items():
        table = table_for_sheet(sheet_name)
        if table is None:
            logger.warning("Ignoring unknown sheet %r", sheet_name)
            unknown.append(sheet_name)
            continue
        for row in rows:
            code = row.school_code
            if code is None:
                unprocessable.append(row)
                continue
            group = groups.get(code)
            if group is None:
                group = groups[code] = ReconciliationGroup(code)
            group.add(table, row)
    return list(groups.values()), unprocessable, unknown
