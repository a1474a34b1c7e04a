"""Upload modes: unified setup sheet, single table, and multi-sheet workbook."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Sequence

from .controller import IsolationController, ReconciliationGroup
from .derived import DerivedConfig
from .errors import ValidationError
from .grouping import HIERARCHY_ORDER, TABLE_ORDER, group_rows, group_sheets
from .report import ReconciliationReport
from .rows import SourceRow
from .stages import stage_for

logger = logging.getLogger(__name__)

UNIFIED_REQUIRED_COLUMNS = (
    "school_code",
    "school_name",
    "city",
    "state",
    "board_type",
    "class_name",
    "class_order",
    "year_name",
    "year_start_date",
    "year_end_date",
    "section_name",
)

# Branch and fee columns are optional on a unified sheet
UNIFIED_TRIGGERS = {
    "branches": ("branch_code",),
    "fee_structures": ("total_annual_fee",),
}


def unified_stages():
    return [stage_for(entity, UNIFIED_TRIGGERS.get(entity, ())) for entity in HIERARCHY_ORDER]


def _require_academic_year(group: ReconciliationGroup) -> None:
    if group.count("academic_years") == 0:
        raise ValidationError(f"No academic years processed for school {group.school_code}")


def reconcile_unified(rows: Iterable[SourceRow], engine, config: Optional[DerivedConfig] = None) -> dict:
    """One row per section, carrying its school, branch, class, year and fee columns.

    Each school is committed or rolled back on its own. Returns the unified
    summary (``success``, ``totalRecords``, per-entity counts, ``errors``,
    ``warnings``).
    """
    rows = list(rows)
    report = ReconciliationReport(total_records=len(rows))

    usable = []
    for row in rows:
        missing = [c for c in UNIFIED_REQUIRED_COLUMNS if row.get(c) is None]
        if row.school_code is not None and missing:
            report.errors.append({
                "school": row.school_code,
                "row": row.line,
                "error": f"{row.label()}: missing {', '.join(missing)}",
            })
            continue
        usable.append(row)

    groups, unprocessable = group_rows(usable, HIERARCHY_ORDER)
    for row in unprocessable:
        report.unprocessable(row)

    controller = IsolationController(engine, unified_stages(), config, checks=[_require_academic_year])
    controller.run(groups, report)
    logger.info(
        "Unified setup finished: %d school(s), %d committed, %d rolled back",
        report.total_groups, report.committed, report.rolled_back,
    )
    return report.unified_summary()


def reconcile_table(
    rows: Iterable[SourceRow], table: str, engine, config: Optional[DerivedConfig] = None
) -> dict:
    """Rows for a single named table; every referenced ancestor must already exist."""
    if table not in TABLE_ORDER:
        raise ValidationError(f"Unknown table {table!r}; expected one of {', '.join(TABLE_ORDER)}")
    rows = list(rows)
    report = ReconciliationReport(total_records=len(rows))
    groups, unprocessable = group_rows(rows, (table,))
    for row in unprocessable:
        report.unprocessable(row)
    IsolationController(engine, [stage_for(table)], config).run(groups, report)
    logger.info("Imported %s: %d", table, report.counts.get(table, 0))
    return report.table_summary([table])


def reconcile_workbook(
    sheets: Mapping[str, Sequence[SourceRow]], engine, config: Optional[DerivedConfig] = None
) -> dict:
    """Every known sheet of a workbook, per school, in dependency order."""
    groups, unprocessable, unknown = group_sheets(sheets)
    report = ReconciliationReport(total_records=sum(len(r) for r in sheets.values()))
    for row in unprocessable:
        report.unprocessable(row)
    for name in unknown:
        report.warn("", f"Sheet '{name}' is not a known table and was ignored")

    present = [t for t in TABLE_ORDER if any(g.rows.get(t) for g in groups)]
    IsolationController(engine, [stage_for(t) for t in present], config).run(groups, report)
    return report.table_summary(present)
