"""Accumulates counts, errors and warnings across groups and renders summaries."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .controller import GroupState, ReconciliationGroup
from .rows import SourceRow

UNIFIED_KEYS = (
    ("schools", "schools"),
    ("branches", "branches"),
    ("classes", "classes"),
    ("academic_years", "academicYears"),
    ("sections", "sections"),
    ("fee_structures", "feeStructures"),
)


class ReconciliationReport:
    def __init__(self, total_records: int = 0):
        self.total_records = total_records
        self.total_groups = 0
        self.committed = 0
        self.rolled_back = 0
        self.counts: Dict[str, int] = {}
        self.errors: List[dict] = []
        self.warnings: List[dict] = []
        self.rows_ok = 0

    def unprocessable(self, row: SourceRow, reason: str = "missing school_code") -> None:
        entry = {"school": "", "row": row.line, "error": f"{row.label()}: {reason}"}
        if row.sheet:
            entry["sheet"] = row.sheet
        self.errors.append(entry)

    def warn(self, school: str, message: str, row: Optional[SourceRow] = None) -> None:
        entry = {"school": school, "warning": message}
        if row is not None:
            entry["row"] = row.line
        self.warnings.append(entry)

    def absorb(self, group: ReconciliationGroup) -> None:
        self.total_groups += 1
        if group.state is GroupState.COMMITTED:
            self.committed += 1
            for entity, keys in group.keys.items():
                self.counts[entity] = self.counts.get(entity, 0) + len(keys)
            self.errors.extend(group.row_errors)
            self.warnings.extend(group.warnings)
        elif group.state is GroupState.ROLLED_BACK:
            # Row-level notes of a discarded group describe writes that never happened
            self.rolled_back += 1
            self.errors.append({"school": group.school_code, "error": group.error})
        else:
            raise RuntimeError(f"group {group.school_code} finished in state {group.state.value}")

    @property
    def success(self) -> bool:
        return not self.errors or self.committed > 0

    def unified_summary(self) -> dict:
        summary = {
            "success": self.success,
            "totalRecords": self.total_records,
            "totalGroups": self.total_groups,
        }
        for entity, name in UNIFIED_KEYS:
            summary[name] = self.counts.get(entity, 0)
        summary["errors"] = list(self.errors)
        summary["warnings"] = list(self.warnings)
        return summary

    def table_summary(self, entities: Iterable[str]) -> dict:
        summary = {entity: self.counts.get(entity, 0) for entity in entities}
        if self.errors:
            summary["errors"] = list(self.errors)
        if self.warnings:
            summary["warnings"] = list(self.warnings)
        return summary
