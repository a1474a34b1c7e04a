"""One unit of work per school group: PENDING → IN_PROGRESS → COMMITTED | ROLLED_BACK."""
from __future__ import annotations

import enum
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .derived import DerivedConfig
from .errors import ReconciliationError, classify_store_error
from .resolver import NaturalKeyResolver
from .rows import SourceRow
from .stages import Stage, StageContext, run_stage
from .upsert import UpsertEngine

logger = logging.getLogger(__name__)


class GroupState(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


_ALLOWED = {
    GroupState.PENDING: {GroupState.IN_PROGRESS},
    GroupState.IN_PROGRESS: {GroupState.COMMITTED, GroupState.ROLLED_BACK},
}


class ReconciliationGroup:
    """Rows sharing one school code, plus everything learned while applying them."""

    def __init__(self, school_code: str, rows: Optional[Dict[str, List[SourceRow]]] = None):
        self.school_code = school_code
        self.rows: Dict[str, List[SourceRow]] = rows if rows is not None else {}
        self.state = GroupState.PENDING
        self.keys: Dict[str, Set[tuple]] = {}
        self.warnings: List[dict] = []
        self.row_errors: List[dict] = []
        self.error: Optional[str] = None

    def __repr__(self):
        return f"<ReconciliationGroup {self.school_code} {self.state.value}>"

    def add(self, entity: str, row: SourceRow) -> None:
        self.rows.setdefault(entity, []).append(row)

    def row_count(self) -> int:
        return len({(r.sheet, r.line) for rows in self.rows.values() for r in rows})

    def transition(self, new: GroupState) -> None:
        if new not in _ALLOWED.get(self.state, set()):
            raise RuntimeError(f"group {self.school_code}: cannot go from {self.state.value} to {new.value}")
        self.state = new

    def tally(self, entity: str, key: tuple) -> None:
        self.keys.setdefault(entity, set()).add(key)

    def count(self, entity: str) -> int:
        return len(self.keys.get(entity, ()))

    def warn(self, row: Optional[SourceRow], message: str) -> None:
        # Unified rows repeat the same class/branch; report each note once
        if any(w["warning"] == message for w in self.warnings):
            return
        entry = {"school": self.school_code, "warning": message}
        if row is not None:
            entry["row"] = row.line
            if row.sheet:
                entry["sheet"] = row.sheet
        self.warnings.append(entry)

    def fail(self, row: SourceRow, message: str) -> None:
        entry = {"school": self.school_code, "row": row.line, "error": message}
        if row.sheet:
            entry["sheet"] = row.sheet
        self.row_errors.append(entry)


GroupCheck = Callable[[ReconciliationGroup], None]


class IsolationController:
    """Applies a fixed list of stages to each group in its own transaction.

    A failure escaping a stage (or a post-stage check) rolls back that group
    only; sibling groups keep their own units of work.
    """

    def __init__(
        self,
        engine,
        stages: Sequence[Stage],
        config: Optional[DerivedConfig] = None,
        checks: Iterable[GroupCheck] = (),
        upserts: Optional[UpsertEngine] = None,
    ):
        self.engine = engine
        self.stages = list(stages)
        self.config = config or DerivedConfig()
        self.checks = list(checks)
        self.upserts = upserts or UpsertEngine()

    def run(self, groups: Iterable[ReconciliationGroup], report) -> None:
        for group in groups:
            self.run_group(group)
            report.absorb(group)

    def run_group(self, group: ReconciliationGroup) -> GroupState:
        group.transition(GroupState.IN_PROGRESS)
        logger.info("Processing school %s (%d rows)", group.school_code, group.row_count())
        try:
            with Session(self.engine) as session, session.begin():
                ctx = StageContext(session, NaturalKeyResolver(session, self.upserts), self.config, group)
                for stage in self.stages:
                    rows = group.rows.get(stage.entity)
                    if rows:
                        run_stage(ctx, stage, rows)
                for check in self.checks:
                    check(group)
        except ReconciliationError as exc:
            self._roll_back(group, str(exc))
        except SQLAlchemyError as exc:
            self._roll_back(group, str(classify_store_error(exc)))
        except Exception as exc:
            # Sibling groups still run and the caller still gets a summary
            logger.exception("Unexpected failure in school %s", group.school_code)
            self._roll_back(group, f"Unexpected error: {exc}")
        else:
            group.transition(GroupState.COMMITTED)
            logger.info("School %s committed", group.school_code)
        return group.state

    def _roll_back(self, group: ReconciliationGroup, message: str) -> None:
        group.error = message
        group.transition(GroupState.ROLLED_BACK)
        logger.error("School %s rolled back: %s", group.school_code, message)
