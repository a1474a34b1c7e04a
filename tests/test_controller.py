import pytest

from conftest import count, table_rows
from models import School
from reconciliation.controller import GroupState, IsolationController, ReconciliationGroup
from reconciliation.errors import ValidationError
from reconciliation.report import ReconciliationReport
from reconciliation.rows import SourceRow
from reconciliation.stages import Policy, Stage, stage_for


def test_group_state_machine():
    group = ReconciliationGroup("SCH01")
    assert group.state is GroupState.PENDING
    with pytest.raises(RuntimeError):
        group.transition(GroupState.COMMITTED)
    group.transition(GroupState.IN_PROGRESS)
    group.transition(GroupState.ROLLED_BACK)
    with pytest.raises(RuntimeError):
        group.transition(GroupState.IN_PROGRESS)


def test_group_counts_rows_once_across_entities():
    group = ReconciliationGroup("SCH01")
    row = SourceRow(2, {"school_code": "SCH01"})
    group.add("schools", row)
    group.add("classes", row)
    group.add("classes", SourceRow(3, {"school_code": "SCH01"}))
    assert group.row_count() == 2


def test_warnings_are_reported_once_per_message():
    group = ReconciliationGroup("SCH01")
    group.warn(SourceRow(2, {}), "same note")
    group.warn(SourceRow(3, {}), "same note")
    group.warn(None, "other note")
    assert group.warnings == [
        {"school": "SCH01", "warning": "same note", "row": 2},
        {"school": "SCH01", "warning": "other note"},
    ]


def test_failing_check_rolls_the_group_back(engine):
    def refuse(group):
        raise ValidationError(f"refusing {group.school_code}")

    groups = [ReconciliationGroup("SCH01")]
    for row in table_rows({"school_code": "SCH01", "school_name": "Green Valley"}):
        groups[0].add("schools", row)
    report = ReconciliationReport(total_records=1)

    IsolationController(engine, [stage_for("schools")], checks=[refuse]).run(groups, report)

    assert groups[0].state is GroupState.ROLLED_BACK
    assert report.errors == [{"school": "SCH01", "error": "refusing SCH01"}]
    assert report.success is False
    assert count(engine, School) == 0


def test_row_isolated_stage_keeps_good_rows(engine):
    def handler(ctx, row):
        school_id = ctx.resolver.resolve(School, {"school_code": row.school_code}, {"name": row.get("school_name")})
        if row.get("explode"):
            raise ValidationError("boom")
        return (school_id,)

    rows = table_rows(
        {"school_code": "SCH01", "school_name": "Kept"},
        {"school_code": "SCH02", "school_name": "Dropped", "explode": "yes"},
    )
    groups = [ReconciliationGroup("ALL")]
    for row in rows:
        groups[0].add("schools", row)
    report = ReconciliationReport(total_records=2)

    IsolationController(engine, [Stage("schools", handler, Policy.ROW_ISOLATED)]).run(groups, report)

    assert groups[0].state is GroupState.COMMITTED
    assert report.counts == {"schools": 1}
    assert report.errors == [{"school": "ALL", "row": 3, "error": "schools: boom"}]
    assert count(engine, School) == 1
    assert report.success is True


def _schools(*codes):
    groups = []
    for line, code in enumerate(codes, start=2):
        group = ReconciliationGroup(code)
        group.add("schools", SourceRow(line, {"school_code": code, "school_name": f"School {code}"}))
        groups.append(group)
    return groups


def test_unexpected_failure_rolls_back_only_its_group(engine):
    def handler(ctx, row):
        if row.school_code == "BAD":
            raise RuntimeError("disk on fire")
        ctx.resolver.resolve(School, {"school_code": row.school_code}, {"name": row.get("school_name")})
        return (row.school_code,)

    groups = _schools("BAD", "GOOD")
    report = ReconciliationReport(total_records=2)

    IsolationController(engine, [Stage("schools", handler)]).run(groups, report)

    assert [g.state for g in groups] == [GroupState.ROLLED_BACK, GroupState.COMMITTED]
    assert report.total_groups == 2
    assert report.errors == [{"school": "BAD", "error": "Unexpected error: disk on fire"}]
    assert report.counts == {"schools": 1}
    assert report.success is True
    assert count(engine, School, school_code="GOOD") == 1


def test_unexpected_failure_in_optional_stage_is_a_warning(engine):
    def flaky(ctx, row):
        raise KeyError("installment_plan")

    groups = _schools("SCH01")
    for row in groups[0].rows["schools"]:
        groups[0].add("fee_structures", row)
    report = ReconciliationReport(total_records=1)

    IsolationController(engine, [stage_for("schools"), Stage("fee_structures", flaky, Policy.OPTIONAL)]).run(groups, report)

    assert groups[0].state is GroupState.COMMITTED
    assert report.errors == []
    assert "fee_structures skipped" in report.warnings[0]["warning"]
    assert count(engine, School) == 1


def test_unexpected_failure_in_row_isolated_stage_rolls_back_the_group(engine):
    def broken(ctx, row):
        raise ZeroDivisionError("division by zero")

    groups = _schools("SCH01")
    for row in groups[0].rows["schools"]:
        groups[0].add("students", row)
    report = ReconciliationReport(total_records=1)

    IsolationController(engine, [stage_for("schools"), Stage("students", broken, Policy.ROW_ISOLATED)]).run(groups, report)

    assert groups[0].state is GroupState.ROLLED_BACK
    assert "division by zero" in report.errors[0]["error"]
    assert count(engine, School) == 0
