from datetime import date
from decimal import Decimal

import pytest

from reconciliation.errors import InvalidInput, ValidationError
from reconciliation.grouping import HIERARCHY_ORDER, group_rows, group_sheets, normalize_name, table_for_sheet
from reconciliation.rows import Field, SourceRow, as_date, as_decimal, as_flag, as_gender, as_int, as_subjects, extract


def _rows(*codes):
    return [SourceRow(i, {"school_code": c, "n": str(i)}) for i, c in enumerate(codes, start=2)]


def test_groups_follow_first_appearance_and_keep_row_order():
    groups, unprocessable = group_rows(_rows("B", "A", "B", "A", "B"), ("schools",))
    assert [g.school_code for g in groups] == ["B", "A"]
    assert [r.line for r in groups[0].rows["schools"]] == [2, 4, 6]
    assert [r.line for r in groups[1].rows["schools"]] == [3, 5]
    assert unprocessable == []


def test_rows_without_school_code_are_set_aside():
    rows = _rows("A", "", "A")
    rows.append(SourceRow(5, {"n": "x"}))
    groups, unprocessable = group_rows(rows, HIERARCHY_ORDER)
    assert len(groups) == 1
    assert [r.line for r in unprocessable] == [3, 5]
    # Unified mode feeds every stage the same rows
    assert all(len(groups[0].rows[e]) == 2 for e in HIERARCHY_ORDER)


def test_sheet_names_normalize_to_tables():
    assert normalize_name("Academic Years") == "academic_years"
    assert normalize_name("fee-structures") == "fee_structures"
    assert table_for_sheet("Parent Student Relationships") == "parent_student_relationships"
    assert table_for_sheet("Enrollments") == "student_enrollments"
    assert table_for_sheet("Notes") is None


def test_group_sheets_collects_tables_per_school():
    sheets = {
        "Students": [SourceRow(2, {"school_code": "A"}, "Students")],
        "Schools": [SourceRow(2, {"school_code": "A"}, "Schools"), SourceRow(3, {"school_code": "B"}, "Schools")],
        "Scratch": [SourceRow(2, {"school_code": "A"}, "Scratch")],
        "Branches": [SourceRow(2, {}, "Branches")],
    }
    groups, unprocessable, unknown = group_sheets(sheets)
    assert [g.school_code for g in groups] == ["A", "B"]
    assert set(groups[0].rows) == {"students", "schools"}
    assert unknown == ["Scratch"]
    assert [(r.sheet, r.line) for r in unprocessable] == [("Branches", 2)]


def test_extract_keeps_only_carried_fields():
    fields = (
        Field("code", required=True),
        Field("name", ("school_name", "name")),
        Field("seats", parse=as_int),
    )
    row = SourceRow(2, {"code": " X1 ", "school_name": "", "name": "Fallback", "seats": ""})
    assert extract(row, fields) == {"code": "X1", "name": "Fallback"}


def test_extract_reports_every_missing_required_field():
    fields = (Field("a", required=True), Field("b", ("b_col",), required=True), Field("c"))
    with pytest.raises(ValidationError) as info:
        extract(SourceRow(7, {"c": "1"}), fields)
    assert info.value.missing == ("a", "b_col")
    assert "missing a, b_col" in str(info.value)


def test_value_parsers():
    assert as_int("12") == 12
    assert as_int("3.0") == 3
    assert as_decimal("1,250.50") == Decimal("1250.50")
    assert as_date("2024-04-01") == date(2024, 4, 1)
    assert as_date("01/04/2024") == date(2024, 4, 1)
    assert as_date("2024-04-01 00:00:00") == date(2024, 4, 1)
    assert as_flag("false") is False
    assert as_flag("anything") is True
    assert as_gender("female") == "F"
    assert as_subjects('["Maths", "English"]') == ["Maths", "English"]
    assert as_subjects("Maths, English, ") == ["Maths", "English"]


@pytest.mark.parametrize(
    "parser, raw",
    [
        (as_int, "ten"),
        (as_int, "1.5"),
        (as_int, "Infinity"),
        (as_int, "NaN"),
        (as_int, "1e30"),
        (as_decimal, "1e"),
        (as_decimal, "-3"),
        (as_date, "31st March"),
    ],
)
def test_parsers_reject_bad_values(parser, raw):
    with pytest.raises(InvalidInput):
        parser(raw, "field")
