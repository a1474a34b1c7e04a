from datetime import date
from decimal import Decimal

import pytest

from reconciliation.derived import (
    DerivedConfig,
    fee_components,
    installment_plan,
    json_ready,
    letter_grade,
    normalize_category,
    percentage,
)
from reconciliation.errors import InvalidInput


def test_fee_split_for_12000():
    parts = fee_components("12000")
    assert parts == {
        "tuition_fee": Decimal("8400.00"),
        "development_fee": Decimal("2400.00"),
        "other_fees": Decimal("1200.00"),
    }


def test_fee_split_rounds_half_up_to_cents():
    parts = fee_components("100.05")
    assert parts["tuition_fee"] == Decimal("70.04")
    assert parts["development_fee"] == Decimal("20.01")
    assert parts["other_fees"] == Decimal("10.01")


def test_quarterly_plan_defaults_to_the_15th_after_year_start():
    plan = installment_plan(Decimal("12000"), date(2024, 4, 1))
    assert [p["amount"] for p in plan] == [Decimal("3000.00")] * 4
    assert [p["due_date"] for p in plan] == [
        date(2024, 5, 15),
        date(2024, 8, 15),
        date(2024, 11, 15),
        date(2025, 2, 15),
    ]
    assert [p["installment"] for p in plan] == [1, 2, 3, 4]


def test_last_installment_absorbs_rounding():
    plan = installment_plan("100.01", date(2024, 6, 1))
    amounts = [p["amount"] for p in plan]
    assert amounts == [Decimal("25.00"), Decimal("25.00"), Decimal("25.00"), Decimal("25.01")]
    assert sum(amounts) == Decimal("100.01")


def test_explicit_due_dates_override_defaults():
    plan = installment_plan("4000", date(2024, 4, 1), due_dates=[None, date(2024, 9, 1)])
    assert plan[0]["due_date"] == date(2024, 5, 15)
    assert plan[1]["due_date"] == date(2024, 9, 1)
    assert plan[2]["due_date"] == date(2024, 11, 15)


def test_plan_wraps_into_next_year_for_late_session_start():
    plan = installment_plan("400", date(2024, 12, 1))
    assert plan[0]["due_date"] == date(2025, 1, 15)
    assert plan[3]["due_date"] == date(2025, 10, 15)


@pytest.mark.parametrize("raw", ["abc", "-1", "NaN", "Infinity", "1e30", "10000000000"])
def test_bad_totals_raise_invalid_input(raw):
    with pytest.raises(InvalidInput):
        fee_components(raw)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("PREPRIMARY", "PRE_PRIMARY"),
        ("pre primary", "PRE_PRIMARY"),
        ("Pre-Primary", "PRE_PRIMARY"),
        ("SENIORSECONDARY", "SENIOR_SECONDARY"),
        ("senior  secondary", "SENIOR_SECONDARY"),
        (" middle ", "MIDDLE"),
    ],
)
def test_category_normalization(raw, expected):
    assert normalize_category(raw) == (expected, None)


def test_unknown_category_defaults_with_warning():
    category, warning = normalize_category("KINDERGARTEN")
    assert category == "PRIMARY"
    assert "KINDERGARTEN" in warning


def test_blank_category_defaults_silently():
    assert normalize_category("  ") == ("PRIMARY", None)


def test_percentage_and_grades():
    assert percentage(45, 50) == Decimal("90.00")
    assert percentage(1, 3) == Decimal("33.33")
    assert percentage(10, 0) == Decimal("0.00")
    assert letter_grade(percentage(45, 50)) == "A+"
    assert letter_grade(Decimal("89.99")) == "A"
    assert letter_grade(70) == "B+"
    assert letter_grade(60) == "B"
    assert letter_grade(50) == "C"
    assert letter_grade(40) == "D"
    assert letter_grade("39.99") == "F"


def test_config_overrides_from_mapping():
    config = DerivedConfig.from_mapping({
        "FEE_TUITION_RATIO": "0.5",
        "FEE_DEVELOPMENT_RATIO": "0.3",
        "FEE_OTHER_RATIO": "0.2",
        "INSTALLMENT_COUNT": 2,
        "INSTALLMENT_DUE_DAY": 10,
    })
    assert fee_components("1000", config)["tuition_fee"] == Decimal("500.00")
    plan = installment_plan("1000", date(2024, 4, 1), config)
    assert [p["amount"] for p in plan] == [Decimal("500.00"), Decimal("500.00")]
    assert [p["due_date"] for p in plan] == [date(2024, 5, 10), date(2024, 11, 10)]


def test_custom_category_table():
    config = DerivedConfig(category_aliases={"KG": "PRE_PRIMARY"})
    assert normalize_category("kg", config) == ("PRE_PRIMARY", None)


def test_json_ready_converts_plan():
    plan = installment_plan("12000", date(2024, 4, 1))
    assert json_ready(plan)[0] == {"installment": 1, "amount": 3000.0, "due_date": "2024-05-15"}


def test_due_day_past_month_end_falls_on_the_last_day():
    config = DerivedConfig(installment_due_day=31)
    plan = installment_plan("400", date(2023, 1, 1), config)
    assert [p["due_date"] for p in plan] == [date(2023, 2, 28), date(2023, 5, 31), date(2023, 8, 31), date(2023, 11, 30)]


@pytest.mark.parametrize("day", [0, 32])
def test_due_day_outside_a_month_is_a_config_error(day):
    with pytest.raises(ValueError):
        DerivedConfig.from_mapping({"INSTALLMENT_DUE_DAY": day})
