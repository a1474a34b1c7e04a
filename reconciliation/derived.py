"""Values the upload does not carry: fee splits, installment plans, categories, grades.

Everything here is pure. Defaults live in :class:`DerivedConfig` so tests and
deployments can override them without touching the calculators.
"""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import InvalidInput

CENT = Decimal("0.01")
# Largest value a Numeric(12, 2) money column holds
MAX_AMOUNT = Decimal("9999999999.99")

CLASS_CATEGORIES = ("PRE_PRIMARY", "PRIMARY", "MIDDLE", "SECONDARY", "SENIOR_SECONDARY")

CATEGORY_ALIASES = {
    "PREPRIMARY": "PRE_PRIMARY",
    "PRE_PRIMARY": "PRE_PRIMARY",
    "PRE_PRY": "PRE_PRIMARY",
    "SENIORSECONDARY": "SENIOR_SECONDARY",
    "SENIOR_SECONDARY": "SENIOR_SECONDARY",
    "HIGHER_SECONDARY": "SENIOR_SECONDARY",
}

GRADE_THRESHOLDS = (
    (Decimal(90), "A+"),
    (Decimal(80), "A"),
    (Decimal(70), "B+"),
    (Decimal(60), "B"),
    (Decimal(50), "C"),
    (Decimal(40), "D"),
)


@dataclass(frozen=True)
class DerivedConfig:
    tuition_ratio: Decimal = Decimal("0.70")
    development_ratio: Decimal = Decimal("0.20")
    other_ratio: Decimal = Decimal("0.10")
    installment_count: int = 4
    # Months after the academic year's start month; one per installment
    installment_month_offsets: Tuple[int, ...] = (1, 4, 7, 10)
    installment_due_day: int = 15
    categories: Tuple[str, ...] = CLASS_CATEGORIES
    category_aliases: Mapping[str, str] = field(default_factory=lambda: dict(CATEGORY_ALIASES))
    default_category: str = "PRIMARY"
    grade_thresholds: Tuple[Tuple[Decimal, str], ...] = GRADE_THRESHOLDS
    failing_grade: str = "F"

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "DerivedConfig":
        """Build from Flask-style config keys, keeping defaults for anything unset."""
        if not mapping:
            return cls()
        kwargs: Dict[str, Any] = {}
        for key, attr in (
            ("FEE_TUITION_RATIO", "tuition_ratio"),
            ("FEE_DEVELOPMENT_RATIO", "development_ratio"),
            ("FEE_OTHER_RATIO", "other_ratio"),
        ):
            if mapping.get(key) not in (None, ""):
                kwargs[attr] = Decimal(str(mapping[key]))
        if mapping.get("INSTALLMENT_DUE_DAY") not in (None, ""):
            day = int(mapping["INSTALLMENT_DUE_DAY"])
            if not 1 <= day <= 31:
                raise ValueError(f"INSTALLMENT_DUE_DAY must be between 1 and 31, got {day}")
            kwargs["installment_due_day"] = day
        count = mapping.get("INSTALLMENT_COUNT")
        if count and int(count) != cls.installment_count:
            count = int(count)
            if count < 1:
                raise ValueError(f"INSTALLMENT_COUNT must be at least 1, got {count}")
            step = max(12 // count, 1)
            kwargs["installment_count"] = count
            kwargs["installment_month_offsets"] = tuple(1 + step * i for i in range(count))
        return cls(**kwargs)


def money(value: Any, name: str = "amount") -> Decimal:
    """Coerce to a non-negative Decimal rounded to cents, within Numeric(12, 2)."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{name} must be numeric, got {value!r}")
    if not amount.is_finite():
        raise InvalidInput(f"{name} must be numeric, got {value!r}")
    if amount < 0:
        raise InvalidInput(f"{name} must not be negative, got {value!r}")
    if amount > MAX_AMOUNT:
        raise InvalidInput(f"{name} must not exceed {MAX_AMOUNT}, got {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidInput(f"{name} must be numeric, got {value!r}")


def fee_components(total: Any, config: DerivedConfig = DerivedConfig()) -> Dict[str, Decimal]:
    total = money(total, "total_annual_fee")
    return {
        "tuition_fee": (total * config.tuition_ratio).quantize(CENT, rounding=ROUND_HALF_UP),
        "development_fee": (total * config.development_ratio).quantize(CENT, rounding=ROUND_HALF_UP),
        "other_fees": (total * config.other_ratio).quantize(CENT, rounding=ROUND_HALF_UP),
    }


def _shift_month(start: date, months: int, day: int) -> date:
    index = start.month - 1 + months
    year, month = start.year + index // 12, index % 12 + 1
    # Due days past the end of a month fall on its last day
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def installment_plan(
    total: Any,
    start: date,
    config: DerivedConfig = DerivedConfig(),
    due_dates: Optional[Sequence[Optional[date]]] = None,
) -> List[Dict[str, Any]]:
    """Split ``total`` into equal installments; the last absorbs rounding.

    ``due_dates`` may supply explicit dates per installment (None entries fall
    back to the default offset from ``start``).
    """
    total = money(total, "total_annual_fee")
    count = config.installment_count
    share = (total / count).quantize(CENT, rounding=ROUND_HALF_UP)
    plan = []
    for n in range(1, count + 1):
        amount = share if n < count else total - share * (count - 1)
        explicit = None
        if due_dates and n <= len(due_dates):
            explicit = due_dates[n - 1]
        offset = config.installment_month_offsets[(n - 1) % len(config.installment_month_offsets)]
        due = explicit or _shift_month(start, offset, config.installment_due_day)
        plan.append({"installment": n, "amount": amount, "due_date": due})
    return plan


_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_category(raw: Optional[str], config: DerivedConfig = DerivedConfig()) -> Tuple[str, Optional[str]]:
    """Return ``(category, warning)``; warning is set when the value was defaulted."""
    if raw is None or not str(raw).strip():
        return config.default_category, None
    cleaned = _SEPARATORS.sub("_", str(raw).strip().upper())
    category = config.category_aliases.get(cleaned, cleaned)
    if category in config.categories:
        return category, None
    return config.default_category, (
        f"Unknown class category '{raw}', defaulted to {config.default_category}"
    )


def percentage(obtained: Any, maximum: Any) -> Decimal:
    obtained = money(obtained, "marks_obtained")
    maximum = money(maximum, "max_marks")
    if maximum == 0:
        return Decimal("0.00")
    return (obtained / maximum * 100).quantize(CENT, rounding=ROUND_HALF_UP)


def letter_grade(pct: Any, config: DerivedConfig = DerivedConfig()) -> str:
    value = Decimal(str(pct))
    for floor, grade in config.grade_thresholds:
        if value >= floor:
            return grade
    return config.failing_grade


def json_ready(value: Any) -> Any:
    """Decimals and dates in JSON columns are stored as floats and ISO strings."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_ready(v) for v in value]
    return value
