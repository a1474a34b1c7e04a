"""Typed access to loosely-typed upload rows.

Rows arrive as ``{normalized_column: str}`` maps. Each entity handler declares a
tuple of :class:`Field` entries; :func:`extract` turns a row into a dict that
holds only the fields the row actually carries, already parsed.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .errors import InvalidInput, ValidationError

# Integer columns are 32-bit on every supported store
MAX_INT = 2**31 - 1
TRUE_VALUES = {"1", "true", "yes", "y", "on"}
DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%Y/%m/%d", "%d.%m.%Y", "%m/%d/%Y")


@dataclass
class SourceRow:
    """One uploaded row. ``line`` is the 1-based file line (header is line 1)."""

    line: int
    data: Mapping[str, Any]
    sheet: Optional[str] = None

    def get(self, *names: str) -> Optional[str]:
        for name in names:
            raw = self.data.get(name)
            if raw is None:
                continue
            value = str(raw).strip()
            if value != "":
                return value
        return None

    def has_any(self, names: Iterable[str]) -> bool:
        return any(self.get(n) is not None for n in names)

    @property
    def school_code(self) -> Optional[str]:
        return self.get("school_code")

    def label(self) -> str:
        if self.sheet:
            return f"{self.sheet} row {self.line}"
        return f"Row {self.line}"


# --------------------------
# Value parsers
# --------------------------

def as_text(raw: str, name: str = "") -> str:
    return raw


def as_upper(raw: str, name: str = "") -> str:
    return raw.upper()


def as_int(raw: str, name: str = "") -> int:
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise InvalidInput(f"{name} must be a whole number, got {raw!r}")
    if not value.is_finite() or value != value.to_integral_value():
        raise InvalidInput(f"{name} must be a whole number, got {raw!r}")
    if abs(value) > MAX_INT:
        raise InvalidInput(f"{name} is out of range, got {raw!r}")
    return int(value)


def as_decimal(raw: str, name: str = "") -> Decimal:
    try:
        value = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        raise InvalidInput(f"{name} must be numeric, got {raw!r}")
    if not value.is_finite():
        raise InvalidInput(f"{name} must be numeric, got {raw!r}")
    if value < 0:
        raise InvalidInput(f"{name} must not be negative, got {raw!r}")
    return value


def as_bool(raw: str, name: str = "") -> bool:
    return raw.strip().lower() in TRUE_VALUES


def as_flag(raw: str, name: str = "") -> bool:
    """True unless explicitly 'false'/'0'/'no'."""
    return raw.strip().lower() not in {"false", "0", "no", "n", "off"}


def as_date(raw: str, name: str = "") -> date:
    text = raw.strip()
    # Spreadsheet cells may come through as full timestamps
    if "T" in text or " " in text:
        text = text.replace("T", " ").split(" ")[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise InvalidInput(f"{name} is not a recognised date: {raw!r}")


def as_subjects(raw: str, name: str = "") -> list:
    text = raw.strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(s).strip() for s in parsed if str(s).strip()]
    return [s.strip() for s in text.split(",") if s.strip()]


def as_gender(raw: str, name: str = "") -> str:
    return raw.strip()[:1].upper()


@dataclass(frozen=True)
class Field:
    """Maps a record attribute onto one or more source columns."""

    name: str
    columns: Tuple[str, ...] = ()
    parse: Callable[..., Any] = as_text
    required: bool = False
    label: Optional[str] = None

    @property
    def sources(self) -> Tuple[str, ...]:
        return self.columns or (self.name,)


def extract(row: SourceRow, fields: Iterable[Field]) -> Dict[str, Any]:
    """Return the parsed values carried by ``row``.

    Absent optional fields are left out entirely so an update never clobbers
    stored data with nothing. Missing required fields raise ValidationError
    listing all of them at once.
    """
    values: Dict[str, Any] = {}
    missing = []
    for f in fields:
        raw = row.get(*f.sources)
        if raw is None:
            if f.required:
                missing.append(f.label or f.sources[0])
            continue
        values[f.name] = f.parse(raw, f.label or f.sources[0])
    if missing:
        raise ValidationError(f"missing {', '.join(missing)}", missing=missing)
    return values


def missing_columns(columns: Iterable[str], required: Iterable[str]) -> list:
    present = set(columns)
    return [c for c in required if c not in present]
