"""Thin file readers: CSV / XLSX bytes -> SourceRow lists with normalized headers."""
from __future__ import annotations

import csv
import re
from collections import OrderedDict
from datetime import date, datetime
from io import BytesIO, StringIO
from typing import Dict, List, Optional
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .rows import SourceRow

XLSX_MAGIC = b"PK\x03\x04"
ALLOWED_EXTENSIONS = (".csv", ".xlsx")

_HEADER_SEP = re.compile(r"[\s\-]+")


class UploadError(ValueError):
    """The uploaded file cannot be turned into rows."""


def normalize_header(name) -> str:
    return _HEADER_SEP.sub("_", str(name or "").strip().lower())


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def read_csv_rows(data: bytes, sheet: Optional[str] = None) -> List[SourceRow]:
    try:
        decoded = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise UploadError("Unable to read the uploaded file. Ensure it is a UTF-8 encoded CSV.")
    try:
        reader = csv.reader(StringIO(decoded))
        header = next(reader, None)
        if not header or not any(h.strip() for h in header):
            raise UploadError("The CSV file must include a header row.")
        columns = [normalize_header(h) for h in header]
        rows = []
        # Header is line 1, so the first data row is line 2
        for line, values in enumerate(reader, start=2):
            if not any(v.strip() for v in values):
                continue
            rows.append(SourceRow(line, dict(zip(columns, (v.strip() for v in values))), sheet))
    except csv.Error as exc:
        raise UploadError(f"Invalid CSV format: {exc}")
    return rows


def read_workbook(data: bytes) -> Dict[str, List[SourceRow]]:
    """Every sheet with a header row, in workbook order."""
    try:
        wb = load_workbook(BytesIO(data), read_only=True, data_only=True)
    except (BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as exc:
        raise UploadError(f"Unable to read the workbook: {exc}")
    sheets: Dict[str, List[SourceRow]] = OrderedDict()
    try:
        for ws in wb.worksheets:
            it = ws.iter_rows(values_only=True)
            header = next(it, None)
            if not header or not any(h is not None and str(h).strip() for h in header):
                continue
            columns = [normalize_header(h) for h in header]
            rows = []
            for line, values in enumerate(it, start=2):
                cells = [_cell_text(v) for v in values]
                if not any(cells):
                    continue
                rows.append(SourceRow(line, dict(zip(columns, cells)), ws.title))
            sheets[ws.title] = rows
    finally:
        wb.close()
    return sheets


def is_workbook(data: bytes, filename: str = "") -> bool:
    return filename.lower().endswith(".xlsx") or data[:4] == XLSX_MAGIC


def check_filename(filename: str) -> None:
    name = (filename or "").lower()
    if name.endswith(".xls"):
        raise UploadError("Legacy .xls files are not supported; save the file as .xlsx")
    if name and not name.endswith(ALLOWED_EXTENSIONS):
        raise UploadError("Only .csv and .xlsx files are supported")


def read_rows(data: bytes, filename: str = "") -> List[SourceRow]:
    """Flat row list: a CSV, or the first sheet of a workbook."""
    check_filename(filename)
    if is_workbook(data, filename):
        sheets = read_workbook(data)
        return next(iter(sheets.values()), [])
    return read_csv_rows(data)
