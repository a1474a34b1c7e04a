from datetime import date, datetime
from io import BytesIO

import pytest
from openpyxl import Workbook

from reconciliation.ingest import (
    UploadError,
    check_filename,
    is_workbook,
    normalize_header,
    read_csv_rows,
    read_rows,
    read_workbook,
)


def xlsx_bytes(sheets):
    wb = Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    out = BytesIO()
    wb.save(out)
    return out.getvalue()


def test_normalize_header():
    assert normalize_header("  School Code ") == "school_code"
    assert normalize_header("Year-Start-Date") == "year_start_date"
    assert normalize_header(None) == ""


def test_csv_rows_keep_file_line_numbers():
    data = "\ufeffSchool Code,School Name\nSCH01, Green Valley \n,\nSCH02,Hill Top\n".encode("utf-8")
    rows = read_csv_rows(data)

    assert [r.line for r in rows] == [2, 4]
    assert rows[0].data == {"school_code": "SCH01", "school_name": "Green Valley"}
    assert rows[1].school_code == "SCH02"


def test_csv_without_header_is_rejected():
    with pytest.raises(UploadError):
        read_csv_rows(b"")


def test_non_utf8_csv_is_rejected():
    with pytest.raises(UploadError):
        read_csv_rows("école".encode("utf-16"))


def test_workbook_sheets_and_cell_values():
    data = xlsx_bytes({
        "Schools": [["School Code", "School Name", "Is Active"], ["SCH01", "Green Valley", True], [None, None, None]],
        "Academic Years": [
            ["school_code", "year_name", "start_date", "class_order"],
            ["SCH01", "2024-25", datetime(2024, 4, 1), 3.0],
        ],
        "Empty": [],
    })
    sheets = read_workbook(data)

    assert list(sheets) == ["Schools", "Academic Years"]
    school = sheets["Schools"][0]
    assert school.data == {"school_code": "SCH01", "school_name": "Green Valley", "is_active": "true"}
    assert school.sheet == "Schools"
    assert len(sheets["Schools"]) == 1
    year = sheets["Academic Years"][0]
    assert year.get("start_date") == date(2024, 4, 1).isoformat()
    assert year.get("class_order") == "3"
    assert year.line == 2


def test_read_rows_takes_the_first_sheet_of_a_workbook():
    data = xlsx_bytes({"Setup": [["school_code"], ["SCH05"]], "Other": [["school_code"], ["SCH06"]]})
    assert is_workbook(data, "setup.xlsx")
    assert is_workbook(data, "")
    rows = read_rows(data, "setup.xlsx")
    assert [r.school_code for r in rows] == ["SCH05"]


def test_broken_workbook_is_an_upload_error():
    with pytest.raises(UploadError):
        read_workbook(b"PK\x03\x04 definitely not a zip")


@pytest.mark.parametrize("name", ["legacy.xls", "notes.txt", "data.json"])
def test_unsupported_files(name):
    with pytest.raises(UploadError):
        check_filename(name)


def test_supported_files():
    check_filename("setup.csv")
    check_filename("SETUP.XLSX")
