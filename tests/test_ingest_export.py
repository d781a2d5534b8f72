# tests/test_ingest_export.py
from datetime import datetime
from io import BytesIO

import pytest
from openpyxl import Workbook, load_workbook

from roster.config import Settings
from roster.dates import parse_to_instant
from roster.errors import Issue, RosterError
from roster.export import export_lda_report_to_excel_bytes, issues_to_frame, roster_to_excel_bytes, sheet_titles
from roster.ingest import (
    detect_header_row,
    load_history_workbook,
    load_roster_workbook,
    load_source_tables,
    read_source_bytes,
    sheet_names,
)
from roster.merge import MergeMode, upsert_roster
from roster.report import build_lda_report


def _xlsx(sheets):
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for r in rows:
            ws.append(r)
    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


class _Upload:
    def __init__(self, name, data):
        self.name = name
        self._data = data

    def getvalue(self):
        return self._data


# ======================
# CSV / XLSX sources
# ======================
def test_csv_with_preamble_line(table):
    data = b"Report generated 10/1/2025\nStudent Name,Current Score,Course\nJohn Smith,88,BIO 101\nJane Doe,45,ENG 101\n"
    [src] = read_source_bytes("grades.csv", data, table)
    assert src.headers == ["Student Name", "Current Score", "Course"]
    assert src.rows == [["John Smith", "88", "BIO 101"], ["Jane Doe", "45", "ENG 101"]]
    assert src.name == "grades.csv"


def test_csv_semicolon_and_bom(table):
    data = "\ufeffStudentName;Grade\nJane Doe;0,9\n".encode("utf-8")
    [src] = read_source_bytes("export.csv", data, table)
    assert src.headers == ["StudentName", "Grade"]
    assert src.rows == [["Jane Doe", "0,9"]]


def test_xlsx_source_detects_header_per_sheet(table):
    data = _xlsx({
        "Weekly": [["Weekly export"], ["StudentName", "Grade"], ["Jane Doe", 0.8], [None, None]],
        "Empty": [],
    })
    srcs = read_source_bytes("weekly.xlsx", data, table)
    assert [s.name for s in srcs] == ["weekly.xlsx / Weekly", "weekly.xlsx / Empty"]
    assert srcs[0].headers == ["StudentName", "Grade"]
    assert srcs[0].rows == [["Jane Doe", 0.8]]


def test_detect_header_row_defaults_to_first(table):
    assert detect_header_row([["a", "b"], ["c", "d"]], table) == 0
    assert detect_header_row([["title"], ["x"], ["Student Name", "Grade", "LDA"]], table) == 2


def test_missing_sheet_raises(table):
    data = _xlsx({"Other": [["a"]]})
    with pytest.raises(RosterError):
        load_roster_workbook(data)
    assert sheet_names(data) == ["Other"]


# ======================
# Master workbook round trip
# ======================
def test_load_roster_workbook_reads_formulas():
    data = _xlsx({
        "Master List": [
            ["Student Name", "Gradebook", "Grade"],
            ["Doe, Jane", '=HYPERLINK("https://g/1","Gradebook")', 0.7],
        ],
        "Student History": [["Timestamp", "Student ID", "Tag"], ["10/1/2025", "1001", "DNC"]],
    })
    grid = load_roster_workbook(data)
    assert grid.headers == ["Student Name", "Gradebook", "Grade"]
    assert grid.formula(0, 1) == '=HYPERLINK("https://g/1","Gradebook")'
    assert grid.value(0, 1) == "Gradebook"
    assert grid.url(0, 1) == "https://g/1"

    hist = load_history_workbook(data)
    assert hist.headers == ["Timestamp", "Student ID", "Tag"]
    assert len(hist) == 1


def test_merge_then_export_round_trip(master, refresh_source, table, now):
    res = upsert_roster(master, refresh_source, table, MergeMode.FULL_REPLACE, now=now)
    data = roster_to_excel_bytes(res.roster, table, issues=res.issues)

    wb = load_workbook(BytesIO(data))
    assert wb.sheetnames == ["Master List", "Import Issues"]
    back = load_roster_workbook(data)
    assert back.headers == res.roster.headers
    assert back.formula(1, 2) == '=HYPERLINK("https://g/2","Gradebook")'
    assert back.value(1, 2) == "Gradebook"
    assert back.value(1, 0) == "Bob"
    assert parse_to_instant(back.value(1, 3)) == parse_to_instant(res.roster.value(1, 3))


def test_issues_frame():
    df = issues_to_frame([Issue("missing_identity", 2)])
    assert df.to_dict("records") == [
        {"Level": "warn", "Code": "missing_identity", "Message": "Rows without a student name were skipped.", "Count": 2}
    ]
    assert issues_to_frame([]).empty


def test_lda_report_workbook(master, table):
    rep = build_lda_report(master, table, datetime(2025, 10, 10), settings=Settings(days_out=0, include_failing_list=True))
    data = export_lda_report_to_excel_bytes(rep)
    wb = load_workbook(BytesIO(data))
    assert wb.sheetnames == sheet_titles(rep) == ["LDA 10-10-2025", "Failing"]
    ws = wb["LDA 10-10-2025"]
    headers = [c.value for c in ws[1]]
    assert "_row" not in headers
    assert headers[:3] == ["Assigned", "Student Name", "Gradebook"]


def test_load_source_tables_from_uploads(table):
    ups = [_Upload("a.csv", b"Student Name,Grade\nJane Doe,90\n"), _Upload("b.xlsx", _xlsx({"S": [["Student", "Grade"], ["X Y", 1]]}))]
    got = [(t.name, len(t)) for t in load_source_tables(ups, table)]
    assert got == [("a.csv", 1), ("b.xlsx / S", 1)]
