# tests/test_report.py
from datetime import datetime

import pytest

from roster.config import Settings
from roster.dates import to_serial
from roster.errors import ConfigurationError
from roster.export import export_lda_report_to_excel_bytes, sheet_titles
from roster.grid import RosterGrid, SourceTable, make_hyperlink_formula
from roster.report import (
    build_lda_report,
    detect_grade_scale,
    roster_to_frame,
    select_by_recency,
    select_failing,
    summary_counts,
)


def _names(df, col="Student Name"):
    return df[col].tolist()


def test_failing_sorted_ascending_on_hundred_scale():
    rows = [
        {"Student Name": "R1", "Grade": 80, "Days Out": 1},
        {"Student Name": "R2", "Grade": 40, "Days Out": 1},
        {"Student Name": "R3", "Grade": 0.55, "Days Out": 2},
    ]
    assert _names(select_failing(rows)) == ["R3", "R2"]


def test_failing_on_unit_scale_respects_recency():
    rows = [
        {"Student Name": "A", "Grade": 0.9, "Days Out": 1},
        {"Student Name": "B", "Grade": 0.5, "Days Out": 0},
        {"Student Name": "C", "Grade": 0.55, "Days Out": 5},
        {"Student Name": "D", "Grade": "", "Days Out": 0},
    ]
    assert _names(select_failing(rows)) == ["B"]


def test_failing_ties_keep_sheet_order():
    rows = [
        {"Student Name": "X", "Grade": 30, "Days Out": 0},
        {"Student Name": "Y", "Grade": 20, "Days Out": 0},
        {"Student Name": "Z", "Grade": 30, "Days Out": 0},
    ]
    assert _names(select_failing(rows)) == ["Y", "X", "Z"]


def test_grade_scale_is_decided_by_prefix_sample():
    rows = [{"Student Name": f"S{i}", "Grade": 0.9, "Days Out": 0} for i in range(10)]
    rows.append({"Student Name": "Late", "Grade": 45, "Days Out": 0})
    # в первых 10 строках нет чисел > 1 -> шкала 0..1, 45 не "failing"
    assert select_failing(rows).empty
    assert detect_grade_scale(["85%", 0.5]) == 60.0
    assert detect_grade_scale([0.5, None, "n/a"]) == 0.6


def test_recency_descending_and_stable():
    rows = [
        {"Student Name": "a", "Days Out": 5},
        {"Student Name": "b", "Days Out": 10},
        {"Student Name": "c", "Days Out": 3},
        {"Student Name": "d", "Days Out": "5"},
        {"Student Name": "e", "Days Out": "n/a"},
    ]
    assert _names(select_by_recency(rows, 5)) == ["b", "a", "d"]


def test_recency_without_column_is_empty():
    assert select_by_recency([{"Student Name": "a"}], 5).empty


def test_roster_to_frame_projects_urls(master, table):
    df = roster_to_frame(master, table)
    assert df["Gradebook"].tolist() == ["https://g/1", "https://g/2"]
    assert df["_row"].tolist() == [0, 1]
    plain = roster_to_frame(master)
    assert plain["Gradebook"].tolist() == ["Gradebook", "Gradebook"]


@pytest.fixture
def lda_roster():
    headers = ["Student Name", "Gradebook", "LDA", "Days Out", "Grade", "Student Number"]
    values = [
        ["A, Student", "Gradebook", to_serial(datetime(2025, 10, 1)), None, 90, 1001],
        ["B, Student", "Gradebook", to_serial(datetime(2025, 10, 8)), None, 40, 1002],
        ["C, Student", "Gradebook", to_serial(datetime(2025, 9, 20)), None, 70, 1003],
    ]
    formulas = [[None, make_hyperlink_formula(f"https://g/{i}", "Gradebook"), None, None, None, None] for i in range(3)]
    return RosterGrid(headers, values, formulas)


@pytest.fixture
def history():
    return SourceTable(
        ["Timestamp", "Student ID", "Tag"],
        [
            ["10/1/2025", "1001", "DNC - Phone"],
            ["10/9/2025", "1003", "Contacted, LDA 10/12/25"],
        ],
    )


def test_build_lda_report(lda_roster, table, history):
    settings = Settings(days_out=5, include_failing_list=True)
    rep = build_lda_report(lda_roster, table, datetime(2025, 10, 10), history=history, settings=settings)
    assert rep.sheet_name == "LDA 10-10-2025"
    assert _names(rep.lda) == ["C, Student", "A, Student"]
    assert rep.lda["Days Out"].tolist() == [20, 9]
    assert rep.lda["DNC"].tolist() == ["", "DNC - Phone"]
    assert rep.lda["Follow Up"].tolist() == ["10/12/25", ""]
    assert rep.lda["LDA"].tolist() == ["9/20/25", "10/1/25"]
    assert rep.lda["Gradebook"].tolist() == ["https://g/2", "https://g/0"]
    assert _names(rep.failing) == ["B, Student"]
    assert summary_counts(rep) == {"lda": 2, "failing": 1, "dnc": 1}


def test_build_lda_report_without_history_or_failing(lda_roster, table):
    rep = build_lda_report(lda_roster, table, datetime(2025, 10, 10), settings=Settings(days_out=10))
    assert _names(rep.lda) == ["C, Student"]
    assert rep.failing is None
    assert "DNC" not in rep.lda.columns


def test_build_lda_report_surfaces_ambiguous_dnc_entries(lda_roster, table):
    history = SourceTable(
        ["Timestamp", "Student ID", "Tag"],
        [["10/1/2025", "1001", "DNC - Phone, DNC - Email"]],
    )
    rep = build_lda_report(lda_roster, table, datetime(2025, 10, 10), history=history, settings=Settings(days_out=5))
    assert rep.lda["DNC"].tolist() == ["", "DNC - Phone"]
    assert [(i.code, i.count) for i in rep.issues] == [("multiple_dnc_tokens", 1)]
    assert sheet_titles(rep) == ["LDA 10-10-2025", "Import Issues"]
    assert export_lda_report_to_excel_bytes(rep)[:2] == b"PK"


def test_build_lda_report_needs_lda_or_days_out(table):
    bare = RosterGrid(["Student Name", "Grade"], [["A, Student", 50]])
    with pytest.raises(ConfigurationError) as ei:
        build_lda_report(bare, table, datetime(2025, 10, 10))
    assert ei.value.field == "Days Out"

    days_only = RosterGrid(["Student Name", "Days Out"], [["A, Student", 7], ["B, Student", 2]])
    rep = build_lda_report(days_only, table, datetime(2025, 10, 10), settings=Settings(days_out=5))
    assert _names(rep.lda) == ["A, Student"]
    assert rep.issues == []


def test_selectors_resolve_aliased_headers(table):
    grid = RosterGrid(["Student Name", "Current Grade", "Days out "], [["A", 40, 1], ["B", 90, 0]])
    assert select_failing(grid).empty
    assert _names(select_failing(grid, table=table)) == ["A"]
    assert _names(select_by_recency(grid, 1, table=table)) == ["A"]

    rows = [{"Student Name": "A", "Current Grade": 0.4, "Days out ": 2}]
    assert _names(select_failing(rows, table=table)) == ["A"]
