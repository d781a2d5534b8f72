# tests/test_merge.py
from datetime import datetime

import pandas as pd
import pytest

from roster.config import AliasTable, FieldSpec
from roster.dates import to_serial
from roster.errors import ConfigurationError, ParseError
from roster.grid import RosterGrid, SourceTable
from roster.merge import MergeMode, MergeOptions, coerce_number, upsert_roster


def _codes(result):
    return {i.code: i.count for i in result.issues}


def _col(grid, name):
    return grid.headers.index(name)


# ======================
# Full replace
# ======================
def test_full_replace_classifies_new_and_existing(master, refresh_source, table, now):
    res = upsert_roster(master, refresh_source, table, MergeMode.FULL_REPLACE, now=now)
    assert res.new_identities == ["new person"]
    assert res.existing_identities == ["jane doe"]
    # |new| + |existing| == incoming rows with a distinct non-empty identity
    assert len(res.new_identities) + len(res.existing_identities) == 2
    assert len(res.roster) == 2


def test_full_replace_writes_new_first_then_existing(master, refresh_source, table, now):
    g = upsert_roster(master, refresh_source, table, now=now).roster
    names = [g.value(r, _col(g, "Student Name")) for r in range(len(g))]
    assert names == ["Person, New", "Doe, Jane"]


def test_full_replace_restores_static_values(master, refresh_source, table, now):
    res = upsert_roster(master, refresh_source, table, now=now)
    g = res.roster
    assigned = [g.value(r, _col(g, "Assigned")) for r in range(len(g))]
    assert assigned == [None, "Bob"]
    assert _codes(res)["static_restored"] == 1


def test_full_replace_writes_hyperlinks_dates_and_days_out(master, refresh_source, table, now):
    g = upsert_roster(master, refresh_source, table, now=now).roster
    r = 1  # Doe, Jane
    assert g.formula(r, _col(g, "Gradebook")) == '=HYPERLINK("https://g/2","Gradebook")'
    assert g.value(r, _col(g, "Gradebook")) == "Gradebook"
    assert g.value(r, _col(g, "LDA")) == to_serial(datetime(2025, 9, 28))
    assert g.value(r, _col(g, "Days Out")) == 3
    assert g.value(r, _col(g, "Grade")) == 85


def test_full_replace_reports_skipped_rows(master, refresh_source, table, now):
    res = upsert_roster(master, refresh_source, table, now=now)
    codes = _codes(res)
    assert codes["missing_identity"] == 1
    assert codes["duplicate_identity"] == 1
    assert [w.code for w in res.warnings] == ["duplicate_identity"]


def test_full_replace_does_not_mutate_input(master, refresh_source, table, now):
    before = [list(r) for r in master.values]
    upsert_roster(master, refresh_source, table, now=now)
    assert master.values == before
    assert master.value(0, 1) == "Smith, John"


def test_full_replace_bad_date_becomes_empty(master, table, now):
    src = SourceTable(["Student Name", "LDA"], [["Jane Doe", "not a date"]])
    res = upsert_roster(master, src, table, now=now)
    g = res.roster
    assert g.value(0, _col(g, "LDA")) is None
    assert g.value(0, _col(g, "Days Out")) is None
    assert _codes(res)["date_parse_failed"] == 1


def test_two_rows_into_empty_roster(table, now):
    empty = RosterGrid.empty(["StudentName", "Grade"])
    records = [{"Student Name": "Jane Doe", "Grade": 90}, {"Student Name": "John Smith", "Grade": 55}]
    res = upsert_roster(empty, records, table, now=now)
    g = res.roster
    assert res.new_identities == ["jane doe", "john smith"]
    assert res.existing_identities == []
    assert g.values == [["Doe, Jane", 90], ["Smith, John", 55]]
    assert len(empty) == 0


def test_dataframe_input_and_unmapped_columns_are_dropped(table, now):
    empty = RosterGrid.empty(["Student Name", "Notes"])
    df = pd.DataFrame({"Student": ["Jane Doe"], "Shoe Size": [9], "notes": ["hi"]})
    g = upsert_roster(empty, df, table, now=now).roster
    assert g.values == [["Doe, Jane", "hi"]]


def test_full_replace_requires_identity_columns(master, table, now):
    with pytest.raises(ConfigurationError) as ei:
        upsert_roster(master, SourceTable(["Name", "Grade"], [["x", 1]]), table, now=now)
    assert ei.value.field == "Student Name"


def test_static_fields_need_an_identifier_column(table, now):
    g = RosterGrid(["Assigned", "Student Name"], [["Bob", "Doe, Jane"]])
    src = SourceTable(["Student Name"], [["Jane Doe"]])
    with pytest.raises(ConfigurationError) as ei:
        upsert_roster(g, src, table, now=now)
    assert ei.value.field == "Gradebook"


def test_static_fields_without_declared_identifier(now):
    t = AliasTable([FieldSpec("Student Name"), FieldSpec("Assigned", static=True)])
    g = RosterGrid(["Assigned", "Student Name"], [["Bob", "Doe, Jane"]])
    with pytest.raises(ConfigurationError):
        upsert_roster(g, SourceTable(["Student Name"], [["Jane Doe"]]), t, now=now)


# ======================
# Partial update (grades)
# ======================
@pytest.fixture
def grades_master():
    headers = ["Student Name", "Grade", "Missing Assignments", "Gradebook"]
    return RosterGrid(headers, [["Smith, John", 50, 3, None], ["Doe, Jane", 60, 1, None]])


@pytest.fixture
def grades_source():
    return SourceTable(
        ["Student Name", "Course", "Current Score", "Missing Assignments", "Course ID", "SyStudentId"],
        [
            ["John Smith", "CAPV 100", 10, 9, 999, 456],
            ["John Smith", "BIO 101", "88", 0, 123, 456.0],
            ["Nobody Here", "ENG 101", 70, 0, 1, 2],
        ],
        name="grades.csv",
    )


def test_partial_updates_only_grade_fields(grades_master, grades_source, table):
    res = upsert_roster(grades_master, grades_source, table, MergeMode.PARTIAL_UPDATE)
    g = res.roster
    assert g.value(0, 1) == 88.0
    assert g.value(0, 2) == 0
    assert g.formula(0, 3) == '=HYPERLINK("https://nuc.instructure.com/courses/123/grades/456","Gradebook")'
    assert g.value(0, 3) == "Gradebook"
    # строка без совпадения не тронута
    assert g.values[1] == ["Doe, Jane", 60, 1, None]
    assert res.updated_rows == 1


def test_partial_skips_excluded_courses_and_reports_unknown(grades_master, grades_source, table):
    res = upsert_roster(grades_master, grades_source, table, MergeMode.PARTIAL_UPDATE)
    codes = _codes(res)
    assert codes["excluded_category"] == 1
    assert codes["not_in_roster"] == 1
    assert "duplicate_identity" not in codes
    assert res.existing_identities == ["john smith"]
    assert res.new_identities == ["nobody here"]


def test_partial_empty_grade_as_zero(grades_master, table):
    src = SourceTable(["Student Name", "Course", "Grade"], [["Jane Doe", "BIO", None]])
    kept = upsert_roster(grades_master, src, table, MergeMode.PARTIAL_UPDATE).roster
    assert kept.value(1, 1) == 60
    opts = MergeOptions(treat_empty_grades_as_zero=True)
    zeroed = upsert_roster(grades_master, src, table, MergeMode.PARTIAL_UPDATE, options=opts).roster
    assert zeroed.value(1, 1) == 0.0


def test_partial_bad_number_is_counted(grades_master, table):
    src = SourceTable(["Student Name", "Course", "Grade"], [["Jane Doe", "BIO", "n/a"]])
    res = upsert_roster(grades_master, src, table, MergeMode.PARTIAL_UPDATE)
    assert res.roster.value(1, 1) == 60
    assert _codes(res)["number_parse_failed"] == 1


def test_partial_requires_columns(grades_master, table):
    src = SourceTable(["Student Name", "Grade"], [["Jane Doe", 90]])
    with pytest.raises(ConfigurationError) as ei:
        upsert_roster(grades_master, src, table, MergeMode.PARTIAL_UPDATE)
    assert ei.value.field == "Course"

    no_link = RosterGrid(["Student Name", "Grade"], [["Doe, Jane", 1]])
    with pytest.raises(ConfigurationError) as ei:
        upsert_roster(no_link, SourceTable(["Student Name", "Course", "Grade"], []), table, MergeMode.PARTIAL_UPDATE)
    assert ei.value.field == "Gradebook"


def test_partial_last_course_row_wins_without_duplicate_issue(grades_master, table):
    src = SourceTable(
        ["Student Name", "Course", "Grade"],
        [["John Smith", "BIO 101", 70], ["John Smith", "ENG 101", 30]],
    )
    res = upsert_roster(grades_master, src, table, MergeMode.PARTIAL_UPDATE)
    assert res.roster.value(0, 1) == 30.0
    assert "duplicate_identity" not in _codes(res)
    assert res.warnings == []
    assert res.existing_identities == ["john smith"]


def test_mode_accepts_string(grades_master, grades_source, table):
    res = upsert_roster(grades_master, grades_source, table, "partial_update")
    assert res.updated_rows == 1


def test_coerce_number():
    assert coerce_number("85%") == 85.0
    assert coerce_number("0,5") == 0.5
    assert coerce_number("") is None
    with pytest.raises(ParseError):
        coerce_number("abc")
