from datetime import datetime

import pytest

from roster.config import default_alias_table, history_alias_table
from roster.grid import RosterGrid, SourceTable, make_hyperlink_formula


@pytest.fixture
def table():
    return default_alias_table()


@pytest.fixture
def history_table():
    return history_alias_table()


@pytest.fixture
def now():
    # среда
    return datetime(2025, 10, 1)


@pytest.fixture
def master():
    headers = ["Assigned", "Student Name", "Gradebook", "LDA", "Days Out", "Grade"]
    values = [
        ["Alice", "Smith, John", "Gradebook", None, None, 0.9],
        ["Bob", "Doe, Jane", "Gradebook", None, None, 0.7],
    ]
    formulas = [
        [None, None, make_hyperlink_formula("https://g/1", "Gradebook"), None, None, None],
        [None, None, make_hyperlink_formula("https://g/2", "Gradebook"), None, None, None],
    ]
    return RosterGrid(headers, values, formulas)


@pytest.fixture
def refresh_source():
    return SourceTable(
        ["StudentName", "Gradelink", "Last LDA", "Current Score"],
        [
            ["Jane Doe", "https://g/2", "9/28/2025", 85],
            ["New Person", "https://g/3", "10/1/2025", 70],
            ["", "https://g/4", None, None],
            ["jane doe", "https://g/2", "9/1/2025", 10],
        ],
        name="export.csv",
    )
