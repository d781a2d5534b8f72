# tests/test_schema.py
import pytest

from roster.config import AliasTable, FieldSpec, Settings, load_settings, save_settings
from roster.errors import ConfigurationError
from roster.schema import build_column_map, rename_headers, resolve, suggest_headers


def test_resolve_alias_and_case_insensitive(table):
    assert resolve(["student name", "Current Score"], "Grade", table) == 1
    assert resolve(["STUDENT  NAME", "x"], "Student Name", table) == 0


def test_resolve_missing_alias_is_none(table):
    assert resolve(["Name", "Score"], "Grade", table) is None


def test_resolve_unregistered_field_is_none(table):
    assert resolve(["Shoe Size"], "Shoe Size", table) is None


def test_canonical_name_wins_over_alias(table):
    assert resolve(["Current Score", "Grade"], "Grade", table) == 1


def test_collision_first_declared_field_wins():
    t = AliasTable.from_mapping({"Grade": ["Score"], "Points": ["Score"]})
    cmap = build_column_map(["Name", "Score"], t, "grades.csv")
    assert cmap.get("Grade") == 1
    assert cmap.get("Points") is None
    assert len(cmap.warnings) == 1
    assert cmap.warnings[0].code == "header_collision"


def test_require_raises_with_field_name(table):
    cmap = build_column_map(["Studnt Nam", "Grade"], table, "import")
    with pytest.raises(ConfigurationError) as ei:
        cmap.require("Grade", "Student Name")
    assert ei.value.field == "Student Name"
    assert "Student Name" in str(ei.value)


def test_suggest_headers_puts_closest_first(table):
    assert suggest_headers("Grade", ["Grde", "Phone"], table)[0] == "Grde"


def test_rename_headers(table):
    assert rename_headers(["StudentName", "Current Score", " Notes2 "], table) == ["Student Name", "Grade", "Notes2"]


def test_field_spec_from_add_in_config():
    spec = FieldSpec.from_dict({"name": "Gradebook", "alias": "Gradelink", "identifer": "true", "format": ["=HYPERLINK"]})
    assert spec.aliases == ["Gradelink"]
    assert spec.identifier and spec.hyperlink and not spec.static


def test_settings_round_trip(tmp_path):
    p = tmp_path / "settings.json"
    s = Settings(days_out=7, include_failing_list=True, grades_exclude="LAB")
    save_settings(s, p)
    got = load_settings(p)
    assert got.days_out == 7
    assert got.include_failing_list is True
    assert got.grades_exclude == "LAB"
    assert got.columns.identifier().name == "Gradebook"


def test_missing_settings_file_gives_defaults(tmp_path):
    got = load_settings(tmp_path / "nope.json")
    assert got.days_out == 5
    assert "Student Name" in got.columns
