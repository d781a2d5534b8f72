from __future__ import annotations
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from .utils import load_json, save_json, settings_path, norm_key

logger = logging.getLogger(__name__)

# Канонические имена полей Master List
STUDENT_NAME = "Student Name"
GRADEBOOK = "Gradebook"
LDA = "LDA"
DAYS_OUT = "Days Out"
GRADE = "Grade"
MISSING_ASSIGNMENTS = "Missing Assignments"
ZERO_ASSIGNMENTS = "Zero Assignments"
COURSE = "Course"
COURSE_ID = "Course ID"
STUDENT_ID = "Student ID"
STUDENT_NUMBER = "Student Number"
PHONE = "Phone"
OTHER_PHONE = "Other Phone"
STUDENT_EMAIL = "Student Email"
PERSONAL_EMAIL = "Personal Email"
OUTREACH = "Outreach"
ASSIGNED = "Assigned"

DEFAULT_GRADEBOOK_URL = "https://nuc.instructure.com/courses/{course_id}/grades/{student_id}"


@dataclass
class FieldSpec:
    """
    Одна строка таблицы алиасов.
    name - каноническое имя (оно же всегда неявный алиас, проверяется первым);
    aliases - альтернативные заголовки в порядке приоритета;
    identifier - поле, по которому сопоставляются старые и новые строки для static-полей;
    static - значение переживает полный refresh, если источник его не дал;
    hyperlink - ячейка хранится как =HYPERLINK(url,label);
    date - ячейка хранит дату (нормализуется в serial).
    """
    name: str
    aliases: List[str] = field(default_factory=list)
    identifier: bool = False
    static: bool = False
    hyperlink: bool = False
    date: bool = False

    def candidates(self) -> List[str]:
        return [self.name] + [a for a in self.aliases if a]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FieldSpec":
        # формат настроек add-in: {"name", "alias", "static", "identifier", "format": ["=HYPERLINK"]}
        aliases = d.get("aliases", d.get("alias", [])) or []
        if isinstance(aliases, str):
            aliases = [aliases]
        fmt = d.get("format", []) or []
        if isinstance(fmt, str):
            fmt = [fmt]
        fmt_u = [str(x).upper() for x in fmt]
        return cls(
            name=str(d.get("name", "")).strip(),
            aliases=[str(a) for a in aliases],
            identifier=_truthy(d.get("identifier", d.get("identifer", False))),
            static=_truthy(d.get("static", False)),
            hyperlink=_truthy(d.get("hyperlink", False)) or "=HYPERLINK" in fmt_u,
            date=_truthy(d.get("date", False)) or any("DD" in x and "YY" in x for x in fmt_u),
        )


def _truthy(v: Any) -> bool:
    # в сохранённых настройках встречается и true, и "true"
    return v is True or (isinstance(v, str) and v.strip().lower() == "true")


class AliasTable:
    """Упорядоченная таблица алиасов: порядок объявления важен (политика первого совпадения)."""

    def __init__(self, fields: Sequence[FieldSpec]):
        self.fields: List[FieldSpec] = []
        self._by_key: Dict[str, FieldSpec] = {}
        for f in fields:
            if not f.name:
                continue
            k = norm_key(f.name)
            if k in self._by_key:
                logger.warning("Duplicate field %r in alias table ignored", f.name)
                continue
            self._by_key[k] = f
            self.fields.append(f)

    @classmethod
    def from_config(cls, items: Sequence[Any]) -> "AliasTable":
        out = []
        for it in items or []:
            if isinstance(it, FieldSpec):
                out.append(it)
            elif isinstance(it, dict):
                out.append(FieldSpec.from_dict(it))
        return cls(out)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Sequence[str]]) -> "AliasTable":
        # {"Student Name": ["name", "student"], ...}
        return cls([FieldSpec(name=k, aliases=list(v or [])) for k, v in mapping.items()])

    def get(self, name: str) -> Optional[FieldSpec]:
        return self._by_key.get(norm_key(name))

    def __contains__(self, name: str) -> bool:
        return norm_key(name) in self._by_key

    def __iter__(self):
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def identifier(self) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.identifier:
                return f
        return None

    def static_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.static]

    def hyperlink_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.hyperlink]

    def date_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.date]

    def to_config(self) -> List[Dict[str, Any]]:
        return [asdict(f) for f in self.fields]


# Колонки Master List по умолчанию (порядок = порядок проверки)
DEFAULT_COLUMNS: List[FieldSpec] = [
    FieldSpec(ASSIGNED, ["Advisor"], static=True),
    FieldSpec(STUDENT_NAME, ["StudentName", "Student"]),
    FieldSpec(GRADEBOOK, ["Gradelink", "gradeBookLink", "Grade Book"], identifier=True, static=True, hyperlink=True),
    FieldSpec("ProgramVersion", ["Program Version", "Program", "ProgVersDescrip"]),
    FieldSpec("Shift", ["ShiftDescrip"]),
    FieldSpec(LDA, ["Last LDA", "Last Date of Attendance", "Date of Attendance", "CurrentLDA"], date=True),
    FieldSpec(DAYS_OUT, []),
    FieldSpec(GRADE, ["Current Score", "Course Grade", "Current Grade", "Grade %", "Grades"]),
    FieldSpec(MISSING_ASSIGNMENTS, ["Course Missing Assignments", "Total Missing", "Missing"]),
    FieldSpec(ZERO_ASSIGNMENTS, ["Course Zero Assignments"]),
    FieldSpec(OUTREACH, ["Comments", "Comment", "Notes"]),
    FieldSpec(PHONE, ["Primary Phone", "Phone Number", "Contact Number", "PhoneNumber"]),
    FieldSpec(OTHER_PHONE, ["Second Phone", "Alt Phone", "OtherPhone"]),
    FieldSpec(STUDENT_EMAIL, ["School Email", "Email"]),
    FieldSpec(PERSONAL_EMAIL, ["Other Email", "OtherEmail"]),
    FieldSpec(COURSE, []),
    FieldSpec(COURSE_ID, []),
    # "Student ID" - ID в LMS (нужен для ссылки на gradebook), "Student Number" - внутренний номер SIS
    FieldSpec(STUDENT_ID, ["SyStudentId"]),
    FieldSpec(STUDENT_NUMBER, ["Student Identifier", "StudentNumber"]),
]

# Лист "Student History"
HISTORY_TIMESTAMP = "timestamp"
HISTORY_COMMENT = "comment"
HISTORY_CREATED_BY = "created_by"
HISTORY_TAG = "tag"
HISTORY_STUDENT_ID = "student_id"

HISTORY_COLUMNS: List[FieldSpec] = [
    FieldSpec(HISTORY_TIMESTAMP, ["Timestamp", "Date", "Time", "Created At"], date=True),
    FieldSpec(HISTORY_COMMENT, ["Comment", "Notes", "History", "Entry"]),
    FieldSpec(HISTORY_CREATED_BY, ["Created By", "Author", "Advisor"]),
    FieldSpec(HISTORY_TAG, ["Tag", "Tags", "Category", "Type"]),
    FieldSpec(HISTORY_STUDENT_ID, ["Student ID", "Student Number", "Student Identifier"]),
]


def default_alias_table() -> AliasTable:
    return AliasTable([FieldSpec(**asdict(f)) for f in DEFAULT_COLUMNS])

def history_alias_table() -> AliasTable:
    return AliasTable([FieldSpec(**asdict(f)) for f in HISTORY_COLUMNS])


@dataclass
class Settings:
    columns: AliasTable = field(default_factory=default_alias_table)
    days_out: int = 5
    include_failing_list: bool = False
    include_lda_tag: bool = True
    include_dnc_tag: bool = True
    grades_exclude: str = "CAPV"
    treat_empty_grades_as_zero: bool = False
    gradebook_url_template: str = DEFAULT_GRADEBOOK_URL
    gradebook_label: str = "Gradebook"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "columns": self.columns.to_config(),
            "daysOut": self.days_out,
            "includeFailingList": self.include_failing_list,
            "includeLdaTag": self.include_lda_tag,
            "includeDncTag": self.include_dnc_tag,
            "gradesExclude": self.grades_exclude,
            "treatEmptyGradesAsZero": self.treat_empty_grades_as_zero,
            "gradebookUrlTemplate": self.gradebook_url_template,
            "gradebookLabel": self.gradebook_label,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Settings":
        s = cls()
        if not isinstance(d, dict):
            return s
        cols = d.get("columns")
        if isinstance(cols, list) and cols:
            s.columns = AliasTable.from_config(cols)
        try:
            s.days_out = int(d.get("daysOut", s.days_out))
        except (TypeError, ValueError):
            logger.warning("Bad daysOut in settings: %r, using %d", d.get("daysOut"), s.days_out)
        s.include_failing_list = bool(d.get("includeFailingList", s.include_failing_list))
        # в старых настройках ключи писались по-разному
        s.include_lda_tag = bool(d.get("includeLdaTag", d.get("includeLDATag", s.include_lda_tag)))
        s.include_dnc_tag = bool(d.get("includeDncTag", d.get("includeDNCTag", s.include_dnc_tag)))
        s.grades_exclude = str(d.get("gradesExclude", s.grades_exclude) or "")
        s.treat_empty_grades_as_zero = bool(d.get("treatEmptyGradesAsZero", s.treat_empty_grades_as_zero))
        s.gradebook_url_template = str(d.get("gradebookUrlTemplate", s.gradebook_url_template) or DEFAULT_GRADEBOOK_URL)
        s.gradebook_label = str(d.get("gradebookLabel", s.gradebook_label) or "Gradebook")
        return s


def load_settings(path: Optional[Path] = None) -> Settings:
    # Читает settings.json; при отсутствии/повреждении - настройки по умолчанию
    p = path or settings_path()
    raw = load_json(p, None)
    if raw is None:
        return Settings()
    return Settings.from_dict(raw)

def save_settings(settings: Settings, path: Optional[Path] = None) -> None:
    save_json(path or settings_path(), settings.to_dict())
