from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class RosterError(Exception):
    """Базовая ошибка ядра Master List."""


class ConfigurationError(RosterError):
    """
    Обязательное каноническое поле не найдено: нет в таблице алиасов,
    в заголовках источника или в заголовках Master List.
    Фатально: операция прерывается целиком, ничего не записывается.
    """

    def __init__(self, field: str, where: str = "", hint: str = ""):
        self.field = field
        self.where = where
        msg = f"Missing required column '{field}'"
        if where:
            msg += f" in {where}"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class ParseError(RosterError, ValueError):
    """Одна ячейка (дата/число) не распарсилась. Восстанавливается локально: поле = null."""

    def __init__(self, value: Any, kind: str = "date"):
        self.value = value
        self.kind = kind
        super().__init__(f"Could not parse {kind} from {value!r}")


class AmbiguityWarning(UserWarning):
    """
    Неоднозначность, разрешённая политикой "первое совпадение":
    коллизия заголовков, дубль identity, несколько DNC-токенов в одной записи.
    Не фатально, но обязательно отдаётся вызывающему вместе со счётчиком.
    """

    def __init__(self, code: str, message: str, count: int = 1):
        self.code = code
        self.message = message
        self.count = int(count)
        super().__init__(f"{code}: {message} (x{self.count})")


# уровень и текст по коду - для сводки импорта
ISSUE_MAP = {
    "missing_identity": ("warn", "Rows without a student name were skipped."),
    "duplicate_identity": ("warn", "Student appears more than once in the import; the first row was used."),
    "header_collision": ("warn", "Two fields resolve to the same column; the first declared field keeps it."),
    "date_parse_failed": ("warn", "Date could not be parsed; the cell was left empty."),
    "number_parse_failed": ("warn", "Number could not be parsed; the cell was left empty."),
    "excluded_category": ("info", "Rows in an excluded course were skipped."),
    "static_restored": ("info", "Manually curated values were restored after the refresh."),
    "multiple_dnc_tokens": ("warn", "Several DNC tags in one entry; the first one was applied."),
    "not_in_roster": ("info", "Students from the import that are not on the Master List were ignored."),
}


@dataclass
class Issue:
    code: str
    count: int = 1
    level: str = ""
    message: str = ""

    def __post_init__(self):
        level, msg = ISSUE_MAP.get(self.code, ("warn", f"Problem: {self.code}"))
        if not self.level:
            self.level = level
        if not self.message:
            self.message = msg

    @classmethod
    def from_warning(cls, w: AmbiguityWarning) -> "Issue":
        return cls(code=w.code, count=w.count, level="warn", message=w.message)

    def as_row(self) -> Dict[str, Any]:
        return {"Level": self.level, "Code": self.code, "Message": self.message, "Count": self.count}


class IssueLog:
    # Счётчик проблем по коду; одинаковые коды схлопываются в одну строку
    def __init__(self):
        self._issues: Dict[str, Issue] = {}
        self.warnings: List[AmbiguityWarning] = []

    def add(self, code: str, count: int = 1, message: Optional[str] = None) -> None:
        if count <= 0:
            return
        cur = self._issues.get(code)
        if cur is None:
            self._issues[code] = Issue(code=code, count=count, message=message or "")
        else:
            cur.count += count

    def warn(self, w: AmbiguityWarning) -> None:
        self.warnings.append(w)
        cur = self._issues.get(w.code)
        if cur is None:
            self._issues[w.code] = Issue.from_warning(w)
        else:
            cur.count += w.count

    def count(self, code: str) -> int:
        cur = self._issues.get(code)
        return cur.count if cur else 0

    def to_list(self) -> List[Issue]:
        return list(self._issues.values())

    def __len__(self) -> int:
        return len(self._issues)
