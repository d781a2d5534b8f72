from __future__ import annotations
import re
from typing import Any

_WS_RE = re.compile(r"\s+")


def normalize_identity(name: Any) -> str:
    """
    Ключ сопоставления студента: "Last, First" и "First Last" дают одно и то же.
    - lower + trim
    - если есть запятая: "smith, john" -> "john smith"
    - иначе строка как есть
    Дефисы/апострофы внутри имени не трогаем ("o'neil", "smith-jones").
    """
    if not isinstance(name, str):
        return ""
    s = name.strip().lower()
    if not s:
        return ""
    if "," in s:
        parts = [p.strip() for p in s.split(",")]
        if len(parts) > 1:
            return f"{parts[1]} {parts[0]}"
    return s


def format_display(name: Any) -> str:
    # "John Smith" -> "Smith, John"; уже "Smith,John" -> "Smith, John"
    if not isinstance(name, str):
        return ""
    s = name.strip()
    if not s:
        return ""
    if "," in s:
        return ", ".join(p.strip() for p in s.split(","))
    parts = [p for p in s.split(" ") if p]
    if len(parts) > 1:
        last = parts.pop()
        return f"{last}, {' '.join(parts)}"
    return s


def format_first_last(name: Any) -> str:
    # Обратное преобразование для писем/отчётов: "Smith, John" -> "John Smith"
    if not isinstance(name, str):
        return ""
    s = name.strip()
    if "," in s:
        last, first = [p.strip() for p in s.split(",", 1)]
        if first and last:
            return f"{first} {last}"
        return last or first
    return _WS_RE.sub(" ", s)
