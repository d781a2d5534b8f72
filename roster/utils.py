import os
import re
import json
from pathlib import Path
from typing import Any, Optional

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"

APPDATA = os.environ.get("APPDATA")
if APPDATA:
    USER_DATA_DIR = Path(APPDATA) / "RetentionRoster" / "data"
else:
    USER_DATA_DIR = DEFAULT_DATA_DIR  # fallback

def load_json(path: Path, default: Any):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return default

def save_json(path: Path, obj: Any):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)

_DASH_CHARS_RE = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2212]")
_NBSP_RE = re.compile(r"[\u00A0\u2007\u202F]")  # NBSP варианты
_WS_RE = re.compile(r"\s+")


def norm_text(s: Any) -> str:
    """
    Универсальная нормализация текста:
    - lower
    - BOM/неразрывные пробелы
    - внешние кавычки
    - все виды тире -> '-'
    - схлопывание пробелов
    """
    if s is None:
        return ""

    s = str(s)

    # частые "невидимые" символы CSV/Excel
    s = s.replace("\ufeff", "")
    s = _NBSP_RE.sub(" ", s)
    s = s.strip()
    # убрать внешние кавычки
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ('"', "'"):
        s = s[1:-1].strip()
    s = s.lower()
    # разные тире/дефисы в один стандарт
    s = _DASH_CHARS_RE.sub("-", s)
    s = _WS_RE.sub(" ", s).strip()
    return s

def norm_key(s: Any) -> str:
    # Ключ для сравнения заголовков: lower + без пробелов вообще ("Student Name" == "studentname")
    if s is None:
        return ""
    t = str(s).replace("\ufeff", "")
    t = _NBSP_RE.sub(" ", t)
    return _WS_RE.sub("", t).lower()

def is_blank(v: Any) -> bool:
    # Пустая ячейка: None, "", пробелы, NaN из pandas
    if v is None:
        return True
    if isinstance(v, float) and v != v:
        return True
    if isinstance(v, str):
        t = v.strip()
        return t == "" or t.lower() == "nan"
    return False

def cell_str(v: Any) -> str:
    return "" if is_blank(v) else str(v).strip()

def as_number(v: Any) -> Optional[float]:
    # Числовое значение ячейки или None (bool числом не считаем)
    if isinstance(v, bool) or is_blank(v):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    s = str(v).strip().replace(",", ".")
    if s.endswith("%"):
        s = s[:-1].strip()
    try:
        return float(s)
    except ValueError:
        return None

def settings_path() -> Path:
    USER_DATA_DIR.mkdir(parents=True, exist_ok=True)
    return USER_DATA_DIR / "settings.json"

def id_key(v: Any) -> str:
    # ID из Excel часто читаются как float: 12345.0 -> "12345"
    if isinstance(v, float) and v == v and v.is_integer():
        return str(int(v))
    s = cell_str(v)
    if s.endswith(".0") and s[:-2].isdigit():
        return s[:-2]
    return s
