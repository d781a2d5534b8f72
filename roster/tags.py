from __future__ import annotations
import logging
import re
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from .config import AliasTable, history_alias_table, HISTORY_STUDENT_ID, HISTORY_TAG, HISTORY_TIMESTAMP
from .dates import format_short, parse_to_instant
from .errors import AmbiguityWarning, IssueLog
from .grid import SourceTable
from .schema import build_column_map
from .utils import cell_str, id_key, norm_text

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)


# =========================
# DNC
# =========================

class DncScope(str, Enum):
    NONE = "none"
    PHONE = "phone"
    OTHER_PHONE = "other_phone"
    EMAIL = "email"
    ALL = "all"

    @property
    def label(self) -> str:
        return _DNC_LABELS[self]

    def blocks(self, channel: str) -> bool:
        # channel: "phone" / "other_phone" / "email"
        if self is DncScope.NONE:
            return False
        if self is DncScope.ALL:
            return True
        return self.value == channel

    @property
    def email_excluded(self) -> bool:
        # В рассылку не попадают все DNC, кроме чисто телефонных
        return self not in (DncScope.NONE, DncScope.PHONE, DncScope.OTHER_PHONE)


_DNC_LABELS = {
    DncScope.NONE: "",
    DncScope.PHONE: "DNC - Phone",
    DncScope.OTHER_PHONE: "DNC - Other Phone",
    DncScope.EMAIL: "DNC - Email",
    DncScope.ALL: "DNC",
}

_QUALIFIERS = {
    "": DncScope.ALL,
    "phone": DncScope.PHONE,
    "other phone": DncScope.OTHER_PHONE,
    "otherphone": DncScope.OTHER_PHONE,
    "email": DncScope.EMAIL,
    "e-mail": DncScope.EMAIL,
}


def email_excluded(scope: DncScope) -> bool:
    return DncScope(scope).email_excluded


def _dnc_tokens(tag_text: Any) -> List[str]:
    if not isinstance(tag_text, str):
        return []
    toks = [norm_text(t) for t in tag_text.split(",")]
    return [t for t in toks if t.startswith("dnc")]


def _scope_of(token: str) -> DncScope:
    q = token[3:].strip(" -:")
    scope = _QUALIFIERS.get(q)
    if scope is None:
        # неизвестное уточнение трактуем строже всего
        logger.debug("Unknown DNC qualifier %r, treating as all channels", q)
        return DncScope.ALL
    return scope


def classify_dnc_detailed(tag_text: Any) -> Tuple[DncScope, Optional[AmbiguityWarning]]:
    """
    "DNC - Phone, Outreach" -> (PHONE, None).
    Если DNC-меток несколько - берётся первая, второй элемент - AmbiguityWarning.
    """
    toks = _dnc_tokens(tag_text)
    if not toks:
        return DncScope.NONE, None
    scope = _scope_of(toks[0])
    warn = None
    if len(toks) > 1:
        warn = AmbiguityWarning("multiple_dnc_tokens", f"{tag_text!r}: using '{toks[0]}'", count=len(toks) - 1)
    return scope, warn


def classify_dnc(tag_text: Any) -> DncScope:
    return classify_dnc_detailed(tag_text)[0]


def classify_dnc_history(tag_texts: Iterable[Any], newest_first: bool = False) -> DncScope:
    # История по умолчанию в порядке листа (старые сверху); применяется самая свежая DNC-метка
    items = list(tag_texts or [])
    if not newest_first:
        items.reverse()
    for t in items:
        scope = classify_dnc(t)
        if scope is not DncScope.NONE:
            return scope
    return DncScope.NONE


def _history_rows_newest_first(history: SourceTable, table: Optional[AliasTable]) -> Tuple[List[int], Any]:
    table = table or history_alias_table()
    cmap = build_column_map(history.headers, table, f"history '{history.name}'" if history.name else "history")
    cmap.require(HISTORY_STUDENT_ID, HISTORY_TAG)
    ts = cmap.get(HISTORY_TIMESTAMP)
    order = list(range(len(history)))
    order.reverse()
    if ts is not None:
        # стабильная сортировка: без даты - в конец, равные - более поздняя строка листа первой
        def _k(r: int):
            dt = parse_to_instant(history.cell(r, ts))
            return (dt is None, -(dt - _EPOCH).total_seconds() if dt is not None else 0.0)
        order.sort(key=_k)
    return order, cmap


def dnc_by_identity(history: SourceTable, table: Optional[AliasTable] = None,
                    log: Optional[IssueLog] = None) -> Dict[str, DncScope]:
    """
    Student History -> {student id: DncScope} по самой свежей DNC-метке студента.
    Записи с несколькими DNC-метками (применена первая) считаются в log
    как multiple_dnc_tokens, по одной на запись.
    """
    order, cmap = _history_rows_newest_first(history, table)
    sid = cmap.get(HISTORY_STUDENT_ID)
    tag = cmap.get(HISTORY_TAG)
    out: Dict[str, DncScope] = {}
    ambiguous = 0
    for r in order:
        key = id_key(history.cell(r, sid))
        if not key or key in out:
            continue
        scope, warn = classify_dnc_detailed(history.cell(r, tag))
        if warn is not None:
            ambiguous += 1
            logger.debug("History row %d: %s", r, warn.message)
        if scope is not DncScope.NONE:
            out[key] = scope
    if ambiguous:
        where = history.name or "Student History"
        logger.warning("%s: %d entries with several DNC tags, the first tag applied", where, ambiguous)
        if log is not None:
            log.warn(AmbiguityWarning("multiple_dnc_tokens",
                                      f"{where}: {ambiguous} entries with several DNC tags, the first tag applied",
                                      ambiguous))
    logger.debug("DNC scopes resolved for %d students", len(out))
    return out


# =========================
# Follow-up даты
# =========================

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_SHORT_DATE_RE = re.compile(r"(?<![\d/-])(\d{1,2})[/-](\d{1,2})(?:[/-](\d{4}|\d{2}))?(?![\d/-])")
_LONG_DATE_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?\s+(\d{1,2})(?:st|nd|rd|th)?"
    r"(?:[,\s]+(\d{4}|\d{2}))?\b",
    re.I,
)
_TOMORROW_RE = re.compile(r"\btomorrow\b", re.I)
_NEXT_WEEK_RE = re.compile(r"\bnext\s+week\b", re.I)
_WEEKEND_RE = re.compile(r"\bweekends?\b", re.I)
_WEEKDAY_RE = re.compile(r"\b(" + "|".join(_WEEKDAYS) + r")\b", re.I)
_SERIAL_ONLY_RE = re.compile(r"^\s*\d+(?:\.\d+)?\s*$")
_TOKEN_RE = re.compile(r"\blda\s+(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})\b", re.I)

CONTACTED = "Contacted"
CONTACT_PHRASES = [
    "hung up", "hanged up", "promise", "requested", "up to date",
    "will catch up", "will come", "will complete", "will engage", "will pass",
    "will submit", "will work", "will be in class",
    "waiting for instructor", "waiting for professor", "waiting for teacher",
    "waiting on instructor", "waiting on professor", "waiting on teacher",
]
_CONTACT_RE = re.compile(r"\b(?:" + "|".join(re.escape(p) for p in CONTACT_PHRASES) + r")", re.I)


def _today(now: Any) -> date:
    if isinstance(now, datetime):
        return now.date()
    if isinstance(now, date):
        return now
    dt = parse_to_instant(now)
    if dt is None:
        raise ValueError(f"now must be a date or datetime, got {now!r}")
    return dt.date()


def _full_year(y: Optional[str], default: int) -> int:
    if not y:
        return default
    n = int(y)
    return 2000 + n if len(y) == 2 else n


def _safe_date(y: int, m: int, d: int) -> Optional[date]:
    try:
        return date(y, m, d)
    except ValueError:
        return None


def _next_weekday(today: date, weekday: int) -> date:
    # 1..7 дней вперёд, сегодня - никогда
    delta = (weekday - today.weekday()) % 7 or 7
    return today + timedelta(days=delta)


def extract_follow_up_dates(text: Any, now: Any) -> Set[str]:
    """
    Даты follow-up из свободного текста -> множество "M/D/YY".
      - 10/7, 10-7-25, 10/7/2025 (без года - год now)
      - "November 8th, 2025", "Nov 8"
      - tomorrow (+1), next week (+7)
      - monday..sunday: ближайший будущий день недели (1-7 дней)
      - weekend/weekends: ближайшая суббота (не сегодня)
      - текст из одного числа: Excel serial
    Невалидные даты (13/45) пропускаются. now передаётся явно.
    """
    if text is None:
        return set()
    s = str(text)
    if not s.strip():
        return set()
    today = _today(now)
    found: List[date] = []

    if _SERIAL_ONLY_RE.match(s):
        dt = parse_to_instant(s)
        return {format_short(dt)} if dt is not None else set()

    for m in _SHORT_DATE_RE.finditer(s):
        d = _safe_date(_full_year(m.group(3), today.year), int(m.group(1)), int(m.group(2)))
        if d is not None:
            found.append(d)

    for m in _LONG_DATE_RE.finditer(s):
        month = _MONTHS[m.group(1)[:3].lower()]
        d = _safe_date(_full_year(m.group(3), today.year), month, int(m.group(2)))
        if d is not None:
            found.append(d)

    if _TOMORROW_RE.search(s):
        found.append(today + timedelta(days=1))
    if _NEXT_WEEK_RE.search(s):
        found.append(today + timedelta(days=7))
    for m in _WEEKDAY_RE.finditer(s):
        found.append(_next_weekday(today, _WEEKDAYS.index(m.group(1).lower())))
    if _WEEKEND_RE.search(s):
        found.append(_next_weekday(today, 5))

    return {format_short(d) for d in found}


def _sort_key(short: str) -> Tuple[int, int, int]:
    m, d, y = (int(x) for x in short.split("/"))
    return (y, m, d)


def follow_up_token(d: Any) -> str:
    # 2025-10-07 -> "LDA 10/7/25"
    if isinstance(d, str) and re.match(r"^\d{1,2}/\d{1,2}/\d{2}$", d.strip()):
        return f"LDA {d.strip()}"
    short = format_short(d)
    if not short:
        raise ValueError(f"Not a date: {d!r}")
    return f"LDA {short}"


def parse_follow_up_token(text: Any) -> Optional[date]:
    # Первая метка "LDA M/D/YY" в тексте -> date
    if not isinstance(text, str):
        return None
    for m in _TOKEN_RE.finditer(text):
        d = _safe_date(_full_year(m.group(3), 2000), int(m.group(1)), int(m.group(2)))
        if d is not None:
            return d
    return None


def active_follow_ups(history: SourceTable, table: Optional[AliasTable] = None, today: Any = None) -> Dict[str, date]:
    """
    {student id: дата} по самой свежей метке "LDA <дата>" студента,
    только если эта дата сегодня или позже. Старые метки после свежей не смотрим.
    """
    if today is None:
        raise ValueError("today is required")
    day = _today(today)
    order, cmap = _history_rows_newest_first(history, table)
    sid = cmap.get(HISTORY_STUDENT_ID)
    tag = cmap.get(HISTORY_TAG)
    seen: Set[str] = set()
    out: Dict[str, date] = {}
    for r in order:
        key = id_key(history.cell(r, sid))
        if not key or key in seen:
            continue
        d = parse_follow_up_token(cell_str(history.cell(r, tag)))
        if d is None:
            continue
        seen.add(key)
        if d >= day:
            out[key] = d
    return out


def detect_outreach_tags(text: Any, now: Any) -> List[str]:
    # Метки для записи в историю: "Contacted" + "LDA M/D/YY" по каждой найденной дате
    tags: List[str] = []
    if isinstance(text, str) and _CONTACT_RE.search(text):
        tags.append(CONTACTED)
    for short in sorted(extract_follow_up_dates(text, now), key=_sort_key):
        tags.append(follow_up_token(short))
    return tags


class FollowUpDebouncer:
    """
    Для интерактивного ввода: извлечение гоняется на каждое нажатие клавиши.
    Пустой результат заменяет предыдущий непустой только если продержался settle_seconds,
    иначе дата мигала бы, пока пользователь дописывает текст.
    Время передаётся явно (секунды, монотонные).
    """

    def __init__(self, settle_seconds: float = 1.5):
        self.settle_seconds = float(settle_seconds)
        self.current: Set[str] = set()
        self._empty_since: Optional[float] = None

    def update(self, dates: Iterable[str], at: float) -> Set[str]:
        new = set(dates or [])
        if new:
            self.current = new
            self._empty_since = None
            return set(self.current)
        if not self.current:
            return set()
        if self._empty_since is None:
            self._empty_since = at
        elif at - self._empty_since >= self.settle_seconds:
            self.current = set()
            self._empty_since = None
        return set(self.current)

    def feed(self, text: Any, now: Any, at: float) -> Set[str]:
        return self.update(extract_follow_up_dates(text, now), at)
