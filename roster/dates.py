from __future__ import annotations
import math
import numbers
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from dateutil import parser as dtparser
from .errors import ParseError

# Excel: serial 0 = 1899-12-30 (с учётом "високосного" 1900 года)
EXCEL_EPOCH = datetime(1899, 12, 30)
# serial для 1970-01-01; меньшие числа датой не считаем (это баллы, счётчики и т.п.)
UNIX_EPOCH_SERIAL = 25569
_SECONDS_PER_DAY = 86400

_NUMERIC_RE = re.compile(r"^\s*\d+(?:\.\d+)?\s*$")


def _from_serial(serial: float) -> Optional[datetime]:
    if serial != serial or serial <= UNIX_EPOCH_SERIAL:
        return None
    try:
        # округляем до секунды, чтобы float-погрешность не переносила дату через полночь
        return EXCEL_EPOCH + timedelta(seconds=round(serial * _SECONDS_PER_DAY))
    except OverflowError:
        return None


def parse_to_instant(value: Any) -> Optional[datetime]:
    """
    Приводит значение ячейки к "канонической" дате - naive datetime с полями настенного времени.
    Поддерживается:
      - datetime (в т.ч. pandas.Timestamp) - как есть, tzinfo отбрасывается
      - date - полночь этого дня
      - число - Excel serial (только если > 25569, т.е. после 1970-01-01)
      - строка - "-" заменяется на "/", затем обычный разбор (месяц первым)
    Неразборчивое/пустое -> None. Исключений не бросает.
    Serial раскладывается в поля дня напрямую, без UTC, поэтому день не "уезжает"
    в зависимости от часового пояса машины, где идёт конвертация.
    """
    if not value:
        return None
    if isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value != value:  # NaT
            return None
        to_py = getattr(value, "to_pydatetime", None)
        dt = to_py() if to_py is not None else value
        # aware -> те же поля настенного времени без tzinfo
        return dt.replace(tzinfo=None)

    if isinstance(value, date):
        return datetime.combine(value, time())

    if isinstance(value, numbers.Real):
        return _from_serial(float(value))

    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if _NUMERIC_RE.match(s):
            return _from_serial(float(s))
        s = s.replace("-", "/")
        try:
            dt = dtparser.parse(s, dayfirst=False)
        except (ValueError, OverflowError, TypeError):
            return None
        return dt.replace(tzinfo=None)

    return None


def parse_to_instant_strict(value: Any) -> Optional[datetime]:
    # Пустое -> None, непустое неразборчивое -> ParseError (для подсчёта проблем в пакете)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, float) and value != value:
        return None
    dt = parse_to_instant(value)
    if dt is None:
        raise ParseError(value, "date")
    return dt


def to_serial(instant: datetime) -> float:
    # Обратно в Excel serial по полям настенного времени (tzinfo отбрасывается)
    naive = instant.replace(tzinfo=None) if isinstance(instant, datetime) else datetime.combine(instant, time())
    delta = naive - EXCEL_EPOCH
    return delta.total_seconds() / _SECONDS_PER_DAY


def _as_utc_naive(d: datetime) -> datetime:
    if d.tzinfo is not None:
        return d.astimezone(timezone.utc).replace(tzinfo=None)
    return d


def days_between_utc(a: datetime, b: datetime) -> int:
    # Целые сутки от a до b по UTC, округление вниз (может быть отрицательным)
    diff = (_as_utc_naive(b) - _as_utc_naive(a)).total_seconds()
    return math.floor(diff / _SECONDS_PER_DAY)


def start_of_day(d: Any) -> Optional[datetime]:
    dt = parse_to_instant(d)
    if dt is None:
        return None
    return datetime(dt.year, dt.month, dt.day)


def elapsed_days(since: Any, now: Any) -> Optional[int]:
    """
    "Days Out": сколько полных календарных дней прошло с since до now.
    Никогда не отрицательно (будущая или сегодняшняя дата -> 0).
    None, если одну из дат не удалось разобрать.
    """
    a = start_of_day(since)
    b = start_of_day(now)
    if a is None or b is None:
        return None
    return max(0, days_between_utc(a, b))


def format_short(d: Any) -> str:
    # M/D/YY без ведущих нулей: 2025-10-02 -> "10/2/25"
    dt = parse_to_instant(d)
    if dt is None:
        return ""
    return f"{dt.month}/{dt.day}/{dt.year % 100:02d}"


def format_serial_short(serial: Any) -> str:
    # Excel serial -> "M/D/YY"; не-даты дают пустую строку
    if isinstance(serial, bool) or not isinstance(serial, (numbers.Real, str)):
        return ""
    return format_short(serial)
