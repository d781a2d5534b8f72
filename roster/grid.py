from __future__ import annotations
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import pandas as pd
from .utils import is_blank

# =HYPERLINK("url","label") / =HYPERLINK('url';'label') / =HYPERLINK("url")
_Q = r"""(?:"((?:[^"]|"")*)"|'([^']*)')"""
_HYPERLINK_RE = re.compile(r"^\s*=\s*HYPERLINK\s*\(\s*" + _Q + r"\s*(?:[,;]\s*" + _Q + r"\s*)?\)\s*$", re.I)
_URL_RE = re.compile(r"^https?://", re.I)


def _unq(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is not None:
        return a.replace('""', '"')
    return b


def parse_hyperlink(formula_or_value: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    (url, label) из формулы =HYPERLINK(...) или из голого URL.
    Иначе (None, None).
    """
    if not isinstance(formula_or_value, str):
        return None, None
    s = formula_or_value.strip()
    m = _HYPERLINK_RE.match(s)
    if m:
        url = (_unq(m.group(1), m.group(2)) or "").strip()
        label = _unq(m.group(3), m.group(4))
        label = label.strip() if label is not None else url
        return (url or None), label
    if _URL_RE.match(s):
        return s, s
    return None, None


def extract_url(formula_or_value: Any) -> Optional[str]:
    return parse_hyperlink(formula_or_value)[0]


def make_hyperlink_formula(url: str, label: Optional[str] = None) -> str:
    # кавычки внутри экранируются удвоением, как требует Excel
    esc_url = str(url).replace('"', '""')
    esc_label = esc_url if label is None else str(label).replace('"', '""')
    return f'=HYPERLINK("{esc_url}","{esc_label}")'


def _is_formula(v: Any) -> bool:
    return isinstance(v, str) and v.strip().startswith("=")


class SourceTable:
    """Входная таблица внешнего источника: строка заголовков + строки значений (заголовки сырые)."""

    def __init__(self, headers: Sequence[Any], rows: Iterable[Sequence[Any]], name: str = ""):
        self.headers = [("" if h is None else str(h)) for h in headers or []]
        self.rows: List[List[Any]] = [list(r) for r in rows or []]
        self.name = name

    @classmethod
    def from_records(cls, records: Sequence[Dict[str, Any]], name: str = "") -> "SourceTable":
        headers: List[str] = []
        for rec in records or []:
            for k in rec.keys():
                if k not in headers:
                    headers.append(k)
        rows = [[rec.get(h) for h in headers] for rec in records or []]
        return cls(headers, rows, name)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, name: str = "") -> "SourceTable":
        cols = [c for c in df.columns if c != "_origin_row"]
        rows = []
        for rec in df[cols].itertuples(index=False, name=None):
            rows.append([None if is_blank(v) else v for v in rec])
        return cls([str(c) for c in cols], rows, name)

    def cell(self, r: int, c: Optional[int]) -> Any:
        if c is None:
            return None
        row = self.rows[r]
        return row[c] if c < len(row) else None

    def __len__(self) -> int:
        return len(self.rows)


class RosterGrid:
    """
    Снимок Master List: заголовки + сетка значений + параллельная сетка формул.
    Для гиперссылок одна ячейка имеет два вида: значение (подпись) и формулу =HYPERLINK(url,label).
    В formulas всё, что не начинается с "=", считается "формулы нет".
    """

    def __init__(self, headers: Sequence[Any], values: Optional[Sequence[Sequence[Any]]] = None,
                 formulas: Optional[Sequence[Sequence[Any]]] = None):
        self.headers = [("" if h is None else str(h)) for h in headers or []]
        width = len(self.headers)
        self.values: List[List[Any]] = [self._fit(r, width) for r in values or []]
        if formulas is None:
            self.formulas: List[List[Optional[str]]] = [[None] * width for _ in self.values]
        else:
            fs = [self._fit(r, width) for r in formulas]
            fs += [[None] * width for _ in range(len(self.values) - len(fs))]
            self.formulas = [[f if _is_formula(f) else None for f in r] for r in fs[:len(self.values)]]

    @staticmethod
    def _fit(row: Sequence[Any], width: int) -> List[Any]:
        row = list(row or [])
        if len(row) < width:
            row += [None] * (width - len(row))
        return row[:width] if width else row

    @classmethod
    def from_sheet(cls, values: Sequence[Sequence[Any]], formulas: Optional[Sequence[Sequence[Any]]] = None) -> "RosterGrid":
        # used range как в Excel: первая строка - заголовки
        if not values:
            return cls([])
        headers = values[0]
        body_f = formulas[1:] if formulas else None
        return cls(headers, values[1:], body_f)

    @classmethod
    def empty(cls, headers: Sequence[Any]) -> "RosterGrid":
        return cls(headers, [], [])

    def copy(self) -> "RosterGrid":
        g = RosterGrid(self.headers)
        g.values = [list(r) for r in self.values]
        g.formulas = [list(r) for r in self.formulas]
        return g

    def __len__(self) -> int:
        return len(self.values)

    @property
    def width(self) -> int:
        return len(self.headers)

    def value(self, r: int, c: Optional[int]) -> Any:
        if c is None:
            return None
        return self.values[r][c]

    def formula(self, r: int, c: Optional[int]) -> Optional[str]:
        if c is None:
            return None
        f = self.formulas[r][c]
        return f if _is_formula(f) else None

    def url(self, r: int, c: Optional[int]) -> Optional[str]:
        # URL гиперссылки: из формулы, иначе из значения (если это голый URL)
        f = self.formula(r, c)
        if f:
            u = extract_url(f)
            if u:
                return u
        return extract_url(self.value(r, c))

    def stored(self, r: int, c: int) -> Any:
        # То, что надо записать обратно, чтобы ячейка не изменилась: формула, если есть, иначе значение
        f = self.formula(r, c)
        return f if f is not None else self.values[r][c]

    def set(self, r: int, c: int, value: Any) -> None:
        # value, начинающееся с "=", пишется как формула (так же ведёт себя Excel)
        if _is_formula(value):
            url, label = parse_hyperlink(value)
            self.formulas[r][c] = value
            self.values[r][c] = label if url else None
        else:
            self.formulas[r][c] = None
            self.values[r][c] = value

    def append_row(self, row: Sequence[Any]) -> int:
        self.values.append([None] * self.width)
        self.formulas.append([None] * self.width)
        r = len(self.values) - 1
        for c, v in enumerate(list(row)[:self.width]):
            self.set(r, c, v)
        return r

    def to_sheet(self) -> Tuple[List[List[Any]], List[List[Any]]]:
        # (values, formulas) с заголовком в первой строке; в formulas для обычных ячеек - значение
        vals = [list(self.headers)] + [list(r) for r in self.values]
        forms = [list(self.headers)]
        for i in range(len(self.values)):
            forms.append([self.stored(i, c) for c in range(self.width)])
        return vals, forms

    def commit(self, other: "RosterGrid") -> None:
        # Атомарная замена содержимого: либо вся новая сетка, либо ничего
        if not isinstance(other, RosterGrid):
            raise TypeError("commit() expects a RosterGrid")
        snapshot = other.copy()
        self.headers, self.values, self.formulas = snapshot.headers, snapshot.values, snapshot.formulas
