from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union
import numpy as np
import pandas as pd
from .config import AliasTable, Settings, DAYS_OUT, GRADE, LDA, STUDENT_ID, STUDENT_NUMBER
from .dates import elapsed_days, format_short
from .errors import Issue, IssueLog
from .grid import RosterGrid, SourceTable
from .schema import build_column_map, rename_headers
from .tags import DncScope, active_follow_ups, dnc_by_identity
from .utils import as_number, id_key

logger = logging.getLogger(__name__)

Roster = Union[RosterGrid, pd.DataFrame, Sequence[Dict[str, Any]]]

SCALE_SAMPLE = 10
FAILING_RECENCY_MAX = 4
DNC_COL = "DNC"
FOLLOW_UP_COL = "Follow Up"


def roster_to_frame(grid: RosterGrid, table: Optional[AliasTable] = None, canonical: bool = False) -> pd.DataFrame:
    """
    Строки Master List -> DataFrame.
    - гиперссылочные поля (по таблице алиасов) -> URL вместо подписи
    - canonical=True: найденные поля переименовываются в канонические имена
    - _row: индекс строки в исходной сетке
    """
    headers = list(grid.headers)
    link_cols = set()
    names = list(headers)
    if table is not None:
        cmap = build_column_map(headers, table)
        for spec in table.hyperlink_fields():
            idx = cmap.get(spec.name)
            if idx is not None:
                link_cols.add(idx)
        if canonical:
            for name, idx in cmap.indices.items():
                names[idx] = name

    rows = []
    for r in range(len(grid)):
        rec = []
        for c in range(grid.width):
            if c in link_cols:
                rec.append(grid.url(r, c) or grid.value(r, c))
            else:
                rec.append(grid.value(r, c))
        rows.append(rec)
    df = pd.DataFrame(rows, columns=names) if names else pd.DataFrame(index=range(len(rows)))
    df["_row"] = list(range(len(grid)))
    return df


def _as_frame(roster: Roster, table: Optional[AliasTable] = None) -> pd.DataFrame:
    # table задана: заголовки приводятся к каноническим именам ("Current Grade" -> "Grade")
    if isinstance(roster, RosterGrid):
        return roster_to_frame(roster, table, canonical=table is not None)
    if isinstance(roster, pd.DataFrame):
        df = roster.reset_index(drop=True)
    else:
        df = pd.DataFrame(list(roster or []))
    if table is not None and len(df.columns):
        df.columns = rename_headers(list(df.columns), table)
    return df


def _numeric(series: pd.Series) -> pd.Series:
    return series.map(lambda v: as_number(v)).astype(float)


def _stable_order(keys: Sequence[float], descending: bool = False) -> List[int]:
    # sorted() стабилен: равные ключи сохраняют порядок строк листа
    sign = -1.0 if descending else 1.0
    return sorted(range(len(keys)), key=lambda i: sign * keys[i])


def select_by_recency(roster: Roster, threshold_days: float, days_field: str = DAYS_OUT,
                      table: Optional[AliasTable] = None) -> pd.DataFrame:
    # Строки с Days Out >= порога, по убыванию; нечисловые/пустые отбрасываются
    df = _as_frame(roster, table)
    if days_field not in df.columns:
        logger.warning("Column %r not found, recency selection is empty", days_field)
        return df.iloc[0:0]
    days = _numeric(df[days_field])
    keep = days.notna() & (days >= float(threshold_days))
    sub = df[keep].reset_index(drop=True)
    order = _stable_order(days[keep].tolist(), descending=True)
    return sub.iloc[order].reset_index(drop=True)


def detect_grade_scale(values: Sequence[Any], sample: int = SCALE_SAMPLE) -> float:
    """
    Порог "failing" для колонки оценок: по первым sample строкам.
    Любое число > 1 в выборке -> шкала 0-100 (порог 60), иначе 0-1 (порог 0.6).
    """
    for v in list(values)[:sample]:
        n = as_number(v)
        if n is not None and n > 1:
            return 60.0
    return 0.6


def select_failing(roster: Roster, grade_field: str = GRADE, recency_field: str = DAYS_OUT,
                   max_recency: int = FAILING_RECENCY_MAX, sample: int = SCALE_SAMPLE,
                   table: Optional[AliasTable] = None) -> pd.DataFrame:
    # Неуспевающие среди недавно активных (recency <= max_recency), по возрастанию оценки
    df = _as_frame(roster, table)
    if grade_field not in df.columns or recency_field not in df.columns:
        logger.warning("Columns %r/%r not found, failing selection is empty", grade_field, recency_field)
        return df.iloc[0:0]
    threshold = detect_grade_scale(df[grade_field].tolist(), sample)
    grades = _numeric(df[grade_field])
    recency = _numeric(df[recency_field])
    keep = grades.notna() & (grades < threshold) & recency.notna() & (recency <= max_recency)
    sub = df[keep].reset_index(drop=True)
    order = _stable_order(grades[keep].tolist())
    logger.debug("Failing selection: threshold %s, %d rows", threshold, len(sub))
    return sub.iloc[order].reset_index(drop=True)


@dataclass
class LdaReport:
    created: datetime
    lda: pd.DataFrame
    failing: Optional[pd.DataFrame] = None
    issues: List[Issue] = field(default_factory=list)

    @property
    def sheet_name(self) -> str:
        # имя листа как в Excel-отчёте: "LDA 10-7-2025"
        return f"LDA {self.created.month}-{self.created.day}-{self.created.year}"


def _id_column(df: pd.DataFrame) -> Optional[str]:
    for c in (STUDENT_NUMBER, STUDENT_ID):
        if c in df.columns:
            return c
    return None


def _annotate(df: pd.DataFrame, dnc: Dict[str, DncScope], follow: Dict[str, Any], id_col: Optional[str],
              with_dnc: bool, with_follow: bool) -> pd.DataFrame:
    if id_col is None or df.empty:
        return df
    out = df.copy()
    keys = out[id_col].map(id_key)
    if with_dnc:
        out[DNC_COL] = keys.map(lambda k: dnc.get(k, DncScope.NONE).label)
    if with_follow:
        out[FOLLOW_UP_COL] = keys.map(lambda k: format_short(follow[k]) if k in follow else "")
    return out


def build_lda_report(roster: RosterGrid, table: AliasTable, now: datetime,
                     history: Optional[SourceTable] = None, settings: Optional[Settings] = None) -> LdaReport:
    """
    Ежедневный LDA-отчёт:
      1) Days Out пересчитывается от LDA на дату now
      2) lda: студенты с Days Out >= settings.days_out
      3) failing (если включено): неуспевающие из недавно активных
      4) DNC / Follow Up из Student History (если она передана)
    Без LDA и без Days Out в Master List -> ConfigurationError.
    Неоднозначные DNC-записи истории попадают в report.issues.
    """
    settings = settings or Settings()
    cmap = build_column_map(roster.headers, table, "Master List")
    if cmap.get(LDA) is None:
        cmap.require(DAYS_OUT)
    log = IssueLog()
    df = roster_to_frame(roster, table, canonical=True)

    if LDA in df.columns:
        recomputed = df[LDA].map(lambda v: elapsed_days(v, now))
        if DAYS_OUT in df.columns:
            df[DAYS_OUT] = recomputed.where(recomputed.notna(), df[DAYS_OUT])
        else:
            df[DAYS_OUT] = recomputed
        df[LDA] = df[LDA].map(lambda v: format_short(v) or v)

    lda = select_by_recency(df, settings.days_out)
    failing = select_failing(df) if settings.include_failing_list else None

    dnc: Dict[str, DncScope] = {}
    follow: Dict[str, Any] = {}
    with_dnc = bool(history is not None and settings.include_dnc_tag)
    with_follow = bool(history is not None and settings.include_lda_tag)
    if with_dnc:
        dnc = dnc_by_identity(history, log=log)
    if with_follow:
        follow = active_follow_ups(history, today=now)

    id_col = _id_column(df)
    lda = _annotate(lda, dnc, follow, id_col, with_dnc, with_follow)
    if failing is not None:
        failing = _annotate(failing, dnc, follow, id_col, with_dnc, with_follow)

    logger.info("LDA report: %d students out >= %d days, failing list: %s",
                len(lda), settings.days_out, "off" if failing is None else len(failing))
    return LdaReport(created=now, lda=lda, failing=failing, issues=log.to_list())


def summary_counts(report: LdaReport) -> Dict[str, Any]:
    lda = report.lda
    out = {"lda": int(len(lda)), "failing": None if report.failing is None else int(len(report.failing))}
    if DNC_COL in lda.columns:
        out["dnc"] = int(np.count_nonzero(lda[DNC_COL].astype(str).str.len() > 0))
    return out
