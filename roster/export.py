from __future__ import annotations
import math
import numbers
from datetime import date, datetime
from io import BytesIO
from typing import Any, List, Optional, Sequence
import pandas as pd
from .config import AliasTable
from .errors import Issue
from .grid import RosterGrid, extract_url
from .report import LdaReport
from .schema import build_column_map
from .utils import is_blank

ISSUES_SHEET = "Import Issues"
FAILING_SHEET = "Failing"


def issues_to_frame(issues: Sequence[Issue]) -> pd.DataFrame:
    rows = [i.as_row() for i in issues or []]
    return pd.DataFrame(rows, columns=["Level", "Code", "Message", "Count"])


def _formats(wb):
    return {
        "header": wb.add_format({"bold": True, "bg_color": "#F2F2F2", "border": 1, "valign": "vcenter"}),
        "text": wb.add_format({"border": 1, "valign": "top"}),
        "num": wb.add_format({"border": 1, "valign": "top", "num_format": "0.00"}),
        "int": wb.add_format({"border": 1, "valign": "top", "num_format": "0"}),
        "date": wb.add_format({"border": 1, "valign": "top", "num_format": "m/d/yy"}),
        "link": wb.add_format({"border": 1, "valign": "top", "font_color": "blue", "underline": 1}),
        "err": wb.add_format({"border": 1, "valign": "top", "bg_color": "#FCE8E6"}),
        "warn": wb.add_format({"border": 1, "valign": "top", "bg_color": "#FEF7E0"}),
        "info": wb.add_format({"border": 1, "valign": "top", "bg_color": "#E8F0FE"}),
    }


def _format_header(ws, fmt, columns: Sequence[Any], n_rows: int, default_width: int = 16, max_width: int = 48):
    ws.freeze_panes(1, 0)
    if columns:
        ws.autofilter(0, 0, max(1, n_rows), max(0, len(columns) - 1))
    for col, name in enumerate(columns):
        ws.write(0, col, "" if name is None else str(name), fmt["header"])
        w = max(10, min(max_width, int(len(str(name)) * 1.2) + 6))
        ws.set_column(col, col, max(default_width, w))


def _write_cell(ws, r: int, c: int, v: Any, fmt, date_col: bool = False):
    if is_blank(v) or v is pd.NaT:
        ws.write_blank(r, c, None, fmt["text"])
    elif isinstance(v, bool):
        ws.write_boolean(r, c, v, fmt["text"])
    elif isinstance(v, (datetime, date)):
        ws.write_datetime(r, c, v, fmt["date"])
    elif isinstance(v, numbers.Real):
        v = float(v)
        if math.isinf(v) or math.isnan(v):
            ws.write_string(r, c, str(v), fmt["text"])
        elif date_col:
            ws.write_number(r, c, v, fmt["date"])
        else:
            ws.write_number(r, c, v, fmt["int"] if float(v).is_integer() else fmt["num"])
    else:
        ws.write_string(r, c, str(v), fmt["text"])


def roster_to_excel_bytes(grid: RosterGrid, table: Optional[AliasTable] = None, sheet: str = "Master List",
                          issues: Optional[Sequence[Issue]] = None) -> bytes:
    """
    Master List -> xlsx.
    Ячейки с формулой пишутся формулой (=HYPERLINK сохраняется), подпись - кэшированным значением.
    date-поля (по таблице алиасов) - serial с форматом m/d/yy.
    """
    date_cols = set()
    if table is not None:
        cmap = build_column_map(grid.headers, table)
        for spec in table.date_fields():
            idx = cmap.get(spec.name)
            if idx is not None:
                date_cols.add(idx)

    bio = BytesIO()
    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        wb = writer.book
        fmt = _formats(wb)
        ws = wb.add_worksheet(sheet)
        _format_header(ws, fmt, grid.headers, len(grid))

        for r in range(len(grid)):
            for c in range(grid.width):
                f = grid.formula(r, c)
                if f:
                    label = grid.value(r, c)
                    ws.write_formula(r + 1, c, f, fmt["link"] if extract_url(f) else fmt["text"],
                                     "" if is_blank(label) else label)
                else:
                    _write_cell(ws, r + 1, c, grid.value(r, c), fmt, c in date_cols)

        if issues:
            _write_issues(writer, fmt, issues)

    return bio.getvalue()


def _write_frame(writer, fmt, sheet: str, df: pd.DataFrame, link_label: str = "Gradebook"):
    ws = writer.book.add_worksheet(sheet)
    cols = [c for c in df.columns if not str(c).startswith("_")]
    _format_header(ws, fmt, cols, len(df))
    for r, rec in enumerate(df[cols].itertuples(index=False, name=None), start=1):
        for c, v in enumerate(rec):
            url = extract_url(v) if isinstance(v, str) else None
            if url:
                ws.write_url(r, c, url, fmt["link"], string=link_label)
            else:
                _write_cell(ws, r, c, v, fmt)
    return ws


def _write_issues(writer, fmt, issues: Sequence[Issue]):
    df = issues_to_frame(issues)
    ws = _write_frame(writer, fmt, ISSUES_SHEET, df)
    ws.set_column(0, 0, 10)
    ws.set_column(1, 1, 22)
    ws.set_column(2, 2, 70)
    ws.set_column(3, 3, 10)
    last_row = len(df)
    for value, key in (("error", "err"), ("warn", "warn"), ("info", "info")):
        ws.conditional_format(1, 0, last_row, 0, {
            "type": "text",
            "criteria": "containing",
            "value": value,
            "format": fmt[key],
        })


def export_lda_report_to_excel_bytes(report: LdaReport, issues: Optional[Sequence[Issue]] = None,
                                     link_label: str = "Gradebook") -> bytes:
    """LDA-отчёт -> xlsx: лист "LDA M-D-YYYY", затем Failing (если есть) и Import Issues (если есть)."""
    issues = _report_issues(report, issues)
    bio = BytesIO()
    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        fmt = _formats(writer.book)
        _write_frame(writer, fmt, report.sheet_name, report.lda, link_label)
        if report.failing is not None:
            _write_frame(writer, fmt, FAILING_SHEET, report.failing, link_label)
        if issues:
            _write_issues(writer, fmt, issues)
    return bio.getvalue()


def _report_issues(report: LdaReport, issues: Optional[Sequence[Issue]]) -> List[Issue]:
    # проблемы самого отчёта (DNC в истории) + переданные вызывающим
    return list(report.issues) + list(issues or [])


def sheet_titles(report: LdaReport, issues: Optional[Sequence[Issue]] = None) -> List[str]:
    issues = _report_issues(report, issues)
    names = [report.sheet_name]
    if report.failing is not None:
        names.append(FAILING_SHEET)
    if issues:
        names.append(ISSUES_SHEET)
    return names
