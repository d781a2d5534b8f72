from __future__ import annotations
import csv
import logging
from io import BytesIO, StringIO
from typing import Any, List, Optional, Sequence
import pandas as pd
from openpyxl import load_workbook
from .config import AliasTable
from .errors import RosterError
from .grid import RosterGrid, SourceTable, parse_hyperlink
from .schema import build_column_map
from .utils import is_blank

logger = logging.getLogger(__name__)

MASTER_SHEET = "Master List"
HISTORY_SHEET = "Student History"
HEADER_SCAN_ROWS = 15
_DELIMS = [";", ",", "\t", "|"]


# =========================
# Excel: лист как матрица (merged cells разворачиваем)
# =========================
def _sheet_matrix(ws, fill_merged: bool = True) -> List[List[Any]]:
    merged_map = {}
    if fill_merged:
        for rng in ws.merged_cells.ranges:
            min_col, min_row, max_col, max_row = rng.bounds
            top_val = ws.cell(min_row, min_col).value
            for rr in range(min_row, max_row + 1):
                for cc in range(min_col, max_col + 1):
                    merged_map[(rr, cc)] = top_val

    rows = []
    for r in range(1, ws.max_row + 1):
        row_vals = []
        for c in range(1, ws.max_column + 1):
            v = ws.cell(r, c).value
            if (r, c) in merged_map and is_blank(v):
                v = merged_map[(r, c)]
            row_vals.append(v)
        rows.append(row_vals)
    return rows


def _open_sheet(wb, sheet: str, where: str):
    if sheet not in wb.sheetnames:
        raise RosterError(f"Sheet '{sheet}' not found in {where} (sheets: {', '.join(wb.sheetnames)})")
    return wb[sheet]


# =========================
# CSV: устойчивое чтение из bytes
# =========================
def _guess_delimiter(sample_text: str) -> str:
    # выгрузки LMS/SIS: ',' обычно, ';' из локализованного Excel, иногда табы
    try:
        dialect = csv.Sniffer().sniff(sample_text, delimiters=";,\t|")
        if dialect.delimiter:
            return dialect.delimiter
    except csv.Error:
        pass

    lines = [ln for ln in sample_text.splitlines() if ln.strip()][:20]
    if not lines:
        return ","
    scores = {}
    for d in _DELIMS:
        cnts = [ln.count(d) for ln in lines]
        scores[d] = sum(cnts) / max(1, len(cnts))
    best = max(scores.items(), key=lambda x: x[1])[0]
    return best if scores.get(best, 0) > 0 else ","


def _max_fields(text: str, delim: str) -> int:
    # ширина таблицы по самой длинной строке: над заголовком бывает строка-"шапка" из одной ячейки
    width = 0
    for row in csv.reader(StringIO(text), delimiter=delim):
        width = max(width, len(row))
    return max(1, width)


def _read_text(text: str, delim: str) -> pd.DataFrame:
    return pd.read_csv(StringIO(text), header=None, names=list(range(_max_fields(text, delim))), sep=delim,
                       engine="python", skip_blank_lines=True, dtype=object)


def _read_csv_bytes(data: bytes) -> pd.DataFrame:
    # header=None: строка заголовков ищется потом (detect_header_row)
    last_err: Optional[Exception] = None
    for enc in ["utf-8-sig", "utf-8", "cp1252"]:
        try:
            text = data.decode(enc)
        except UnicodeDecodeError as e:
            last_err = e
            continue
        delim = _guess_delimiter(text[:65536])
        try:
            df = _read_text(text, delim)
            if df.shape[1] == 1:
                for d2 in _DELIMS:
                    if d2 == delim:
                        continue
                    df2 = _read_text(text, d2)
                    if df2.shape[1] > 1:
                        df = df2
                        break
            return df
        except (csv.Error, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.debug("CSV read with %s failed: %s", enc, e)
            last_err = e

    text = data.decode("utf-8", errors="replace")
    try:
        return _read_text(text, _guess_delimiter(text[:65536]))
    except (csv.Error, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise (last_err or e)


def _frame_to_matrix(df: pd.DataFrame) -> List[List[Any]]:
    return [[None if is_blank(v) else v for v in rec] for rec in df.itertuples(index=False, name=None)]


# =========================
# Строка заголовков
# =========================
def detect_header_row(matrix: Sequence[Sequence[Any]], table: AliasTable, max_scan: int = HEADER_SCAN_ROWS) -> int:
    """
    Индекс строки заголовков среди первых max_scan строк:
    больше всего разрешившихся полей таблицы алиасов; при равенстве - выше по листу.
    Ни одного совпадения -> 0.
    """
    best_i, best_score = 0, 0.0
    for i, row in enumerate(list(matrix)[:max_scan]):
        cmap = build_column_map(row, table)
        filled = sum(1 for v in row if not is_blank(v))
        score = len(cmap.indices) + (0.01 * filled if cmap.indices else 0.0)
        if score > best_score:
            best_i, best_score = i, score
    return best_i


def matrix_to_source(matrix: Sequence[Sequence[Any]], table: Optional[AliasTable] = None,
                     name: str = "") -> SourceTable:
    # Пустые строки данных отбрасываются; заголовок ищется, если дана таблица алиасов
    if not matrix:
        return SourceTable([], [], name)
    h = detect_header_row(matrix, table) if table is not None else 0
    headers = list(matrix[h])
    rows = [list(r) for r in matrix[h + 1:] if any(not is_blank(v) for v in r)]
    if h:
        logger.debug("%s: header row detected at %d", name or "table", h + 1)
    return SourceTable(headers, rows, name)


def read_source_bytes(filename: str, data: bytes, table: Optional[AliasTable] = None,
                      sheet: Optional[str] = None) -> List[SourceTable]:
    """CSV -> одна таблица; Excel -> по таблице на лист (или только sheet)."""
    if filename.lower().endswith(".csv"):
        df = _read_csv_bytes(data)
        return [matrix_to_source(_frame_to_matrix(df), table, filename)]

    wb = load_workbook(BytesIO(data), read_only=False, data_only=True)
    sheets = [sheet] if sheet else list(wb.sheetnames)
    out = []
    for sh in sheets:
        ws = _open_sheet(wb, sh, filename)
        out.append(matrix_to_source(_sheet_matrix(ws), table, f"{filename} / {sh}"))
    return out


def load_source_tables(uploads, table: Optional[AliasTable] = None) -> List[SourceTable]:
    # uploads: объекты с .name и .getvalue() (streamlit UploadedFile)
    tables: List[SourceTable] = []
    for up in uploads:
        got = read_source_bytes(up.name, up.getvalue(), table)
        logger.info("Loaded %s: %s", up.name, ", ".join(f"{t.name} ({len(t)} rows)" for t in got))
        tables.extend(got)
    return tables


# =========================
# Рабочая книга Master List
# =========================
def load_roster_workbook(data: bytes, sheet: str = MASTER_SHEET) -> RosterGrid:
    """
    Master List из xlsx: два прохода openpyxl - значения (data_only) и формулы.
    Для формулы без кэшированного значения (файл не пересчитывался) подпись берётся из =HYPERLINK.
    """
    wb_vals = load_workbook(BytesIO(data), data_only=True)
    wb_forms = load_workbook(BytesIO(data), data_only=False)
    values = _sheet_matrix(_open_sheet(wb_vals, sheet, "workbook"), fill_merged=False)
    formulas = _sheet_matrix(_open_sheet(wb_forms, sheet, "workbook"), fill_merged=False)
    grid = RosterGrid.from_sheet(values, formulas)

    for r in range(len(grid)):
        for c in range(grid.width):
            f = grid.formula(r, c)
            v = grid.value(r, c)
            # xlsxwriter без value кэширует 0
            if f and (is_blank(v) or v == 0):
                url, label = parse_hyperlink(f)
                if url:
                    grid.values[r][c] = label
    logger.info("Master List loaded: %d rows, %d columns", len(grid), grid.width)
    return grid


def load_history_workbook(data: bytes, table: Optional[AliasTable] = None,
                          sheet: str = HISTORY_SHEET) -> SourceTable:
    wb = load_workbook(BytesIO(data), data_only=True)
    ws = _open_sheet(wb, sheet, "workbook")
    return matrix_to_source(_sheet_matrix(ws, fill_merged=False), table, sheet)


def sheet_names(data: bytes) -> List[str]:
    wb = load_workbook(BytesIO(data), read_only=True)
    try:
        return list(wb.sheetnames)
    finally:
        wb.close()
