from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import pandas as pd
from .config import (AliasTable, Settings, FieldSpec, STUDENT_NAME, GRADEBOOK, LDA, DAYS_OUT, GRADE,
                     MISSING_ASSIGNMENTS, ZERO_ASSIGNMENTS, COURSE, COURSE_ID, STUDENT_ID, DEFAULT_GRADEBOOK_URL)
from .dates import parse_to_instant_strict, to_serial, elapsed_days
from .errors import AmbiguityWarning, ConfigurationError, Issue, IssueLog, ParseError
from .grid import RosterGrid, SourceTable, make_hyperlink_formula, parse_hyperlink
from .identity import normalize_identity, format_display
from .schema import ColumnMap, build_column_map
from .utils import as_number, cell_str, id_key, is_blank, norm_key

logger = logging.getLogger(__name__)

Incoming = Union[SourceTable, pd.DataFrame, Sequence[Dict[str, Any]]]


class MergeMode(str, Enum):
    FULL_REPLACE = "full_replace"      # обновление всего Master List
    PARTIAL_UPDATE = "partial_update"  # точечное обновление (оценки)


@dataclass
class MergeOptions:
    identity_field: str = STUDENT_NAME
    # полный refresh
    date_field: str = LDA
    days_out_field: str = DAYS_OUT
    # частичное обновление
    category_field: str = COURSE
    exclude_substring: str = "CAPV"
    treat_empty_grades_as_zero: bool = False
    grade_field: str = GRADE
    missing_field: str = MISSING_ASSIGNMENTS
    zero_field: str = ZERO_ASSIGNMENTS
    link_field: str = GRADEBOOK
    course_id_field: str = COURSE_ID
    student_id_field: str = STUDENT_ID
    gradebook_url_template: str = DEFAULT_GRADEBOOK_URL
    gradebook_label: str = "Gradebook"

    @classmethod
    def from_settings(cls, settings: Settings) -> "MergeOptions":
        return cls(
            exclude_substring=settings.grades_exclude,
            treat_empty_grades_as_zero=settings.treat_empty_grades_as_zero,
            gradebook_url_template=settings.gradebook_url_template,
            gradebook_label=settings.gradebook_label,
        )


@dataclass
class MergeResult:
    roster: RosterGrid
    new_identities: List[str] = field(default_factory=list)
    existing_identities: List[str] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    warnings: List[AmbiguityWarning] = field(default_factory=list)
    updated_rows: int = 0

    def summary(self) -> Dict[str, Any]:
        return {
            "rows": len(self.roster),
            "new": len(self.new_identities),
            "existing": len(self.existing_identities),
            "updated_rows": self.updated_rows,
            "issues": {i.code: i.count for i in self.issues},
        }


def coerce_number(v: Any) -> Optional[float]:
    # Пустое -> None; непустое нечисловое -> ParseError
    if is_blank(v):
        return None
    n = as_number(v)
    if n is None:
        raise ParseError(v, "number")
    return n


def _as_source(incoming: Incoming) -> SourceTable:
    if isinstance(incoming, SourceTable):
        return incoming
    if isinstance(incoming, pd.DataFrame):
        return SourceTable.from_dataframe(incoming)
    return SourceTable.from_records(list(incoming or []))


def _identity_rows(grid: RosterGrid, name_idx: int) -> Dict[str, int]:
    # identity -> номер строки (первое вхождение)
    out: Dict[str, int] = {}
    for r in range(len(grid)):
        key = normalize_identity(grid.value(r, name_idx))
        if key and key not in out:
            out[key] = r
    return out


def _pick_incoming(src: SourceTable, name_idx: int, log: IssueLog, skip=None,
                   last_wins: bool = False) -> List[Tuple[str, int]]:
    """
    Строки источника с непустой identity, по одной на identity.
    По умолчанию первая побеждает, повторы считаются duplicate_identity.
    last_wins=True: побеждает последняя строка, повторы ожидаемы и не считаются.
    skip(r) -> True: строка отбрасывается до сопоставления.
    """
    picked: List[Tuple[str, int]] = []
    seen: Dict[str, int] = {}
    missing = 0
    dups = 0
    for r in range(len(src)):
        if skip is not None and skip(r):
            continue
        raw = src.cell(r, name_idx)
        key = normalize_identity(raw if isinstance(raw, str) else cell_str(raw))
        if not key:
            missing += 1
            continue
        if key in seen and last_wins:
            picked[seen[key]] = (key, r)
            continue
        if key in seen:
            dups += 1
            logger.debug("Duplicate identity %r in source row %d (first at %d)", key, r, picked[seen[key]][1])
            continue
        seen[key] = len(picked)
        picked.append((key, r))
    log.add("missing_identity", missing)
    if dups:
        log.warn(AmbiguityWarning("duplicate_identity", f"{src.name or 'import'}: repeated student rows skipped", dups))
    return picked


def _source_to_master(src_map: ColumnMap, master_map: ColumnMap) -> List[Tuple[int, int]]:
    """
    Пары (колонка источника, колонка Master List).
    Сначала канонические поля через алиасы, затем прочие колонки по точному (нормализованному) заголовку.
    Что не сопоставилось - отбрасывается.
    """
    pairs: List[Tuple[int, int]] = []
    used_src = set()
    used_dst = set()
    for name, mi in master_map.indices.items():
        si = src_map.indices.get(name)
        if si is None:
            continue
        pairs.append((si, mi))
        used_src.add(si)
        used_dst.add(mi)

    dst_keys: Dict[str, int] = {}
    for mi, h in enumerate(master_map.headers):
        k = norm_key(h)
        if k and mi not in used_dst and k not in dst_keys:
            dst_keys[k] = mi
    for si, h in enumerate(src_map.headers):
        if si in used_src:
            continue
        mi = dst_keys.pop(norm_key(h), None)
        if mi is not None:
            pairs.append((si, mi))
    pairs.sort(key=lambda p: p[1])
    return pairs


def _identifier_of(grid: RosterGrid, r: int, idx: int, spec: FieldSpec) -> str:
    if spec.hyperlink:
        url = grid.url(r, idx)
        if url:
            return url
    return cell_str(grid.value(r, idx))


def _capture_static(grid: RosterGrid, id_idx: int, id_spec: FieldSpec,
                    static_cols: List[Tuple[str, int]]) -> Dict[str, Dict[int, Any]]:
    # Снимок static-колонок до очистки: identifier -> {колонка: значение или формула}
    saved: Dict[str, Dict[int, Any]] = {}
    for r in range(len(grid)):
        ident = _identifier_of(grid, r, id_idx, id_spec)
        if not ident:
            continue
        obj: Dict[int, Any] = {}
        for _, c in static_cols:
            v = grid.stored(r, c)
            if not is_blank(v):
                obj[c] = v
        if obj:
            saved[ident] = obj
    logger.debug("Captured static values for %d identifiers", len(saved))
    return saved


def _hyperlink_cell(v: Any, label: str) -> Any:
    # URL -> =HYPERLINK(url,label); готовая формула остаётся как есть
    if isinstance(v, str):
        url, _ = parse_hyperlink(v)
        if url and not v.strip().startswith("="):
            return make_hyperlink_formula(url, label)
    return v


def _full_replace(existing: RosterGrid, src: SourceTable, table: AliasTable, now: Optional[datetime],
                  opts: MergeOptions, log: IssueLog) -> MergeResult:
    master_map = build_column_map(existing.headers, table, "Master List")
    src_map = build_column_map(src.headers, table, f"import '{src.name}'" if src.name else "import")
    for w in master_map.warnings + src_map.warnings:
        log.warn(w)

    master_map.require(opts.identity_field)
    src_map.require(opts.identity_field)
    name_m = master_map.get(opts.identity_field)
    name_s = src_map.get(opts.identity_field)

    # static-поля: без колонки-идентификатора сопоставить старые и новые строки нельзя
    static_cols = [(s.name, master_map.get(s.name)) for s in table.static_fields() if s.name in master_map]
    saved: Dict[str, Dict[int, Any]] = {}
    id_spec = table.identifier()
    id_idx = None
    if static_cols:
        if id_spec is None:
            raise ConfigurationError("identifier", "the field alias table", "static fields need an identifier field")
        master_map.require(id_spec.name)
        id_idx = master_map.get(id_spec.name)
        saved = _capture_static(existing, id_idx, id_spec, static_cols)

    pairs = _source_to_master(src_map, master_map)
    known = _identity_rows(existing, name_m)
    picked = _pick_incoming(src, name_s, log)
    new_rows = [(k, r) for k, r in picked if k not in known]
    old_rows = [(k, r) for k, r in picked if k in known]

    col_spec: Dict[int, FieldSpec] = {}
    for name, mi in master_map.indices.items():
        col_spec[mi] = table.get(name)
    lda_m = master_map.get(opts.date_field)
    days_m = master_map.get(opts.days_out_field)
    if now is None and lda_m is not None and days_m is not None:
        now = datetime.now()

    out = RosterGrid.empty(existing.headers)
    bad_dates = 0
    restored = 0
    # новые студенты первыми, затем уже известные
    for _, r in new_rows + old_rows:
        row: List[Any] = [None] * out.width
        for si, mi in pairs:
            v = src.cell(r, si)
            if is_blank(v):
                continue
            spec = col_spec.get(mi)
            if mi == name_m:
                v = format_display(cell_str(v))
            elif spec is not None and spec.hyperlink:
                v = _hyperlink_cell(v, spec.name)
            elif spec is not None and spec.date:
                try:
                    dt = parse_to_instant_strict(v)
                except ParseError:
                    bad_dates += 1
                    v = None
                else:
                    v = to_serial(dt) if dt is not None else None
            row[mi] = v
        ri = out.append_row(row)

        if lda_m is not None and days_m is not None:
            lda_v = out.value(ri, lda_m)
            if not is_blank(lda_v):
                d = elapsed_days(lda_v, now)
                if d is not None:
                    out.set(ri, days_m, d)

        if saved:
            saved_row = saved.get(_identifier_of(out, ri, id_idx, id_spec))
            if saved_row:
                for c, v in saved_row.items():
                    if is_blank(out.stored(ri, c)):
                        out.set(ri, c, v)
                        restored += 1

    log.add("date_parse_failed", bad_dates)
    log.add("static_restored", restored)
    logger.info("Master List refresh: %d new, %d existing, %d rows written",
                len(new_rows), len(old_rows), len(out))
    return MergeResult(
        roster=out,
        new_identities=[k for k, _ in new_rows],
        existing_identities=[k for k, _ in old_rows],
    )


def _partial_update(existing: RosterGrid, src: SourceTable, table: AliasTable,
                    opts: MergeOptions, log: IssueLog) -> MergeResult:
    master_map = build_column_map(existing.headers, table, "Master List")
    src_map = build_column_map(src.headers, table, f"import '{src.name}'" if src.name else "import")
    for w in master_map.warnings + src_map.warnings:
        log.warn(w)

    master_map.require(opts.identity_field, opts.grade_field, opts.link_field)
    src_map.require(opts.identity_field, opts.category_field, opts.grade_field)

    name_m = master_map.get(opts.identity_field)
    grade_m = master_map.get(opts.grade_field)
    link_m = master_map.get(opts.link_field)
    missing_m = master_map.get(opts.missing_field)
    zero_m = master_map.get(opts.zero_field)

    name_s = src_map.get(opts.identity_field)
    cat_s = src_map.get(opts.category_field)
    grade_s = src_map.get(opts.grade_field)
    missing_s = src_map.get(opts.missing_field)
    zero_s = src_map.get(opts.zero_field)
    course_id_s = src_map.get(opts.course_id_field)
    student_id_s = src_map.get(opts.student_id_field)

    excl = (opts.exclude_substring or "").strip().lower()
    excluded = 0

    def _skip(r: int) -> bool:
        nonlocal excluded
        if excl and excl in cell_str(src.cell(r, cat_s)).lower():
            excluded += 1
            return True
        return False

    # несколько курсов на студента: берётся последняя строка
    picked = _pick_incoming(src, name_s, log, skip=_skip, last_wins=True)
    log.add("excluded_category", excluded)
    by_key = {k: r for k, r in picked}

    out = existing.copy()
    matched: Dict[str, bool] = {}
    bad_numbers = 0
    updated = 0
    grades = missing_n = zeros = links = 0

    for i in range(len(out)):
        key = normalize_identity(out.value(i, name_m))
        r = by_key.get(key) if key else None
        if r is None:
            continue
        matched[key] = True
        updated += 1

        g = src.cell(r, grade_s)
        if is_blank(g) and opts.treat_empty_grades_as_zero:
            g = 0
        try:
            gv = coerce_number(g)
        except ParseError:
            bad_numbers += 1
            gv = None
        if gv is not None:
            out.set(i, grade_m, gv)
            grades += 1

        for dst, s_idx in ((missing_m, missing_s), (zero_m, zero_s)):
            if dst is None or s_idx is None:
                continue
            v = src.cell(r, s_idx)
            if is_blank(v):
                continue
            try:
                n = coerce_number(v)
            except ParseError:
                bad_numbers += 1
                continue
            out.set(i, dst, int(n) if n is not None and float(n).is_integer() else n)
            if dst == missing_m:
                missing_n += 1
            else:
                zeros += 1

        course_id = id_key(src.cell(r, course_id_s))
        student_id = id_key(src.cell(r, student_id_s))
        if course_id and student_id:
            url = _gradebook_url(opts.gradebook_url_template, course_id, student_id)
            out.set(i, link_m, make_hyperlink_formula(url, opts.gradebook_label))
            links += 1

    log.add("number_parse_failed", bad_numbers)
    existing_ids = [k for k, _ in picked if k in matched]
    new_ids = [k for k, _ in picked if k not in matched]
    log.add("not_in_roster", len(new_ids))
    logger.info("Grade update: %d rows matched (%d grades, %d missing, %d zero, %d links)",
                updated, grades, missing_n, zeros, links)
    return MergeResult(roster=out, new_identities=new_ids, existing_identities=existing_ids, updated_rows=updated)


def _gradebook_url(template: str, course_id: Any, student_id: Any) -> str:
    return template.format(course_id=id_key(course_id), student_id=id_key(student_id))


def upsert_roster(
    existing: RosterGrid,
    incoming: Incoming,
    table: AliasTable,
    mode: MergeMode = MergeMode.FULL_REPLACE,
    *,
    now: Optional[datetime] = None,
    options: Optional[MergeOptions] = None,
) -> MergeResult:
    """
    Сливает входные строки в Master List.
    Возвращает НОВУЮ сетку; existing не изменяется, поэтому ошибка на любом шаге
    не оставляет Master List в полузаписанном состоянии (коммит - RosterGrid.commit).
    ConfigurationError (нет обязательной колонки) прерывает операцию целиком.
    """
    opts = options or MergeOptions()
    mode = MergeMode(mode)
    src = _as_source(incoming)
    log = IssueLog()

    if mode is MergeMode.FULL_REPLACE:
        res = _full_replace(existing, src, table, now, opts, log)
    else:
        res = _partial_update(existing, src, table, opts, log)

    res.issues = log.to_list()
    res.warnings = list(log.warnings)
    for iss in res.issues:
        if iss.level != "info":
            logger.warning("%s: %s (x%d)", iss.code, iss.message, iss.count)
    return res
