"""
Этот пакет содержит:
- разрешение заголовков по таблице алиасов (schema)
- ключ сопоставления студентов (identity)
- нормализацию дат и Excel serial (dates)
- слияние выгрузок в Master List: полный refresh и обновление оценок (merge)
- DNC и follow-up метки из свободного текста (tags)
- выборки для LDA-отчёта (report)
- загрузку CSV/XLSX и экспорт в xlsx
"""
from .config import AliasTable, FieldSpec, Settings, default_alias_table, load_settings, save_settings
from .errors import AmbiguityWarning, ConfigurationError, ParseError, RosterError
from .grid import RosterGrid, SourceTable
from .identity import normalize_identity, format_display
from .dates import parse_to_instant, to_serial, elapsed_days
from .schema import resolve, build_column_map
from .merge import MergeMode, MergeResult, upsert_roster
from .tags import DncScope, classify_dnc, extract_follow_up_dates
from .report import select_by_recency, select_failing, build_lda_report

__all__ = [
    "AliasTable",
    "FieldSpec",
    "Settings",
    "default_alias_table",
    "load_settings",
    "save_settings",
    "AmbiguityWarning",
    "ConfigurationError",
    "ParseError",
    "RosterError",
    "RosterGrid",
    "SourceTable",
    "normalize_identity",
    "format_display",
    "parse_to_instant",
    "to_serial",
    "elapsed_days",
    "resolve",
    "build_column_map",
    "MergeMode",
    "MergeResult",
    "upsert_roster",
    "DncScope",
    "classify_dnc",
    "extract_follow_up_dates",
    "select_by_recency",
    "select_failing",
    "build_lda_report",
]
