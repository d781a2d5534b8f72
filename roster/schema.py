from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from rapidfuzz import fuzz
from .config import AliasTable
from .errors import AmbiguityWarning, ConfigurationError
from .utils import norm_key, norm_text

logger = logging.getLogger(__name__)


def normalize_header(value: Any) -> str:
    # "Student Name " / "studentname" / "STUDENT  NAME" -> "studentname"
    return norm_key(value)


def _header_keys(headers: Sequence[Any]) -> List[str]:
    return [normalize_header(h) for h in headers or []]


def resolve(headers: Sequence[Any], field: str, table: AliasTable) -> Optional[int]:
    """
    Индекс колонки для канонического поля или None.
    Кандидаты: само каноническое имя, затем алиасы в порядке объявления;
    побеждает первый кандидат, который есть среди заголовков.
    Поле не зарегистрировано / ничего не совпало -> None (без исключений).
    """
    spec = table.get(field)
    if spec is None:
        return None
    keys = _header_keys(headers)
    for cand in spec.candidates():
        k = normalize_header(cand)
        if k and k in keys:
            return keys.index(k)
    return None


def suggest_headers(field: str, headers: Sequence[Any], table: Optional[AliasTable] = None,
                    limit: int = 3, cutoff: int = 60) -> List[str]:
    # Похожие заголовки для сообщения об ошибке (нечёткое сравнение, только подсказка)
    spec = table.get(field) if table is not None else None
    targets = [norm_text(c) for c in (spec.candidates() if spec else [field])]
    scored: List[Tuple[str, int]] = []
    for h in headers or []:
        hn = norm_text(h)
        if not hn:
            continue
        sc = max((int(fuzz.partial_ratio(hn, t)) for t in targets if t), default=0)
        if sc >= cutoff:
            scored.append((str(h), sc))
    scored.sort(key=lambda x: x[1], reverse=True)
    return [h for h, _ in scored[:limit]]


class ColumnMap:
    """Результат разрешения заголовков одной таблицы: каноническое поле -> индекс колонки."""

    def __init__(self, headers: Sequence[Any], table: AliasTable, where: str = ""):
        self.headers = [("" if h is None else str(h)) for h in headers or []]
        self.table = table
        self.where = where
        self.indices: Dict[str, int] = {}
        self.warnings: List[AmbiguityWarning] = []

    def get(self, field: str) -> Optional[int]:
        spec = self.table.get(field)
        if spec is None:
            return None
        return self.indices.get(spec.name)

    def __contains__(self, field: str) -> bool:
        return self.get(field) is not None

    def require(self, *fields: str) -> None:
        # Первое отсутствующее поле -> ConfigurationError с подсказкой
        for f in fields:
            if self.get(f) is not None:
                continue
            if f not in self.table:
                raise ConfigurationError(f, "the field alias table")
            sugg = suggest_headers(f, self.headers, self.table)
            hint = f"did you mean: {', '.join(sugg)}" if sugg else ""
            raise ConfigurationError(f, self.where or "headers", hint)

    def field_for_column(self, idx: int) -> Optional[str]:
        for name, i in self.indices.items():
            if i == idx:
                return name
        return None


def build_column_map(headers: Sequence[Any], table: AliasTable, where: str = "") -> ColumnMap:
    """
    Разрешает все поля таблицы алиасов против одной строки заголовков.
    Если два поля попадают в одну физическую колонку - колонку получает поле,
    объявленное раньше, второе считается ненайденным, и фиксируется AmbiguityWarning.
    """
    cmap = ColumnMap(headers, table, where)
    owner: Dict[int, str] = {}
    collisions: List[str] = []

    for spec in table:
        idx = resolve(cmap.headers, spec.name, table)
        if idx is None:
            continue
        if idx in owner:
            collisions.append(f"'{spec.name}' vs '{owner[idx]}' -> column '{cmap.headers[idx]}'")
            continue
        owner[idx] = spec.name
        cmap.indices[spec.name] = idx

    if collisions:
        w = AmbiguityWarning(
            "header_collision",
            f"{where or 'headers'}: " + "; ".join(collisions),
            count=len(collisions),
        )
        logger.warning("%s", w)
        cmap.warnings.append(w)
    return cmap


def rename_headers(headers: Sequence[Any], table: AliasTable) -> List[str]:
    # Заголовки -> канонические имена там, где поле разрешилось; остальное - как было (trim)
    cmap = build_column_map(headers, table)
    out = []
    for i, h in enumerate(cmap.headers):
        name = cmap.field_for_column(i)
        out.append(name if name is not None else h.strip())
    return out
