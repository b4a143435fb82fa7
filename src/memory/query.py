"""
Relational list semantics on top of key/value records.

Redis has no WHERE / ORDER BY / LIMIT, so the stores fetch candidate
records and run them through these helpers:

    apply_filters  → every predicate must hold (like/ilike use SQL
                     wildcards when the pattern has % or _, substring
                     containment otherwise)
    apply_ordering → stable sort, None values last (ascending)
    apply_pagination → offset first, then limit
    select_fields  → projection
"""

import re
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence

from memory.schemas import QueryFilter, ListEntitiesOptions

_MISSING = object()


@lru_cache(maxsize=256)
def _like_regex(pattern: str, case_insensitive: bool) -> "re.Pattern":
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    flags = re.DOTALL | (re.IGNORECASE if case_insensitive else 0)
    return re.compile("^" + "".join(parts) + "$", flags)


def _compare(value: Any, operator: str, target: Any) -> bool:
    if operator == "is":
        return value is target or (value is _MISSING and target is None)
    if value is _MISSING:
        return False
    if operator == "eq":
        return value == target
    if operator == "neq":
        return value != target
    if operator == "in":
        return value in target
    if operator in ("like", "ilike"):
        if not isinstance(value, str) or not isinstance(target, str):
            return False
        insensitive = operator == "ilike"
        if "%" in target or "_" in target:
            return bool(_like_regex(target, insensitive).match(value))
        # bare pattern → substring containment
        if insensitive:
            return target.lower() in value.lower()
        return target in value
    if value is None or target is None:
        return False
    try:
        if operator == "gt":
            return value > target
        if operator == "gte":
            return value >= target
        if operator == "lt":
            return value < target
        if operator == "lte":
            return value <= target
    except TypeError:
        return False
    return False


def matches(item: Dict[str, Any], filters: Sequence[QueryFilter]) -> bool:
    """True when *item* satisfies every filter."""
    for f in filters:
        f.validate()
        if not _compare(item.get(f.field, _MISSING), f.operator, f.value):
            return False
    return True


def apply_filters(items: Iterable[Dict[str, Any]], filters: Optional[Sequence[QueryFilter]]) -> List[Dict[str, Any]]:
    """Keep the items matching all *filters* (no filters → everything)."""
    items = list(items)
    if not filters:
        return items
    for f in filters:
        f.validate()
    return [item for item in items if matches(item, filters)]


def apply_ordering(
    items: Iterable[Dict[str, Any]],
    sort_by: Optional[str],
    sort_order: str = "asc",
) -> List[Dict[str, Any]]:
    """
    Sort by *sort_by*; records missing the field (or holding None) sort
    last when ascending and first when descending.
    """
    items = list(items)
    if not sort_by:
        return items
    present = [i for i in items if i.get(sort_by) is not None]
    absent = [i for i in items if i.get(sort_by) is None]
    descending = str(sort_order).lower() == "desc"
    try:
        present.sort(key=lambda i: i[sort_by], reverse=descending)
    except TypeError:
        present.sort(key=lambda i: str(i[sort_by]), reverse=descending)
    return absent + present if descending else present + absent


def apply_pagination(items: Sequence[Dict[str, Any]], offset: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Skip *offset* records, then keep at most *limit*."""
    offset = max(offset or 0, 0)
    sliced = list(items)[offset:]
    if limit is not None:
        sliced = sliced[: max(limit, 0)]
    return sliced


def select_fields(items: Iterable[Dict[str, Any]], fields: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
    """Project each record onto *fields* (None → whole record)."""
    if not fields:
        return list(items)
    return [{k: item[k] for k in fields if k in item} for item in items]


def run_query(items: Iterable[Dict[str, Any]], options: Optional[ListEntitiesOptions]) -> List[Dict[str, Any]]:
    """Filter → order → paginate → select, in that order."""
    if options is None:
        return list(items)
    result = apply_filters(items, options.filters)
    result = apply_ordering(result, options.sort_by, options.sort_order)
    result = apply_pagination(result, options.offset, options.limit)
    return select_fields(result, options.select)
