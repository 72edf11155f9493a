from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Sequence, Tuple

from analytics.datasets import DatasetSpec, Dimension
from analytics.filters import FilterState


def escape_sql_string(value: object) -> str:
    return str(value).replace("'", "''")


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def sql_literal(value: object) -> str:
    return f"'{escape_sql_string(value)}'"


def _timestamp_literal(value: datetime) -> str:
    return f"TIMESTAMP '{value.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]}'"


@dataclass(frozen=True)
class Predicate:
    """AND of SQL conditions; an empty predicate matches every row."""

    conditions: Tuple[str, ...] = ()

    @property
    def where_sql(self) -> str:
        if not self.conditions:
            return ""
        return "WHERE " + " AND ".join(self.conditions)

    def and_(self, *conditions: str) -> "Predicate":
        extra = tuple(c for c in conditions if c)
        return Predicate(self.conditions + extra)

    def __bool__(self) -> bool:
        return bool(self.conditions)


def in_condition(column: str, values: Iterable[object], *, integer: bool = False) -> str:
    if integer:
        items = sorted({int(v) for v in values})
        rendered = ", ".join(str(v) for v in items)
    else:
        rendered = ", ".join(sql_literal(v) for v in sorted({str(v) for v in values}))
    return f"{quote_ident(column)} IN ({rendered})"


def _dimension_condition(dim: Dimension, values: Sequence[str]) -> str:
    if dim.integer:
        try:
            return in_condition(dim.column, values, integer=True)
        except ValueError:
            raise ValueError(f"{dim.name} accepts integer values only, got {sorted(values)}") from None
    return in_condition(dim.column, values)


def build_predicate(state: FilterState, dataset: DatasetSpec) -> Predicate:
    """Translate a filter state: IN per restricted dimension, inclusive bounds on the date column."""
    conditions: List[str] = []
    for dim in dataset.dimensions:
        if dim.name not in state.dimensions:
            continue
        accepted = state.accepted_values(dim.name)
        if accepted:
            conditions.append(_dimension_condition(dim, sorted(accepted)))

    if dataset.date_column is None:
        return Predicate(tuple(conditions))
    date_col = f"TRY_CAST({quote_ident(dataset.date_column)} AS TIMESTAMP)"
    if state.date_range.start is not None:
        conditions.append(f"{date_col} >= {_timestamp_literal(state.date_range.start)}")
    if state.date_range.end is not None:
        conditions.append(f"{date_col} <= {_timestamp_literal(state.date_range.end)}")
    return Predicate(tuple(conditions))
